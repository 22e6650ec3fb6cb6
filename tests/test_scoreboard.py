"""
Tests for the scoreboard state machine and the cycle engine.

Covers the edit-mode lifecycle, each stage transition with its hazards,
cycle advancement and the pending-action computation.
"""
import pytest

from scoreboard_core import (
    EXECUTION_COMPLETE,
    ISSUE,
    READ_OPERANDS,
    WRITE_RESULT,
    FunctionalUnitNotFoundError,
    Scoreboard,
    SimulationStateError,
    format_instruction,
    make_instruction,
    parse_program,
)


def _scoreboard(text: str, **kwargs) -> Scoreboard:
    sb = Scoreboard(**kwargs)
    for instr in parse_program(text):
        sb.add_instruction(instr)
    return sb


def _started(text: str, **kwargs) -> Scoreboard:
    sb = _scoreboard(text, **kwargs)
    sb.start_simulation()
    return sb


def _advance(sb: Scoreboard) -> None:
    result = sb.advance_cycle()
    assert result.success, result.message


# ─── Edit mode ─────────────────────

class TestEditMode:
    def test_new_scoreboard_is_empty(self):
        sb = Scoreboard()
        assert sb.current_cycle == 0
        assert sb.instructions == []
        assert not sb.simulation_started
        assert sb.pending_actions == set()
        assert [u.name for u in sb.functional_units] == [
            "Integer", "FP Adder", "FP Multiplier", "FP Divider"
        ]
        assert all(owner is None for owner in sb.register_status.values())
        assert "F31" in sb.register_status and "R0" in sb.register_status

    def test_add_returns_index_and_clears_status(self):
        sb = Scoreboard()
        instr = make_instruction("LD", dest="F6", src1="R2", offset=34)
        instr.status[ISSUE] = 7
        assert sb.add_instruction(instr) == 0
        assert sb.add_instruction(make_instruction("ADDD", "F0", "F2", "F4")) == 1
        assert sb.instructions[0].status[ISSUE] is None
        assert instr.status[ISSUE] == 7

    def test_remove_and_reorder(self):
        sb = _scoreboard("LD F6, 34(R2)\nMULTD F0, F2, F4\nADDD F8, F6, F2")
        sb.reorder_instructions(0, 2)
        assert [i.type for i in sb.instructions] == ["MULTD", "ADDD", "LD"]
        sb.remove_instruction(1)
        assert [i.type for i in sb.instructions] == ["MULTD", "LD"]

    def test_index_out_of_range(self):
        sb = _scoreboard("LD F6, 34(R2)")
        with pytest.raises(IndexError):
            sb.remove_instruction(3)
        with pytest.raises(IndexError):
            sb.reorder_instructions(0, 5)

    def test_edits_rejected_while_running(self):
        sb = _started("LD F6, 34(R2)\nMULTD F0, F2, F4")
        with pytest.raises(SimulationStateError):
            sb.add_instruction(make_instruction("ADDD", "F0", "F2", "F4"))
        with pytest.raises(SimulationStateError):
            sb.remove_instruction(0)
        with pytest.raises(SimulationStateError):
            sb.reorder_instructions(0, 1)
        with pytest.raises(SimulationStateError):
            sb.set_execution_cycles({"LD": 2})

    def test_start_requires_instructions(self):
        with pytest.raises(SimulationStateError):
            Scoreboard().start_simulation()

    def test_start_twice(self):
        sb = _started("LD F6, 34(R2)")
        with pytest.raises(SimulationStateError):
            sb.start_simulation()


class TestConfiguration:
    def test_latency_override(self):
        sb = Scoreboard(execution_cycles={"MULTD": 4})
        assert sb.latency_for("MULTD") == 4
        assert sb.latency_for("DIVD") == 40

    @pytest.mark.parametrize("overrides", [{"FOO": 1}, {"LD": 0}, {"LD": "2"}, {"LD": True}])
    def test_invalid_latency(self, overrides):
        with pytest.raises(ValueError):
            Scoreboard(execution_cycles=overrides)

    def test_issue_uses_configured_latency(self):
        sb = _started("MULTD F0, F2, F4", execution_cycles={"MULTD": 3})
        sb.issue(0)
        assert sb.functional_unit_for(0).cycles_remaining == 3


# ─── Lifecycle ─────────────────────

class TestLifecycle:
    def test_start_sets_cycle_and_first_issue(self):
        sb = _started("LD F6, 34(R2)\nLD F2, 45(R3)")
        assert sb.simulation_started
        assert sb.current_cycle == 1
        assert sb.pending_actions == {(ISSUE, 0)}

    def test_stop_then_start_resets_machine_but_keeps_program(self):
        text = "LD F6, 34(R2)\nMULTD F0, F2, F4\nADDD F8, F6, F2"
        sb = _started(text)
        before = [format_instruction(i) for i in sb.instructions]
        sb.issue(0)
        _advance(sb)
        sb.perform(ISSUE, 1)
        sb.perform(READ_OPERANDS, 0)
        _advance(sb)

        sb.stop_simulation()
        assert not sb.simulation_started
        assert sb.current_cycle == 0
        assert sb.pending_actions == set()
        assert all(v is None for i in sb.instructions for v in i.status.values())

        sb.start_simulation()
        assert sb.current_cycle == 1
        assert [format_instruction(i) for i in sb.instructions] == before
        assert not any(u.busy for u in sb.functional_units)
        assert all(owner is None for owner in sb.register_status.values())
        assert sb.pending_actions == {(ISSUE, 0)}

    def test_stop_is_idempotent(self):
        sb = _started("LD F6, 34(R2)")
        sb.stop_simulation()
        sb.stop_simulation()
        assert len(sb.instructions) == 1

    def test_reset_empties_program(self):
        sb = _started("LD F6, 34(R2)")
        sb.issue(0)
        sb.reset()
        assert sb.instructions == []
        assert not sb.simulation_started
        assert sb.current_cycle == 0
        assert not any(u.busy for u in sb.functional_units)

    def test_snapshot_is_detached(self):
        sb = _started("LD F6, 34(R2)")
        snap = sb.snapshot()
        snap.instructions[0].status[ISSUE] = 99
        snap.functional_units[0].busy = True
        snap.register_status["F6"] = "Integer"
        assert sb.instructions[0].status[ISSUE] is None
        assert not sb.functional_units[0].busy
        assert sb.register_status["F6"] is None
        assert snap.pending_actions == frozenset({(ISSUE, 0)})


# ─── Stage transitions ─────────────────────

class TestLoadWalkthrough:
    """LD F6,34(R2) goes through all four stages in cycles 1-4."""

    def test_four_stages(self):
        sb = _started("LD F6, 34(R2)")

        assert sb.issue(0)
        unit = sb.functional_unit_for(0)
        assert unit.name == "Integer"
        assert (unit.busy, unit.op, unit.fi, unit.fj, unit.fk) == (True, "LD", "F6", "R2", None)
        assert (unit.qj, unit.qk, unit.rj, unit.rk) == (None, None, True, True)
        assert unit.cycles_remaining == 1
        assert sb.register_status["F6"] == "Integer"
        assert sb.pending_actions == set()
        assert not sb.read_operands(0)

        _advance(sb)
        assert sb.current_cycle == 2
        assert unit.cycles_remaining == 1
        assert sb.pending_actions == {(READ_OPERANDS, 0)}
        assert sb.read_operands(0)
        assert (unit.rj, unit.rk) == (False, False)
        assert not sb.complete_execution(0)

        _advance(sb)
        assert unit.cycles_remaining == 0
        assert sb.pending_actions == {(EXECUTION_COMPLETE, 0)}
        assert sb.complete_execution(0)
        assert not sb.write_result(0)

        _advance(sb)
        assert sb.pending_actions == {(WRITE_RESULT, 0)}
        assert sb.write_result(0)
        assert not unit.busy
        assert (unit.op, unit.fi, unit.rj, unit.rk, unit.cycles_remaining) == (None, None, True, True, 0)
        assert sb.register_status["F6"] is None
        assert sb.instructions[0].status == {
            ISSUE: 1,
            READ_OPERANDS: 2,
            EXECUTION_COMPLETE: 3,
            WRITE_RESULT: 4,
        }
        assert sb.is_complete()


class TestIssue:
    def test_waw_hazard(self):
        sb = _started("MULTD F0, F2, F4\nDIVD F0, F6, F8")
        assert sb.issue(0)
        assert not sb.issue(1)
        _advance(sb)
        assert (ISSUE, 1) not in sb.pending_actions
        assert not sb.issue(1)
        assert sb.functional_unit_for(1) is None

    def test_structural_hazard(self):
        sb = _started("LD F6, 34(R2)\nLD F2, 45(R3)")
        sb.issue(0)
        _advance(sb)
        assert sb.pending_actions == {(READ_OPERANDS, 0)}
        assert not sb.issue(1)

    def test_in_order_issue(self):
        sb = _started("LD F6, 34(R2)\nMULTD F0, F2, F4")
        assert not sb.issue(1)
        assert sb.issue(0)

    def test_one_issue_per_cycle(self):
        sb = _started("LD F6, 34(R2)\nMULTD F0, F2, F4")
        assert sb.issue(0)
        assert not sb.issue(1)
        _advance(sb)
        assert sb.pending_actions == {(ISSUE, 1), (READ_OPERANDS, 0)}

    def test_issue_before_start(self):
        sb = _scoreboard("LD F6, 34(R2)")
        assert not sb.issue(0)

    def test_operand_dependency_recorded(self):
        sb = _started("LD F2, 45(R3)\nMULTD F0, F2, F4")
        sb.issue(0)
        _advance(sb)
        sb.issue(1)
        mult = sb.functional_unit_for(1)
        assert (mult.qj, mult.rj) == ("Integer", False)
        assert (mult.qk, mult.rk) == (None, True)
        assert sb.register_status["F0"] == "FP Multiplier"

    def test_store_claims_no_register(self):
        sb = _started("SD F6, 0(R1)")
        sb.issue(0)
        unit = sb.functional_unit_for(0)
        assert unit.fi is None
        assert (unit.fj, unit.fk) == ("R1", "F6")
        assert all(owner is None for owner in sb.register_status.values())


class TestReadOperands:
    def test_raw_hazard_released_by_write(self):
        sb = _started("LD F2, 45(R3)\nMULTD F0, F2, F4")
        sb.issue(0)
        _advance(sb)
        sb.issue(1)
        sb.read_operands(0)
        _advance(sb)
        assert sb.pending_actions == {(EXECUTION_COMPLETE, 0)}
        assert not sb.read_operands(1)
        sb.complete_execution(0)
        _advance(sb)
        assert sb.write_result(0)

        mult = sb.functional_unit_for(1)
        assert (mult.qj, mult.rj) == (None, True)
        assert sb.pending_actions == set()
        _advance(sb)
        assert sb.pending_actions == {(READ_OPERANDS, 1)}
        assert sb.read_operands(1)

    def test_requires_assigned_unit(self):
        sb = _started("LD F6, 34(R2)")
        with pytest.raises(FunctionalUnitNotFoundError):
            sb.read_operands(0)
        with pytest.raises(FunctionalUnitNotFoundError):
            sb.complete_execution(0)
        with pytest.raises(FunctionalUnitNotFoundError):
            sb.write_result(0)


class TestExecution:
    def test_countdown_starts_after_read(self):
        sb = _started("MULTD F0, F2, F4", execution_cycles={"MULTD": 3})
        sb.issue(0)
        unit = sb.functional_unit_for(0)
        _advance(sb)
        assert unit.cycles_remaining == 3
        sb.read_operands(0)
        for expected in (2, 1, 0):
            _advance(sb)
            assert unit.cycles_remaining == expected
            if expected:
                assert not sb.complete_execution(0)
        assert sb.complete_execution(0)
        assert sb.instructions[0].status[EXECUTION_COMPLETE] == 5

    def test_countdown_floors_at_zero(self):
        sb = _started("LD F6, 34(R2)\nLD F2, 45(R3)")
        sb.issue(0)
        _advance(sb)
        sb.read_operands(0)
        _advance(sb)
        unit = sb.functional_unit_for(0)
        assert unit.cycles_remaining == 0
        sb.complete_execution(0)
        _advance(sb)
        assert unit.cycles_remaining == 0


class TestWriteResult:
    PROGRAM = "MULTD F0, F2, F4\nDIVD F10, F0, F6\nADDD F6, F8, F2"

    def _to_war_stall(self) -> Scoreboard:
        sb = _started(self.PROGRAM)
        sb.issue(0)
        _advance(sb)
        sb.issue(1)
        sb.read_operands(0)
        _advance(sb)
        sb.issue(2)
        _advance(sb)
        sb.read_operands(2)
        _advance(sb)
        _advance(sb)
        assert sb.pending_actions == {(EXECUTION_COMPLETE, 2)}
        sb.complete_execution(2)
        _advance(sb)
        return sb

    def test_war_hazard_blocks_write(self):
        sb = self._to_war_stall()
        assert sb.current_cycle == 7
        assert (WRITE_RESULT, 2) not in sb.pending_actions
        assert not sb.write_result(2)
        assert sb.register_status["F6"] == "FP Adder"
        assert sb.functional_unit_for(2).busy

    def test_pending_actions_drained_while_stalled(self):
        sb = self._to_war_stall()
        assert sb.pending_actions == set()
        assert sb.advance_cycle().success


# ─── Cycle advancement ─────────────────────

class TestAdvanceCycle:
    def test_blocked_by_pending_actions(self):
        sb = _started("LD F6, 34(R2)")
        result = sb.advance_cycle()
        assert not result.success
        assert "1 pending" in result.message
        assert sb.current_cycle == 1

    def test_requires_running_simulation(self):
        sb = _scoreboard("LD F6, 34(R2)")
        result = sb.advance_cycle()
        assert not result.valid
        assert sb.current_cycle == 0

    def test_increments_by_one(self):
        sb = _started("LD F6, 34(R2)")
        sb.issue(0)
        result = sb.advance_cycle()
        assert result.success
        assert result.message == "Advanced to cycle 2"
        assert sb.current_cycle == 2


class TestPendingActions:
    def test_empty_when_not_started(self):
        sb = _scoreboard("LD F6, 34(R2)")
        assert sb.compute_pending_actions() == set()

    def test_compute_is_pure(self):
        sb = _started("LD F6, 34(R2)")
        sb.issue(0)
        assert sb.compute_pending_actions() == set()
        assert sb.pending_actions == set()

    def test_valid_actions_for_matches_pending(self):
        sb = _started("LD F6, 34(R2)\nLD F2, 45(R3)\nMULTD F0, F2, F4")
        for _ in range(40):
            for idx in range(len(sb.instructions)):
                expected = {stage for stage, i in sb.pending_actions if i == idx}
                assert set(sb.valid_actions_for(idx)) == expected
            for stage, idx in sorted(sb.pending_actions):
                assert sb.perform(stage, idx)
            if sb.is_complete():
                break
            _advance(sb)
        assert sb.is_complete()

    def test_unknown_stage(self):
        sb = _started("LD F6, 34(R2)")
        with pytest.raises(ValueError):
            sb.perform("Retire", 0)
