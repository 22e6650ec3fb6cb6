"""
Action validation for the scoreboard simulator.

Every check here is derived from the instruction status and the functional unit
table directly, never from the scoreboard's pending-action set, so the two can be
compared against each other in tests.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from scoreboard_core import (
    EXECUTION_COMPLETE,
    ISSUE,
    READ_OPERANDS,
    STAGES,
    WRITE_RESULT,
    ActionResult,
    FunctionalUnit,
    Instruction,
    Scoreboard,
)

logger = logging.getLogger(__name__)

__all__ = ["ScoreboardValidator"]

NOT_STARTED = "Simulation must be started to perform actions."
NO_UNIT = "No functional unit assigned to this instruction."
OK = ActionResult(True)


class ScoreboardValidator:
    def __init__(self, scoreboard: Scoreboard) -> None:
        self.scoreboard = scoreboard

    def check(self, stage: str, index: int) -> ActionResult:
        if stage == ISSUE:
            return self.can_issue(index)
        if stage == READ_OPERANDS:
            return self.can_read_operands(index)
        if stage == EXECUTION_COMPLETE:
            return self.can_complete_execution(index)
        if stage == WRITE_RESULT:
            return self.can_write_result(index)
        raise ValueError(f"Unknown stage '{stage}'")

    def can_issue(self, index: int) -> ActionResult:
        sb = self.scoreboard
        instr = sb.instructions[index]
        if not sb.simulation_started:
            return ActionResult(False, NOT_STARTED)
        if instr.status[ISSUE] is not None:
            return ActionResult(False, "Instruction has already been issued.")

        for prev_idx, prev in enumerate(sb.instructions[:index]):
            if prev.status[ISSUE] is None:
                return ActionResult(
                    False,
                    "Cannot issue out of order. Previous instruction at position "
                    f"{prev_idx + 1} must be issued first.",
                )

        if sb.available_functional_unit(instr.type) is None:
            holder = self._holder_of_type(instr.unit_type)
            detail = ""
            if holder is not None:
                detail = f" It is occupied by instruction {self._describe(holder)}."
            return ActionResult(
                False,
                f"No available {instr.unit_type} functional unit (structural hazard).{detail}",
            )

        if instr.dest and sb.register_status.get(instr.dest) is not None:
            owner = sb.register_status[instr.dest]
            unit = sb.unit_by_name(owner)
            by = f" by instruction {self._describe(unit)}" if unit is not None else ""
            return ActionResult(
                False,
                f"Register {instr.dest} is already scheduled to be written{by} "
                f"in functional unit {owner} (WAW hazard).",
            )

        issued_now = [
            i for i, other in enumerate(sb.instructions)
            if other.status[ISSUE] == sb.current_cycle
        ]
        if issued_now:
            return ActionResult(
                False,
                f"Only one instruction may issue per cycle. Instruction "
                f"{issued_now[0] + 1} was already issued in cycle {sb.current_cycle}.",
            )
        return OK

    def can_read_operands(self, index: int) -> ActionResult:
        sb = self.scoreboard
        instr = sb.instructions[index]
        if not sb.simulation_started:
            return ActionResult(False, NOT_STARTED)
        issued = instr.status[ISSUE]
        if issued is None:
            return ActionResult(False, "Instruction must be issued before reading operands.")
        if instr.status[READ_OPERANDS] is not None:
            return ActionResult(
                False,
                f"Operands have already been read in cycle {instr.status[READ_OPERANDS]}.",
            )
        if issued >= sb.current_cycle:
            return ActionResult(
                False,
                "Cannot read operands in the same cycle as issuing. "
                f"Must wait until cycle {issued + 1}.",
            )

        unit = sb.functional_unit_for(index)
        if unit is None:
            return ActionResult(False, NO_UNIT)

        for register, producer, ready in ((unit.fj, unit.qj, unit.rj), (unit.fk, unit.qk, unit.rk)):
            if producer is not None:
                producer_unit = sb.unit_by_name(producer)
                return ActionResult(
                    False,
                    f"Register {register} is not ready yet. It is being produced by "
                    f"instruction {self._describe(producer_unit)} in functional unit "
                    f"{producer}. This is a RAW hazard.",
                )
            if not ready:
                return ActionResult(False, f"Register {register} is not available.")
        return OK

    def can_complete_execution(self, index: int) -> ActionResult:
        sb = self.scoreboard
        instr = sb.instructions[index]
        if not sb.simulation_started:
            return ActionResult(False, NOT_STARTED)
        read = instr.status[READ_OPERANDS]
        if read is None:
            return ActionResult(False, "Operands must be read before execution can complete.")
        if instr.status[EXECUTION_COMPLETE] is not None:
            return ActionResult(False, "Execution has already been marked as complete.")
        if read >= sb.current_cycle:
            return ActionResult(
                False,
                "Execution cannot complete in the cycle its operands were read. "
                f"Must wait until cycle {read + 1}.",
            )

        unit = sb.functional_unit_for(index)
        if unit is None:
            return ActionResult(False, NO_UNIT)
        if unit.cycles_remaining > 0:
            return ActionResult(
                False,
                f"Execution not complete. {unit.cycles_remaining} cycles remaining.",
            )
        return OK

    def can_write_result(self, index: int) -> ActionResult:
        sb = self.scoreboard
        instr = sb.instructions[index]
        if not sb.simulation_started:
            return ActionResult(False, NOT_STARTED)
        completed = instr.status[EXECUTION_COMPLETE]
        if completed is None:
            return ActionResult(False, "Execution must complete before writing the result.")
        if instr.status[WRITE_RESULT] is not None:
            return ActionResult(False, "Result has already been written.")
        if completed >= sb.current_cycle:
            return ActionResult(
                False,
                "Cannot write the result in the cycle execution completed. "
                f"Must wait until cycle {completed + 1}.",
            )

        unit = sb.functional_unit_for(index)
        if unit is None:
            return ActionResult(False, NO_UNIT)
        if unit.fi is None:
            return OK

        for other in sb.functional_units:
            if other is unit or not other.busy:
                continue
            for position, register, ready in ((1, other.fj, other.rj), (2, other.fk, other.rk)):
                if register == unit.fi and ready:
                    return ActionResult(
                        False,
                        f"Cannot write result due to WAR hazard. Register {unit.fi} is "
                        f"needed as operand {position} by instruction "
                        f"{self._describe(other)} which hasn't read its operands yet.",
                    )
        return OK

    def get_next_valid_actions(self, index: int) -> List[str]:
        """Return the stage the instruction may move to right now, if any.

        A stage is listed only when the validator accepts it and the scoreboard
        has the matching pending action for this cycle.
        """
        sb = self.scoreboard
        if not sb.simulation_started:
            return []
        instr = sb.instructions[index]
        stage = _next_stage(instr)
        if stage is None or not sb.has_pending(stage, index):
            return []
        result = self.check(stage, index)
        if not result.valid:
            logger.warning(
                "Pending %s for instruction %d rejected by validator: %s",
                stage,
                index + 1,
                result.message,
            )
            return []
        return [stage]

    def can_advance_cycle(self) -> ActionResult:
        sb = self.scoreboard
        if not sb.simulation_started:
            return ActionResult(False, "Simulation must be started to advance cycles.")
        if sb.pending_actions:
            return ActionResult(
                False,
                f"There are {len(sb.pending_actions)} pending actions that must be "
                "completed before advancing to the next cycle.",
            )
        return OK

    def _holder_of_type(self, unit_type: str) -> Optional[FunctionalUnit]:
        for unit in self.scoreboard.functional_units:
            if unit.unit_type == unit_type and unit.busy:
                return unit
        return None

    def _describe(self, unit: Optional[FunctionalUnit]) -> str:
        index, instr = self._instruction_of(unit)
        if instr is None:
            return "? (unknown)"
        return f"{index + 1} ({instr.type})"

    def _instruction_of(
        self, unit: Optional[FunctionalUnit]
    ) -> Tuple[int, Optional[Instruction]]:
        if unit is None:
            return -1, None
        idx = self.scoreboard.instruction_for_unit(unit)
        if idx is None:
            return -1, None
        return idx, self.scoreboard.instructions[idx]


def _next_stage(instr: Instruction) -> Optional[str]:
    for stage in STAGES:
        if instr.status[stage] is None:
            return stage
    return None
