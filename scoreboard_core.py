"""
Core scoreboard simulator models and the cycle engine shared between the GUI and the tests.

The engine tracks four pipeline stages per instruction (Issue, Read Operands,
Execution Complete, Write Result) and enforces structural, RAW, WAW and WAR
hazards through the functional unit status table and the register result status.
"""
from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

__all__ = [
    "ISSUE",
    "READ_OPERANDS",
    "EXECUTION_COMPLETE",
    "WRITE_RESULT",
    "STAGES",
    "INSTRUCTION_TYPES",
    "FUNCTIONAL_UNIT_TYPES",
    "INSTRUCTION_TO_FUNCTIONAL_UNIT",
    "DEFAULT_EXECUTION_CYCLES",
    "FP_REGISTERS",
    "INT_REGISTERS",
    "ScoreboardError",
    "SimulationStateError",
    "FunctionalUnitNotFoundError",
    "Instruction",
    "FunctionalUnit",
    "ActionResult",
    "ScoreboardSnapshot",
    "PendingAction",
    "Scoreboard",
    "SAMPLE_PROGRAM_TEXT",
    "make_instruction",
    "parse_program",
    "build_sample_program",
    "format_instruction",
    "default_register_status",
]

# Instruction status stages
ISSUE = "Issue"
READ_OPERANDS = "Read Operands"
EXECUTION_COMPLETE = "Execution Complete"
WRITE_RESULT = "Write Result"
STAGES: Tuple[str, ...] = (ISSUE, READ_OPERANDS, EXECUTION_COMPLETE, WRITE_RESULT)

INSTRUCTION_TYPES: Dict[str, str] = {
    "LOAD": "LD",
    "STORE": "SD",
    "INTEGER_ADD": "DADD",
    "INTEGER_SUB": "DSUB",
    "FP_ADD": "ADDD",
    "FP_SUB": "SUBD",
    "FP_MULT": "MULTD",
    "FP_DIV": "DIVD",
    "AND": "AND",
    "OR": "OR",
    "XOR": "XOR",
}

FUNCTIONAL_UNIT_TYPES: Dict[str, str] = {
    "INTEGER": "Integer",
    "FP_ADDER": "FP Adder",
    "FP_MULTIPLIER": "FP Multiplier",
    "FP_DIVIDER": "FP Divider",
}

INSTRUCTION_TO_FUNCTIONAL_UNIT: Dict[str, str] = {
    "LD": "Integer",
    "SD": "Integer",
    "DADD": "Integer",
    "DSUB": "Integer",
    "AND": "Integer",
    "OR": "Integer",
    "XOR": "Integer",
    "ADDD": "FP Adder",
    "SUBD": "FP Adder",
    "MULTD": "FP Multiplier",
    "DIVD": "FP Divider",
}

DEFAULT_EXECUTION_CYCLES: Dict[str, int] = {
    "LD": 1,
    "SD": 1,
    "DADD": 1,
    "DSUB": 1,
    "AND": 1,
    "OR": 1,
    "XOR": 1,
    "ADDD": 2,
    "SUBD": 2,
    "MULTD": 10,
    "DIVD": 40,
}

FP_REGISTERS: List[str] = [f"F{i}" for i in range(32)]
INT_REGISTERS: List[str] = [f"R{i}" for i in range(32)]

PendingAction = Tuple[str, int]


class ScoreboardError(RuntimeError):
    """Raised when the engine's state machine is used incorrectly."""


class SimulationStateError(ScoreboardError):
    pass


class FunctionalUnitNotFoundError(ScoreboardError):
    pass


def _empty_status() -> Dict[str, Optional[int]]:
    return {stage: None for stage in STAGES}


@dataclass
class Instruction:
    type: str
    dest: Optional[str] = None
    src1: Optional[str] = None
    src2: Optional[str] = None
    offset: Optional[int] = None
    status: Dict[str, Optional[int]] = field(default_factory=_empty_status)

    def clone(self) -> "Instruction":
        return copy.deepcopy(self)

    def reset_status(self) -> None:
        self.status = _empty_status()

    @property
    def unit_type(self) -> str:
        return INSTRUCTION_TO_FUNCTIONAL_UNIT[self.type]

    @property
    def is_finished(self) -> bool:
        return self.status[WRITE_RESULT] is not None

    @property
    def mem_str(self) -> str:
        if self.offset is not None and self.src1:
            return f"{self.offset}({self.src1})"
        return ""


@dataclass
class FunctionalUnit:
    name: str
    unit_type: str
    busy: bool = False
    op: Optional[str] = None
    fi: Optional[str] = None
    fj: Optional[str] = None
    fk: Optional[str] = None
    qj: Optional[str] = None
    qk: Optional[str] = None
    rj: bool = True
    rk: bool = True
    cycles_remaining: int = 0
    instruction_idx: Optional[int] = None

    def reset(self) -> None:
        self.busy = False
        self.op = None
        self.fi = None
        self.fj = None
        self.fk = None
        self.qj = None
        self.qk = None
        self.rj = True
        self.rk = True
        self.cycles_remaining = 0
        self.instruction_idx = None


@dataclass(frozen=True)
class ActionResult:
    valid: bool
    message: str = ""

    @property
    def success(self) -> bool:
        return self.valid


@dataclass(frozen=True)
class ScoreboardSnapshot:
    current_cycle: int
    instructions: Tuple[Instruction, ...]
    functional_units: Tuple[FunctionalUnit, ...]
    register_status: Dict[str, Optional[str]]
    simulation_started: bool
    pending_actions: FrozenSet[PendingAction]
    execution_cycles: Dict[str, int]


def default_register_status() -> Dict[str, Optional[str]]:
    return {reg: None for reg in FP_REGISTERS + INT_REGISTERS}


class Scoreboard:
    FUNCTIONAL_UNIT_TEMPLATES: Dict[str, List[str]] = {
        "Integer": ["Integer"],
        "FP Adder": ["FP Adder"],
        "FP Multiplier": ["FP Multiplier"],
        "FP Divider": ["FP Divider"],
    }

    def __init__(self, execution_cycles: Optional[Dict[str, int]] = None) -> None:
        self.execution_cycles: Dict[str, int] = _merge_execution_cycles(execution_cycles)
        self.current_cycle: int = 0
        self.instructions: List[Instruction] = []
        self.functional_units: List[FunctionalUnit] = []
        self.register_status: Dict[str, Optional[str]] = {}
        self.simulation_started: bool = False
        self.pending_actions: Set[PendingAction] = set()
        self._reset_machine()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self) -> None:
        self.instructions = []
        self.simulation_started = False
        self._reset_machine()
        logger.info("Scoreboard reset")

    def start_simulation(self) -> None:
        if self.simulation_started:
            raise SimulationStateError("Simulation is already running")
        if not self.instructions:
            raise SimulationStateError(
                "Add at least one instruction before starting the simulation"
            )
        self._reset_machine()
        for instr in self.instructions:
            for reg in (instr.dest, instr.src1, instr.src2):
                if reg:
                    self.register_status.setdefault(reg, None)
        self.simulation_started = True
        self.current_cycle = 1
        self._refresh_pending_actions()
        logger.info(
            "Simulation started with %d instruction(s)", len(self.instructions)
        )

    def stop_simulation(self) -> None:
        self.simulation_started = False
        for instr in self.instructions:
            instr.reset_status()
        self._reset_machine()
        logger.info("Simulation stopped")

    def _reset_machine(self) -> None:
        self.current_cycle = 0
        self.pending_actions = set()
        self.register_status = default_register_status()
        self.functional_units = [
            FunctionalUnit(name, unit_type)
            for unit_type, names in self.FUNCTIONAL_UNIT_TEMPLATES.items()
            for name in names
        ]

    # ------------------------------------------------------------------
    # Edit mode
    # ------------------------------------------------------------------

    def add_instruction(self, instruction: Instruction) -> int:
        self._require_edit_mode("add instructions")
        _validate_operands(instruction)
        new_instr = instruction.clone()
        new_instr.reset_status()
        self.instructions.append(new_instr)
        logger.debug("Added %s at position %d", format_instruction(new_instr), len(self.instructions))
        return len(self.instructions) - 1

    def remove_instruction(self, index: int) -> None:
        self._require_edit_mode("remove instructions")
        self._instruction(index)
        del self.instructions[index]

    def reorder_instructions(self, from_index: int, to_index: int) -> None:
        self._require_edit_mode("reorder instructions")
        instr = self._instruction(from_index)
        if not 0 <= to_index < len(self.instructions):
            raise IndexError(f"Instruction index {to_index} out of range")
        del self.instructions[from_index]
        self.instructions.insert(to_index, instr)

    def set_execution_cycles(self, execution_cycles: Dict[str, int]) -> None:
        self._require_edit_mode("change execution latencies")
        self.execution_cycles = _merge_execution_cycles(execution_cycles)

    def _require_edit_mode(self, action: str) -> None:
        if self.simulation_started:
            raise SimulationStateError(f"Cannot {action} while simulation is running")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def latency_for(self, instruction_type: str) -> int:
        return self.execution_cycles[instruction_type]

    def available_functional_unit(self, instruction_type: str) -> Optional[FunctionalUnit]:
        unit_type = INSTRUCTION_TO_FUNCTIONAL_UNIT[instruction_type]
        for unit in self.functional_units:
            if unit.unit_type == unit_type and not unit.busy:
                return unit
        return None

    def is_register_being_written(self, register: str) -> bool:
        return self.register_status.get(register) is not None

    def unit_by_name(self, name: str) -> Optional[FunctionalUnit]:
        for unit in self.functional_units:
            if unit.name == name:
                return unit
        return None

    def functional_unit_for(self, index: int) -> Optional[FunctionalUnit]:
        for unit in self.functional_units:
            if unit.busy and unit.instruction_idx == index:
                return unit
        return None

    def instruction_for_unit(self, unit: FunctionalUnit) -> Optional[int]:
        if not unit.busy:
            return None
        return unit.instruction_idx

    def is_complete(self) -> bool:
        return bool(self.instructions) and all(
            instr.is_finished for instr in self.instructions
        )

    def has_pending(self, stage: str, index: int) -> bool:
        return (stage, index) in self.pending_actions

    def snapshot(self) -> ScoreboardSnapshot:
        return ScoreboardSnapshot(
            current_cycle=self.current_cycle,
            instructions=tuple(instr.clone() for instr in self.instructions),
            functional_units=tuple(copy.deepcopy(unit) for unit in self.functional_units),
            register_status=dict(self.register_status),
            simulation_started=self.simulation_started,
            pending_actions=frozenset(self.pending_actions),
            execution_cycles=dict(self.execution_cycles),
        )

    def _instruction(self, index: int) -> Instruction:
        if not 0 <= index < len(self.instructions):
            raise IndexError(f"Instruction index {index} out of range")
        return self.instructions[index]

    def _require_unit(self, index: int) -> FunctionalUnit:
        unit = self.functional_unit_for(index)
        if unit is None:
            raise FunctionalUnitNotFoundError(
                f"No functional unit holds instruction {index + 1}"
            )
        return unit

    def _issued_this_cycle(self) -> bool:
        return any(
            instr.status[ISSUE] == self.current_cycle for instr in self.instructions
        )

    def _war_conflict(self, unit: FunctionalUnit) -> Optional[FunctionalUnit]:
        if unit.fi is None:
            return None
        for other in self.functional_units:
            if other is unit or not other.busy:
                continue
            if (other.fj == unit.fi and other.rj) or (other.fk == unit.fi and other.rk):
                return other
        return None

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    def issue(self, index: int) -> bool:
        instr = self._instruction(index)
        if not self.simulation_started or instr.status[ISSUE] is not None:
            return False
        if self._issued_this_cycle():
            return False
        if any(prev.status[ISSUE] is None for prev in self.instructions[:index]):
            return False
        unit = self.available_functional_unit(instr.type)
        if unit is None:
            logger.debug(
                "Structural hazard: no free %s unit for instruction %d",
                instr.unit_type,
                index + 1,
            )
            return False
        if instr.dest and self.is_register_being_written(instr.dest):
            logger.debug(
                "WAW hazard: %s already claimed by %s",
                instr.dest,
                self.register_status[instr.dest],
            )
            return False

        unit.busy = True
        unit.op = instr.type
        unit.fi = instr.dest
        unit.fj = instr.src1
        unit.fk = instr.src2
        unit.qj = self.register_status.get(instr.src1) if instr.src1 else None
        unit.qk = self.register_status.get(instr.src2) if instr.src2 else None
        unit.rj = unit.qj is None
        unit.rk = unit.qk is None
        unit.cycles_remaining = self.latency_for(instr.type)
        unit.instruction_idx = index
        if instr.dest:
            self.register_status[instr.dest] = unit.name
        instr.status[ISSUE] = self.current_cycle
        self.pending_actions.discard((ISSUE, index))
        logger.debug(
            "Cycle %d: issued %s to %s",
            self.current_cycle,
            format_instruction(instr),
            unit.name,
        )
        return True

    def read_operands(self, index: int) -> bool:
        instr = self._instruction(index)
        unit = self._require_unit(index)
        issued = instr.status[ISSUE]
        if instr.status[READ_OPERANDS] is not None or issued is None:
            return False
        if issued >= self.current_cycle:
            return False
        if not (unit.rj and unit.rk):
            logger.debug(
                "RAW hazard: %s waiting on %s",
                unit.name,
                unit.qj or unit.qk,
            )
            return False

        unit.rj = False
        unit.rk = False
        instr.status[READ_OPERANDS] = self.current_cycle
        self.pending_actions.discard((READ_OPERANDS, index))
        logger.debug("Cycle %d: %s read operands", self.current_cycle, unit.name)
        return True

    def complete_execution(self, index: int) -> bool:
        instr = self._instruction(index)
        unit = self._require_unit(index)
        read = instr.status[READ_OPERANDS]
        if read is None or instr.status[EXECUTION_COMPLETE] is not None:
            return False
        if read >= self.current_cycle or unit.cycles_remaining > 0:
            return False

        instr.status[EXECUTION_COMPLETE] = self.current_cycle
        self.pending_actions.discard((EXECUTION_COMPLETE, index))
        logger.debug("Cycle %d: %s completed execution", self.current_cycle, unit.name)
        return True

    def write_result(self, index: int) -> bool:
        instr = self._instruction(index)
        unit = self._require_unit(index)
        completed = instr.status[EXECUTION_COMPLETE]
        if completed is None or instr.status[WRITE_RESULT] is not None:
            return False
        if completed >= self.current_cycle:
            return False
        blocker = self._war_conflict(unit)
        if blocker is not None:
            logger.debug("WAR hazard: %s is still needed by %s", unit.fi, blocker.name)
            return False

        instr.status[WRITE_RESULT] = self.current_cycle
        if instr.dest and self.register_status.get(instr.dest) == unit.name:
            self.register_status[instr.dest] = None
        for other in self.functional_units:
            if other is unit or not other.busy:
                continue
            if other.qj == unit.name:
                other.qj = None
                other.rj = True
            if other.qk == unit.name:
                other.qk = None
                other.rk = True
        unit.reset()
        self.pending_actions.discard((WRITE_RESULT, index))
        logger.debug(
            "Cycle %d: %s wrote result for %s",
            self.current_cycle,
            unit.name,
            format_instruction(instr),
        )
        return True

    def perform(self, stage: str, index: int) -> bool:
        if stage == ISSUE:
            return self.issue(index)
        if stage == READ_OPERANDS:
            return self.read_operands(index)
        if stage == EXECUTION_COMPLETE:
            return self.complete_execution(index)
        if stage == WRITE_RESULT:
            return self.write_result(index)
        raise ValueError(f"Unknown stage '{stage}'")

    # ------------------------------------------------------------------
    # Cycle advance and pending actions
    # ------------------------------------------------------------------

    def advance_cycle(self) -> ActionResult:
        if not self.simulation_started:
            return ActionResult(False, "Simulation must be started to advance cycles.")
        if self.pending_actions:
            return ActionResult(
                False,
                "Cannot advance to next cycle. There are "
                f"{len(self.pending_actions)} pending actions that must be completed first.",
            )

        self.current_cycle += 1
        for unit in self.functional_units:
            if not unit.busy or unit.cycles_remaining <= 0:
                continue
            instr = self.instructions[unit.instruction_idx]
            if instr.status[READ_OPERANDS] is not None:
                unit.cycles_remaining -= 1
        self._refresh_pending_actions()
        logger.debug(
            "Advanced to cycle %d (%d pending)",
            self.current_cycle,
            len(self.pending_actions),
        )
        return ActionResult(True, f"Advanced to cycle {self.current_cycle}")

    def compute_pending_actions(self) -> Set[PendingAction]:
        """Derive the set of stage transitions that must happen in the current cycle."""
        actions: Set[PendingAction] = set()
        if not self.simulation_started:
            return actions

        if not self._issued_this_cycle():
            for idx, instr in enumerate(self.instructions):
                if instr.status[ISSUE] is not None:
                    continue
                all_previous_issued = all(
                    prev.status[ISSUE] is not None for prev in self.instructions[:idx]
                )
                if all_previous_issued:
                    free_unit = self.available_functional_unit(instr.type)
                    no_waw = not instr.dest or not self.is_register_being_written(instr.dest)
                    if free_unit is not None and no_waw:
                        actions.add((ISSUE, idx))
                break

        for idx, instr in enumerate(self.instructions):
            status = instr.status
            if status[ISSUE] is None:
                continue
            unit = self.functional_unit_for(idx)
            if unit is None:
                continue
            if status[READ_OPERANDS] is None:
                if status[ISSUE] < self.current_cycle and unit.rj and unit.rk:
                    actions.add((READ_OPERANDS, idx))
            elif status[EXECUTION_COMPLETE] is None:
                if status[READ_OPERANDS] < self.current_cycle and unit.cycles_remaining == 0:
                    actions.add((EXECUTION_COMPLETE, idx))
            elif status[WRITE_RESULT] is None:
                if (
                    status[EXECUTION_COMPLETE] < self.current_cycle
                    and self._war_conflict(unit) is None
                ):
                    actions.add((WRITE_RESULT, idx))
        return actions

    def _refresh_pending_actions(self) -> None:
        self.pending_actions = self.compute_pending_actions()

    def valid_actions_for(self, index: int) -> List[str]:
        instr = self._instruction(index)
        if not self.simulation_started:
            return []
        status = instr.status
        if status[ISSUE] is None:
            in_order = all(
                prev.status[ISSUE] is not None for prev in self.instructions[:index]
            )
            no_waw = not instr.dest or not self.is_register_being_written(instr.dest)
            if (
                in_order
                and not self._issued_this_cycle()
                and self.available_functional_unit(instr.type) is not None
                and no_waw
            ):
                return [ISSUE]
            return []
        unit = self.functional_unit_for(index)
        if unit is None:
            return []
        if status[READ_OPERANDS] is None:
            if status[ISSUE] < self.current_cycle and unit.rj and unit.rk:
                return [READ_OPERANDS]
        elif status[EXECUTION_COMPLETE] is None:
            if status[READ_OPERANDS] < self.current_cycle and unit.cycles_remaining == 0:
                return [EXECUTION_COMPLETE]
        elif status[WRITE_RESULT] is None:
            if status[EXECUTION_COMPLETE] < self.current_cycle and self._war_conflict(unit) is None:
                return [WRITE_RESULT]
        return []


def _merge_execution_cycles(overrides: Optional[Dict[str, int]]) -> Dict[str, int]:
    cycles = DEFAULT_EXECUTION_CYCLES.copy()
    for op, latency in (overrides or {}).items():
        if op not in DEFAULT_EXECUTION_CYCLES:
            raise ValueError(f"Unknown instruction type '{op}'")
        if isinstance(latency, bool) or not isinstance(latency, int) or latency < 1:
            raise ValueError(f"Latency for {op} must be a positive integer, got {latency!r}")
        cycles[op] = latency
    return cycles


def _check_register(register: Optional[str], role: str) -> None:
    if not register:
        raise ValueError(f"Missing {role} register")
    if register not in FP_REGISTERS and register not in INT_REGISTERS:
        raise ValueError(f"Unknown {role} register '{register}'")


def _validate_operands(instr: Instruction) -> None:
    if instr.type not in INSTRUCTION_TO_FUNCTIONAL_UNIT:
        raise ValueError(f"Unsupported instruction type '{instr.type}'")
    if instr.type == "LD":
        _check_register(instr.dest, "destination")
        _check_register(instr.src1, "base address")
        if instr.src2 is not None:
            raise ValueError("LD takes no second source register")
    elif instr.type == "SD":
        if instr.dest is not None:
            raise ValueError("SD has no destination register")
        _check_register(instr.src1, "base address")
        _check_register(instr.src2, "value")
    else:
        _check_register(instr.dest, "destination")
        _check_register(instr.src1, "source 1")
        _check_register(instr.src2, "source 2")
        return
    if instr.offset is None:
        raise ValueError(f"{instr.type} requires an offset")


def make_instruction(
    op: str,
    dest: Optional[str] = None,
    src1: Optional[str] = None,
    src2: Optional[str] = None,
    offset: Optional[int] = None,
) -> Instruction:
    instr = Instruction(
        type=op.upper(),
        dest=dest.upper() if dest else None,
        src1=src1.upper() if src1 else None,
        src2=src2.upper() if src2 else None,
        offset=offset,
    )
    _validate_operands(instr)
    return instr


def format_instruction(instr: Instruction) -> str:
    if instr.type == "LD":
        return f"{instr.type} {instr.dest}, {instr.mem_str}"
    if instr.type == "SD":
        return f"{instr.type} {instr.src2}, {instr.mem_str}"
    return f"{instr.type} {instr.dest}, {instr.src1}, {instr.src2}"


SAMPLE_PROGRAM_TEXT = """\
# Classic scoreboard sequence
LD F6, 34(R2)
LD F2, 45(R3)
MULTD F0, F2, F4
SUBD F8, F6, F2
DIVD F10, F0, F6
ADDD F6, F8, F2
"""

MEM_ADDR_RE = re.compile(r"^\s*(-?\d+)\((\w+)\)\s*$")


def parse_program(text: str) -> List[Instruction]:
    instructions: List[Instruction] = []
    for line_no, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.split("#", 1)[0].strip()
        if not line:
            continue
        tokens = [tok for tok in re.split(r"[,\s]+", line) if tok]
        op = tokens[0].upper()
        if op not in INSTRUCTION_TO_FUNCTIONAL_UNIT:
            raise ValueError(f"Line {line_no}: unsupported opcode '{op}'")
        expected = 3 if op in ("LD", "SD") else 4
        if len(tokens) < expected:
            raise ValueError(f"Line {line_no}: missing operand in '{raw_line.strip()}'")
        if len(tokens) > expected:
            raise ValueError(f"Line {line_no}: too many operands in '{raw_line.strip()}'")
        try:
            if op == "LD":
                offset, base = _parse_mem_operand(tokens[2])
                instr = make_instruction(op, dest=tokens[1], src1=base, offset=offset)
            elif op == "SD":
                offset, base = _parse_mem_operand(tokens[2])
                instr = make_instruction(op, src1=base, src2=tokens[1], offset=offset)
            else:
                instr = make_instruction(op, dest=tokens[1], src1=tokens[2], src2=tokens[3])
        except ValueError as exc:
            raise ValueError(f"Line {line_no}: {exc}") from exc
        instructions.append(instr)
    return instructions


def _parse_mem_operand(token: str) -> Tuple[int, str]:
    match = MEM_ADDR_RE.match(token)
    if not match:
        raise ValueError(f"Invalid memory operand '{token}' (expected offset(base))")
    offset, base = match.groups()
    return int(offset), base


def build_sample_program() -> List[Instruction]:
    return parse_program(SAMPLE_PROGRAM_TEXT)
