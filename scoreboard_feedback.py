"""
Action dispatch and user feedback for the scoreboard simulator.

``dispatch_action`` is the single entry point a front-end uses to move an
instruction to its next stage. It only performs the transition when both the
validator and the scoreboard's pending-action set agree.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from scoreboard_core import (
    EXECUTION_COMPLETE,
    ISSUE,
    READ_OPERANDS,
    STAGES,
    WRITE_RESULT,
    ActionResult,
    PendingAction,
    Scoreboard,
    ScoreboardError,
    format_instruction,
)
from scoreboard_validation import ScoreboardValidator

logger = logging.getLogger(__name__)

__all__ = [
    "Feedback",
    "FeedbackGenerator",
    "dispatch_action",
    "auto_step",
    "run_to_completion",
]


@dataclass(frozen=True)
class Feedback:
    message: str
    kind: str = "info"  # info, success, error


def _action_message(scoreboard: Scoreboard, index: int, stage: str) -> str:
    text = format_instruction(scoreboard.instructions[index])
    cycle = scoreboard.current_cycle
    if stage == ISSUE:
        return f"Successfully issued {text} in cycle {cycle}."
    if stage == READ_OPERANDS:
        return f"Successfully read operands for {text} in cycle {cycle}."
    if stage == EXECUTION_COMPLETE:
        return f"Execution completed for {text} in cycle {cycle}."
    if stage == WRITE_RESULT:
        return f"Result written for {text} in cycle {cycle}."
    return f"Successfully updated {text} to {stage} at cycle {cycle}."


def dispatch_action(
    scoreboard: Scoreboard,
    validator: ScoreboardValidator,
    index: int,
    stage: str,
) -> ActionResult:
    instr = scoreboard.instructions[index]
    done_in = instr.status[stage]
    if done_in is not None:
        return ActionResult(False, f"This operation was already completed in cycle {done_in}.")

    verdict = validator.check(stage, index)
    if not verdict.valid:
        return verdict

    if not scoreboard.has_pending(stage, index):
        return ActionResult(
            False,
            f"This action cannot be performed in the current cycle {scoreboard.current_cycle}.",
        )

    if not scoreboard.perform(stage, index):
        logger.warning(
            "Scoreboard refused %s for instruction %d after both gates accepted it",
            stage,
            index + 1,
        )
        return ActionResult(False, "Action failed for an unknown reason.")
    return ActionResult(True, _action_message(scoreboard, index, stage))


class FeedbackGenerator:
    def __init__(self, scoreboard: Scoreboard, validator: ScoreboardValidator) -> None:
        self.scoreboard = scoreboard
        self.validator = validator

    def action_feedback(self, index: int, stage: str) -> Feedback:
        return Feedback(_action_message(self.scoreboard, index, stage), "success")

    def possible_actions(self) -> List[str]:
        actions: List[str] = []
        for idx, instr in enumerate(self.scoreboard.instructions):
            for stage in self.validator.get_next_valid_actions(idx):
                actions.append(f"{format_instruction(instr)} - {stage}")
        return actions

    def current_state_feedback(self) -> Feedback:
        message = f"Currently at cycle {self.scoreboard.current_cycle}. "
        actions = self.possible_actions()
        if actions:
            message += "Possible actions: " + ", ".join(actions)
        else:
            message += "No valid actions available. Consider advancing to the next cycle."
        return Feedback(message, "info")

    def hint(self) -> Feedback:
        sb = self.scoreboard
        if not sb.instructions:
            return Feedback("Hint: Add some instructions to get started.")
        if not sb.simulation_started:
            return Feedback("Hint: Start the simulation to begin issuing instructions.")
        if sb.is_complete():
            return Feedback("Hint: Every instruction has written its result. Stop or reset to try another program.")

        for idx, instr in enumerate(sb.instructions):
            stages = self.validator.get_next_valid_actions(idx)
            if stages:
                return Feedback(
                    f"Hint: You can advance {format_instruction(instr)} to the {stages[0]} stage."
                )

        if any(unit.busy and unit.cycles_remaining > 0 for unit in sb.functional_units):
            return Feedback(
                "Hint: There are instructions still executing. Advance to the next "
                "cycle to decrease remaining execution cycles."
            )
        return Feedback(
            "Hint: Consider advancing to the next cycle or checking for WAR/WAW "
            "hazards that might be blocking progress."
        )


def auto_step(scoreboard: Scoreboard, validator: ScoreboardValidator) -> List[PendingAction]:
    """Perform every pending action of the current cycle, then advance.

    Returns the actions performed, in the order they were applied. Raises
    ``ScoreboardError`` if a pending action is rejected, since the cycle could
    then never be advanced.
    """
    if not scoreboard.simulation_started:
        raise ScoreboardError("Simulation must be started before stepping")

    performed: List[PendingAction] = []
    order = sorted(
        scoreboard.pending_actions,
        key=lambda action: (STAGES.index(action[0]), action[1]),
    )
    for stage, index in order:
        result = dispatch_action(scoreboard, validator, index, stage)
        if not result.valid:
            raise ScoreboardError(
                f"Pending {stage} for instruction {index + 1} was rejected: {result.message}"
            )
        performed.append((stage, index))

    if not scoreboard.is_complete():
        advanced = scoreboard.advance_cycle()
        if not advanced.valid:
            raise ScoreboardError(advanced.message)
    return performed


def run_to_completion(
    scoreboard: Scoreboard,
    validator: ScoreboardValidator,
    max_cycles: int = 500,
) -> int:
    """Step until every instruction has written its result; return the final cycle."""
    if not scoreboard.simulation_started:
        scoreboard.start_simulation()
    while not scoreboard.is_complete():
        if scoreboard.current_cycle > max_cycles:
            raise ScoreboardError(f"Simulation did not finish within {max_cycles} cycles")
        auto_step(scoreboard, validator)
    return scoreboard.current_cycle
