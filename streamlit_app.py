#!/usr/bin/env python3
"""
Streamlit front-end for the Scoreboard Simulator.

Run with:
    streamlit run streamlit_app.py
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

import altair as alt
import pandas as pd
import streamlit as st

from scoreboard_core import (
    DEFAULT_EXECUTION_CYCLES,
    EXECUTION_COMPLETE,
    ISSUE,
    READ_OPERANDS,
    SAMPLE_PROGRAM_TEXT,
    STAGES,
    WRITE_RESULT,
    FunctionalUnit,
    Instruction,
    Scoreboard,
    ScoreboardError,
    ScoreboardSnapshot,
    format_instruction,
    parse_program,
)
from scoreboard_feedback import (
    Feedback,
    FeedbackGenerator,
    auto_step,
    dispatch_action,
)
from scoreboard_validation import ScoreboardValidator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------

def init_state() -> None:
    if "program_text" not in st.session_state:
        st.session_state["program_text"] = SAMPLE_PROGRAM_TEXT.strip()
    if "latencies" not in st.session_state:
        st.session_state["latencies"] = DEFAULT_EXECUTION_CYCLES.copy()
    if "scoreboard" not in st.session_state:
        scoreboard = Scoreboard(execution_cycles=st.session_state["latencies"])
        for instr in parse_program(st.session_state["program_text"]):
            scoreboard.add_instruction(instr)
        st.session_state["scoreboard"] = scoreboard
    if "feedback" not in st.session_state:
        st.session_state["feedback"] = Feedback(
            "Welcome to the Scoreboard Pipeline Simulator. Edit the program and then "
            "click 'Start' to begin."
        )


def set_feedback(message: str, kind: str = "info") -> None:
    st.session_state["feedback"] = Feedback(message, kind)


def replace_program(program_text: str) -> None:
    scoreboard: Scoreboard = st.session_state["scoreboard"]
    instructions = parse_program(program_text)
    scoreboard.reset()
    for instr in instructions:
        scoreboard.add_instruction(instr)
    st.session_state["program_text"] = program_text


def tools(scoreboard: Scoreboard):
    validator = ScoreboardValidator(scoreboard)
    return validator, FeedbackGenerator(scoreboard, validator)

# UI rendering
def render_header(snap: ScoreboardSnapshot) -> None:
    st.title("Scoreboard Algorithm Simulator")
    st.caption("Interactive dynamic scheduling demo with functional units and a register result table.")
    col1, col2, col3 = st.columns(3)
    col1.metric("Cycle", snap.current_cycle)
    col2.metric("Mode", "Simulation" if snap.simulation_started else "Edit")
    col3.metric("Pending actions", len(snap.pending_actions))


def render_feedback() -> None:
    feedback: Feedback = st.session_state["feedback"]
    if feedback.kind == "error":
        st.error(feedback.message)
    elif feedback.kind == "success":
        st.success(feedback.message)
    else:
        st.info(feedback.message)


def render_instruction_editor(snap: ScoreboardSnapshot) -> None:
    st.subheader("Instruction Input")
    st.caption("ISA syntax: `LD F6, 34(R2)` | `SD F6, 0(R1)` | `MULTD F0, F2, F4` | etc.")
    locked = snap.simulation_started

    editor_col, buttons_col = st.columns([4, 1])
    with editor_col:
        text = st.text_area(
            "Program",
            value=st.session_state["program_text"],
            height=160,
            label_visibility="collapsed",
            disabled=locked,
        )
    with buttons_col:
        st.markdown("**Program Actions**")
        if st.button("Apply", use_container_width=True, type="primary", disabled=locked):
            try:
                replace_program(text.strip())
            except ValueError as exc:
                set_feedback(f"Failed to parse instructions: {exc}", "error")
            else:
                count = len(st.session_state["scoreboard"].instructions)
                set_feedback(f"Loaded {count} instruction(s).", "success")
            st.rerun()
        if st.button("Load Example", use_container_width=True, disabled=locked):
            replace_program(SAMPLE_PROGRAM_TEXT.strip())
            set_feedback("Loaded the example program.", "success")
            st.rerun()

    if not locked and snap.instructions:
        render_instruction_list(snap)


def render_instruction_list(snap: ScoreboardSnapshot) -> None:
    scoreboard: Scoreboard = st.session_state["scoreboard"]
    for idx, instr in enumerate(snap.instructions):
        label_col, up_col, down_col, remove_col = st.columns([6, 1, 1, 1])
        label_col.markdown(f"`{idx + 1}. {format_instruction(instr)}`")
        if up_col.button("↑", key=f"up-{idx}", disabled=idx == 0):
            scoreboard.reorder_instructions(idx, idx - 1)
            set_feedback("Instructions reordered.", "success")
            st.rerun()
        if down_col.button("↓", key=f"down-{idx}", disabled=idx == len(snap.instructions) - 1):
            scoreboard.reorder_instructions(idx, idx + 1)
            set_feedback("Instructions reordered.", "success")
            st.rerun()
        if remove_col.button("✕", key=f"remove-{idx}"):
            scoreboard.remove_instruction(idx)
            set_feedback("Instruction removed.", "success")
            st.rerun()


def render_latency_config(snap: ScoreboardSnapshot) -> None:
    """Render latency configuration panel."""
    with st.expander("⚙️ Latency Configuration", expanded=False):
        st.caption("Configure execution latencies (in cycles) for each instruction type")
        locked = snap.simulation_started
        new_latencies: Dict[str, int] = {}
        columns = st.columns(4)
        for pos, (op, value) in enumerate(sorted(snap.execution_cycles.items())):
            with columns[pos % 4]:
                new_latencies[op] = int(
                    st.number_input(
                        op,
                        min_value=1,
                        max_value=100,
                        value=value,
                        step=1,
                        key=f"latency-{op}",
                        disabled=locked,
                    )
                )

        button_col1, button_col2, _ = st.columns([1, 1, 2])
        scoreboard: Scoreboard = st.session_state["scoreboard"]
        with button_col1:
            if st.button("Apply Latencies", use_container_width=True, type="primary", disabled=locked):
                scoreboard.set_execution_cycles(new_latencies)
                st.session_state["latencies"] = new_latencies
                set_feedback("Latencies updated.", "success")
                st.rerun()
        with button_col2:
            if st.button("Reset to Defaults", use_container_width=True, disabled=locked):
                scoreboard.set_execution_cycles(DEFAULT_EXECUTION_CYCLES)
                st.session_state["latencies"] = DEFAULT_EXECUTION_CYCLES.copy()
                for op in DEFAULT_EXECUTION_CYCLES:
                    st.session_state.pop(f"latency-{op}", None)
                st.rerun()


def render_controls(snap: ScoreboardSnapshot) -> None:
    st.subheader("Execution Controls")
    scoreboard: Scoreboard = st.session_state["scoreboard"]
    validator, feedback = tools(scoreboard)

    col1, col2, col3, col4, col5, col6 = st.columns([1, 1, 1, 1, 1.2, 1])

    if snap.simulation_started:
        if col1.button("⏹ Stop", use_container_width=True, type="primary"):
            scoreboard.stop_simulation()
            set_feedback("Simulation stopped. You can now edit instructions.", "success")
            st.rerun()
    else:
        if col1.button("▶️ Start", use_container_width=True, type="primary"):
            try:
                scoreboard.start_simulation()
            except ScoreboardError as exc:
                set_feedback(str(exc), "error")
            else:
                set_feedback("Simulation started. Now perform actions for each cycle.", "success")
            st.rerun()

    advance_check = validator.can_advance_cycle()
    if col2.button("Next Cycle", use_container_width=True, disabled=not advance_check.valid):
        result = scoreboard.advance_cycle()
        set_feedback(result.message, "success" if result.valid else "error")
        st.rerun()

    if col3.button("Hint", use_container_width=True):
        hint = feedback.hint()
        set_feedback(hint.message, hint.kind)
        st.rerun()

    running = snap.simulation_started and not scoreboard.is_complete()
    if col4.button("Auto Step", use_container_width=True, disabled=not running):
        performed = auto_step(scoreboard, validator)
        set_feedback(
            f"Performed {len(performed)} action(s); now at cycle {scoreboard.current_cycle}.",
            "success",
        )
        st.rerun()

    step_count = col5.number_input(
        "Run cycles",
        min_value=1,
        max_value=200,
        value=10,
        step=1,
        label_visibility="collapsed",
        disabled=not running,
    )
    if col5.button(f"Run ×{int(step_count)}", use_container_width=True, disabled=not running):
        for _ in range(int(step_count)):
            if scoreboard.is_complete():
                break
            auto_step(scoreboard, validator)
        set_feedback(f"Now at cycle {scoreboard.current_cycle}.", "success")
        st.rerun()

    if col6.button("Reset", type="secondary", use_container_width=True):
        scoreboard.reset()
        st.session_state["program_text"] = ""
        set_feedback("Simulation reset. Add instructions to get started.")
        st.rerun()


def render_action_panel(snap: ScoreboardSnapshot) -> None:
    if not snap.simulation_started or not snap.instructions:
        return
    scoreboard: Scoreboard = st.session_state["scoreboard"]
    validator, feedback = tools(scoreboard)

    st.subheader("Instruction Status")
    header = st.columns([3, 1, 1, 1, 1])
    header[0].markdown("**Instruction**")
    for col, stage in zip(header[1:], STAGES):
        col.markdown(f"**{stage}**")

    for idx, instr in enumerate(snap.instructions):
        row = st.columns([3, 1, 1, 1, 1])
        row[0].markdown(f"`{format_instruction(instr)}`")
        for col, stage in zip(row[1:], STAGES):
            stamped = instr.status[stage]
            if stamped is not None:
                col.markdown(f"✅ {stamped}")
                continue
            pending = (stage, idx) in snap.pending_actions
            if col.button("▶" if pending else "·", key=f"{stage}-{idx}", use_container_width=True):
                result = dispatch_action(scoreboard, validator, idx, stage)
                set_feedback(result.message, "success" if result.valid else "error")
                st.rerun()

    st.caption(feedback.current_state_feedback().message)


def render_tables(snap: ScoreboardSnapshot) -> None:
    fu_df = pd.DataFrame([functional_unit_row(unit) for unit in snap.functional_units])
    reg_df = pd.DataFrame(register_rows(snap.register_status), columns=["Register", "Functional Unit"])

    st.subheader("Machine State")
    left, right = st.columns((3, 2))
    with left:
        st.markdown("#### Functional Unit Status")
        st.dataframe(fu_df, use_container_width=True, hide_index=True)
    with right:
        st.markdown("#### Register Result Status")
        if reg_df.empty:
            st.caption("No registers are currently being written.")
        else:
            st.dataframe(reg_df, use_container_width=True, hide_index=True)

    if snap.instructions:
        st.markdown("#### Instructions")
        instr_df = pd.DataFrame(
            [instruction_row(idx, instr) for idx, instr in enumerate(snap.instructions)]
        )
        st.dataframe(instr_df, use_container_width=True, hide_index=True)


def render_timeline(snap: ScoreboardSnapshot) -> None:
    st.subheader("Execution Timeline")
    data = timeline_rows(snap.instructions)
    if not data:
        st.info("Run the simulation to see the timeline.")
        return

    df = pd.DataFrame(data)
    chart = alt.Chart(df).mark_bar().encode(
        x=alt.X("Start", title="Cycle"),
        x2="End",
        y=alt.Y("Instruction", sort=None),
        color=alt.Color(
            "Stage",
            scale=alt.Scale(
                domain=["Wait Operands", "Execute", "Wait Write"],
                range=["#f0ad4e", "#5bc0de", "#5cb85c"],
            ),
        ),
        tooltip=["Instruction", "Stage", "Start", "End"],
    ).properties(height=300)
    st.altair_chart(chart, use_container_width=True)


# Serialization helpers
def _cell(value: Optional[int]) -> str:
    return str(value) if value is not None else ""


def instruction_row(idx: int, instr: Instruction) -> Dict[str, str]:
    return {
        "#": idx + 1,
        "Instruction": format_instruction(instr),
        ISSUE: _cell(instr.status[ISSUE]),
        READ_OPERANDS: _cell(instr.status[READ_OPERANDS]),
        EXECUTION_COMPLETE: _cell(instr.status[EXECUTION_COMPLETE]),
        WRITE_RESULT: _cell(instr.status[WRITE_RESULT]),
    }


def functional_unit_row(unit: FunctionalUnit) -> Dict[str, str]:
    return {
        "Name": unit.name,
        "Busy": "Yes" if unit.busy else "No",
        "Op": unit.op or "",
        "Fi": unit.fi or "",
        "Fj": unit.fj or "",
        "Fk": unit.fk or "",
        "Qj": unit.qj or "",
        "Qk": unit.qk or "",
        "Rj": ("Yes" if unit.rj else "No") if unit.busy else "",
        "Rk": ("Yes" if unit.rk else "No") if unit.busy else "",
        "Cycles Remaining": str(unit.cycles_remaining) if unit.busy else "",
    }


def register_rows(status: Dict[str, Optional[str]]) -> List[Dict[str, str]]:
    return [
        {"Register": name, "Functional Unit": owner}
        for name, owner in status.items()
        if owner
    ]


def timeline_rows(instructions) -> List[Dict[str, object]]:
    data: List[Dict[str, object]] = []
    for i, instr in enumerate(instructions):
        label = f"#{i + 1} {instr.type}"
        issued = instr.status[ISSUE]
        read = instr.status[READ_OPERANDS]
        done = instr.status[EXECUTION_COMPLETE]
        written = instr.status[WRITE_RESULT]
        if issued is not None and read is not None:
            data.append({"Instruction": label, "Stage": "Wait Operands", "Start": issued, "End": read})
        if read is not None and done is not None:
            data.append({"Instruction": label, "Stage": "Execute", "Start": read, "End": done})
        if done is not None and written is not None:
            data.append({"Instruction": label, "Stage": "Wait Write", "Start": done, "End": written})
    return data


def main() -> None:
    st.set_page_config(page_title="Scoreboard Simulator", layout="wide")
    logging.basicConfig(level=logging.INFO)
    init_state()
    snap = st.session_state["scoreboard"].snapshot()

    render_header(snap)
    render_feedback()
    with st.container():
        render_instruction_editor(snap)
    with st.container():
        render_latency_config(snap)
    with st.container():
        render_controls(snap)
    with st.container():
        render_action_panel(snap)
    with st.container():
        render_tables(snap)
    with st.container():
        render_timeline(snap)


if __name__ == "__main__":
    main()
