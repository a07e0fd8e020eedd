#!/usr/bin/env python3
from __future__ import annotations

import asyncio
import hashlib
import io
import tempfile
from pathlib import Path
from typing import Optional

import pandas as pd
import streamlit as st

from sheet_assist.config import Settings
from sheet_assist.errors import ConfigurationError, SheetAssistError
from sheet_assist.host import SUPPORTED_FORMATS, WorkbookHost
from sheet_assist.orchestrator import CREATE_FORMULA, FIX_TABLE, DialogSession
from sheet_assist.runtime import Runtime, build_runtime

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class StreamlitRenderer:
    """Keeps notices in session state so they survive the rerun that shows them."""

    def render(self, session: DialogSession) -> None:
        st.session_state["dialog"] = session if session.is_open else None

    def notify(self, message: str) -> None:
        st.session_state.setdefault("notices", []).append(message)


def ensure_state() -> None:
    st.session_state.setdefault("runtime_key", None)
    st.session_state.setdefault("runtime", None)
    st.session_state.setdefault("dialog", None)
    st.session_state.setdefault("notices", [])
    st.session_state.setdefault("description_input", "")


def open_uploaded(file_bytes: bytes, name: str, sheet_name: Optional[str]) -> WorkbookHost:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / name
        path.write_bytes(file_bytes)
        return WorkbookHost.open(path, sheet_name)


def sheet_names(file_bytes: bytes, name: str) -> list[str]:
    return open_uploaded(file_bytes, name, None).workbook.sheetnames


def current_runtime(upload, sheet_name: Optional[str]) -> Runtime:
    file_bytes = upload.getvalue()
    key = (hashlib.sha256(file_bytes).hexdigest(), upload.name, sheet_name)
    if st.session_state["runtime_key"] != key:
        host = open_uploaded(file_bytes, upload.name, sheet_name)
        st.session_state["runtime"] = build_runtime(host, settings=Settings.from_env(), renderer=StreamlitRenderer())
        st.session_state["runtime_key"] = key
        st.session_state["dialog"] = None
    return st.session_state["runtime"]


def workbook_bytes(runtime: Runtime) -> bytes:
    buffer = io.BytesIO()
    runtime.host.workbook.save(buffer)
    return buffer.getvalue()


def range_frame(runtime: Runtime, range_address: str) -> pd.DataFrame:
    runtime.host.select(range_address)
    snapshot = runtime.host.get_selected_range() or {"values": []}
    start_row = snapshot.get("startRow", 1)
    frame = pd.DataFrame(snapshot["values"])
    frame.index = range(start_row, start_row + len(frame))
    return frame


def render_notices() -> None:
    for message in st.session_state.get("notices") or []:
        st.info(message)
    st.session_state["notices"] = []


def render_dialog(runtime: Runtime) -> None:
    session: Optional[DialogSession] = st.session_state.get("dialog")
    if session is None or session is not runtime.orchestrator.active:
        return

    st.subheader(session.title)
    if session.error:
        st.error(session.error)
        if st.button("Close", key=f"close_{session.id}"):
            runtime.orchestrator.dismiss(session)
            st.rerun()
        return

    if session.action == FIX_TABLE:
        if not session.fixes:
            st.success("No fixes needed for this range.")
        else:
            st.caption(f"{len(session.fixes)} proposed fixes for {session.snapshot.range_address}")
            st.dataframe(
                pd.DataFrame([fix.to_dict() for fix in session.fixes]),
                width="stretch",
                hide_index=True,
            )
    elif session.action == CREATE_FORMULA and session.formula is not None:
        st.code(session.formula.formula)
        if session.formula.explanation:
            st.caption(session.formula.explanation)
        cols = st.columns(2)
        cols[0].metric("Target cell", session.formula.target_cell or session.context.current_cell)
        cols[1].metric("Autofill", "yes" if session.formula.use_autofill else "no")

    apply_col, cancel_col = st.columns(2)
    if apply_col.button("Apply", type="primary", width="stretch", disabled=not session.ready, key=f"apply_{session.id}"):
        try:
            outcome = asyncio.run(runtime.orchestrator.confirm(session))
        except SheetAssistError as exc:
            st.session_state.setdefault("notices", []).append(f"Error: {exc}")
        else:
            for failure in outcome.failed:
                st.session_state.setdefault("notices", []).append(f"{failure.get('cell')}: {failure.get('error')}")
        st.rerun()
    if cancel_col.button("Cancel", width="stretch", key=f"cancel_{session.id}"):
        runtime.orchestrator.cancel(session)
        st.rerun()


def main() -> None:
    st.set_page_config(page_title="sheet-assist", layout="wide", initial_sidebar_state="collapsed")
    ensure_state()

    st.title("sheet-assist")
    st.caption("Upload a workbook, pick a range, and let the model propose table fixes or a formula.")

    try:
        settings = Settings.from_env()
    except ConfigurationError as exc:
        st.error(str(exc))
        return
    if not settings.api_key and not settings.api_url:
        st.warning("OPENROUTER_API_KEY is not set; requests will fail until it is configured.")

    upload = st.file_uploader("Upload workbook", type=[ext.lstrip(".") for ext in sorted(SUPPORTED_FORMATS)])
    if upload is None:
        st.info("Supported here: " + " ".join(sorted(SUPPORTED_FORMATS)))
        return

    try:
        names = sheet_names(upload.getvalue(), upload.name)
        sheet_name = st.selectbox("Sheet", options=names) if len(names) > 1 else names[0]
        runtime = current_runtime(upload, sheet_name)
    except ValueError as exc:
        st.error(str(exc))
        return

    left, right = st.columns(2)
    with left:
        range_address = st.text_input("Range", value=runtime.host.sheet.dimensions)
        try:
            st.dataframe(range_frame(runtime, range_address), width="stretch")
        except ValueError as exc:
            st.error(f"Invalid range: {exc}")
            return
        if st.button("Fix Table", type="primary", width="stretch"):
            with st.spinner("Asking the model for fixes..."):
                asyncio.run(runtime.orchestrator.propose_fixes())
            st.rerun()
    with right:
        description = st.text_area("Describe the formula", key="description_input", height=110)
        cell = st.text_input("Current cell", value="A1")
        if st.button("Create Formula", width="stretch"):
            try:
                runtime.host.select(cell)
            except ValueError as exc:
                st.error(f"Invalid cell: {exc}")
                return
            with st.spinner("Asking the model for a formula..."):
                asyncio.run(runtime.orchestrator.propose_formula(description))
            st.rerun()

    render_notices()
    render_dialog(runtime)

    st.download_button(
        "Download workbook",
        data=workbook_bytes(runtime),
        file_name=f"{Path(upload.name).stem}-assisted.xlsx",
        mime=XLSX_MIME,
        width="stretch",
    )


if __name__ == "__main__":
    main()
