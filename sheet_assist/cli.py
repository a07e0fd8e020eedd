from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import uvicorn

from sheet_assist import __version__ as TOOL_VERSION
from sheet_assist.api import create_app
from sheet_assist.config import Settings
from sheet_assist.contracts import build_contract, utc_now_iso
from sheet_assist.errors import (
    BridgeError,
    ConfigurationError,
    HostOperationError,
    ParseError,
    TransportError,
    ValidationError,
)
from sheet_assist.host import SUPPORTED_FORMATS, WORKBOOK_FORMATS, WorkbookHost
from sheet_assist.orchestrator import ApplyOutcome, DialogSession
from sheet_assist.runtime import build_runtime

EXIT_SUCCESS = 0
EXIT_COMMAND_ERROR = 1
EXIT_PARSE_FAILED = 2
EXIT_TRANSPORT_FAILED = 3
EXIT_VALIDATION_FAILED = 4
EXIT_CONFIG_ERROR = 5
EXIT_PARTIAL = 6
EXIT_HOST_FAILED = 7

logger = logging.getLogger("sheet_assist.cli")


class CliError(Exception):
    def __init__(self, message: str, code: int = EXIT_COMMAND_ERROR) -> None:
        super().__init__(message)
        self.code = code


class SheetAssistArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise CliError(message, EXIT_COMMAND_ERROR)


def eprint(message: str) -> None:
    print(message, file=sys.stderr)


def emit_human(message: str, *, quiet: bool = False) -> None:
    if not quiet:
        eprint(message)


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True, default=str)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


class ConsoleRenderer:
    """Dialog renderer for a terminal: notices go to stderr, state to the log."""

    def __init__(self, quiet: bool = False) -> None:
        self.quiet = quiet
        self.notices: list[str] = []

    def render(self, session: DialogSession) -> None:
        logger.debug(
            "Dialog %s (%s): state=%s loading=%s error=%s",
            session.id,
            session.title,
            session.state,
            session.loading,
            session.error,
        )

    def notify(self, message: str) -> None:
        self.notices.append(message)
        emit_human(message, quiet=self.quiet)


def classify_exception(exc: Exception) -> int:
    if isinstance(exc, CliError):
        return exc.code
    if isinstance(exc, ConfigurationError):
        return EXIT_CONFIG_ERROR
    if isinstance(exc, ParseError):
        return EXIT_PARSE_FAILED
    if isinstance(exc, ValidationError):
        return EXIT_VALIDATION_FAILED
    if isinstance(exc, HostOperationError):
        return EXIT_HOST_FAILED
    if isinstance(exc, (TransportError, BridgeError)):
        return EXIT_TRANSPORT_FAILED
    if isinstance(exc, FileNotFoundError):
        return EXIT_COMMAND_ERROR
    if isinstance(exc, (ValueError, UnicodeDecodeError)):
        return EXIT_PARSE_FAILED
    return EXIT_COMMAND_ERROR


def check_input(input_path: Path) -> None:
    if not input_path.exists():
        raise CliError(f"File not found: {input_path}", EXIT_COMMAND_ERROR)
    suffix = input_path.suffix.lower()
    if suffix not in SUPPORTED_FORMATS:
        raise CliError(
            f"Unsupported file type '{suffix or '[missing extension]'}'. "
            f"Supported: {', '.join(sorted(SUPPORTED_FORMATS))}",
            EXIT_COMMAND_ERROR,
        )


def default_output_path(input_path: Path) -> Path:
    suffix = input_path.suffix.lower() if input_path.suffix.lower() in WORKBOOK_FORMATS else ".xlsx"
    return input_path.with_name(f"{input_path.stem}-assisted{suffix}")


def resolve_output_path(args: argparse.Namespace, input_path: Path) -> Path:
    if args.in_place:
        if args.output:
            raise CliError("Use either --output or --in-place, not both.", EXIT_COMMAND_ERROR)
        if input_path.suffix.lower() not in WORKBOOK_FORMATS:
            raise CliError("--in-place is only supported for .xlsx and .xlsm files.", EXIT_COMMAND_ERROR)
        return input_path
    path = Path(args.output) if args.output else default_output_path(input_path)
    if path.exists():
        raise CliError(f"Refusing to overwrite existing output: {path}", EXIT_COMMAND_ERROR)
    return path


def open_host(args: argparse.Namespace) -> tuple[Path, WorkbookHost]:
    input_path = Path(args.input)
    check_input(input_path)
    host = WorkbookHost.open(input_path, args.sheet_name)
    return input_path, host


def raise_session_failure(session: DialogSession | None, renderer: ConsoleRenderer) -> DialogSession:
    if session is None:
        raise CliError(renderer.notices[-1] if renderer.notices else "Nothing to do", EXIT_COMMAND_ERROR)
    if session.failure is not None:
        raise session.failure
    return session


async def fix_table_flow(host: WorkbookHost, settings: Settings, renderer: ConsoleRenderer, apply: bool):
    runtime = build_runtime(host, settings=settings, renderer=renderer)
    orchestrator = runtime.orchestrator
    session = raise_session_failure(await orchestrator.propose_fixes(), renderer)
    outcome = None
    if apply and session.fixes:
        outcome = await orchestrator.confirm(session)
    else:
        orchestrator.dismiss(session)
    return session, outcome


async def formula_flow(
    host: WorkbookHost,
    settings: Settings,
    renderer: ConsoleRenderer,
    description: str,
    apply: bool,
):
    runtime = build_runtime(host, settings=settings, renderer=renderer)
    orchestrator = runtime.orchestrator
    session = raise_session_failure(await orchestrator.propose_formula(description), renderer)
    outcome = None
    if apply:
        outcome = await orchestrator.confirm(session)
    else:
        orchestrator.dismiss(session)
    return session, outcome


def outcome_payload(outcome: ApplyOutcome | None, output_path: Path | None) -> dict[str, Any]:
    if outcome is None:
        return {"applied": False, "applied_count": 0, "failed": [], "cells": [], "output": None}
    return {
        "applied": True,
        "applied_count": outcome.applied,
        "failed": outcome.failed,
        "cells": outcome.cells,
        "output": str(output_path) if output_path else None,
    }


def render_fix_table_text(payload: dict[str, Any]) -> str:
    lines = [
        "sheet-assist fix-table",
        f"Input: {payload['input']}",
        f"Sheet: {payload['sheet']}",
        f"Range: {payload['range']}",
        f"Fixes proposed: {len(payload['fixes'])}",
    ]
    for fix in payload["fixes"]:
        lines.append(f"- {fix['cell']} [{fix['type']}] {fix['oldValue']!r} -> {fix['newValue']!r}: {fix['reason']}")
    if payload["applied"]:
        lines.append(f"Applied: {payload['applied_count']}")
        for item in payload["failed"]:
            lines.append(f"Failed: {item.get('cell')}: {item.get('error')}")
    return "\n".join(lines) + "\n"


def render_formula_text(payload: dict[str, Any]) -> str:
    formula = payload["formula"]
    lines = [
        "sheet-assist formula",
        f"Input: {payload['input']}",
        f"Sheet: {payload['sheet']}",
        f"Formula: {formula['formula']}",
        f"Explanation: {formula['explanation'] or '[none]'}",
        f"Target cell: {formula['targetCell'] or payload['current_cell']}",
        f"Autofill: {'yes' if formula['useAutofill'] else 'no'}",
    ]
    if payload["applied"]:
        lines.append(f"Cells written: {', '.join(payload['cells'])}")
    return "\n".join(lines) + "\n"


def emit_result(args: argparse.Namespace, payload: dict[str, Any], text: str) -> None:
    if args.json:
        print(json_dumps(payload))
    else:
        emit_human(text.rstrip(), quiet=args.quiet)
        if payload["output"]:
            emit_human(f"Workbook written: {payload['output']}", quiet=args.quiet)


def run_fix_table(args: argparse.Namespace) -> int:
    try:
        input_path, host = open_host(args)
        output_path = resolve_output_path(args, input_path) if args.apply else None
        settings = Settings.from_env()
        range_address = host.select(args.range) if args.range else host.select_used_range()
        renderer = ConsoleRenderer(quiet=args.quiet or args.json)
        session, outcome = asyncio.run(fix_table_flow(host, settings, renderer, args.apply))
        if outcome is not None and outcome.applied:
            host.save(output_path)
        payload = {
            "tool": "sheet-assist",
            "command": "fix-table",
            "version": TOOL_VERSION,
            "contract": build_contract("sheet_assist.fix_table"),
            "generated_at": utc_now_iso(),
            "input": str(input_path),
            "sheet": host.sheet.title,
            "range": range_address,
            "fixes": [fix.to_dict() for fix in session.fixes],
        }
        payload.update(outcome_payload(outcome, output_path if outcome is not None and outcome.applied else None))
        emit_result(args, payload, render_fix_table_text(payload))
        if outcome is not None and outcome.partial:
            return EXIT_PARTIAL
        return EXIT_SUCCESS
    except Exception as exc:
        logger.debug("fix-table failed", exc_info=True)
        eprint(str(exc))
        return classify_exception(exc)


def run_formula(args: argparse.Namespace) -> int:
    try:
        input_path, host = open_host(args)
        output_path = resolve_output_path(args, input_path) if args.apply else None
        settings = Settings.from_env()
        if args.cell:
            host.select(args.cell)
        renderer = ConsoleRenderer(quiet=args.quiet or args.json)
        session, outcome = asyncio.run(formula_flow(host, settings, renderer, args.description, args.apply))
        if outcome is not None:
            host.save(output_path)
        payload = {
            "tool": "sheet-assist",
            "command": "formula",
            "version": TOOL_VERSION,
            "contract": build_contract("sheet_assist.create_formula"),
            "generated_at": utc_now_iso(),
            "input": str(input_path),
            "sheet": host.sheet.title,
            "description": args.description,
            "current_cell": session.context.current_cell if session.context else None,
            "formula": session.formula.to_dict(),
        }
        payload.update(outcome_payload(outcome, output_path))
        emit_result(args, payload, render_formula_text(payload))
        return EXIT_SUCCESS
    except Exception as exc:
        logger.debug("formula failed", exc_info=True)
        eprint(str(exc))
        return classify_exception(exc)


def run_serve(args: argparse.Namespace) -> int:
    try:
        Settings.from_env()
    except ConfigurationError as exc:
        eprint(str(exc))
        return EXIT_CONFIG_ERROR
    uvicorn.run(create_app(), host=args.host, port=args.port, log_level="debug" if args.verbose else "info")
    return EXIT_SUCCESS


def run_config_show(args: argparse.Namespace) -> int:
    try:
        settings = Settings.from_env()
    except ConfigurationError as exc:
        eprint(str(exc))
        return EXIT_CONFIG_ERROR
    described = settings.describe()
    if args.json:
        print(json_dumps(described))
    else:
        print("\n".join(f"{key}: {'[unset]' if value is None else value}" for key, value in described.items()))
    return EXIT_SUCCESS


def run_version() -> int:
    print(TOOL_VERSION)
    return EXIT_SUCCESS


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")


def add_workbook_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input", help="Workbook path (.xlsx, .xlsm, .csv, .tsv, .txt)")
    parser.add_argument("--sheet", dest="sheet_name", help="Worksheet to work on (default: the active sheet)")
    parser.add_argument("--apply", action="store_true", help="Write the proposal back to a workbook")
    parser.add_argument("--output", help="Where to save the modified workbook")
    parser.add_argument("--in-place", action="store_true", help="Overwrite the input workbook (.xlsx/.xlsm only)")
    parser.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    add_common_arguments(parser)


def build_parser() -> argparse.ArgumentParser:
    parser = SheetAssistArgumentParser(prog="sheet-assist", description="AI-assisted table fixes and formulas for spreadsheets.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    fix_table = subparsers.add_parser("fix-table", help="Propose (and optionally apply) fixes for a range.")
    add_workbook_arguments(fix_table)
    fix_table.add_argument("--range", help="Range to fix, e.g. A1:D20 (default: the used range)")

    formula = subparsers.add_parser("formula", help="Turn a description into a formula.")
    add_workbook_arguments(formula)
    formula.add_argument("description", help="What the formula should compute")
    formula.add_argument("--cell", help="Current cell passed as context (default: the sheet selection)")

    serve = subparsers.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve.add_argument("--port", type=int, default=8000, help="Bind port")
    add_common_arguments(serve)

    config = subparsers.add_parser("config", help="Configuration helpers.")
    config_subparsers = config.add_subparsers(dest="config_command", required=True)
    show = config_subparsers.add_parser("show", help="Print the effective settings.")
    show.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    add_common_arguments(show)

    version = subparsers.add_parser("version", help="Print the version.")
    add_common_arguments(version)
    return parser


def main(argv: list[str] | None = None) -> int:
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        configure_logging(getattr(args, "verbose", False))
        if args.command == "fix-table":
            return run_fix_table(args)
        if args.command == "formula":
            return run_formula(args)
        if args.command == "serve":
            return run_serve(args)
        if args.command == "config":
            if args.config_command == "show":
                return run_config_show(args)
        if args.command == "version":
            return run_version()
        raise CliError(f"Unknown command: {args.command}", EXIT_COMMAND_ERROR)
    except CliError as exc:
        eprint(str(exc))
        return exc.code


if __name__ == "__main__":
    raise SystemExit(main())
