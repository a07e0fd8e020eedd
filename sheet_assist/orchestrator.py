"""UI context: ties a gesture to host reads, completions and host writes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sheet_assist.bridge import Bridge
from sheet_assist.config import DEFAULT_PROVIDER_TIMEOUT
from sheet_assist.contracts import (
    API_REQUEST_ACTION,
    APPLY_FIXES,
    APPLY_FORMULA,
    CREATE_FORMULA_ENDPOINT,
    FIX_TABLE_ENDPOINT,
    GET_SELECTED_RANGE,
    GET_SHEET_CONTEXT,
)
from sheet_assist.errors import HostOperationError, SheetAssistError, ValidationError, error_from_wire
from sheet_assist.extraction import coerce_fixes
from sheet_assist.models import (
    FixRecord,
    FormulaDescriptor,
    RangeSnapshot,
    SheetContext,
    new_correlation_id,
    thaw_grid,
)
from sheet_assist.validator import validate_formula

logger = logging.getLogger(__name__)

FIX_TABLE = "fix_table"
CREATE_FORMULA = "create_formula"

OPEN = "open"
CONFIRMED = "confirmed"
CANCELLED = "cancelled"
DISMISSED = "dismissed"
REPLACED = "replaced"
FAILED = "failed"


@dataclass
class DialogSession:
    """The single dialog a UI context may show at a time."""

    action: str
    title: str
    id: str = field(default_factory=new_correlation_id)
    state: str = OPEN
    loading: bool = True
    snapshot: RangeSnapshot | None = None
    context: SheetContext | None = None
    description: str = ""
    fixes: list[FixRecord] = field(default_factory=list)
    formula: FormulaDescriptor | None = None
    error: str | None = None
    failure: Exception | None = field(default=None, repr=False)

    @property
    def is_open(self) -> bool:
        return self.state == OPEN

    @property
    def ready(self) -> bool:
        if not self.is_open or self.loading or self.error is not None:
            return False
        return self.action == FIX_TABLE or self.formula is not None

    def close(self, state: str) -> bool:
        if not self.is_open:
            return False
        self.state = state
        self.loading = False
        return True


@dataclass
class ApplyOutcome:
    action: str
    applied: int = 0
    failed: list[dict[str, Any]] = field(default_factory=list)
    cells: list[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed) and self.applied > 0


class NullRenderer:
    """Renderer that only remembers what it was asked to show."""

    def __init__(self) -> None:
        self.rendered: list[tuple[str, str]] = []
        self.notifications: list[str] = []

    def render(self, session: DialogSession) -> None:
        self.rendered.append((session.id, session.state))

    def notify(self, message: str) -> None:
        self.notifications.append(message)


def completion_timeout(bridge_timeout: float | None, provider_timeout: float = DEFAULT_PROVIDER_TIMEOUT) -> float:
    """Completions wait on the provider, so they get its timeout on top of the bridge one.

    A bridge timeout of ``None``, zero or less means no limit and stays that way.
    """
    if bridge_timeout is None or bridge_timeout <= 0:
        return 0
    return provider_timeout + bridge_timeout


class RemoteCompletionClient:
    """Completion requests issued from the UI through the background context."""

    def __init__(self, bridge: Bridge, timeout: float | None = None) -> None:
        self.bridge = bridge
        self.timeout = completion_timeout(bridge.default_timeout) if timeout is None else timeout

    async def _request(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self.bridge.invoke(
            API_REQUEST_ACTION,
            {"endpoint": endpoint, "payload": payload},
            timeout=self.timeout,
        )
        if not isinstance(response, dict) or not response.get("success"):
            if not isinstance(response, dict):
                response = {}
            raise error_from_wire(response.get("errorType"), response.get("error") or "Unknown error")
        data = response.get("data")
        return data if isinstance(data, dict) else {}

    async def request_fixes(self, range_address: str, values: list[list[Any]]) -> list[FixRecord]:
        data = await self._request(FIX_TABLE_ENDPOINT, {"range": range_address, "values": values})
        fixes = data.get("fixes")
        return coerce_fixes(fixes) if isinstance(fixes, list) else []

    async def request_formula(self, description: str, context: SheetContext) -> FormulaDescriptor:
        data = await self._request(CREATE_FORMULA_ENDPOINT, {"description": description, "context": context.to_dict()})
        return validate_formula(FormulaDescriptor.from_dict(data))


class ActionOrchestrator:
    def __init__(self, bridge: Bridge, renderer: Any = None, completion: Any = None) -> None:
        self.bridge = bridge
        self.renderer = renderer or NullRenderer()
        self.completion = completion or RemoteCompletionClient(bridge)
        self.active: DialogSession | None = None

    def open_dialog(self, action: str, title: str) -> DialogSession:
        previous = self.active
        if previous is not None and previous.close(REPLACED):
            self.renderer.render(previous)
        session = DialogSession(action=action, title=title)
        self.active = session
        self.renderer.render(session)
        return session

    def close(self, session: DialogSession, state: str = CANCELLED) -> None:
        if session.close(state):
            self.renderer.render(session)
        if self.active is session:
            self.active = None

    def cancel(self, session: DialogSession) -> None:
        self.close(session, CANCELLED)

    def dismiss(self, session: DialogSession) -> None:
        self.close(session, DISMISSED)

    def _fail(self, session: DialogSession, exc: Exception) -> DialogSession:
        if not session.is_open:
            logger.info("Dropping error for closed dialog %s: %s", session.id, exc)
            return session
        session.error = str(exc) or type(exc).__name__
        session.failure = exc
        session.loading = False
        self.renderer.render(session)
        return session

    async def read_selection(self) -> RangeSnapshot | None:
        data = await self.bridge.invoke(GET_SELECTED_RANGE)
        if not isinstance(data, dict):
            return None
        return RangeSnapshot.from_dict(data)

    async def propose_fixes(self) -> DialogSession | None:
        try:
            snapshot = await self.read_selection()
        except SheetAssistError as exc:
            self.renderer.notify(f"Could not read the selection: {exc}")
            return None
        if snapshot is None or snapshot.is_empty:
            self.renderer.notify("Please select a range first")
            return None

        session = self.open_dialog(FIX_TABLE, "Fix Table")
        session.snapshot = snapshot
        self.renderer.render(session)
        try:
            fixes = await self.completion.request_fixes(snapshot.range_address, thaw_grid(snapshot.values))
        except SheetAssistError as exc:
            return self._fail(session, exc)
        if not session.is_open:
            logger.info("Dialog %s closed while fixes were requested; discarding result", session.id)
            return session
        session.fixes = list(fixes)
        session.loading = False
        self.renderer.render(session)
        return session

    async def propose_formula(self, description: str) -> DialogSession | None:
        if not description or not description.strip():
            self.renderer.notify("Please enter a description")
            return None

        session = self.open_dialog(CREATE_FORMULA, "Create Formula")
        session.description = description
        try:
            context = SheetContext.from_dict(await self.bridge.invoke(GET_SHEET_CONTEXT))
            session.context = context
            formula = await self.completion.request_formula(description, context)
        except SheetAssistError as exc:
            return self._fail(session, exc)
        if not session.is_open:
            logger.info("Dialog %s closed while a formula was requested; discarding result", session.id)
            return session
        session.formula = formula
        session.loading = False
        self.renderer.render(session)
        return session

    async def confirm(self, session: DialogSession) -> ApplyOutcome:
        """Write the proposal of ``session`` back to the host and close it.

        Fixes are written one cell at a time with no rollback, so a failure
        part-way leaves earlier cells written; the outcome lists both.
        """
        if session is not self.active or not session.ready:
            raise ValidationError("Nothing to apply: the dialog is closed or has no result")
        try:
            if session.action == FIX_TABLE:
                outcome = await self._apply_fixes(session)
            else:
                outcome = await self._apply_formula(session)
        except SheetAssistError as exc:
            self._fail(session, exc)
            self.close(session, FAILED)
            self.renderer.notify(f"Could not apply changes: {exc}")
            raise
        self.close(session, CONFIRMED)
        return outcome

    async def _apply_fixes(self, session: DialogSession) -> ApplyOutcome:
        if not session.fixes:
            return ApplyOutcome(FIX_TABLE)
        result = await self.bridge.invoke(
            APPLY_FIXES,
            {
                "fixes": [fix.to_dict() for fix in session.fixes],
                "rangeData": session.snapshot.to_dict() if session.snapshot else None,
            },
        )
        result = result if isinstance(result, dict) else {}
        outcome = ApplyOutcome(
            FIX_TABLE,
            applied=int(result.get("fixedCount") or 0),
            failed=list(result.get("failed") or []),
            cells=[fix.cell for fix in session.fixes],
        )
        if outcome.failed and not outcome.applied:
            raise HostOperationError(
                "; ".join(f"{item.get('cell')}: {item.get('error')}" for item in outcome.failed),
                APPLY_FIXES,
            )
        if outcome.failed:
            self.renderer.notify(
                f"Applied {outcome.applied} of {len(session.fixes)} fixes; "
                f"failed: {', '.join(str(item.get('cell')) for item in outcome.failed)}"
            )
        else:
            self.renderer.notify(f"Applied {outcome.applied} fixes")
        return outcome

    async def _apply_formula(self, session: DialogSession) -> ApplyOutcome:
        descriptor = validate_formula(session.formula)
        result = await self.bridge.invoke(
            APPLY_FORMULA,
            {
                "formula": descriptor.formula,
                "targetCell": descriptor.target_cell,
                "useAutofill": descriptor.use_autofill,
            },
        )
        cells = list(result.get("cells") or []) if isinstance(result, dict) else []
        self.renderer.notify("Formula applied")
        return ApplyOutcome(CREATE_FORMULA, applied=len(cells) or 1, cells=cells)
