"""Versioned action catalogs and frame dispatch.

Each protocol revision owns one :class:`ActionCatalog`.  Inbound actions are
registered with ``@catalog.incoming(...)``; outbound actions with
``catalog.register_outgoing(...)`` and, when the station has to react to the
CSMS answer, ``@catalog.result(...)`` / ``@catalog.error(...)``.  Payloads
are checked against the JSON schemas bundled with the ``ocpp`` package.  The
station connection never looks at the revision itself, it only asks its
catalog.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type

from ocpp.exceptions import FormatViolationError, InternalError, NotImplementedError, OCPPError
from ocpp.messages import validate_payload
from pydantic import BaseModel, ValidationError

from .messages import (
    Call,
    CallError,
    CallResult,
    PayloadValidationError,
    UnsupportedActionError,
    error_cause,
)
from .messages import call as make_call

if TYPE_CHECKING:
    from .config import BootConfig
    from .station import VCP

logger = logging.getLogger(__name__)


class OcppVersion(str, Enum):
    """Supported revisions; the value is the WebSocket subprotocol token."""

    OCPP_1_6 = "ocpp1.6"
    OCPP_2_0_1 = "ocpp2.0.1"
    OCPP_2_1 = "ocpp2.1"

    @property
    def schema_version(self) -> str:
        """Version string ``ocpp.messages.validate_payload`` expects."""
        return self.value[len("ocpp"):]

    @classmethod
    def parse(cls, raw: Optional[str]) -> "OcppVersion":
        """Lenient parsing for env values like ``OCPP_2.0.1`` or ``2.1``."""
        if not raw:
            return cls.OCPP_1_6
        normalized = raw.strip().lower()
        if "2.1" in normalized:
            return cls.OCPP_2_1
        if "2.0.1" in normalized:
            return cls.OCPP_2_0_1
        return cls.OCPP_1_6


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Drop top-level ``None`` values; optional fields are omitted, not null."""
    return {k: v for k, v in payload.items() if v is not None}


IncomingHandler = Callable[["VCP", Call], Awaitable[None]]
ResultHandler = Callable[["VCP", Call, Dict[str, Any]], Awaitable[None]]
ErrorHandler = Callable[["VCP", Call, CallError], Awaitable[None]]


@dataclass
class IncomingAction:
    action: str
    handler: IncomingHandler
    # answers outside the published schema set carry their own model
    response_model: Optional[Type[BaseModel]] = None


@dataclass
class OutgoingAction:
    action: str
    on_result: Optional[ResultHandler] = None
    on_error: Optional[ErrorHandler] = None


@dataclass
class ActionCatalog:
    version: OcppVersion
    format_violation: str = FormatViolationError.code
    incoming_actions: Dict[str, IncomingAction] = field(default_factory=dict)
    outgoing_actions: Dict[str, OutgoingAction] = field(default_factory=dict)
    # revision-specific pieces used by the orchestrator's auto-boot
    build_boot: Optional[Callable[[str, "BootConfig", Optional[str]], Call]] = None
    build_status: Optional[Callable[[int, str], Call]] = None
    status_connectors: Callable[[Iterable[int]], List[int]] = list
    connector_status: Optional[Type[Enum]] = None

    # -------- registration --------
    def incoming(self, action: str, response_model: Optional[Type[BaseModel]] = None):
        def decorator(handler: IncomingHandler) -> IncomingHandler:
            self.incoming_actions[action] = IncomingAction(action, handler, response_model)
            return handler

        return decorator

    def register_outgoing(self, *actions: str) -> None:
        for action in actions:
            self.outgoing_actions[action] = OutgoingAction(action)

    def result(self, action: str):
        def decorator(handler: ResultHandler) -> ResultHandler:
            self.outgoing_actions[action].on_result = handler
            return handler

        return decorator

    def error(self, action: str):
        def decorator(handler: ErrorHandler) -> ErrorHandler:
            self.outgoing_actions[action].on_error = handler
            return handler

        return decorator

    # -------- validation --------
    def validate(self, message) -> None:
        """Check a Call or CallResult against the revision's schema.

        Raises the ``ocpp.exceptions`` error describing the violation.
        """
        validate_payload(message, self.version.schema_version)

    def validate_outgoing(self, call: Call) -> None:
        if call.action not in self.outgoing_actions:
            raise UnsupportedActionError(self.version.value, call.action)
        try:
            self.validate(call)
        except OCPPError as e:
            raise PayloadValidationError(call.action, error_cause(e)) from e

    def validate_response(self, result: CallResult) -> None:
        """Check a CALLRESULT we are about to send for an inbound action."""
        entry = self.incoming_actions.get(result.action) if result.action else None
        if entry is None:
            return
        if entry.response_model is None:
            try:
                self.validate(result)
            except OCPPError as e:
                raise PayloadValidationError(f"{result.action} response", error_cause(e)) from e
            return
        try:
            entry.response_model.model_validate(result.payload)
        except ValidationError as e:
            raise PayloadValidationError(f"{result.action} response", e.errors()) from e

    def request(self, action: str, payload: Optional[Dict[str, Any]] = None) -> Call:
        """Validate ``payload`` for an outbound action and wrap it in a CALL."""
        message = make_call(action, compact(payload or {}))
        self.validate_outgoing(message)
        return message


_catalogs: Dict[OcppVersion, ActionCatalog] = {}


def register_catalog(catalog: ActionCatalog) -> ActionCatalog:
    _catalogs[catalog.version] = catalog
    return catalog


def resolve_catalog(version: OcppVersion) -> ActionCatalog:
    # revision modules register themselves on import
    from . import v16, v201, v21  # noqa: F401

    return _catalogs[OcppVersion(version)]


def build_request(version: OcppVersion, action: str, payload: Optional[Dict[str, Any]] = None) -> Call:
    return resolve_catalog(version).request(action, payload)


# -------- dispatch --------
async def dispatch_call(vcp: "VCP", call: Call) -> None:
    catalog = vcp.catalog
    entry = catalog.incoming_actions.get(call.action)
    if entry is None:
        logger.warning(f"Unsupported action {call.action} for {catalog.version.value}")
        vcp.respond_error(call.create_call_error(NotImplementedError(f"Action {call.action} is not implemented")))
        return

    try:
        catalog.validate(call)
    except OCPPError as e:
        cause = error_cause(e)
        logger.warning(f"Invalid {call.action} payload: {cause}")
        vcp.respond_error(
            CallError(call.unique_id, catalog.format_violation, f"Invalid {call.action} payload", {"cause": cause})
        )
        return

    vcp.expect_response(call)
    try:
        await entry.handler(vcp, call)
    except Exception as e:
        logger.exception(f"Handler for {call.action} failed")
        if vcp.is_unanswered(call):
            vcp.respond_error(call.create_call_error(e if isinstance(e, OCPPError) else InternalError(str(e))))
        return

    if vcp.is_unanswered(call):
        logger.error(f"Handler for {call.action} did not respond")
        vcp.respond_error(call.create_call_error(InternalError("No response produced")))


async def dispatch_result(vcp: "VCP", call: Call, result: CallResult) -> None:
    entry = vcp.catalog.outgoing_actions.get(call.action)
    if entry is None:
        return
    # a CALLRESULT carries no action, the schema is picked from the request
    result.action = call.action
    try:
        vcp.catalog.validate(result)
    except OCPPError as e:
        logger.error(f"Invalid {call.action} response from CSMS: {error_cause(e)}")
        return
    if entry.on_result is None:
        return
    try:
        await entry.on_result(vcp, call, result.payload)
    except Exception:
        logger.exception(f"Result handler for {call.action} failed")


async def dispatch_error(vcp: "VCP", call: Optional[Call], error: CallError) -> None:
    action = call.action if call else "<unknown>"
    logger.warning(
        f"CallError for {action} messageId={error.unique_id}: "
        f"{error.error_code} {error.error_description} {error.error_details}"
    )
    entry = vcp.catalog.outgoing_actions.get(call.action) if call else None
    if entry is None or entry.on_error is None:
        return
    try:
        await entry.on_error(vcp, call, error)
    except Exception:
        logger.exception(f"Error handler for {call.action} failed")
