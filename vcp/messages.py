"""OCPP-J envelopes and their JSON array framing.

A frame on the wire is one of::

    [2, "<messageId>", "<action>", {payload}]                 CALL
    [3, "<messageId>", {payload}]                             CALLRESULT
    [4, "<messageId>", "<errorCode>", "<description>", {details}]  CALLERROR

Envelopes and packing come from ``ocpp.messages``.  :func:`decode` adds the
arity and field type checks the simulator relies on.  Payload content is
validated against the action schemas by the catalog in
:mod:`vcp.ocpp_handlers`.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, Union

from ocpp.exceptions import OCPPError
from ocpp.messages import Call, CallError, CallResult, MessageType, pack, unpack

__all__ = [
    "Call",
    "CallError",
    "CallResult",
    "MessageType",
    "OcppError",
    "FramingError",
    "UnknownMessageError",
    "PayloadValidationError",
    "UnsupportedActionError",
    "NotConnectedError",
    "call",
    "encode",
    "decode",
]


# -------- errors --------
class OcppError(Exception):
    """Base class for everything the protocol engine raises."""


class FramingError(OcppError):
    """The text received is not a valid OCPP-J frame."""


class UnknownMessageError(OcppError):
    """A CALLRESULT/CALLERROR referenced a message id we never sent."""

    def __init__(self, message_id: str):
        super().__init__(f"Received response for unknown messageId={message_id}")
        self.message_id = message_id


class PayloadValidationError(OcppError):
    def __init__(self, action: str, details: Any):
        super().__init__(f"Invalid payload for {action}: {details}")
        self.action = action
        self.details = details


class UnsupportedActionError(OcppError):
    def __init__(self, version: str, action: str):
        super().__init__(f"Action {action} is not supported by {version}")
        self.version = version
        self.action = action


class NotConnectedError(OcppError):
    pass


Envelope = Union[Call, CallResult, CallError]


def error_cause(error: OCPPError) -> str:
    return str(error.details.get("cause", error.description)) if error.details else error.description


def call(action: str, payload: Optional[Dict[str, Any]] = None) -> Call:
    """Build an outbound CALL with a fresh message id."""
    return Call(str(uuid.uuid4()), action, dict(payload or {}))


def encode(message: Envelope) -> str:
    return pack(message)


def _expect_str(value: Any, name: str) -> None:
    if not isinstance(value, str):
        raise FramingError(f"{name} must be a string, got {type(value).__name__}")


def decode(text: Union[str, bytes]) -> Envelope:
    try:
        message = unpack(text)
    except OCPPError as e:
        raise FramingError(error_cause(e)) from e

    # unpack maps a fourth CALLRESULT element onto ``action``
    if isinstance(message, CallResult) and message.action is not None:
        raise FramingError("CALLRESULT frame must have 3 elements")

    _expect_str(message.unique_id, "messageId")
    if isinstance(message, Call):
        _expect_str(message.action, "action")
    elif isinstance(message, CallError):
        _expect_str(message.error_code, "errorCode")
        _expect_str(message.error_description, "errorDescription")
        if message.error_details is None:
            message.error_details = {}
    return message
