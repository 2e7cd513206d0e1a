"""Map decoded stdout records to tagged :class:`MessageModel` values.

The agent's ``--output-format stream-json --verbose`` mode emits these
top-level event types:

* ``system``    — ``subtype: "init"`` carries session_id, cwd, tools, model.
* ``assistant`` — wraps an API message; content blocks live in
  ``message.content[]`` (``text``, ``tool_use``, ``thinking``).
* ``user``      — user turns, and tool results fed back to the model as
  ``tool_result`` content blocks.
* ``result``    — terminal event; ``subtype`` is ``success`` or an
  ``error_*`` code (``error_max_turns``, ``error_during_execution``).

Anything else is passed through as ``unknown`` with its payload intact.
"""

from __future__ import annotations

import logging
from typing import Any

from agentstream.errors import ProtocolError
from agentstream.protocol.decoder import Record
from agentstream.protocol.models import MessageKind, MessageModel

logger = logging.getLogger(__name__)

#: Required payload keys per recognised discriminant.
_REQUIRED_KEYS: dict[str, tuple[str, ...]] = {
    "system": ("subtype",),
    "user": ("message",),
    "assistant": ("message",),
    "result": ("subtype",),
}


def classify(record: Record) -> MessageModel:
    """Turn one framed record into exactly one :class:`MessageModel`."""
    if record.data is None:
        return MessageModel(
            kind=MessageKind.UNKNOWN,
            payload={"text": record.raw},
            raw=record.raw,
            error=record.error,
        )

    data = record.data
    try:
        kind = _kind_for(data)
    except ProtocolError as exc:
        logger.warning("protocol error: %s", exc)
        return MessageModel(
            kind=MessageKind.UNKNOWN,
            payload=data,
            raw=record.raw,
            error=str(exc),
        )
    return MessageModel(kind=kind, payload=data, raw=record.raw)


def _kind_for(data: dict[str, Any]) -> MessageKind:
    event_type = data.get("type")
    if not isinstance(event_type, str):
        return MessageKind.UNKNOWN

    required = _REQUIRED_KEYS.get(event_type)
    if required is None:
        return MessageKind.UNKNOWN
    missing = [key for key in required if key not in data]
    if missing:
        joined = ", ".join(f"'{k}'" for k in missing)
        msg = f"'{event_type}' record is missing {joined}"
        raise ProtocolError(msg)

    if event_type == "system":
        if data.get("subtype") == "init":
            return MessageKind.SYSTEM_INIT
        return MessageKind.UNKNOWN

    if event_type == "assistant":
        return MessageKind.ASSISTANT

    if event_type == "user":
        if _has_tool_result(data.get("message")):
            return MessageKind.TOOL_RESULT
        return MessageKind.USER

    # result
    subtype = data.get("subtype")
    if not isinstance(subtype, str):
        msg = "'result' record has a non-string 'subtype'"
        raise ProtocolError(msg)
    if subtype == "success" and data.get("is_error") is not True:
        return MessageKind.RESULT_SUCCESS
    if subtype == "success" or subtype.startswith("error"):
        return MessageKind.RESULT_ERROR
    return MessageKind.UNKNOWN


def _has_tool_result(message: object) -> bool:
    if not isinstance(message, dict):
        return False
    content = message.get("content")
    if not isinstance(content, list):
        return False
    return any(
        isinstance(block, dict) and block.get("type") == "tool_result"
        for block in content
    )
