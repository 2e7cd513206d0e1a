"""Pydantic v2 model for one decoded protocol event."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MessageKind(StrEnum):
    """Tag identifying which protocol event a :class:`MessageModel` carries."""

    SYSTEM_INIT = "system_init"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"
    RESULT_SUCCESS = "result_success"
    RESULT_ERROR = "result_error"
    UNKNOWN = "unknown"


class MessageModel(BaseModel):
    """One event from the agent's stdout stream.

    ``payload`` is the decoded JSON object for protocol lines, or
    ``{"text": raw}`` for lines that were not JSON.  ``error`` is set when
    the message is ``unknown`` because of a decode or protocol anomaly.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: MessageKind = Field(description="Message kind tag")
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Kind-specific payload (never schema-validated)",
    )
    raw: str = Field(default="", description="Original stdout line, newline removed")
    error: str | None = Field(
        default=None,
        description="Decode/protocol error for malformed input",
    )

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #

    @property
    def subtype(self) -> str | None:
        value = self.payload.get("subtype")
        return value if isinstance(value, str) else None

    @property
    def session_id(self) -> str | None:
        value = self.payload.get("session_id")
        return value if isinstance(value, str) and value else None

    @property
    def is_final(self) -> bool:
        """True for terminal ``result`` messages, successful or not."""
        return self.kind in (MessageKind.RESULT_SUCCESS, MessageKind.RESULT_ERROR)

    @property
    def is_error(self) -> bool:
        return self.kind is MessageKind.RESULT_ERROR

    @property
    def result_code(self) -> str | None:
        """Error code of a ``result_error`` message (its subtype)."""
        if self.kind is not MessageKind.RESULT_ERROR:
            return None
        return self.subtype or "error"

    @property
    def cost_usd(self) -> float | None:
        value = self.payload.get("total_cost_usd")
        if isinstance(value, bool) or not isinstance(value, int | float):
            return None
        return float(value)
