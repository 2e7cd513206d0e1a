"""Stdout protocol — line framing, JSON decoding and message classification."""

from agentstream.protocol.classifier import classify
from agentstream.protocol.decoder import LineDecoder, Record, decode_line
from agentstream.protocol.models import MessageKind, MessageModel

__all__ = [
    "LineDecoder",
    "MessageKind",
    "MessageModel",
    "Record",
    "classify",
    "decode_line",
]
