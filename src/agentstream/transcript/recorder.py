"""Append-only JSONL transcripts of orchestration runs."""

from __future__ import annotations

import re
import threading
import time
import uuid
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import IO, Literal

from pydantic import TypeAdapter

from agentstream.transcript.models import RunEndEvent, RunStartEvent, TranscriptEvent

_SAFE_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_EVENT_ADAPTER: TypeAdapter[TranscriptEvent] = TypeAdapter(TranscriptEvent)

EndReason = Literal["complete", "cancelled", "error"]


class RunRecorder:
    """Writes one run's transcript events to ``runs/<date>_<name>_<id>.jsonl``.

    Every event gets a fresh ``seq`` and ``ts`` when written and the file is
    flushed per line, so a crashed run still leaves a readable prefix.
    Writes are serialized through a ``threading.Lock``; events arriving
    after :meth:`close` are ignored.

    Used as a context manager the recorder ends the run on exit, with
    reason ``"error"`` when the block raised.
    """

    def __init__(
        self,
        name: str,
        config_hash: str,
        runs_dir: Path | None = None,
        record_messages: bool = False,
    ) -> None:
        if not _SAFE_NAME_RE.match(name):
            msg = (
                f"Invalid run name {name!r}: use only letters, digits, "
                "hyphens and underscores."
            )
            raise ValueError(msg)

        self.run_id = uuid.uuid4().hex[:12]
        self.record_messages = record_messages
        self._lock = threading.Lock()
        self._next_seq = 0
        self._started = time.monotonic()

        directory = runs_dir if runs_dir is not None else Path("runs")
        directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(tz=UTC).strftime("%Y-%m-%d")
        self.run_file = directory / f"{stamp}_{name}_{self.run_id}.jsonl"

        self._fh: IO[str] | None = self.run_file.open("a", encoding="utf-8")
        try:
            self.record(
                RunStartEvent(
                    ts="", seq=0, run_id=self.run_id, name=name, config_hash=config_hash
                )
            )
        except Exception:
            self.close()
            raise

    @property
    def event_count(self) -> int:
        return self._next_seq

    @property
    def closed(self) -> bool:
        return self._fh is None

    def record(self, event: TranscriptEvent) -> None:
        """Stamp *event* with the next ``seq`` and the current time, then write it."""
        with self._lock:
            if self._fh is None:
                return
            event.seq = self._next_seq
            event.ts = _iso_now()
            self._next_seq += 1
            self._fh.write(event.model_dump_json(by_alias=True) + "\n")
            self._fh.flush()

    def end(self, reason: EndReason, succeeded: int = 0, failed: int = 0) -> None:
        """Write the closing ``run_end`` summary and close the file (once)."""
        if self.closed:
            return
        self.record(
            RunEndEvent(
                ts="",
                seq=0,
                reason=reason,
                duration_ms=int((time.monotonic() - self._started) * 1000),
                succeeded=succeeded,
                failed=failed,
            )
        )
        self.close()

    def close(self) -> None:
        """Close the file without a ``run_end`` summary."""
        with self._lock:
            fh, self._fh = self._fh, None
        if fh is not None:
            fh.close()

    def __enter__(self) -> RunRecorder:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.end("complete" if exc_type is None else "error")


def read_transcript(path: Path) -> Iterator[TranscriptEvent]:
    """Yield the events of a transcript file in order.

    Raises:
        pydantic.ValidationError: If a line is not a known event.
    """
    with path.open(encoding="utf-8") as fh:
        for line in fh:
            if line.strip():
                yield _EVENT_ADAPTER.validate_json(line)


def _iso_now() -> str:
    """Return the current UTC time as ISO 8601 with milliseconds."""
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
