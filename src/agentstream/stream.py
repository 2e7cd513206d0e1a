"""MessageStream — lazy async sequence of messages from one agent subprocess."""

from __future__ import annotations

import contextlib
import logging
from collections import deque
from collections.abc import AsyncIterator
from types import TracebackType

from agentstream.errors import StreamConsumedError
from agentstream.process.session import ProcessSession, SessionState
from agentstream.protocol.classifier import classify
from agentstream.protocol.decoder import LineDecoder, decode_line
from agentstream.protocol.models import MessageKind, MessageModel

logger = logging.getLogger(__name__)


class MessageStream:
    """Pull-based, single-consumer stream bound to one :class:`ProcessSession`.

    Nothing is spawned until the stream is entered (``async with``) or first
    iterated.  Each ``__anext__`` reads just enough stdout to produce the
    next message, so order always matches emission order.

    The stream ends once stdout is closed *and* the process has exited.
    Closing it early (``aclose()`` or leaving the ``async with`` block)
    terminates the subprocess::

        async with query("2+2") as stream:
            async for message in stream:
                if message.kind is MessageKind.ASSISTANT:
                    break  # the subprocess is killed on block exit

    A ``result_error`` message is yielded like any other message; this
    class never raises for agent-reported failures.
    """

    def __init__(self, session: ProcessSession) -> None:
        self._session = session
        self._decoder = LineDecoder(name=session.name)
        self._pending: deque[MessageModel] = deque()
        self._chunks: AsyncIterator[bytes] | None = None
        self._claimed = False
        self._eof = False
        self._closed = False
        self._count = 0

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def session(self) -> ProcessSession:
        return self._session

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exit_code(self) -> int | None:
        return self._session.exit_code

    @property
    def stderr_text(self) -> str:
        return self._session.stderr_text

    @property
    def message_count(self) -> int:
        """Messages delivered to the consumer so far."""
        return self._count

    # ------------------------------------------------------------------ #
    # Iteration
    # ------------------------------------------------------------------ #

    def __aiter__(self) -> MessageStream:
        if self._claimed:
            msg = f"MessageStream for '{self._session.name}' is already being consumed"
            raise StreamConsumedError(msg)
        self._claimed = True
        return self

    async def __anext__(self) -> MessageModel:
        if self._closed:
            raise StopAsyncIteration
        try:
            while not self._pending:
                if self._eof:
                    await self._finish()
                    raise StopAsyncIteration
                await self._fill()
        except StopAsyncIteration:
            raise
        except BaseException:
            await self.aclose()
            raise
        self._count += 1
        return self._pending.popleft()

    async def collect(self) -> list[MessageModel]:
        """Consume the whole stream and return its messages."""
        messages: list[MessageModel] = []
        try:
            async for message in self:
                messages.append(message)
        finally:
            await self.aclose()
        return messages

    async def start(self) -> None:
        """Spawn the subprocess now instead of on first iteration."""
        if self._session.state is SessionState.NOT_STARTED:
            await self._session.start()

    async def aclose(self) -> None:
        """Stop consuming; terminates the subprocess if it is still running."""
        if self._closed:
            return
        self._closed = True
        if self._chunks is not None:
            aclose = getattr(self._chunks, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(RuntimeError):
                    await aclose()
        if self._session.state is not SessionState.TERMINATED:
            await self._session.terminate()

    async def __aenter__(self) -> MessageStream:
        try:
            await self.start()
        except BaseException:
            self._closed = True
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    async def _fill(self) -> None:
        """Read one stdout chunk and queue every message it completes."""
        if self._chunks is None:
            await self.start()
            self._chunks = self._session.read_chunks()

        chunk = await anext(self._chunks, None)
        if chunk is None:
            self._eof = True
            lines = self._decoder.close()
        else:
            lines = self._decoder.feed(chunk)

        for line in lines:
            if not line.strip():
                continue
            message = classify(decode_line(line))
            if message.kind is MessageKind.UNKNOWN and message.error is not None:
                logger.warning(
                    "%s: unparsable stdout line: %s (%s)",
                    self._session.name,
                    line[:200],
                    message.error,
                )
            self._pending.append(message)

    async def _finish(self) -> None:
        """stdout is at EOF — wait for the exit code and close."""
        exit_code = await self._session.wait()
        self._closed = True
        if exit_code != 0:
            logger.warning(
                "%s: exited with code %s after %d message(s)",
                self._session.name,
                exit_code,
                self._count,
            )
