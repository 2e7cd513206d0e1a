"""ProcessSession — owns one agent subprocess and its stdio pipes."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import AsyncIterator, Mapping, Sequence
from enum import StrEnum
from pathlib import Path
from types import TracebackType

from agentstream.constants import (
    DEFAULT_GRACE_PERIOD,
    FORCED_KILL_EXIT_CODE,
    MAX_STDERR_BYTES,
    READ_CHUNK_BYTES,
)
from agentstream.errors import SessionStateError, SpawnError, StreamConsumedError

logger = logging.getLogger(__name__)

#: Seconds to wait for the stderr reader to hit EOF after the process exits.
_STDERR_SETTLE = 1.0


class SessionState(StrEnum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    TERMINATED = "terminated"


class ProcessSession:
    """One external subprocess plus its exclusively owned pipes.

    Lifecycle: ``NOT_STARTED --start()--> RUNNING --> TERMINATED``.  There is
    no way back out of ``TERMINATED``; the exit code is set exactly once.

    stdout is exposed as a single forward-only byte source
    (:meth:`read_chunks`) that may be claimed by one reader only.  stderr is
    drained by a background task into a bounded buffer so a chatty stderr
    never stalls stdout, and is available as :attr:`stderr_text`.

    Use as an async context manager so the process is always reaped::

        async with ProcessSession("claude", args) as session:
            async for chunk in session.read_chunks():
                ...
    """

    def __init__(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        name: str | None = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        read_chunk_bytes: int = READ_CHUNK_BYTES,
    ) -> None:
        self.executable = executable
        self.args = list(args)
        self.cwd = str(cwd) if cwd is not None else None
        self.env = dict(env) if env is not None else None
        self.name = name or Path(executable).name
        self._grace_period = grace_period
        self._read_chunk_bytes = read_chunk_bytes

        self._state = SessionState.NOT_STARTED
        self._process: asyncio.subprocess.Process | None = None
        self._exit_code: int | None = None
        self._reader_claimed = False
        self._stderr = bytearray()
        self._stderr_task: asyncio.Task[None] | None = None
        self._terminate_lock = asyncio.Lock()

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_alive(self) -> bool:
        return self._state is SessionState.RUNNING

    @property
    def exit_code(self) -> int | None:
        """Exit code once terminated (``None`` before, or if spawn failed)."""
        return self._exit_code

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def stderr_text(self) -> str:
        """Captured stderr (last ``MAX_STDERR_BYTES`` bytes) as text."""
        return bytes(self._stderr).decode(errors="replace")

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Spawn the subprocess and start the stderr reader.

        Raises:
            SpawnError: The executable is missing, not executable, or the
                OS refused to create the process.
            SessionStateError: The session was already started.
        """
        if self._state is not SessionState.NOT_STARTED:
            msg = f"Session '{self.name}' cannot start from state {self._state.value}"
            raise SessionStateError(msg)

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.executable,
                *self.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=self.env,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            self._state = SessionState.TERMINATED
            msg = (
                f"'{self.executable}' not found. "
                f"Make sure it is installed and on your PATH."
            )
            logger.error("%s: %s", self.name, msg)
            raise SpawnError(msg, executable=self.executable) from exc
        except PermissionError as exc:
            self._state = SessionState.TERMINATED
            msg = f"'{self.executable}' is not executable: {exc}"
            logger.error("%s: %s", self.name, msg)
            raise SpawnError(msg, executable=self.executable) from exc
        except OSError as exc:
            self._state = SessionState.TERMINATED
            msg = f"Failed to spawn '{self.executable}': {exc}"
            logger.error("%s: %s", self.name, msg)
            raise SpawnError(msg, executable=self.executable, transient=True) from exc

        self._state = SessionState.RUNNING
        logger.info("%s: spawned %s (pid %s)", self.name, self.executable, self.pid)
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    def read_chunks(self) -> AsyncIterator[bytes]:
        """Return the stdout byte source.  Only one reader may claim it."""
        if self._reader_claimed:
            msg = f"stdout of session '{self.name}' already has a reader"
            raise StreamConsumedError(msg)
        if self._process is None:
            msg = f"Session '{self.name}' has not been started"
            raise SessionStateError(msg)
        self._reader_claimed = True
        return self._iter_stdout(self._process)

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        if self._process is None:
            msg = f"Session '{self.name}' has not been started"
            raise SessionStateError(msg)
        if self._exit_code is not None:
            return self._exit_code
        returncode = await self._process.wait()
        await self._settle(returncode)
        return self._exit_code if self._exit_code is not None else returncode

    async def terminate(self, grace_period: float | None = None) -> int | None:
        """Stop the process group: SIGTERM, wait *grace_period*, then SIGKILL.

        The agent runs in its own session, so signals go to its whole process
        group and reach any tool processes it started.

        Idempotent — a terminated session returns its recorded exit code.
        """
        grace = self._grace_period if grace_period is None else grace_period
        async with self._terminate_lock:
            if self._state is SessionState.TERMINATED:
                return self._exit_code
            proc = self._process
            if proc is None:
                self._state = SessionState.TERMINATED
                return None

            _signal_group(proc, signal.SIGTERM)
            try:
                returncode = await asyncio.wait_for(proc.wait(), timeout=grace)
            except TimeoutError:
                logger.warning(
                    "%s: no exit %.1fs after SIGTERM, sending SIGKILL",
                    self.name,
                    grace,
                )
                _signal_group(proc, signal.SIGKILL)
                try:
                    returncode = await asyncio.wait_for(proc.wait(), timeout=grace)
                except TimeoutError:
                    logger.error("%s: process did not report exit after SIGKILL", self.name)
                    returncode = FORCED_KILL_EXIT_CODE

            # Sweep agent children that outlived the group leader.
            _signal_group(proc, signal.SIGKILL)
            await self._settle(returncode)
            return self._exit_code

    async def __aenter__(self) -> ProcessSession:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.terminate()

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    async def _iter_stdout(self, proc: asyncio.subprocess.Process) -> AsyncIterator[bytes]:
        if proc.stdout is None:
            return
        while True:
            chunk = await proc.stdout.read(self._read_chunk_bytes)
            if not chunk:
                # EOF
                return
            yield chunk

    async def _drain_stderr(self) -> None:
        proc = self._process
        if proc is None or proc.stderr is None:
            return
        try:
            while True:
                chunk = await proc.stderr.read(self._read_chunk_bytes)
                if not chunk:
                    break
                self._stderr.extend(chunk)
                overflow = len(self._stderr) - MAX_STDERR_BYTES
                if overflow > 0:
                    del self._stderr[:overflow]
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("%s: error reading stderr: %s", self.name, exc)

    async def _settle(self, returncode: int) -> None:
        """Record the exit code (once) and stop the stderr reader."""
        if self._exit_code is None:
            self._exit_code = returncode
        self._state = SessionState.TERMINATED
        logger.info("%s: terminated with exit code %s", self.name, self._exit_code)

        task = self._stderr_task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=_STDERR_SETTLE)
        except TimeoutError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    """Send *sig* to the process group led by *proc* (its own session)."""
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, sig)
