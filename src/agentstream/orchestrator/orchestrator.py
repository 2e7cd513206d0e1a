"""Orchestrator — parallel, pipeline and retry execution over agent subprocesses."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Sequence
from typing import Any

from agentstream.config.models import OrchestratorConfig
from agentstream.constants import EnvProvider
from agentstream.errors import InvalidQueryError, SpawnError
from agentstream.helpers import format_stderr_preview, record_error, truncate
from agentstream.orchestrator.models import (
    ExecutionMode,
    FailureKind,
    PipelineOutcome,
    QuerySpec,
    TaskFailure,
    TaskOutcome,
    TaskState,
)
from agentstream.orchestrator.table import SessionTable, TaskEntry
from agentstream.process.session import SessionState
from agentstream.query import query
from agentstream.stream import MessageStream
from agentstream.transcript.models import (
    TaskAttemptEvent,
    TaskDoneEvent,
    TaskMessageEvent,
    TaskStartEvent,
    TranscriptEvent,
)
from agentstream.transcript.recorder import RunRecorder

logger = logging.getLogger(__name__)

#: ``factory(prompt, options, *, env_provider=..., name=...) -> MessageStream``
StreamFactory = Callable[..., MessageStream]

_CONTEXT_TEMPLATE = "Context from previous step:\n{context}\n\nNow:\n{prompt}"


class Orchestrator:
    """Runs many independent queries in parallel, as a pipeline, or with retry.

    Every task gets its own :class:`~agentstream.process.ProcessSession`;
    the only state shared between tasks is the concurrency semaphore.
    Bookkeeping lives in a :class:`SessionTable` owned by this instance, so
    separate orchestrators never interfere with each other.

    Failures never raise out of the run methods: each task settles as a
    :class:`TaskOutcome` whose ``failure`` carries the kind, message, exit
    code, stderr and any messages received before the failure.
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        recorder: RunRecorder | None = None,
        env_provider: EnvProvider | None = None,
        stream_factory: StreamFactory | None = None,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self._recorder = recorder
        self._env_provider = env_provider
        self._stream_factory: StreamFactory = stream_factory or query
        self._table = SessionTable()
        self._semaphore: asyncio.Semaphore | None = (
            asyncio.Semaphore(self.config.max_concurrent)
            if self.config.max_concurrent is not None
            else None
        )

    @property
    def table(self) -> SessionTable:
        return self._table

    # ------------------------------------------------------------------
    # Execution modes
    # ------------------------------------------------------------------

    async def run(
        self,
        queries: Sequence[QuerySpec],
        mode: ExecutionMode | str = ExecutionMode.PARALLEL,
    ) -> list[TaskOutcome]:
        """Run *queries* under *mode* and return one outcome per task run.

        Pipeline mode returns the outcomes of the stages that ran; with
        ``stop_on_error`` on, stages after a failure never start and have no
        outcome.
        """
        mode = ExecutionMode(mode)
        specs = list(queries)
        if mode is ExecutionMode.PARALLEL:
            return await self.run_parallel(specs)
        if mode is ExecutionMode.PIPELINE:
            pipeline = await self.run_pipeline(specs)
            return pipeline.stages
        if len(specs) != 1:
            msg = f"Retry mode runs exactly one query, got {len(specs)}"
            raise InvalidQueryError(msg)
        return [await self.run_with_retry(specs[0])]

    async def run_parallel(
        self,
        queries: Sequence[QuerySpec],
        fail_fast: bool | None = None,
    ) -> list[TaskOutcome]:
        """Run every query concurrently; outcomes follow submission order."""
        if fail_fast is None:
            fail_fast = self.config.fail_fast
        entries = [
            self._table.add(spec, index, ExecutionMode.PARALLEL)
            for index, spec in enumerate(queries)
        ]
        if not entries:
            return []
        logger.info(
            "orchestrator: running %d task(s) in parallel (max_concurrent=%s)",
            len(entries),
            self.config.max_concurrent,
        )

        async def _run_one(entry: TaskEntry) -> TaskOutcome:
            outcome = await self._drive(entry, entry.prompt, max_attempts=1)
            if fail_fast and not outcome.succeeded:
                pending = [e for e in entries if not e.is_terminal]
                if pending:
                    logger.warning(
                        "%s: failed, cancelling %d sibling task(s)",
                        entry.task_id,
                        len(pending),
                    )
                    await asyncio.gather(*(self.cancel(e.task_id) for e in pending))
            return outcome

        outcomes = list(await asyncio.gather(*(_run_one(e) for e in entries)))
        failed = sum(1 for o in outcomes if not o.succeeded)
        if failed:
            logger.error("orchestrator: %d/%d task(s) failed", failed, len(outcomes))
        else:
            logger.info("orchestrator: all %d task(s) succeeded", len(outcomes))
        return outcomes

    async def run_pipeline(self, steps: Sequence[QuerySpec]) -> PipelineOutcome:
        """Run *steps* one after another, feeding each stage's text forward.

        Stops at the first failed stage unless ``stop_on_error`` is off, in
        which case the failure is logged, its output still feeds the next
        stage and ``failed_stage`` names the first stage that failed.
        """
        stages: list[TaskOutcome] = []
        context = ""
        first_failed: int | None = None
        first_failure: TaskFailure | None = None
        for index, spec in enumerate(steps):
            entry = self._table.add(spec, index, ExecutionMode.PIPELINE)
            if self.config.use_context and context:
                entry.prompt = _with_context(
                    context, spec.prompt, self.config.context_chars
                )
            logger.info("orchestrator: pipeline stage %d/%d", index + 1, len(steps))
            outcome = await self._drive(entry, entry.prompt, max_attempts=1)
            stages.append(outcome)
            if not outcome.succeeded:
                reason = outcome.failure.message if outcome.failure else "failed"
                if self.config.stop_on_error:
                    logger.error(
                        "orchestrator: pipeline stopped at stage %d: %s", index, reason
                    )
                    return PipelineOutcome(
                        stages=stages,
                        failed_stage=index,
                        failure=outcome.failure,
                    )
                logger.warning(
                    "orchestrator: pipeline stage %d failed, continuing: %s", index, reason
                )
                if first_failed is None:
                    first_failed, first_failure = index, outcome.failure
            context = outcome.text
        return PipelineOutcome(
            stages=stages, failed_stage=first_failed, failure=first_failure
        )

    async def run_with_retry(
        self,
        query: QuerySpec,
        max_attempts: int | None = None,
    ) -> TaskOutcome:
        """Run one query, retrying transient failures with exponential backoff."""
        attempts = self.config.max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            msg = f"max_attempts must be at least 1, got {attempts}"
            raise ValueError(msg)
        entry = self._table.add(query, 0, ExecutionMode.RETRY)
        return await self._drive(entry, entry.prompt, max_attempts=attempts)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, task_id: str) -> bool:
        """Cancel one task; returns ``False`` if it had already settled.

        Raises:
            KeyError: *task_id* is not known to this orchestrator.
        """
        entry = self._table.get(task_id)
        if entry.is_terminal:
            return False
        entry.cancel_requested = True
        logger.info("%s: cancelling", task_id)
        runner = entry.runner
        if runner is not None and not runner.done():
            runner.cancel()
            await asyncio.wait({runner})
        outcome = await self._settle_cancelled(entry)
        return outcome.failure is not None and outcome.failure.kind is FailureKind.CANCELLED

    async def cancel_all(self) -> int:
        """Cancel every task that has not settled; returns how many were cancelled."""
        active = self._table.active()
        if not active:
            return 0
        results = await asyncio.gather(*(self.cancel(e.task_id) for e in active))
        return sum(1 for cancelled in results if cancelled)

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------

    async def _drive(self, entry: TaskEntry, prompt: str, max_attempts: int) -> TaskOutcome:
        """Run *entry* in its own asyncio task so it can be cancelled alone."""
        if entry.outcome is not None:
            return entry.outcome
        self._record(
            TaskStartEvent(
                ts="",
                seq=0,
                task_id=entry.task_id,
                mode=entry.mode.value,
                prompt=truncate(prompt),
            )
        )
        runner = asyncio.create_task(
            self._execute(entry, prompt, max_attempts),
            name=entry.task_id,
        )
        entry.runner = runner
        try:
            await asyncio.wait({runner})
        except asyncio.CancelledError:
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
            raise
        if runner.cancelled():
            return await self._settle_cancelled(entry)
        return runner.result()

    async def _execute(self, entry: TaskEntry, prompt: str, max_attempts: int) -> TaskOutcome:
        while True:
            failure = await self._attempt(entry, prompt)
            if failure is None:
                return self._settle(entry, None)

            retrying = (
                failure.transient
                and entry.attempts < max_attempts
                and not entry.cancel_requested
            )
            record_error(
                self._recorder,
                entry.task_id,
                failure.message,
                kind=failure.kind.value,
                retrying=retrying,
                logger=logger,
            )
            if not retrying:
                return self._settle(entry, failure)

            entry.history.append(failure)
            self._table.transition(entry.task_id, TaskState.RETRYING)
            delay = self.config.backoff_delay(entry.attempts)
            logger.info(
                "%s: attempt %d/%d failed (%s), retrying in %.1fs",
                entry.task_id,
                entry.attempts,
                max_attempts,
                failure.kind.value,
                delay,
            )
            await asyncio.sleep(delay)

    async def _attempt(self, entry: TaskEntry, prompt: str) -> TaskFailure | None:
        """Run one attempt; returns ``None`` on success."""
        async with self._slot():
            entry.attempts += 1
            entry.messages = []
            self._table.transition(entry.task_id, TaskState.RUNNING)
            self._record(
                TaskAttemptEvent(
                    ts="",
                    seq=0,
                    task_id=entry.task_id,
                    attempt=entry.attempts,
                )
            )

            try:
                stream = self._stream_factory(
                    prompt,
                    entry.spec.options,
                    env_provider=self._env_provider,
                    name=entry.task_id,
                )
            except InvalidQueryError as exc:
                return TaskFailure(kind=FailureKind.INVALID_QUERY, message=str(exc))
            except Exception as exc:
                logger.exception("%s: could not build the agent stream", entry.task_id)
                return TaskFailure(
                    kind=FailureKind.INTERNAL,
                    message=f"Could not start the query: {exc}",
                )
            entry.stream = stream

            try:
                await asyncio.wait_for(
                    self._consume(entry, stream),
                    timeout=self.config.timeout,
                )
            except SpawnError as exc:
                return TaskFailure(
                    kind=FailureKind.SPAWN,
                    message=str(exc),
                    transient=exc.transient,
                )
            except TimeoutError:
                await stream.aclose()
                return self._failure(
                    entry,
                    stream,
                    FailureKind.TIMEOUT,
                    f"Timed out after {self.config.timeout}s",
                    transient=True,
                )
            except Exception as exc:
                logger.exception("%s: unexpected error while streaming", entry.task_id)
                await stream.aclose()
                return self._failure(
                    entry,
                    stream,
                    FailureKind.INTERNAL,
                    f"Unexpected error while streaming: {exc}",
                )
            finally:
                await stream.aclose()

            return self._check_exit(entry, stream)

    async def _consume(self, entry: TaskEntry, stream: MessageStream) -> None:
        async with stream:
            async for message in stream:
                entry.messages.append(message)
                if message.session_id is not None:
                    entry.session_id = message.session_id
                if message.cost_usd is not None:
                    entry.cost_usd = (entry.cost_usd or 0.0) + message.cost_usd
                if self._recorder is not None and self._recorder.record_messages:
                    self._record(
                        TaskMessageEvent(
                            ts="",
                            seq=0,
                            task_id=entry.task_id,
                            kind=message.kind.value,
                            payload=message.payload,
                        )
                    )

    def _check_exit(self, entry: TaskEntry, stream: MessageStream) -> TaskFailure | None:
        """Classify a finished stream: result_error first, then exit code."""
        result = next((m for m in reversed(entry.messages) if m.is_final), None)
        if result is not None and result.is_error:
            code = result.result_code
            detail = result.payload.get("result") or result.payload.get("error")
            message = f"Agent reported {code}"
            if isinstance(detail, str) and detail:
                message = f"{message}: {detail}"
            return self._failure(
                entry,
                stream,
                FailureKind.RESULT_ERROR,
                message,
                result_code=code,
                transient=code in self.config.retryable_result_codes,
            )

        exit_code = stream.exit_code
        if exit_code is not None and exit_code != 0:
            message = f"Process exited with code {exit_code}"
            preview = format_stderr_preview(stream.stderr_text)
            if preview:
                message = f"{message}\n  {preview}"
            return self._failure(
                entry, stream, FailureKind.EXIT, message, transient=True
            )
        return None

    def _failure(
        self,
        entry: TaskEntry,
        stream: MessageStream,
        kind: FailureKind,
        message: str,
        **fields: Any,
    ) -> TaskFailure:
        return TaskFailure(
            kind=kind,
            message=message,
            exit_code=stream.exit_code,
            stderr=stream.stderr_text,
            partial_messages=list(entry.messages),
            **fields,
        )

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _settle(self, entry: TaskEntry, failure: TaskFailure | None) -> TaskOutcome:
        state = TaskState.SUCCEEDED if failure is None else TaskState.FAILED
        self._table.transition(entry.task_id, state)
        outcome = TaskOutcome(
            task_id=entry.task_id,
            index=entry.index,
            prompt=entry.prompt,
            state=state,
            messages=list(entry.messages),
            failure=failure,
            attempts=entry.attempts,
            duration_ms=entry.elapsed_ms,
            cost_usd=entry.cost_usd,
            session_id=entry.session_id,
            history=list(entry.history),
        )
        entry.outcome = outcome
        self._record(
            TaskDoneEvent(
                ts="",
                seq=0,
                task_id=entry.task_id,
                state=state.value,
                attempts=entry.attempts,
                duration_ms=outcome.duration_ms,
                cost_usd=entry.cost_usd,
            )
        )
        logger.info(
            "%s: %s after %d attempt(s) in %dms",
            entry.task_id,
            state.value,
            entry.attempts,
            outcome.duration_ms,
        )
        return outcome

    async def _settle_cancelled(self, entry: TaskEntry) -> TaskOutcome:
        if entry.outcome is not None:
            return entry.outcome
        stream = entry.stream
        if stream is not None and stream.session.state is not SessionState.TERMINATED:
            await stream.aclose()
            await stream.session.terminate()
        # Another caller may have settled the entry while we were waiting.
        if entry.outcome is not None:
            return entry.outcome
        failure = TaskFailure(
            kind=FailureKind.CANCELLED,
            message="Task cancelled",
            exit_code=stream.exit_code if stream is not None else None,
            stderr=stream.stderr_text if stream is not None else "",
            partial_messages=list(entry.messages),
        )
        record_error(
            self._recorder,
            entry.task_id,
            failure.message,
            kind=failure.kind.value,
            logger=None,
        )
        return self._settle(entry, failure)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _slot(self) -> contextlib.AbstractAsyncContextManager[Any]:
        if self._semaphore is None:
            return contextlib.nullcontext()
        return self._semaphore

    def _record(self, event: TranscriptEvent) -> None:
        if self._recorder is not None:
            self._recorder.record(event)


def _with_context(context: str, prompt: str, limit: int) -> str:
    """Prefix *prompt* with the first *limit* characters of *context*."""
    return _CONTEXT_TEMPLATE.format(context=context[:limit], prompt=prompt)
