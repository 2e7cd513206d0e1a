"""Tests for the Orchestrator: parallel, pipeline, retry, timeouts and cancellation."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from agentstream.config.models import OrchestratorConfig, QueryOptions
from agentstream.errors import (
    AgentStreamError,
    InvalidQueryError,
    ResultError,
    SessionStateError,
    StreamTimeoutError,
)
from agentstream.orchestrator import (
    ExecutionMode,
    FailureKind,
    Orchestrator,
    QuerySpec,
    SessionTable,
    TaskState,
)
from agentstream.process.session import SessionState
from agentstream.protocol.models import MessageKind
from agentstream.transcript.recorder import RunRecorder

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _spec(prompt: str, options: QueryOptions, name: str | None = None) -> QuerySpec:
    return QuerySpec(prompt=prompt, options=options, name=name)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll *predicate* until it holds or *timeout* elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            msg = "condition not met in time"
            raise AssertionError(msg)
        await asyncio.sleep(0.01)


def _sleeping(orch: Orchestrator, prompt: str = "sleep") -> Callable[[], bool]:
    """Predicate: every task running *prompt* has received its init message."""

    def _check() -> bool:
        entries = [e for e in orch.table if e.spec.prompt == prompt]
        return bool(entries) and all(
            e.stream is not None and e.stream.message_count >= 1 for e in entries
        )

    return _check


# ------------------------------------------------------------------ #
# Parallel
# ------------------------------------------------------------------ #


class TestParallel:
    async def test_one_failure_does_not_affect_siblings(
        self, agent_options: QueryOptions
    ) -> None:
        prompts = ["one", "two", "crash", "four"]
        orch = Orchestrator()
        outcomes = await orch.run_parallel([_spec(p, agent_options) for p in prompts])

        assert len(outcomes) == 4
        assert [o.index for o in outcomes] == [0, 1, 2, 3]
        assert [o.succeeded for o in outcomes] == [True, True, False, True]

        failed = outcomes[2]
        assert failed.state is TaskState.FAILED
        assert failed.failure is not None
        assert failed.failure.kind is FailureKind.EXIT
        assert failed.failure.exit_code == 3
        assert "something broke" in failed.failure.stderr
        assert [m.kind for m in failed.failure.partial_messages] == [
            MessageKind.SYSTEM_INIT
        ]
        assert failed.attempts == 1

    async def test_outcome_metadata(self, agent_options: QueryOptions) -> None:
        outcomes = await Orchestrator().run_parallel([_spec("2+2", agent_options)])
        outcome = outcomes[0]
        assert outcome.succeeded
        assert outcome.prompt == "2+2"
        assert outcome.session_id == "sess-1"
        assert outcome.cost_usd == pytest.approx(0.001)
        assert outcome.text == "echo: 2+2"
        assert outcome.result is not None
        assert outcome.result.kind is MessageKind.RESULT_SUCCESS
        assert outcome.duration_ms >= 0
        outcome.raise_for_failure()

    async def test_concurrency_bound(self, agent_options: QueryOptions) -> None:
        orch = Orchestrator(OrchestratorConfig(max_concurrent=2))
        running = 0
        peak = 0
        original = orch._consume

        async def _tracking(entry, stream):  # type: ignore[no-untyped-def]
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            try:
                await original(entry, stream)
            finally:
                running -= 1

        with patch.object(orch, "_consume", side_effect=_tracking):
            outcomes = await orch.run_parallel(
                [_spec(f"t{i}", agent_options) for i in range(5)]
            )

        assert all(o.succeeded for o in outcomes)
        assert peak <= 2

    async def test_fail_fast_cancels_siblings(self, agent_options: QueryOptions) -> None:
        orch = Orchestrator()
        outcomes = await orch.run_parallel(
            [
                _spec("sleep", agent_options),
                _spec("crash", agent_options),
                _spec("sleep", agent_options),
            ],
            fail_fast=True,
        )

        assert outcomes[1].failure is not None
        assert outcomes[1].failure.kind is FailureKind.EXIT
        for outcome in (outcomes[0], outcomes[2]):
            assert outcome.failure is not None
            assert outcome.failure.kind is FailureKind.CANCELLED
        for entry in orch.table:
            assert entry.stream is None or not entry.stream.session.is_alive

    async def test_spawn_failure_is_reported(self) -> None:
        options = QueryOptions(executable="definitely-not-a-real-agent-binary")
        outcomes = await Orchestrator().run_parallel([_spec("hi", options)])
        failure = outcomes[0].failure
        assert failure is not None
        assert failure.kind is FailureKind.SPAWN
        assert failure.transient is False

    async def test_invalid_query_is_reported(self, agent_options: QueryOptions) -> None:
        outcomes = await Orchestrator().run_parallel([_spec("   ", agent_options)])
        failure = outcomes[0].failure
        assert failure is not None
        assert failure.kind is FailureKind.INVALID_QUERY
        with pytest.raises(InvalidQueryError):
            outcomes[0].raise_for_failure()

    async def test_env_provider_error_settles_task(
        self, agent_options: QueryOptions
    ) -> None:
        calls = 0

        def _provider() -> dict[str, str]:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("credential store unavailable")
            return {}

        orch = Orchestrator(env_provider=_provider)
        outcomes = await orch.run_parallel(
            [_spec("one", agent_options), _spec("two", agent_options)]
        )

        assert len(outcomes) == 2
        assert sorted(o.succeeded for o in outcomes) == [False, True]
        failed = next(o for o in outcomes if not o.succeeded)
        assert failed.failure is not None
        assert failed.failure.kind is FailureKind.INTERNAL
        assert "credential store unavailable" in failed.failure.message
        assert failed.failure.transient is False
        with pytest.raises(AgentStreamError):
            failed.raise_for_failure()

    async def test_stream_error_settles_task(self, agent_options: QueryOptions) -> None:
        orch = Orchestrator()
        with patch.object(orch, "_consume", side_effect=OSError("pipe broke")):
            outcomes = await orch.run_parallel([_spec("one", agent_options)])

        failure = outcomes[0].failure
        assert failure is not None
        assert failure.kind is FailureKind.INTERNAL
        assert "pipe broke" in failure.message
        assert failure.partial_messages == []
        assert orch.table.active() == []

    async def test_empty_batch(self) -> None:
        assert await Orchestrator().run_parallel([]) == []


# ------------------------------------------------------------------ #
# Timeouts
# ------------------------------------------------------------------ #


class TestTimeout:
    async def test_timeout_terminates_and_records_partial_output(
        self, agent_options: QueryOptions
    ) -> None:
        orch = Orchestrator(OrchestratorConfig(timeout=1.5))
        outcomes = await orch.run_parallel(
            [_spec("sleep", agent_options), _spec("quick", agent_options)]
        )

        timed_out, quick = outcomes
        assert quick.succeeded
        assert timed_out.failure is not None
        assert timed_out.failure.kind is FailureKind.TIMEOUT
        assert timed_out.failure.exit_code is not None
        assert [m.kind for m in timed_out.failure.partial_messages] == [
            MessageKind.SYSTEM_INIT
        ]
        entry = orch.table.get(timed_out.task_id)
        assert entry.stream is not None
        assert entry.stream.session.state is SessionState.TERMINATED
        with pytest.raises(StreamTimeoutError):
            timed_out.raise_for_failure()


# ------------------------------------------------------------------ #
# Retry
# ------------------------------------------------------------------ #


class TestRetry:
    async def test_two_transient_failures_then_success(
        self, agent_options: QueryOptions, tmp_path: Path
    ) -> None:
        counter = tmp_path / "count"
        config = OrchestratorConfig(backoff_base=1.0, backoff_factor=2.0)
        orch = Orchestrator(config)

        with patch(
            "agentstream.orchestrator.orchestrator.asyncio.sleep",
            new_callable=AsyncMock,
        ) as mock_sleep:
            outcome = await orch.run_with_retry(
                _spec(f"flaky {counter} 2", agent_options), max_attempts=3
            )

        assert outcome.succeeded
        assert outcome.attempts == 3
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]
        assert [f.kind for f in outcome.history] == [FailureKind.EXIT, FailureKind.EXIT]
        assert counter.read_text() == "3"

    async def test_exhausts_attempts(
        self, agent_options: QueryOptions, tmp_path: Path
    ) -> None:
        counter = tmp_path / "count"
        orch = Orchestrator(OrchestratorConfig(max_attempts=2, backoff_base=0.0))
        outcome = await orch.run_with_retry(_spec(f"flaky {counter} 5", agent_options))

        assert not outcome.succeeded
        assert outcome.attempts == 2
        assert len(outcome.history) == 1
        assert outcome.failure is not None
        assert outcome.failure.kind is FailureKind.EXIT

    async def test_non_transient_failure_not_retried(self) -> None:
        options = QueryOptions(executable="definitely-not-a-real-agent-binary")
        with patch(
            "agentstream.orchestrator.orchestrator.asyncio.sleep",
            new_callable=AsyncMock,
        ) as mock_sleep:
            outcome = await Orchestrator().run_with_retry(_spec("hi", options))
        assert outcome.attempts == 1
        mock_sleep.assert_not_awaited()

    async def test_non_retryable_result_code(self, agent_options: QueryOptions) -> None:
        outcome = await Orchestrator().run_with_retry(_spec("max-turns", agent_options))
        assert outcome.attempts == 1
        assert outcome.failure is not None
        assert outcome.failure.kind is FailureKind.RESULT_ERROR
        assert outcome.failure.result_code == "error_max_turns"
        assert outcome.failure.transient is False
        with pytest.raises(ResultError):
            outcome.raise_for_failure()

    async def test_retryable_result_code(self, agent_options: QueryOptions) -> None:
        config = OrchestratorConfig(max_attempts=2, backoff_base=0.0)
        outcome = await Orchestrator(config).run_with_retry(
            _spec("during-execution", agent_options)
        )
        assert outcome.attempts == 2
        assert outcome.failure is not None
        assert outcome.failure.result_code == "error_during_execution"
        assert outcome.failure.transient is True

    async def test_backoff_is_capped(self) -> None:
        config = OrchestratorConfig(backoff_base=1.0, backoff_factor=10.0, backoff_max=5.0)
        assert [config.backoff_delay(n) for n in (1, 2, 3)] == [1.0, 5.0, 5.0]

    async def test_invalid_attempt_count(self, agent_options: QueryOptions) -> None:
        with pytest.raises(ValueError):
            await Orchestrator().run_with_retry(_spec("hi", agent_options), max_attempts=0)


# ------------------------------------------------------------------ #
# Pipeline
# ------------------------------------------------------------------ #


class TestPipeline:
    async def test_context_flows_between_stages(self, agent_options: QueryOptions) -> None:
        result = await Orchestrator().run_pipeline(
            [_spec("first", agent_options), _spec("second", agent_options)]
        )

        assert result.succeeded
        assert result.failed_stage is None
        assert len(result.stages) == 2
        second = result.stages[1]
        assert second.prompt == (
            "Context from previous step:\necho: first\n\nNow:\nsecond"
        )
        assert result.final is second

    async def test_context_truncated(self, agent_options: QueryOptions) -> None:
        config = OrchestratorConfig(context_chars=4)
        result = await Orchestrator(config).run_pipeline(
            [_spec("first", agent_options), _spec("second", agent_options)]
        )
        assert result.stages[1].prompt.startswith("Context from previous step:\necho\n\n")

    async def test_context_disabled(self, agent_options: QueryOptions) -> None:
        config = OrchestratorConfig(use_context=False)
        result = await Orchestrator(config).run_pipeline(
            [_spec("first", agent_options), _spec("second", agent_options)]
        )
        assert result.stages[1].prompt == "second"

    async def test_stage_one_failure_stops_pipeline(
        self, agent_options: QueryOptions
    ) -> None:
        orch = Orchestrator()
        result = await orch.run_pipeline(
            [_spec("crash", agent_options), _spec("never", agent_options)]
        )

        assert not result.succeeded
        assert result.failed_stage == 0
        assert result.failure is not None
        assert result.failure.kind is FailureKind.EXIT
        assert len(result.stages) == 1
        assert all(e.spec.prompt != "never" for e in orch.table)

    async def test_continue_after_failed_stage(self, agent_options: QueryOptions) -> None:
        config = OrchestratorConfig(stop_on_error=False)
        result = await Orchestrator(config).run_pipeline(
            [
                _spec("first", agent_options),
                _spec("crash", agent_options),
                _spec("third", agent_options),
            ]
        )

        assert [s.succeeded for s in result.stages] == [True, False, True]
        assert not result.succeeded
        assert result.failed_stage == 1
        assert result.failure is not None
        assert result.failure.kind is FailureKind.EXIT
        # The failed stage produced no text, so the last stage runs bare.
        assert result.stages[2].prompt == "third"

    async def test_run_returns_every_stage_when_continuing(
        self, agent_options: QueryOptions
    ) -> None:
        orch = Orchestrator(OrchestratorConfig(stop_on_error=False))
        outcomes = await orch.run(
            [_spec("crash", agent_options), _spec("second", agent_options)],
            "pipeline",
        )
        assert [o.succeeded for o in outcomes] == [False, True]


# ------------------------------------------------------------------ #
# Cancellation
# ------------------------------------------------------------------ #


class TestCancellation:
    async def test_cancel_single_task(self, agent_options: QueryOptions) -> None:
        orch = Orchestrator()
        run = asyncio.create_task(
            orch.run_parallel([_spec("sleep", agent_options), _spec("ok", agent_options)])
        )
        await _wait_until(_sleeping(orch))
        sleeper = next(e for e in orch.table if e.spec.prompt == "sleep")

        assert await orch.cancel(sleeper.task_id) is True
        outcomes = await asyncio.wait_for(run, timeout=10)

        assert outcomes[0].failure is not None
        assert outcomes[0].failure.kind is FailureKind.CANCELLED
        assert [m.kind for m in outcomes[0].messages] == [MessageKind.SYSTEM_INIT]
        assert outcomes[1].succeeded
        assert sleeper.stream is not None
        assert sleeper.stream.session.state is SessionState.TERMINATED

    async def test_cancel_settled_task_returns_false(
        self, agent_options: QueryOptions
    ) -> None:
        orch = Orchestrator()
        outcomes = await orch.run_parallel([_spec("ok", agent_options)])
        assert await orch.cancel(outcomes[0].task_id) is False
        assert orch.table.get(outcomes[0].task_id).outcome == outcomes[0]

    async def test_cancel_unknown_task(self) -> None:
        with pytest.raises(KeyError):
            await Orchestrator().cancel("nope")

    async def test_cancel_all_keeps_completed(self, agent_options: QueryOptions) -> None:
        orch = Orchestrator(OrchestratorConfig(max_concurrent=2))
        run = asyncio.create_task(
            orch.run_parallel(
                [
                    _spec("done", agent_options),
                    _spec("sleep", agent_options),
                    _spec("sleep", agent_options),
                    _spec("queued", agent_options),
                ]
            )
        )
        await _wait_until(
            lambda: orch.table.get("task-1").is_terminal and _sleeping(orch)()
        )

        cancelled = await orch.cancel_all()
        outcomes = await asyncio.wait_for(run, timeout=10)

        assert outcomes[0].succeeded
        assert cancelled >= 2
        for outcome in outcomes[1:]:
            assert outcome.failure is not None
            assert outcome.failure.kind is FailureKind.CANCELLED
        assert orch.table.active() == []


# ------------------------------------------------------------------ #
# Dispatch, table and recording
# ------------------------------------------------------------------ #


class TestRunDispatch:
    async def test_modes(self, agent_options: QueryOptions) -> None:
        orch = Orchestrator()
        specs = [_spec("a", agent_options), _spec("b", agent_options)]
        assert len(await orch.run(specs, ExecutionMode.PARALLEL)) == 2
        assert len(await orch.run(specs, "pipeline")) == 2
        assert len(await orch.run(specs[:1], "retry")) == 1

    async def test_retry_mode_needs_one_query(self, agent_options: QueryOptions) -> None:
        with pytest.raises(InvalidQueryError):
            await Orchestrator().run(
                [_spec("a", agent_options), _spec("b", agent_options)], "retry"
            )

    async def test_independent_tables(self, agent_options: QueryOptions) -> None:
        first, second = Orchestrator(), Orchestrator()
        await asyncio.gather(
            first.run_parallel([_spec("a", agent_options)]),
            second.run_parallel([_spec("b", agent_options), _spec("c", agent_options)]),
        )
        assert len(first.table) == 1
        assert len(second.table) == 2


class TestSessionTable:
    def test_ids_and_lookup(self) -> None:
        table = SessionTable()
        first = table.add(QuerySpec(prompt="a"), 0, ExecutionMode.PARALLEL)
        named = table.add(QuerySpec(prompt="b", name="review"), 1, ExecutionMode.PARALLEL)
        assert first.task_id == "task-1"
        assert named.task_id == "review-2"
        assert table.get("review-2") is named
        assert "task-1" in table
        assert len(table) == 2

    def test_valid_transitions(self) -> None:
        table = SessionTable()
        entry = table.add(QuerySpec(prompt="a"), 0, ExecutionMode.RETRY)
        for state in (
            TaskState.RUNNING,
            TaskState.RETRYING,
            TaskState.RUNNING,
            TaskState.SUCCEEDED,
        ):
            table.transition(entry.task_id, state)
        assert entry.is_terminal
        assert table.active() == []

    def test_terminal_states_are_final(self) -> None:
        table = SessionTable()
        entry = table.add(QuerySpec(prompt="a"), 0, ExecutionMode.PARALLEL)
        table.transition(entry.task_id, TaskState.FAILED)
        with pytest.raises(SessionStateError):
            table.transition(entry.task_id, TaskState.RUNNING)

    def test_pending_cannot_succeed(self) -> None:
        table = SessionTable()
        entry = table.add(QuerySpec(prompt="a"), 0, ExecutionMode.PARALLEL)
        with pytest.raises(SessionStateError):
            table.transition(entry.task_id, TaskState.SUCCEEDED)


class TestRecording:
    async def test_lifecycle_events(self, agent_options: QueryOptions, tmp_path: Path) -> None:
        recorder = RunRecorder("run", "hash", runs_dir=tmp_path, record_messages=True)
        orch = Orchestrator(recorder=recorder)
        await orch.run_parallel([_spec("ok", agent_options), _spec("crash", agent_options)])
        recorder.end("complete", succeeded=1, failed=1)

        events = [
            json.loads(line)
            for line in recorder.run_file.read_text(encoding="utf-8").splitlines()
        ]
        types = [e["type"] for e in events]
        assert types[0] == "run_start"
        assert types[-1] == "run_end"
        assert types.count("task_start") == 2
        assert types.count("task_attempt") == 2
        assert types.count("task_done") == 2
        assert "task_message" in types
        errors = [e for e in events if e["type"] == "error"]
        assert len(errors) == 1
        assert errors[0]["kind"] == "exit"
        assert [e["seq"] for e in events] == list(range(len(events)))
