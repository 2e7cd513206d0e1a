"""Pydantic v2 models for query options, orchestration settings and run files."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from agentstream.constants import DEFAULT_EXECUTABLE, DEFAULT_GRACE_PERIOD

ExecutionModeName = Literal["parallel", "pipeline", "retry"]

PermissionMode = Literal["default", "acceptEdits", "bypassPermissions", "plan"]


class QueryOptions(BaseModel):
    """Options for one agent invocation.

    Every field is optional; unset fields are omitted from the command line.
    """

    model_config = ConfigDict(extra="forbid")

    executable: str = Field(
        default=DEFAULT_EXECUTABLE,
        description="Agent executable name or path",
    )
    executable_args: list[str] = Field(
        default_factory=list,
        description="Arguments placed before the agent flags (e.g. a script path)",
    )
    cwd: str | None = Field(
        default=None,
        description="Working directory for the subprocess",
    )
    max_turns: int | None = Field(
        default=None,
        ge=1,
        description="Maximum number of conversation turns",
    )
    system_prompt: str | None = Field(
        default=None,
        description="Replacement system prompt",
    )
    append_system_prompt: str | None = Field(
        default=None,
        description="Text appended to the default system prompt",
    )
    allowed_tools: list[str] | None = Field(
        default=None,
        description="Tool allow-list",
    )
    disallowed_tools: list[str] | None = Field(
        default=None,
        description="Tool deny-list",
    )
    permission_mode: PermissionMode | None = Field(
        default=None,
        description="Permission handling mode",
    )
    permission_prompt_tool: str | None = Field(
        default=None,
        description="Tool used to answer permission prompts",
    )
    model: str | None = Field(
        default=None,
        description="Model identifier passed to the agent",
    )
    mcp_config: str | None = Field(
        default=None,
        description="Path to an MCP server configuration file",
    )
    resume: str | None = Field(
        default=None,
        description="Session id to resume",
    )
    continue_session: bool = Field(
        default=False,
        description="Continue the most recent conversation",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Environment variable overrides",
    )
    extra_args: list[str] = Field(
        default_factory=list,
        description="Additional raw flags appended after the generated ones",
    )
    grace_period: float = Field(
        default=DEFAULT_GRACE_PERIOD,
        ge=0,
        description="Seconds between SIGTERM and SIGKILL on termination",
    )

    @model_validator(mode="after")
    def _validate_session_flags(self) -> QueryOptions:
        if self.resume is not None and self.continue_session:
            msg = "'resume' and 'continue_session' are mutually exclusive"
            raise ValueError(msg)
        return self

    def to_args(self) -> list[str]:
        """Translate the options into agent command-line flags."""
        args: list[str] = []
        if self.max_turns is not None:
            args.extend(["--max-turns", str(self.max_turns)])
        if self.system_prompt is not None:
            args.extend(["--system-prompt", self.system_prompt])
        if self.append_system_prompt is not None:
            args.extend(["--append-system-prompt", self.append_system_prompt])
        if self.allowed_tools:
            args.extend(["--allowedTools", " ".join(self.allowed_tools)])
        if self.disallowed_tools:
            args.extend(["--disallowedTools", " ".join(self.disallowed_tools)])
        if self.mcp_config is not None:
            args.extend(["--mcp-config", self.mcp_config])
        if self.permission_prompt_tool is not None:
            args.extend(["--permission-prompt-tool", self.permission_prompt_tool])
        if self.permission_mode is not None:
            args.extend(["--permission-mode", self.permission_mode])
        if self.model is not None:
            args.extend(["--model", self.model])
        return args


class OrchestratorConfig(BaseModel):
    """Timeouts, retry policy and concurrency limits for an orchestration run."""

    model_config = ConfigDict(extra="forbid")

    max_concurrent: int | None = Field(
        default=None,
        ge=1,
        description="Maximum concurrent sessions (unbounded when unset)",
    )
    timeout: float | None = Field(
        default=None,
        gt=0,
        description="Per-attempt deadline in seconds",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per task in retry mode, including the first",
    )
    backoff_base: float = Field(
        default=1.0,
        ge=0,
        description="Delay before the first retry, in seconds",
    )
    backoff_factor: float = Field(
        default=2.0,
        ge=1,
        description="Multiplier applied to the delay after each retry",
    )
    backoff_max: float = Field(
        default=60.0,
        ge=0,
        description="Upper bound for a single retry delay",
    )
    fail_fast: bool = Field(
        default=False,
        description="Cancel remaining parallel tasks after the first failure",
    )
    retryable_result_codes: list[str] = Field(
        default_factory=lambda: ["error_during_execution"],
        description="result_error subtypes treated as transient",
    )
    stop_on_error: bool = Field(
        default=True,
        description="Stop a pipeline at the first failed stage instead of running the rest",
    )
    use_context: bool = Field(
        default=True,
        description="Feed each pipeline stage's output into the next prompt",
    )
    context_chars: int = Field(
        default=1000,
        ge=0,
        description="Maximum characters of prior output carried into a stage",
    )

    def backoff_delay(self, attempt: int) -> float:
        """Delay to wait after failed *attempt* (1-indexed)."""
        delay = self.backoff_base * self.backoff_factor ** (attempt - 1)
        return min(delay, self.backoff_max)


class TaskConfig(BaseModel):
    """One task entry in a run file."""

    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(min_length=1, description="Prompt text or path to a prompt file")
    name: str | None = Field(default=None, description="Optional task label")
    options: QueryOptions | None = Field(
        default=None,
        description="Per-task option overrides merged over the run defaults",
    )


class RunConfig(BaseModel):
    """Top-level agentstream.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(description="Config schema version")
    name: str = Field(description="Run name")
    description: str | None = Field(
        default=None,
        description="Human-readable run description",
    )
    mode: ExecutionModeName = Field(
        default="parallel",
        description="Execution mode for the task list",
    )
    defaults: QueryOptions = Field(
        default_factory=QueryOptions,
        description="Options applied to every task",
    )
    orchestrator: OrchestratorConfig = Field(
        default_factory=OrchestratorConfig,
        description="Orchestration settings",
    )
    tasks: list[TaskConfig] = Field(description="Tasks to run (at least one)")

    @model_validator(mode="after")
    def _validate_tasks(self) -> RunConfig:
        if not self.tasks:
            msg = "At least one task must be defined"
            raise ValueError(msg)
        if self.mode == "retry" and len(self.tasks) != 1:
            msg = f"Mode 'retry' runs exactly one task, got {len(self.tasks)}"
            raise ValueError(msg)
        names = [t.name for t in self.tasks if t.name is not None]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            joined = ", ".join(f"'{n}'" for n in duplicates)
            msg = f"Duplicate task names: {joined}"
            raise ValueError(msg)
        return self

    def options_for(self, task: TaskConfig) -> QueryOptions:
        """Merge *task*'s explicitly set options over the run defaults."""
        if task.options is None:
            return self.defaults.model_copy(deep=True)
        overrides = task.options.model_dump(exclude_unset=True)
        merged = self.defaults.model_dump()
        if "env" in overrides:
            overrides["env"] = {**merged["env"], **overrides["env"]}
        merged.update(overrides)
        return QueryOptions.model_validate(merged)
