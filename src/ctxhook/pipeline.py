"""Lifecycle hook pipeline.

A session moves through the lifecycle graph below; each stage runs its bound
hooks in registration order. Blocking hooks run one after another (later hooks
may read files written by earlier ones). Non-blocking hooks are dispatched as
background tasks and only their outcome is recorded.

    Idle -> SessionStart -> UserPromptSubmit <-> (PreToolUse -> PostToolUse)*
         -> {PreCompact, SubagentStop}* -> Stop -> Idle
"""

import asyncio
import inspect
import time
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import networkx as nx

from .dispatcher import CommandDispatcher
from .errors import CommandNotFound, ConfigError, LifecycleError, StageAbort
from .logging_config import get_logger
from .models import IDLE, CommandInvocation, HookBinding, HookStage
from .telemetry import TelemetryLog

logger = get_logger("pipeline")

_S = HookStage

LIFECYCLE_EDGES: dict[str, list[str]] = {
    IDLE: [_S.SESSION_START.value],
    _S.SESSION_START.value: [_S.USER_PROMPT_SUBMIT.value, _S.STOP.value],
    _S.USER_PROMPT_SUBMIT.value: [
        _S.USER_PROMPT_SUBMIT.value,
        _S.PRE_TOOL_USE.value,
        _S.PRE_COMPACT.value,
        _S.SUBAGENT_STOP.value,
        _S.STOP.value,
    ],
    _S.PRE_TOOL_USE.value: [_S.POST_TOOL_USE.value],
    _S.POST_TOOL_USE.value: [
        _S.PRE_TOOL_USE.value,
        _S.USER_PROMPT_SUBMIT.value,
        _S.PRE_COMPACT.value,
        _S.SUBAGENT_STOP.value,
        _S.STOP.value,
    ],
    _S.PRE_COMPACT.value: [
        _S.PRE_COMPACT.value,
        _S.SUBAGENT_STOP.value,
        _S.USER_PROMPT_SUBMIT.value,
        _S.STOP.value,
    ],
    _S.SUBAGENT_STOP.value: [
        _S.SUBAGENT_STOP.value,
        _S.PRE_COMPACT.value,
        _S.USER_PROMPT_SUBMIT.value,
        _S.STOP.value,
    ],
    _S.STOP.value: [IDLE],
}


def build_lifecycle() -> nx.DiGraph:
    """The allowed state transitions as a directed graph."""
    graph = nx.DiGraph()
    for source, targets in LIFECYCLE_EDGES.items():
        for target in targets:
            graph.add_edge(source, target)
    return graph


LIFECYCLE = build_lifecycle()


def coerce_stage(stage: HookStage | str) -> HookStage:
    """Map a stage name to HookStage. Unknown names are configuration errors."""
    try:
        return HookStage(stage)
    except ValueError:
        valid = ", ".join(s.value for s in HookStage)
        raise ConfigError(f"Unknown hook stage '{stage}'. Valid stages: {valid}") from None


@dataclass
class HookOutcome:
    """What happened to one bound hook."""

    binding: HookBinding
    invocation: CommandInvocation | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.invocation is None or not self.invocation.ok

    @property
    def reason(self) -> str:
        if self.error:
            return self.error
        if self.invocation is not None:
            return self.invocation.describe()
        return "not run"


@dataclass
class StageResult:
    stage: HookStage
    outcomes: list[HookOutcome] = field(default_factory=list)
    aborted: StageAbort | None = None
    skipped: list[str] = field(default_factory=list)
    background: int = 0
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.aborted is None and not any(outcome.failed for outcome in self.outcomes)

    @property
    def output(self) -> str:
        """Concatenated stdout of the blocking hooks that succeeded."""
        return "\n".join(
            outcome.invocation.stdout.strip()
            for outcome in self.outcomes
            if outcome.invocation is not None and outcome.invocation.ok and outcome.invocation.stdout.strip()
        )


@dataclass
class ToolOutcome:
    """Result of a tool call, handed to PostToolUse hooks."""

    tool_name: str
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def fail(self, exc: BaseException) -> None:
        message = str(exc)
        self.error = f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class HookPipeline:
    """Runs lifecycle stages for one session.

    Args:
        dispatcher: Used to resolve and run each hook's command.
        bindings: Stage -> ordered bindings, fixed for the session.
        session_id: Passed to hooks and recorded in telemetry.
        telemetry: Optional invocation log.
        state: Starting lifecycle state (restored sessions resume mid-way).
        strict: Raise LifecycleError on out-of-order stages. When False the
            stage is logged and run anyway; the host owns ordering then.
        working_dir: Working directory for hook commands.
    """

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        bindings: Mapping[HookStage, Sequence[HookBinding]] | None = None,
        session_id: str = "default",
        telemetry: TelemetryLog | None = None,
        state: str = IDLE,
        strict: bool = True,
        working_dir: Path | None = None,
    ):
        self.dispatcher = dispatcher
        self.bindings = {coerce_stage(stage): tuple(items) for stage, items in (bindings or {}).items()}
        self.session_id = session_id
        self.telemetry = telemetry
        self.strict = strict
        self.working_dir = working_dir
        if state not in LIFECYCLE:
            raise ConfigError(f"Unknown lifecycle state '{state}'")
        self._state = state
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()
        self.background_outcomes: list[HookOutcome] = []

    @property
    def state(self) -> str:
        return self._state

    def can_enter(self, stage: HookStage | str) -> bool:
        return LIFECYCLE.has_edge(self._state, coerce_stage(stage).value)

    async def run_stage(self, stage: HookStage | str, payload: Mapping | None = None) -> StageResult:
        """Run every hook bound to `stage`, then settle the lifecycle state.

        Raises:
            ConfigError: Unknown stage name.
            LifecycleError: Out-of-order stage in strict mode.
        """
        stage = coerce_stage(stage)
        async with self._lock:
            self._enter(stage)
            started = time.monotonic()
            result = await self._run_hooks(stage, self._payload(stage, payload))
            result.duration_ms = int((time.monotonic() - started) * 1000)
            if stage == HookStage.STOP:
                self._state = IDLE

        if result.aborted:
            logger.error(f"[{self.session_id}] {result.aborted}; skipped: {', '.join(result.skipped) or 'none'}")
        if self.telemetry is not None:
            await self.telemetry.log_stage(
                self.session_id,
                stage.value,
                result.duration_ms,
                hook_count=len(self.bindings.get(stage, ())),
                abort_reason=str(result.aborted) if result.aborted else None,
            )
        return result

    @asynccontextmanager
    async def tool_call(self, tool_name: str, tool_input: Any = None) -> AsyncIterator[ToolOutcome]:
        """Bracket a tool call with PreToolUse and PostToolUse.

        PostToolUse always runs, and receives the failure when the body raises.
        The exception is re-raised after the hooks have run.

            async with pipeline.tool_call("Bash", {"command": "ls"}) as outcome:
                outcome.result = run_tool()
        """
        await self.run_stage(HookStage.PRE_TOOL_USE, {"tool_name": tool_name, "tool_input": tool_input})
        outcome = ToolOutcome(tool_name=tool_name)
        try:
            yield outcome
        except BaseException as e:
            # Cancellation and interrupts are failures too
            outcome.fail(e)
            raise
        finally:
            await self.run_stage(
                HookStage.POST_TOOL_USE,
                {
                    "tool_name": tool_name,
                    "tool_input": tool_input,
                    "tool_response": outcome.result,
                    "tool_error": outcome.error,
                    "success": outcome.ok,
                },
            )

    async def run_tool(self, tool_name: str, tool: Callable[[], Any], tool_input: Any = None) -> ToolOutcome:
        """Run a sync or async callable as a tool call. Tool failures are captured, not raised."""
        async with self.tool_call(tool_name, tool_input) as outcome:
            try:
                value = tool()
                if inspect.isawaitable(value):
                    value = await value
                outcome.result = value
            except Exception as e:
                outcome.fail(e)
                logger.warning(f"[{self.session_id}] Tool {tool_name} failed: {outcome.error}")
        return outcome

    async def drain(self) -> list[HookOutcome]:
        """Wait for every outstanding non-blocking hook."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        return list(self.background_outcomes)

    # Internals

    def _enter(self, stage: HookStage) -> None:
        if LIFECYCLE.has_edge(self._state, stage.value):
            self._state = stage.value
            return
        if self.strict:
            raise LifecycleError(self._state, stage.value)
        expected = ", ".join(sorted(LIFECYCLE.successors(self._state)))
        logger.warning(
            f"[{self.session_id}] Out-of-order stage {self._state} -> {stage.value} "
            f"(expected one of: {expected}); running anyway"
        )
        self._state = stage.value

    def _payload(self, stage: HookStage, payload: Mapping | None) -> dict:
        return {"session_id": self.session_id, "hook_event_name": stage.value, **(payload or {})}

    async def _run_hooks(self, stage: HookStage, payload: dict) -> StageResult:
        result = StageResult(stage=stage)
        bindings = self.bindings.get(stage, ())

        for position, binding in enumerate(bindings):
            if not binding.blocking:
                task = asyncio.get_running_loop().create_task(self._run_background(stage, binding, payload))
                self._background.add(task)
                task.add_done_callback(self._background.discard)
                result.background += 1
                continue

            outcome = await self._invoke(stage, binding, payload)
            result.outcomes.append(outcome)
            if not outcome.failed:
                continue

            if binding.on_failure == "abort":
                result.aborted = StageAbort(stage.value, binding.command, outcome.reason)
                result.skipped = [later.command for later in bindings[position + 1:]]
                break
            logger.warning(f"[{self.session_id}] {stage.value} hook {binding.command} failed, continuing: {outcome.reason}")

        return result

    async def _run_background(self, stage: HookStage, binding: HookBinding, payload: dict) -> None:
        outcome = await self._invoke(stage, binding, payload)
        self.background_outcomes.append(outcome)
        if outcome.failed:
            logger.warning(f"[{self.session_id}] Background {stage.value} hook {binding.command} failed: {outcome.reason}")

    def output_path(self, binding: HookBinding) -> Path | None:
        """Where a binding's declared output lands, relative paths under the config dir."""
        if not binding.output_path:
            return None
        path = Path(binding.output_path).expanduser()
        if path.is_absolute():
            return path
        base = self.dispatcher.config_dir or self.working_dir or Path.cwd()
        return Path(base) / path

    async def _invoke(self, stage: HookStage, binding: HookBinding, payload: dict) -> HookOutcome:
        env = {"CTXHOOK_SESSION_ID": self.session_id, "CTXHOOK_STAGE": stage.value}
        if binding.output_path:
            env["CTXHOOK_OUTPUT_PATH"] = str(self.output_path(binding))
        try:
            invocation = await self.dispatcher.dispatch(
                binding.command,
                binding.args,
                binding.timeout,
                payload=payload,
                env=env,
                cwd=self.working_dir,
            )
        except CommandNotFound as e:
            logger.error(f"[{self.session_id}] {stage.value} hook unresolved: {e}")
            return HookOutcome(binding=binding, error=str(e))
        except Exception as e:
            logger.exception(f"[{self.session_id}] {stage.value} hook {binding.command} crashed the dispatcher")
            return HookOutcome(binding=binding, error=f"{type(e).__name__}: {e}")

        if self.telemetry is not None:
            await self.telemetry.log_invocation(
                self.session_id, invocation, stage=stage.value, blocking=binding.blocking
            )
        return HookOutcome(binding=binding, invocation=invocation)
