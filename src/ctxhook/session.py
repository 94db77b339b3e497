"""Session orchestration: hook stages, classification and bundle loading.

Runtime owns the process-wide, read-mostly parts (registry, index, dispatcher,
telemetry). A Session owns one conversation's lifecycle state and bundle; no
two sessions share mutable state.
"""

from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from .classifier import IntentClassifier
from .config import CtxhookConfig
from .dispatcher import CommandDispatcher
from .errors import NotFound
from .indexer import Indexer
from .loader import AgentSelector, LoadResult
from .logging_config import get_logger
from .models import ContextBundle, HookStage, RankedCandidate, RegistryDelta
from .notifier import Notifier
from .pipeline import HookPipeline, StageResult, ToolOutcome
from .registry import ContextRegistry
from .session_state import SessionState, SessionStateStore
from .telemetry import TelemetryLog

logger = get_logger("session")


class Runtime:
    """Shared components built once per process from a CtxhookConfig."""

    def __init__(self, config: CtxhookConfig):
        self.config = config
        self.registry = ContextRegistry(config.include)
        self.indexer = Indexer(self.registry)
        self.classifier = IntentClassifier(self.registry, self.indexer, config.classifier)
        self.dispatcher = CommandDispatcher(
            self.registry,
            self.indexer,
            config.dispatcher,
            config_dir=config.config_dir,
        )
        self.notifier = Notifier(config.notifier)
        self.telemetry = TelemetryLog(config.resolved_telemetry_path)
        self.state_store = SessionStateStore(config.resolved_state_dir)

    @classmethod
    def from_config(cls, config: CtxhookConfig) -> "Runtime":
        """Build a runtime and run the startup rescan."""
        runtime = cls(config)
        runtime.rescan()
        return runtime

    def rescan(self) -> RegistryDelta:
        return self.registry.rescan(self.config.roots)

    def session(
        self,
        session_id: str | None = None,
        strict: bool = True,
        working_dir: Path | None = None,
    ) -> "Session":
        """Open a session, resuming its persisted state if there is any."""
        session_id = session_id or uuid4().hex[:12]
        state = self.state_store.load(session_id, self.config.loader.budget_bytes)
        return Session(self, state, strict=strict, working_dir=working_dir)

    def shutdown(self) -> None:
        """Drop the corpus; the next runtime starts with a fresh rescan."""
        self.registry.clear()


@dataclass
class PromptContext:
    """What a prompt submission produced."""

    prompt: str
    stage: StageResult
    candidates: list[RankedCandidate] = field(default_factory=list)
    load: LoadResult | None = None
    text: str = ""

    @property
    def bundle(self) -> ContextBundle | None:
        return self.load.bundle if self.load else None


class Session:
    def __init__(
        self,
        runtime: Runtime,
        state: SessionState,
        strict: bool = True,
        working_dir: Path | None = None,
    ):
        self.runtime = runtime
        self.state = state
        self.selector = AgentSelector()
        self.pipeline = HookPipeline(
            runtime.dispatcher,
            runtime.config.hooks,
            session_id=state.session_id,
            telemetry=runtime.telemetry,
            state=state.pipeline_state,
            strict=strict,
            working_dir=working_dir,
        )

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def bundle(self) -> ContextBundle:
        return self.state.bundle

    async def start(self, payload: Mapping | None = None) -> StageResult:
        result = await self.pipeline.run_stage(HookStage.SESSION_START, payload)
        self._after_stage(result)
        return result

    async def submit_prompt(
        self,
        prompt: str,
        payload: Mapping | None = None,
        now: datetime | None = None,
    ) -> PromptContext:
        """Run UserPromptSubmit hooks, then classify and load context for `prompt`."""
        stage = await self.pipeline.run_stage(
            HookStage.USER_PROMPT_SUBMIT, {**(payload or {}), "prompt": prompt}
        )
        self.state.prompt_count += 1

        candidates = self.runtime.classifier.classify(prompt, now=now)
        load = self.selector.load(candidates, self.state.bundle, self.runtime.config.loader.budget_bytes)
        self.state.bundle = load.bundle

        if load.budget_exceeded:
            logger.info(f"[{self.session_id}] {load.condition}")
            self.runtime.notifier.notify(
                f"{len(load.condition.rejected)} relevant context unit(s) did not fit the budget",
                title="Context budget exceeded",
            )
        self._after_stage(stage)

        return PromptContext(
            prompt=prompt,
            stage=stage,
            candidates=candidates,
            load=load,
            text=self.render(load.admitted),
        )

    @asynccontextmanager
    async def tool_call(self, tool_name: str, tool_input: Any = None) -> AsyncIterator[ToolOutcome]:
        try:
            async with self.pipeline.tool_call(tool_name, tool_input) as outcome:
                yield outcome
        finally:
            self.save()

    async def run_tool(self, tool_name: str, tool: Callable[[], Any], tool_input: Any = None) -> ToolOutcome:
        outcome = await self.pipeline.run_tool(tool_name, tool, tool_input)
        self.save()
        return outcome

    async def run_stage(self, stage: HookStage | str, payload: Mapping | None = None) -> StageResult:
        """Run a single stage by name (used by the host hook entry point)."""
        result = await self.pipeline.run_stage(stage, payload)
        if result.stage == HookStage.STOP:
            await self._teardown()
        else:
            self._after_stage(result)
        return result

    async def compact(self, payload: Mapping | None = None) -> StageResult:
        result = await self.pipeline.run_stage(HookStage.PRE_COMPACT, payload)
        self._after_stage(result)
        return result

    async def subagent_stop(self, payload: Mapping | None = None) -> StageResult:
        result = await self.pipeline.run_stage(HookStage.SUBAGENT_STOP, payload)
        self._after_stage(result)
        return result

    async def stop(self, payload: Mapping | None = None) -> StageResult:
        """Run Stop hooks and tear the session down."""
        await self.pipeline.drain()
        result = await self.pipeline.run_stage(HookStage.STOP, payload)
        await self._teardown()
        return result

    def render(self, unit_ids: list[str] | None = None) -> str:
        """Render units (default: the whole bundle) as context text."""
        ids = self.state.bundle.unit_ids if unit_ids is None else unit_ids
        sections = []
        for unit_id in ids:
            try:
                sections.append(self.runtime.registry.get(unit_id).to_context())
            except NotFound:
                logger.warning(f"[{self.session_id}] Bundle references missing unit {unit_id}")
        return "\n\n".join(sections)

    def save(self) -> None:
        self.state.pipeline_state = self.pipeline.state
        self.runtime.state_store.save(self.state)

    def _after_stage(self, result: StageResult) -> None:
        if result.aborted:
            self.runtime.notifier.notify(str(result.aborted), title=f"{result.stage.value} hook aborted")
        self.save()

    async def _teardown(self) -> None:
        await self.pipeline.drain()
        await self.runtime.telemetry.end_session(self.session_id)
        await self.runtime.notifier.drain()
        self.state.bundle = ContextBundle(budget=self.state.bundle.budget)
        self.runtime.state_store.delete(self.session_id)
        logger.info(f"[{self.session_id}] Session stopped after {self.state.prompt_count} prompt(s)")
