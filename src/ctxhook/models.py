"""Data models for ctxhook context units, bundles, hooks and invocations."""

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class UnitKind(str, Enum):
    DOCUMENT = "document"
    AGENT = "agent"
    COMMAND = "command"


class HookStage(str, Enum):
    """The seven lifecycle points a hook can be bound to."""

    SESSION_START = "SessionStart"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    PRE_COMPACT = "PreCompact"
    SUBAGENT_STOP = "SubagentStop"
    STOP = "Stop"


# Pipeline state before SessionStart and after Stop
IDLE = "Idle"

FailurePolicy = Literal["abort", "warn-and-continue"]


class ContextUnit(BaseModel):
    """An addressable piece of context: a document, an agent definition or a command."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Path-derived identifier, stable across rebuilds")
    kind: UnitKind = UnitKind.DOCUMENT
    path: str = Field(..., description="Absolute path of the source file")
    name: str = Field(..., description="Front-matter name or file stem")
    description: str = ""
    tags: frozenset[str] = Field(default_factory=frozenset)
    tokens: tuple[str, ...] = Field(default=(), description="Derived scoring tokens, in document order")
    body: str = ""
    size_bytes: int = Field(default=0, ge=0)
    content_hash: str = ""
    last_modified: datetime = Field(default_factory=lambda: datetime.now(UTC))
    run: tuple[str, ...] = Field(default=(), description="Argv template for command units")
    timeout: float | None = Field(None, gt=0, description="Per-command timeout in seconds")

    def to_context(self) -> str:
        """Format the unit for injection into the assistant context."""
        header = f"## {self.name} ({self.kind.value}: {self.id})"
        if self.description:
            header += f"\n_{self.description}_"
        return f"{header}\n\n{self.body.strip()}"


class RegistryDelta(BaseModel):
    """Change set emitted by the registry after a write."""

    added: list[ContextUnit] = Field(default_factory=list)
    updated: list[ContextUnit] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list, description="Ids rejected as DuplicateId during rescan")

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.updated or self.removed)

    def summary(self) -> str:
        return (
            f"added={len(self.added)} updated={len(self.updated)} "
            f"removed={len(self.removed)} conflicts={len(self.conflicts)}"
        )


class RankedCandidate(BaseModel):
    """A scored unit for one query. Never persisted."""

    unit_id: str
    score: float
    matched_terms: frozenset[str] = Field(default_factory=frozenset)
    kind: UnitKind = UnitKind.DOCUMENT
    size_bytes: int = 0
    tag_matches: int = 0
    overlap: float = 0.0


class BundleEntry(BaseModel):
    unit_id: str
    kind: UnitKind
    size_bytes: int
    score: float = 0.0


class ContextBundle(BaseModel):
    """The ordered set of units currently injected for a session."""

    budget: int = Field(..., ge=0, description="Byte budget for the whole bundle")
    entries: list[BundleEntry] = Field(default_factory=list)

    @property
    def unit_ids(self) -> list[str]:
        return [entry.unit_id for entry in self.entries]

    @property
    def size_used(self) -> int:
        return sum(entry.size_bytes for entry in self.entries)

    @property
    def agent_id(self) -> str | None:
        for entry in self.entries:
            if entry.kind == UnitKind.AGENT:
                return entry.unit_id
        return None

    def __contains__(self, unit_id: object) -> bool:
        return any(entry.unit_id == unit_id for entry in self.entries)

    def __len__(self) -> int:
        return len(self.entries)


class HookBinding(BaseModel):
    """One hook bound to a lifecycle stage."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    stage: HookStage
    command: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("command", "commandRef", "command_ref"),
        description="Command id or name, resolved through the index",
    )
    blocking: bool = True
    on_failure: FailurePolicy = Field(
        default="warn-and-continue",
        validation_alias=AliasChoices("on_failure", "onFailure"),
    )
    args: tuple[str, ...] = ()
    timeout: float | None = Field(None, gt=0)
    output_path: str | None = Field(None, description="File this hook writes, checked for conflicts")


class CommandInvocation(BaseModel):
    """Record of one command dispatch. Logged, then discarded."""

    command_ref: str
    unit_id: str | None = None
    args: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    duration_ms: int = 0
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    error: str | None = Field(None, description="Spawn failure, if the child never ran")

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    @property
    def outcome(self) -> str:
        if self.timed_out:
            return "timed_out"
        return {0: "success", 1: "user_error", 2: "system_error"}.get(self.exit_code, "other")

    def describe(self) -> str:
        if self.timed_out:
            return f"{self.command_ref} timed out after {self.duration_ms}ms"
        if self.error:
            return f"{self.command_ref} failed to start: {self.error}"
        return f"{self.command_ref} exited {self.exit_code} ({self.outcome})"
