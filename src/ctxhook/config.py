"""Configuration for ctxhook components.

Every component takes its settings from a CtxhookConfig built once at process
start. Nothing reads environment variables after that, apart from locating the
config file itself.

Example ctxhook.yaml:

    roots: [context, ~/.ctxhook/shared]
    loader:
      budget_bytes: 16384
    classifier:
      min_score: 0.2
      weights: {tag: 1.0, overlap: 1.0, recency: 0.1}
    notifier:
      url: http://localhost:8888/notify
    hooks:
      SessionStart:
        - command: load-project
      PostToolUse:
        - command: format-check
          blocking: true
          on_failure: abort
        - command: audit-log
          blocking: false
          output_path: logs/audit.jsonl
"""

import os
from collections import defaultdict
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError
from .models import HookBinding, HookStage

DEFAULT_HOME = "~/.ctxhook"
CONFIG_FILENAME = "ctxhook.yaml"
DEFAULT_INCLUDE = ("*.md", "*.markdown", "*.txt")


def get_home_dir() -> Path:
    """Get the ctxhook home directory, respecting the CTXHOOK_HOME env var."""
    return Path(os.path.expanduser(os.environ.get("CTXHOOK_HOME", DEFAULT_HOME)))


def default_config_path() -> Path:
    """Config file location: $CTXHOOK_CONFIG, else <home>/ctxhook.yaml."""
    explicit = os.environ.get("CTXHOOK_CONFIG")
    if explicit:
        return Path(os.path.expanduser(explicit))
    return get_home_dir() / CONFIG_FILENAME


class ScoringWeights(BaseModel):
    """Relative weights of the three relevance signals."""

    tag: float = Field(default=1.0, ge=0.0, description="Per exact tag match")
    overlap: float = Field(default=1.0, ge=0.0, description="Matched query tokens / query tokens")
    recency: float = Field(default=0.1, ge=0.0, description="Boost for recently modified units")
    recency_half_life_days: float = Field(default=30.0, gt=0.0)


class ClassifierConfig(BaseModel):
    min_score: float = Field(default=0.1, ge=0.0, description="Candidates must score above this")
    max_candidates: int = Field(default=20, ge=1)
    weights: ScoringWeights = Field(default_factory=ScoringWeights)


class LoaderConfig(BaseModel):
    budget_bytes: int = Field(default=24 * 1024, ge=0)


class DispatcherConfig(BaseModel):
    default_timeout: float = Field(default=30.0, gt=0)
    max_output_bytes: int = Field(default=64 * 1024, ge=0, description="Captured per stream")


class NotifierConfig(BaseModel):
    url: str | None = None
    timeout: float = Field(default=2.0, gt=0)


class CtxhookConfig(BaseModel):
    """Top-level configuration passed to every component."""

    model_config = ConfigDict(extra="forbid")

    config_dir: Path = Field(default_factory=get_home_dir)
    roots: list[Path] = Field(default_factory=list, description="Directories scanned for context units")
    include: list[str] = Field(default_factory=lambda: list(DEFAULT_INCLUDE))
    state_dir: Path | None = None
    telemetry_path: Path | None = None
    log_dir: Path | None = None
    log_level: str = "INFO"
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    loader: LoaderConfig = Field(default_factory=LoaderConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    hooks: dict[HookStage, list[HookBinding]] = Field(default_factory=dict)

    def bindings_for(self, stage: HookStage) -> list[HookBinding]:
        return list(self.hooks.get(stage, []))

    @property
    def resolved_state_dir(self) -> Path:
        return self.state_dir or self.config_dir / "state"

    @property
    def resolved_telemetry_path(self) -> Path:
        return self.telemetry_path or self.config_dir / "telemetry.db"

    @property
    def resolved_log_dir(self) -> Path:
        return self.log_dir or self.config_dir / "logs"


def parse_hooks(raw: object) -> dict[HookStage, list[HookBinding]]:
    """Parse the declarative stage -> bindings mapping.

    Unknown stage names and malformed bindings are configuration errors.
    """
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("'hooks' must map stage names to lists of bindings")

    valid = {stage.value: stage for stage in HookStage}
    hooks: dict[HookStage, list[HookBinding]] = {}
    for stage_name, entries in raw.items():
        stage = valid.get(stage_name)
        if stage is None:
            raise ConfigError(
                f"Unknown hook stage '{stage_name}'. Valid stages: {', '.join(valid)}"
            )
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise ConfigError(f"Bindings for {stage_name} must be a list")
        bindings = []
        for position, entry in enumerate(entries):
            if isinstance(entry, str):
                entry = {"command": entry}
            if not isinstance(entry, dict):
                raise ConfigError(f"{stage_name}[{position}] must be a mapping or a command name")
            try:
                bindings.append(HookBinding(stage=stage, **entry))
            except (ValidationError, TypeError) as e:
                raise ConfigError(f"Invalid binding {stage_name}[{position}]: {e}") from e
        hooks[stage] = bindings
    validate_bindings(hooks)
    return hooks


def validate_bindings(hooks: dict[HookStage, list[HookBinding]]) -> None:
    """Reject non-blocking hooks in one stage that declare the same output path."""
    for stage, bindings in hooks.items():
        writers: dict[str, list[str]] = defaultdict(list)
        for binding in bindings:
            if not binding.blocking and binding.output_path:
                key = os.path.normpath(os.path.expanduser(binding.output_path))
                writers[key].append(binding.command)
        for path, commands in writers.items():
            if len(commands) > 1:
                raise ConfigError(
                    f"{stage.value}: non-blocking hooks {', '.join(commands)} "
                    f"all write to {path}; make them blocking or use separate outputs"
                )


def load_config(path: str | Path | None = None) -> CtxhookConfig:
    """Load configuration from YAML.

    A missing file yields defaults rooted at the file's directory. Relative
    paths inside the file are resolved against that directory.
    """
    config_path = Path(os.path.expanduser(str(path))) if path else default_config_path()
    config_dir = config_path.parent

    if not config_path.exists():
        return CtxhookConfig(config_dir=config_dir)

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {config_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {config_path} must contain a mapping")

    hooks = parse_hooks(raw.pop("hooks", None))

    for key in ("state_dir", "telemetry_path", "log_dir"):
        if raw.get(key):
            raw[key] = _resolve(config_dir, raw[key])
    raw["roots"] = [_resolve(config_dir, root) for root in raw.get("roots") or []]

    try:
        return CtxhookConfig(config_dir=config_dir, hooks=hooks, **raw)
    except (ValidationError, TypeError) as e:
        raise ConfigError(f"Invalid config {config_path}: {e}") from e


def _resolve(base: Path, value: str | Path) -> Path:
    candidate = Path(os.path.expanduser(str(value)))
    if not candidate.is_absolute():
        candidate = base / candidate
    return candidate
