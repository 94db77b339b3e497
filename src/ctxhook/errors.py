"""Error taxonomy for ctxhook.

Retrieval and loading errors are recovered locally with a degraded result.
Dispatcher and pipeline errors are logged with their stage/command context.
Nothing here is allowed to take down the host assistant process.
"""


class CtxhookError(Exception):
    """Base class for every ctxhook error."""


class ConfigError(CtxhookError):
    """Invalid configuration (unknown stage, bad binding, unreadable YAML)."""


class NotFound(CtxhookError):
    """A context unit id is not present in the registry."""

    def __init__(self, unit_id: str):
        super().__init__(f"Context unit not found: {unit_id}")
        self.unit_id = unit_id


class DuplicateId(CtxhookError):
    """A unit id is already registered with different content."""

    def __init__(self, unit_id: str, existing_path: str, new_path: str):
        super().__init__(
            f"Duplicate context unit id '{unit_id}': {existing_path} conflicts with {new_path}"
        )
        self.unit_id = unit_id
        self.existing_path = existing_path
        self.new_path = new_path


class BudgetExceeded(CtxhookError):
    """The byte budget ran out before every candidate was admitted.

    This is a partial success. Loaders report it alongside the usable bundle
    instead of raising it.
    """

    def __init__(self, partial, rejected: list[str]):
        super().__init__(
            f"Context budget exhausted: {len(rejected)} candidate(s) not admitted"
        )
        self.partial = partial
        self.rejected = rejected


class CommandNotFound(CtxhookError):
    """A command reference did not resolve to an executable command unit."""

    def __init__(self, command_ref: str, reason: str = "no command unit with that id or name"):
        super().__init__(f"Command not found: {command_ref} ({reason})")
        self.command_ref = command_ref


class TimedOut(CtxhookError):
    """A dispatched command ran past its timeout and was killed."""

    def __init__(self, command_ref: str, timeout: float):
        super().__init__(f"Command '{command_ref}' timed out after {timeout:g}s")
        self.command_ref = command_ref
        self.timeout = timeout


class StageAbort(CtxhookError):
    """A blocking hook failed under an 'abort' policy.

    Only the remaining hooks of that stage are skipped; the session carries on.
    """

    def __init__(self, stage: str, command_ref: str, reason: str):
        super().__init__(f"Stage {stage} aborted by '{command_ref}': {reason}")
        self.stage = stage
        self.command_ref = command_ref
        self.reason = reason


class LifecycleError(CtxhookError):
    """A stage was requested out of lifecycle order."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Illegal lifecycle transition {current} -> {requested}")
        self.current = current
        self.requested = requested
