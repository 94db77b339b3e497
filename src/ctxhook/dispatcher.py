"""Command dispatcher: resolve a command reference and run it as a child process.

Exit code convention for every command:
    0  success
    1  user/input error
    2  system error (I/O, permissions, network)

Codes are surfaced verbatim. A timeout is reported separately (timed_out=True,
exit_code=None) and the child's whole process group is killed and reaped.
"""

import asyncio
import json
import os
import signal
import sys
import time
from collections.abc import Mapping, Sequence
from pathlib import Path

from .config import DispatcherConfig
from .errors import CommandNotFound, NotFound, TimedOut
from .indexer import Indexer
from .logging_config import get_logger
from .models import CommandInvocation, ContextUnit, UnitKind
from .registry import ContextRegistry

logger = get_logger("dispatcher")

EXIT_SUCCESS = 0
EXIT_USER_ERROR = 1
EXIT_SYSTEM_ERROR = 2
CONVENTIONAL_EXIT_CODES = frozenset({EXIT_SUCCESS, EXIT_USER_ERROR, EXIT_SYSTEM_ERROR})


class CommandDispatcher:
    """Runs command units with captured output and an enforced timeout."""

    def __init__(
        self,
        registry: ContextRegistry,
        indexer: Indexer,
        config: DispatcherConfig | None = None,
        config_dir: Path | None = None,
        working_dir: Path | None = None,
    ):
        self.registry = registry
        self.indexer = indexer
        self.config = config or DispatcherConfig()
        self.config_dir = config_dir
        self.working_dir = working_dir

    def resolve(self, command_ref: str) -> ContextUnit:
        """Find the command unit for an id or name."""
        unit_id = self.indexer.resolve_command(command_ref)
        if unit_id is None:
            raise CommandNotFound(command_ref)
        try:
            unit = self.registry.get(unit_id)
        except NotFound as e:
            raise CommandNotFound(command_ref, "indexed but no longer registered") from e
        if unit.kind != UnitKind.COMMAND:
            raise CommandNotFound(command_ref, f"{unit_id} is a {unit.kind.value}")
        if not unit.run:
            raise CommandNotFound(command_ref, f"{unit_id} has no 'run' entry")
        return unit

    async def dispatch(
        self,
        command_ref: str,
        args: Sequence[str] = (),
        timeout: float | None = None,
        *,
        payload: Mapping | None = None,
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
        raise_on_timeout: bool = False,
    ) -> CommandInvocation:
        """Run a command and return its invocation record.

        Args:
            command_ref: Command id or name.
            args: Extra arguments appended to the command's run template.
            timeout: Seconds before the child is killed. Falls back to the
                command's own timeout, then the configured default.
            payload: JSON-serializable data written to the child's stdin.
            env: Extra environment variables for the child.
            cwd: Working directory for the child.
            raise_on_timeout: Raise TimedOut instead of returning the record.

        Raises:
            CommandNotFound: If the reference does not resolve to a runnable command.
        """
        unit = self.resolve(command_ref)
        timeout = timeout or unit.timeout or self.config.default_timeout
        argv = self.build_argv(unit, args)
        stdin_data = json.dumps(payload, default=str).encode() if payload is not None else None

        invocation = CommandInvocation(command_ref=command_ref, unit_id=unit.id, args=list(args))
        started = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd or self.working_dir or Path.cwd()),
                env=self._child_env(unit, env),
                start_new_session=True,
            )
        except OSError as e:
            invocation.exit_code = EXIT_SYSTEM_ERROR
            invocation.error = str(e)
            invocation.duration_ms = int((time.monotonic() - started) * 1000)
            logger.error(f"Command {command_ref} ({unit.id}) failed to start: {e}")
            return invocation

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(stdin_data), timeout)
        except asyncio.TimeoutError:
            await _terminate(proc)
            invocation.timed_out = True
            invocation.stderr = f"killed after {timeout:g}s timeout"
        except asyncio.CancelledError:
            await _terminate(proc)
            raise
        else:
            invocation.exit_code = proc.returncode
            invocation.stdout = self._decode(stdout)
            invocation.stderr = self._decode(stderr)

        invocation.duration_ms = int((time.monotonic() - started) * 1000)
        self._log(invocation)

        if invocation.timed_out and raise_on_timeout:
            raise TimedOut(command_ref, timeout)
        return invocation

    def build_argv(self, unit: ContextUnit, args: Sequence[str] = ()) -> list[str]:
        """Expand `{python}` and `{dir}` in the run template and append args."""
        command_dir = str(Path(unit.path).parent)
        argv = [
            part.replace("{python}", sys.executable).replace("{dir}", command_dir)
            for part in unit.run
        ]
        return argv + [str(arg) for arg in args]

    def _child_env(self, unit: ContextUnit, extra: Mapping[str, str] | None) -> dict[str, str]:
        env = dict(os.environ)
        env["CTXHOOK_COMMAND_ID"] = unit.id
        env["CTXHOOK_COMMAND_DIR"] = str(Path(unit.path).parent)
        if self.config_dir is not None:
            env["CTXHOOK_CONFIG_DIR"] = str(self.config_dir)
        if extra:
            env.update({key: str(value) for key, value in extra.items()})
        return env

    def _decode(self, data: bytes | None) -> str:
        if not data:
            return ""
        limit = self.config.max_output_bytes
        text = data[:limit].decode("utf-8", errors="replace")
        if len(data) > limit:
            text += f"\n[truncated {len(data) - limit} bytes]"
        return text

    def _log(self, invocation: CommandInvocation) -> None:
        if invocation.timed_out:
            logger.warning(f"Command {invocation.describe()}")
        elif invocation.exit_code == EXIT_SUCCESS:
            logger.info(f"Command {invocation.describe()} in {invocation.duration_ms}ms")
        else:
            logger.warning(
                f"Command {invocation.describe()}: {invocation.stderr.strip()[:500]}"
            )
        if invocation.exit_code is not None and invocation.exit_code not in CONVENTIONAL_EXIT_CODES:
            logger.warning(
                f"Command {invocation.command_ref} used exit code {invocation.exit_code}, "
                "outside the 0/1/2 convention"
            )


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """Kill the child's process group and reap it."""
    if proc.returncode is None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()
