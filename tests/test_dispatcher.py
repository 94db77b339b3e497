"""Tests for command dispatch."""

import json
import os
import time

import pytest

from ctxhook.config import DispatcherConfig
from ctxhook.dispatcher import CommandDispatcher
from ctxhook.errors import CommandNotFound, TimedOut
from ctxhook.indexer import Indexer
from ctxhook.registry import ContextRegistry


def make_dispatcher(root, config_dir=None, **config):
    registry = ContextRegistry()
    indexer = Indexer(registry)
    registry.rescan([root])
    return CommandDispatcher(registry, indexer, DispatcherConfig(**config), config_dir=config_dir)


class TestDispatch:
    """Test running command units."""

    @pytest.mark.asyncio
    async def test_success(self, context_root, write_command):
        write_command(context_root, "greet", "print('hello')")
        invocation = await make_dispatcher(context_root).dispatch("greet")

        assert invocation.ok
        assert invocation.exit_code == 0
        assert invocation.stdout.strip() == "hello"
        assert invocation.unit_id == "commands/greet"
        assert invocation.outcome == "success"
        assert invocation.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_resolves_by_id(self, context_root, write_command):
        write_command(context_root, "greet", "print('hi')")
        invocation = await make_dispatcher(context_root).dispatch("commands/greet")
        assert invocation.stdout.strip() == "hi"

    @pytest.mark.asyncio
    async def test_args_env_and_payload(self, context_root, tmp_path, write_command):
        write_command(
            context_root,
            "echo",
            """
            import json, os, sys
            payload = json.load(sys.stdin)
            print(json.dumps({
                "argv": sys.argv[1:],
                "config_dir": os.environ["CTXHOOK_CONFIG_DIR"],
                "extra": os.environ["EXTRA"],
                "payload": payload,
            }))
            """,
        )
        dispatcher = make_dispatcher(context_root, config_dir=tmp_path)
        invocation = await dispatcher.dispatch(
            "echo", ["one", "two"], payload={"prompt": "hi"}, env={"EXTRA": "x"}
        )

        data = json.loads(invocation.stdout)
        assert data["argv"] == ["one", "two"]
        assert data["config_dir"] == str(tmp_path)
        assert data["extra"] == "x"
        assert data["payload"] == {"prompt": "hi"}
        assert invocation.args == ["one", "two"]

    @pytest.mark.asyncio
    async def test_working_directory(self, context_root, tmp_path, write_command):
        workdir = tmp_path / "work"
        workdir.mkdir()
        write_command(context_root, "pwd", "import os; print(os.getcwd())")
        invocation = await make_dispatcher(context_root).dispatch("pwd", cwd=workdir)
        assert os.path.realpath(invocation.stdout.strip()) == os.path.realpath(workdir)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,outcome", [(1, "user_error"), (2, "system_error")])
    async def test_failure_exit_codes(self, context_root, write_command, code, outcome):
        write_command(context_root, "fail", f"import sys; print('bad input', file=sys.stderr); sys.exit({code})")
        invocation = await make_dispatcher(context_root).dispatch("fail")

        assert not invocation.ok
        assert invocation.exit_code == code
        assert invocation.outcome == outcome
        assert "bad input" in invocation.stderr

    @pytest.mark.asyncio
    async def test_unconventional_exit_code_recorded(self, context_root, write_command):
        write_command(context_root, "odd", "import sys; sys.exit(7)")
        invocation = await make_dispatcher(context_root).dispatch("odd")
        assert invocation.exit_code == 7
        assert invocation.outcome == "other"

    @pytest.mark.asyncio
    async def test_output_truncated(self, context_root, write_command):
        write_command(context_root, "loud", "print('x' * 1000)")
        invocation = await make_dispatcher(context_root, max_output_bytes=100).dispatch("loud")

        assert invocation.stdout.startswith("x" * 100)
        assert "[truncated" in invocation.stdout


class TestTimeouts:
    """A command past its timeout is killed and reaped."""

    SLEEPER = """
    import os, sys, time
    with open(sys.argv[1], "w") as f:
        f.write(str(os.getpid()))
    time.sleep(30)
    """

    @pytest.mark.asyncio
    async def test_timeout_kills_child(self, context_root, tmp_path, write_command):
        pid_file = tmp_path / "pid"
        write_command(context_root, "sleeper", self.SLEEPER)

        started = time.monotonic()
        invocation = await make_dispatcher(context_root).dispatch("sleeper", [str(pid_file)], timeout=2)
        elapsed = time.monotonic() - started

        assert invocation.timed_out
        assert invocation.exit_code is None
        assert not invocation.ok
        assert invocation.outcome == "timed_out"
        assert elapsed < 10

        pid = int(pid_file.read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_unit_timeout_used_by_default(self, context_root, tmp_path, write_command):
        write_command(context_root, "sleeper", self.SLEEPER, timeout=1)
        invocation = await make_dispatcher(context_root).dispatch("sleeper", [str(tmp_path / "pid")])
        assert invocation.timed_out

    @pytest.mark.asyncio
    async def test_raise_on_timeout(self, context_root, tmp_path, write_command):
        write_command(context_root, "sleeper", self.SLEEPER)
        with pytest.raises(TimedOut) as exc:
            await make_dispatcher(context_root).dispatch(
                "sleeper", [str(tmp_path / "pid")], timeout=1, raise_on_timeout=True
            )
        assert exc.value.timeout == 1


class TestResolution:
    """Unresolvable references never spawn anything."""

    @pytest.mark.asyncio
    async def test_unknown_command(self, context_root):
        with pytest.raises(CommandNotFound):
            await make_dispatcher(context_root).dispatch("missing")

    @pytest.mark.asyncio
    async def test_document_is_not_a_command(self, context_root, write_unit):
        write_unit(context_root, "guide.md", "A guide")
        with pytest.raises(CommandNotFound):
            await make_dispatcher(context_root).dispatch("guide")

    def test_command_without_run(self, context_root, write_unit):
        write_unit(context_root, "commands/empty.md", "Nothing to run", kind="command", name="empty")
        with pytest.raises(CommandNotFound) as exc:
            make_dispatcher(context_root).resolve("empty")
        assert "no 'run' entry" in str(exc.value)

    @pytest.mark.asyncio
    async def test_spawn_failure(self, context_root, write_unit):
        write_unit(
            context_root,
            "commands/ghost.md",
            "Missing binary",
            kind="command",
            name="ghost",
            run=["/nonexistent/ctxhook-ghost-binary"],
        )
        invocation = await make_dispatcher(context_root).dispatch("ghost")

        assert invocation.exit_code == 2
        assert invocation.error
        assert not invocation.timed_out
        assert not invocation.ok

    def test_build_argv_expands_placeholders(self, context_root, write_unit, python):
        write_unit(context_root, "commands/tool.md", "Tool", kind="command", name="tool", run="{python} {dir}/tool.py")
        dispatcher = make_dispatcher(context_root)
        unit = dispatcher.resolve("tool")

        argv = dispatcher.build_argv(unit, ["--fast"])
        assert argv == [python, f"{context_root.resolve()}/commands/tool.py", "--fast"]
