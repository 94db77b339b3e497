"""Tests for the ctxhook command line."""

import io
import json
from pathlib import Path

import pytest
import yaml

from ctxhook.cli import main, read_hook_input
from ctxhook.session_state import SessionStateStore

EXAMPLES = Path(__file__).resolve().parents[1] / "examples"

GUARD = """
import json, sys
payload = json.load(sys.stdin)
if "rm -rf" in payload.get("prompt", ""):
    print("destructive command blocked", file=sys.stderr)
    sys.exit(2)
print("guard ok")
"""


@pytest.fixture
def project(tmp_path, write_unit, write_command):
    """A config dir with a small corpus and a guard hook."""
    root = tmp_path / "context"
    write_unit(
        root,
        "agents/web-designer.md",
        "You design responsive websites.",
        kind="agent",
        name="Web Designer",
        tags=["website", "web"],
    )
    write_unit(root, "docs/html.md", "Semantic HTML for a website.", tags=["website"])
    write_command(root, "guard", GUARD)
    write_command(root, "exit-one", "import sys; print('nope'); sys.exit(1)")
    write_command(root, "sleepy", "import time; time.sleep(30)")

    config = {
        "roots": ["context"],
        "hooks": {
            "UserPromptSubmit": [{"command": "guard", "on_failure": "abort"}],
        },
    }
    config_path = tmp_path / "ctxhook.yaml"
    config_path.write_text(yaml.safe_dump(config))
    return config_path


def feed(monkeypatch, data):
    monkeypatch.setattr("sys.stdin", io.StringIO(data))


class TestHookCommand:
    """The host hook entry point."""

    def test_prompt_injects_context(self, project, monkeypatch, capsys):
        feed(monkeypatch, json.dumps({"session_id": "cli-1", "prompt": "Build a website", "cwd": str(project.parent)}))

        code = main(["--config", str(project), "hook", "UserPromptSubmit"])

        out = capsys.readouterr().out
        assert code == 0
        assert "guard ok" in out
        assert "Web Designer" in out
        assert "Semantic HTML" in out

    def test_abort_exits_2(self, project, monkeypatch, capsys):
        feed(monkeypatch, json.dumps({"session_id": "cli-2", "prompt": "please rm -rf the website"}))

        code = main(["--config", str(project), "hook", "UserPromptSubmit"])

        assert code == 2
        assert "aborted" in capsys.readouterr().err

    def test_malformed_input_still_exits_0(self, project, monkeypatch):
        feed(monkeypatch, "{not json")
        assert main(["--config", str(project), "hook", "SessionStart"]) == 0

    def test_bad_config_never_breaks_host(self, tmp_path, monkeypatch):
        bad = tmp_path / "ctxhook.yaml"
        bad.write_text("hooks:\n  Lunch: [eat]\n")
        feed(monkeypatch, "{}")
        assert main(["--config", str(bad), "hook", "SessionStart"]) == 0

    def test_stop_clears_session_state(self, project, monkeypatch):
        feed(monkeypatch, json.dumps({"session_id": "cli-3", "prompt": "Build a website"}))
        main(["--config", str(project), "hook", "UserPromptSubmit"])
        store = SessionStateStore(project.parent / "state")
        assert store.path_for("cli-3").exists()

        feed(monkeypatch, json.dumps({"session_id": "cli-3"}))
        assert main(["--config", str(project), "hook", "Stop"]) == 0
        assert not store.path_for("cli-3").exists()

    def test_bundle_carries_across_turns(self, project, monkeypatch, capsys):
        """Without Stop, a later prompt in the same session does not repeat loaded units."""
        prompt = json.dumps({"session_id": "cli-4", "prompt": "Build a website"})
        feed(monkeypatch, prompt)
        main(["--config", str(project), "hook", "UserPromptSubmit"])
        assert "Semantic HTML" in capsys.readouterr().out

        feed(monkeypatch, json.dumps({"session_id": "cli-4", "tool_name": "Bash", "success": True}))
        assert main(["--config", str(project), "hook", "PostToolUse"]) == 0
        capsys.readouterr()

        feed(monkeypatch, prompt)
        assert main(["--config", str(project), "hook", "UserPromptSubmit"]) == 0
        out = capsys.readouterr().out
        assert "guard ok" in out
        assert "Semantic HTML" not in out
        assert "Web Designer" not in out

    def test_example_settings_end_session_only_on_session_end(self):
        settings = json.loads((EXAMPLES / "claude-settings.json").read_text())
        bound = {
            event: [hook["command"] for group in groups for hook in group["hooks"]]
            for event, groups in settings["hooks"].items()
        }

        assert bound["SessionEnd"] == ["ctxhook hook Stop"]
        assert "Stop" not in bound

    def test_unknown_stage_rejected_by_parser(self, project):
        with pytest.raises(SystemExit):
            main(["--config", str(project), "hook", "Lunch"])


class TestMaintenanceCommands:
    """rescan, classify, dispatch, capture, history, validate."""

    def test_rescan(self, project, capsys):
        assert main(["--config", str(project), "rescan"]) == 0
        out = capsys.readouterr().out
        assert "agents/web-designer" in out
        assert "5 unit(s)" in out

    def test_classify(self, project, capsys):
        assert main(["--config", str(project), "classify", "build", "a", "website"]) == 0
        out = capsys.readouterr().out
        assert out.index("agents/web-designer") < out.index("docs/html")

    def test_classify_json(self, project, capsys):
        main(["--config", str(project), "classify", "--json", "website"])
        data = json.loads(capsys.readouterr().out)
        assert data[0]["unit_id"] == "agents/web-designer"

    def test_dispatch_exit_codes(self, project, capsys):
        assert main(["--config", str(project), "dispatch", "exit-one"]) == 1
        assert "nope" in capsys.readouterr().out
        assert main(["--config", str(project), "dispatch", "--timeout", "1", "sleepy"]) == 2
        assert main(["--config", str(project), "dispatch", "missing"]) == 2

    def test_capture(self, project, monkeypatch, capsys):
        feed(monkeypatch, "Keep landing pages under 100KB.\n")
        assert main(["--config", str(project), "capture", "--title", "Page weight", "--tags", "web,perf"]) == 0

        path = capsys.readouterr().out.strip()
        assert path.endswith("-page-weight.md")
        assert "learnings" in path

    def test_history(self, project, monkeypatch, capsys):
        feed(monkeypatch, json.dumps({"session_id": "hist", "prompt": "Build a website"}))
        main(["--config", str(project), "hook", "UserPromptSubmit"])
        capsys.readouterr()

        assert main(["--config", str(project), "history"]) == 0
        assert "guard" in capsys.readouterr().out

        assert main(["--config", str(project), "history", "--stages"]) == 0
        assert "UserPromptSubmit" in capsys.readouterr().out

    def test_validate(self, project, capsys):
        assert main(["--config", str(project), "validate"]) == 0
        assert "Configuration OK" in capsys.readouterr().out

    def test_validate_reports_unresolved_commands(self, project, capsys):
        config = yaml.safe_load(project.read_text())
        config["hooks"]["Stop"] = ["no-such-command"]
        project.write_text(yaml.safe_dump(config))

        assert main(["--config", str(project), "validate"]) == 1
        assert "no-such-command" in capsys.readouterr().out


class TestReadHookInput:
    def test_non_object_payload(self):
        assert read_hook_input(io.StringIO("[1, 2]")) == {}

    def test_empty(self):
        assert read_hook_input(io.StringIO("")) == {}
