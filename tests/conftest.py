"""Pytest configuration for ctxhook tests.

Logs, telemetry and session state default to $CTXHOOK_HOME; point it at a
throwaway directory before any ctxhook module configures logging.
"""

import os
import sys
import tempfile
import textwrap
from pathlib import Path

import pytest
import yaml

_TEST_HOME = tempfile.mkdtemp(prefix="ctxhook-tests-")
os.environ["CTXHOOK_HOME"] = _TEST_HOME
os.environ.pop("CTXHOOK_CONFIG", None)


def _write_unit(root: Path, relpath: str, body: str = "", **meta) -> Path:
    """Write a context file with optional YAML front matter."""
    path = Path(root) / relpath
    path.parent.mkdir(parents=True, exist_ok=True)
    text = textwrap.dedent(body).lstrip()
    if meta:
        text = f"---\n{yaml.safe_dump(meta, sort_keys=False)}---\n{text}"
    path.write_text(text)
    return path


def _write_command(root: Path, name: str, script: str, **meta) -> Path:
    """Write a Python script plus the command unit that runs it."""
    root = Path(root)
    scripts = root / "commands"
    scripts.mkdir(parents=True, exist_ok=True)
    script_path = scripts / f"{name}.py"
    script_path.write_text(textwrap.dedent(script).lstrip())
    meta.setdefault("run", ["{python}", str(script_path)])
    return _write_unit(root, f"commands/{name}.md", f"Runs {name}.", kind="command", name=name, **meta)


@pytest.fixture
def context_root(tmp_path):
    """An empty context root."""
    root = tmp_path / "context"
    root.mkdir()
    return root


@pytest.fixture
def python():
    return sys.executable


@pytest.fixture
def write_unit():
    return _write_unit


@pytest.fixture
def write_command():
    return _write_command
