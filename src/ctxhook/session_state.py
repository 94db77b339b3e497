"""Per-session state shared between hook processes.

Each host hook runs as its own short-lived process, so the lifecycle state and
the context bundle of a session live in a JSON file:

    <state_dir>/sessions/<session_id>.json

A missing or unreadable file means a fresh session; it never stops a hook.
"""

import json
import os
import re
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from .logging_config import get_logger
from .models import IDLE, ContextBundle

logger = get_logger("session_state")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class SessionState(BaseModel):
    session_id: str
    pipeline_state: str = IDLE
    bundle: ContextBundle
    prompt_count: int = 0
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SessionStateStore:
    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir).expanduser() / "sessions"

    def path_for(self, session_id: str) -> Path:
        safe = _UNSAFE_CHARS.sub("_", session_id) or "default"
        return self.state_dir / f"{safe}.json"

    def load(self, session_id: str, budget: int) -> SessionState:
        """Load a session's state, or return a fresh one."""
        path = self.path_for(session_id)
        try:
            if path.exists():
                with open(path) as f:
                    state = SessionState.model_validate(json.load(f))
                if state.session_id == session_id:
                    return state
                logger.warning(f"State file {path} belongs to {state.session_id}, starting fresh")
        except (json.JSONDecodeError, ValidationError, OSError) as e:
            logger.warning(f"Discarding unreadable session state {path}: {e}")
        return SessionState(session_id=session_id, bundle=ContextBundle(budget=budget))

    def save(self, state: SessionState) -> None:
        """Write state atomically. Failures are logged, not raised."""
        path = self.path_for(state.session_id)
        state.last_updated = datetime.now(UTC)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.state_dir, prefix=".state-", suffix=".json")
            with os.fdopen(fd, "w") as f:
                f.write(state.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except OSError as e:
            logger.warning(f"Could not save session state {path}: {e}")

    def delete(self, session_id: str) -> None:
        try:
            self.path_for(session_id).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove session state for {session_id}: {e}")
