"""Invocation and stage telemetry for ctxhook, stored in SQLite.

Every command dispatch and every stage run is recorded so hook behaviour can be
inspected after the (short-lived) hook process is gone. Recording failures
are logged and never propagate into the pipeline.
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

import aiosqlite

from .logging_config import get_logger
from .models import CommandInvocation

logger = get_logger("telemetry")

# Captured output kept per stream
MAX_STORED_OUTPUT = 4000

TELEMETRY_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    stage_count INTEGER DEFAULT 0,
    invocation_count INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS stage_runs (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    stage TEXT NOT NULL,
    started_at TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    hook_count INTEGER NOT NULL,
    aborted INTEGER NOT NULL DEFAULT 0,
    abort_reason TEXT
);

CREATE INDEX IF NOT EXISTS idx_stage_runs_session ON stage_runs(session_id);
CREATE INDEX IF NOT EXISTS idx_stage_runs_stage ON stage_runs(stage);

CREATE TABLE IF NOT EXISTS invocations (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    stage TEXT,
    command_ref TEXT NOT NULL,
    unit_id TEXT,
    args JSON NOT NULL DEFAULT '[]',
    started_at TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    exit_code INTEGER,
    timed_out INTEGER NOT NULL DEFAULT 0,
    blocking INTEGER NOT NULL DEFAULT 1,
    stdout TEXT,
    stderr TEXT,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_invocations_session ON invocations(session_id);
CREATE INDEX IF NOT EXISTS idx_invocations_time ON invocations(started_at);
"""


class TelemetryLog:
    """Append-only record of stage runs and command invocations."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False

    async def _get_conn(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        if not self._initialized:
            try:
                await conn.executescript(TELEMETRY_SCHEMA)
                await conn.commit()
            except aiosqlite.Error:
                await conn.close()
                raise
            self._initialized = True
        return conn

    async def start_session(self, session_id: str) -> None:
        await self._write(
            "INSERT OR IGNORE INTO sessions (id, started_at) VALUES (?, ?)",
            (session_id, datetime.now(UTC).isoformat()),
        )

    async def end_session(self, session_id: str) -> None:
        await self._write(
            "UPDATE sessions SET ended_at = ? WHERE id = ?",
            (datetime.now(UTC).isoformat(), session_id),
        )

    async def log_stage(
        self,
        session_id: str,
        stage: str,
        duration_ms: int,
        hook_count: int,
        abort_reason: str | None = None,
    ) -> None:
        await self.start_session(session_id)
        await self._write(
            """
            INSERT INTO stage_runs
                (id, session_id, stage, started_at, duration_ms, hook_count, aborted, abort_reason)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid4()),
                session_id,
                stage,
                datetime.now(UTC).isoformat(),
                duration_ms,
                hook_count,
                int(abort_reason is not None),
                abort_reason,
            ),
            "UPDATE sessions SET stage_count = stage_count + 1 WHERE id = ?",
            (session_id,),
        )

    async def log_invocation(
        self,
        session_id: str,
        invocation: CommandInvocation,
        stage: str | None = None,
        blocking: bool = True,
    ) -> None:
        await self.start_session(session_id)
        await self._write(
            """
            INSERT INTO invocations
                (id, session_id, stage, command_ref, unit_id, args, started_at, duration_ms,
                 exit_code, timed_out, blocking, stdout, stderr, error)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid4()),
                session_id,
                stage,
                invocation.command_ref,
                invocation.unit_id,
                json.dumps(invocation.args),
                invocation.started_at.isoformat(),
                invocation.duration_ms,
                invocation.exit_code,
                int(invocation.timed_out),
                int(blocking),
                invocation.stdout[:MAX_STORED_OUTPUT],
                invocation.stderr[:MAX_STORED_OUTPUT],
                invocation.error,
            ),
            "UPDATE sessions SET invocation_count = invocation_count + 1 WHERE id = ?",
            (session_id,),
        )

    async def _write(self, *statements) -> None:
        """Execute (sql, params) pairs in one transaction, logging any failure."""
        try:
            conn = await self._get_conn()
        except (aiosqlite.Error, OSError) as e:
            logger.warning(f"Telemetry unavailable at {self.db_path}: {e}")
            return
        try:
            for sql, params in zip(statements[::2], statements[1::2]):
                await conn.execute(sql, params)
            await conn.commit()
        except aiosqlite.Error as e:
            logger.warning(f"Telemetry write failed: {e}")
        finally:
            await conn.close()

    # Analytics queries

    async def recent_invocations(self, limit: int = 20, session_id: str | None = None) -> list[dict]:
        """Most recent invocations, newest first."""
        conn = await self._get_conn()
        try:
            if session_id:
                cursor = await conn.execute(
                    "SELECT * FROM invocations WHERE session_id = ? ORDER BY started_at DESC LIMIT ?",
                    (session_id, limit),
                )
            else:
                cursor = await conn.execute(
                    "SELECT * FROM invocations ORDER BY started_at DESC LIMIT ?",
                    (limit,),
                )
            rows = await cursor.fetchall()
            return [
                {
                    **dict(row),
                    "args": json.loads(row["args"]),
                    "timed_out": bool(row["timed_out"]),
                    "blocking": bool(row["blocking"]),
                }
                for row in rows
            ]
        finally:
            await conn.close()

    async def stage_summary(self) -> list[dict]:
        """Run counts, aborts and mean duration per stage."""
        conn = await self._get_conn()
        try:
            cursor = await conn.execute(
                """
                SELECT
                    stage,
                    COUNT(*) AS runs,
                    SUM(aborted) AS aborts,
                    AVG(duration_ms) AS avg_duration_ms
                FROM stage_runs
                GROUP BY stage
                ORDER BY stage
                """
            )
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]
        finally:
            await conn.close()

    async def session_history(self, limit: int = 20) -> list[dict]:
        conn = await self._get_conn()
        try:
            cursor = await conn.execute(
                "SELECT * FROM sessions ORDER BY started_at DESC LIMIT ?",
                (limit,),
            )
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]
        finally:
            await conn.close()
