"""SQLite store for finished sessions and their ordered attempt records."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from llamaclick.core.session import SessionResult
from llamaclick.utils.logging import get_logger

log = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    objective TEXT NOT NULL,
    start_url TEXT,
    outcome TEXT NOT NULL,
    cursor INTEGER NOT NULL,
    plan_json TEXT NOT NULL,
    extracted_json TEXT NOT NULL,
    error TEXT DEFAULT '',
    started_at TEXT,
    saved_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS records (
    session_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    kind TEXT NOT NULL,
    step_id INTEGER,
    attempt INTEGER,
    payload TEXT NOT NULL,
    PRIMARY KEY (session_id, seq)
);
"""


class HistoryStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def start(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def stop(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def save_session(self, result: SessionResult) -> None:
        """Persist a finished session. Records keep their append order."""
        assert self._db is not None
        objective = result.objective
        plan_json = json.dumps(
            [s.to_dict() for s in result.plan.steps] if result.plan else [], default=str
        )
        await self._db.execute(
            "INSERT INTO sessions (id, objective, start_url, outcome, cursor, plan_json, "
            "extracted_json, error, started_at, saved_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                result.session_id,
                objective.text if objective else "",
                objective.start_url if objective else None,
                result.outcome.value,
                result.cursor,
                plan_json,
                json.dumps({str(k): v for k, v in result.extracted.items()}, default=str),
                str(result.error) if result.error else "",
                result.started_at.isoformat() if result.started_at else None,
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        await self._db.executemany(
            "INSERT INTO records (session_id, seq, kind, step_id, attempt, payload) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                (
                    result.session_id,
                    seq,
                    data["record"],
                    data.get("step_id"),
                    data.get("attempt"),
                    json.dumps(data, default=str),
                )
                for seq, data in enumerate(result.history.to_list())
            ],
        )
        await self._db.commit()
        log.info("session_saved", session=result.session_id, records=len(result.history))

    async def load_session(self, session_id: str) -> dict[str, Any] | None:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT id, objective, start_url, outcome, cursor, plan_json, extracted_json, "
            "error, started_at, saved_at FROM sessions WHERE id = ?",
            (session_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        cursor = await self._db.execute(
            "SELECT payload FROM records WHERE session_id = ? ORDER BY seq",
            (session_id,),
        )
        records = [json.loads(r[0]) for r in await cursor.fetchall()]
        return {
            "id": row[0],
            "objective": row[1],
            "start_url": row[2],
            "outcome": row[3],
            "cursor": row[4],
            "steps": json.loads(row[5]),
            "extracted": json.loads(row[6]),
            "error": row[7],
            "started_at": row[8],
            "saved_at": row[9],
            "records": records,
        }

    async def list_sessions(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recently saved sessions first."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT id, objective, outcome, saved_at FROM sessions "
            "ORDER BY saved_at DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [
            {"id": row[0], "objective": row[1], "outcome": row[2], "saved_at": row[3]}
            for row in rows
        ]
