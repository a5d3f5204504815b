"""
Checkpoint Store — async SQLite log of finished plans and their checkpoints
==========================================================================
A diagnostics trail: after a turn, MetaReasoner can persist the plan summary
and the state manager's checkpoint ring so a run can be inspected later
(``reasoner --list-plans``). Nothing is resumed from it.

Serialization: JSON (not pickle), human-readable and grep-able.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Optional

import aiosqlite

from .models import Checkpoint, Plan
from .state import checkpoint_from_dict, checkpoint_to_dict

logger = logging.getLogger("reasoner.checkpoint_store")

DEFAULT_CHECKPOINT_PATH = Path.home() / ".reasoner" / "checkpoints.db"


def plan_summary(plan: Plan) -> dict:
    return {
        "plan_id": plan.plan_id,
        "query": plan.query,
        "steps": [{"id": t.id, "type": t.type, "state": t.state.value} for t in plan.steps],
        "status": plan.state_manager.get_task_status(),
        "completed": plan.completed,
        "error": plan.error,
        "decomposition_error": plan.decomposition_error,
        "warnings": plan.warnings,
    }


class CheckpointStore:
    """Persistent aiosqlite connection with one-time schema init."""

    def __init__(self, db_path: str | Path = DEFAULT_CHECKPOINT_PATH):
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = str(db_path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock: Optional[asyncio.Lock] = None  # created lazily inside the event loop

    async def _get_conn(self) -> aiosqlite.Connection:
        if self._lock is None:
            self._lock = asyncio.Lock()
        if self._conn is None:
            async with self._lock:
                if self._conn is None:
                    self._conn = await aiosqlite.connect(self._db_path)
                    await self._conn.execute("PRAGMA journal_mode=WAL")
                    await self._conn.executescript("""
                        CREATE TABLE IF NOT EXISTS plans (
                            plan_id    TEXT PRIMARY KEY,
                            query      TEXT NOT NULL,
                            summary    TEXT NOT NULL,
                            completed  INTEGER NOT NULL,
                            created_at REAL NOT NULL,
                            updated_at REAL NOT NULL
                        );
                        CREATE TABLE IF NOT EXISTS checkpoints (
                            id         INTEGER PRIMARY KEY AUTOINCREMENT,
                            plan_id    TEXT NOT NULL,
                            seq        INTEGER NOT NULL,
                            name       TEXT NOT NULL,
                            state      TEXT NOT NULL,
                            created_at REAL NOT NULL,
                            FOREIGN KEY (plan_id) REFERENCES plans(plan_id)
                        );
                    """)
                    await self._conn.commit()
        return self._conn

    async def save_plan(self, plan: Plan) -> int:
        """
        Upsert the plan summary and replace its stored checkpoints with the
        state manager's current ring. Returns the number of checkpoints saved.
        """
        now = time.time()
        checkpoints = plan.state_manager.checkpoints
        db = await self._get_conn()
        await db.execute(
            """INSERT OR REPLACE INTO plans
               (plan_id, query, summary, completed, created_at, updated_at)
               VALUES (?, ?, ?, ?, COALESCE(
                   (SELECT created_at FROM plans WHERE plan_id = ?), ?
               ), ?)""",
            (plan.plan_id, plan.query, json.dumps(plan_summary(plan), default=str),
             int(plan.completed), plan.plan_id, now, now),
        )
        await db.execute("DELETE FROM checkpoints WHERE plan_id = ?", (plan.plan_id,))
        await db.executemany(
            "INSERT INTO checkpoints (plan_id, seq, name, state, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                (plan.plan_id, seq, cp.name, json.dumps(checkpoint_to_dict(cp), default=str),
                 cp.timestamp)
                for seq, cp in enumerate(checkpoints)
            ],
        )
        await db.commit()
        logger.info("Saved plan %s with %d checkpoints", plan.plan_id, len(checkpoints))
        return len(checkpoints)

    async def load_checkpoints(self, plan_id: str) -> list[Checkpoint]:
        db = await self._get_conn()
        async with db.execute(
            "SELECT state FROM checkpoints WHERE plan_id = ? ORDER BY seq",
            (plan_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [checkpoint_from_dict(json.loads(r[0])) for r in rows]

    async def load_summary(self, plan_id: str) -> Optional[dict]:
        db = await self._get_conn()
        async with db.execute(
            "SELECT summary FROM plans WHERE plan_id = ?", (plan_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def list_plans(self) -> list[dict]:
        db = await self._get_conn()
        async with db.execute(
            "SELECT plan_id, query, completed, created_at, updated_at "
            "FROM plans ORDER BY updated_at DESC, rowid DESC"
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            {"plan_id": r[0], "query": r[1], "completed": bool(r[2]),
             "created_at": r[3], "updated_at": r[4]}
            for r in rows
        ]

    async def delete_plan(self, plan_id: str) -> None:
        db = await self._get_conn()
        await db.execute("DELETE FROM checkpoints WHERE plan_id = ?", (plan_id,))
        await db.execute("DELETE FROM plans WHERE plan_id = ?", (plan_id,))
        await db.commit()

    async def close(self) -> None:
        """Close the connection before the event loop shuts down."""
        if self._conn is not None:
            try:
                await self._conn.close()
                # let the aiosqlite worker thread finish its final callbacks
                await asyncio.sleep(0)
            finally:
                self._conn = None
