from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


@dataclass
class RunRecord:
    run_id: str
    purpose: str
    status: str
    stage: Optional[str]
    artifact: Optional[str]
    message: str
    started_at: str
    finished_at: Optional[str]


class RunHistory:
    """Petit journal SQLite des runs de sauvegarde."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def ensure_schema(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS backup_runs (
                    run_id TEXT PRIMARY KEY,
                    purpose TEXT NOT NULL,
                    status TEXT NOT NULL,
                    stage TEXT,
                    artifact TEXT,
                    message TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT
                )
                """
            )

    def record_run(
        self,
        run_id: str,
        purpose: str,
        status: str,
        message: str,
        *,
        stage: Optional[str] = None,
        artifact: Optional[str] = None,
        started_at: Optional[str] = None,
    ) -> None:
        timestamp = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        finished_at = None if status == "RUNNING" else timestamp
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO backup_runs(run_id, purpose, status, stage, artifact, message, started_at, finished_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    status=excluded.status,
                    stage=excluded.stage,
                    artifact=excluded.artifact,
                    message=excluded.message,
                    finished_at=excluded.finished_at
                """,
                (run_id, purpose, status, stage, artifact, message, started_at or timestamp, finished_at),
            )

    def list_runs(self, limit: int = 20) -> List[RunRecord]:
        self.ensure_schema()
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                """
                SELECT run_id, purpose, status, stage, artifact, message, started_at, finished_at
                FROM backup_runs
                ORDER BY started_at DESC, rowid DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
            return [RunRecord(**dict(row)) for row in rows]

    def last_run(self) -> Optional[RunRecord]:
        runs = self.list_runs(limit=1)
        return runs[0] if runs else None
