"""
Run Ledger — append-only, hash-chained audit log of Convergence Runs.

Every completed Run (converged, exhausted, timed out or failed) is written
once, with its iterations, learnings and errors.

Behavioral Contract:
- Append-only. No record is ever modified or deleted.
- Each record's signature covers its content and the previous signature.
- Queryable by id, tenant, status and recency.
"""

import hashlib
import json
import sqlite3
from typing import List, Optional

from twoloop_kernel.models.convergence import ConvergenceRun, RunStatus


def _sign(record_json: str, prior_hash: Optional[str]) -> str:
    payload = json.dumps(
        {"record": json.loads(record_json), "prior": prior_hash},
        sort_keys=True,
        default=str,
    ).encode()
    return hashlib.sha256(payload).hexdigest()


class RunLedger:
    """
    Append-only run audit store.
    SQLite by default; pass a file path to keep records across restarts.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS convergence_runs (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                task_type TEXT NOT NULL,
                status TEXT NOT NULL,
                converged INTEGER NOT NULL DEFAULT 0,
                final_score REAL,
                total_iterations INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL DEFAULT 0,
                error_code TEXT,
                signature TEXT NOT NULL,
                prior_record_hash TEXT,
                record_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_tenant ON convergence_runs(tenant_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_status ON convergence_runs(status)
        """)
        self._conn.commit()

    def append(self, run: ConvergenceRun) -> str:
        """Append a completed Run. Returns the record's signature."""
        prior_hash = self._get_latest_hash()
        record_json = run.model_dump_json()
        signature = _sign(record_json, prior_hash)

        self._conn.execute(
            """
            INSERT INTO convergence_runs (
                id, tenant_id, task_type, status, converged, final_score,
                total_iterations, total_tokens, error_code,
                signature, prior_record_hash, record_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.id,
                run.tenant_id,
                run.task_type.value,
                run.status.value,
                int(run.converged),
                run.final_score,
                run.total_iterations,
                run.total_tokens_used,
                run.error.code if run.error else None,
                signature,
                prior_hash,
                record_json,
            ),
        )
        self._conn.commit()
        return signature

    def _get_latest_hash(self) -> Optional[str]:
        row = self._conn.execute(
            "SELECT signature FROM convergence_runs ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def _deserialize(self, row: sqlite3.Row) -> ConvergenceRun:
        return ConvergenceRun.model_validate_json(row["record_json"])

    def get(self, run_id: str) -> Optional[ConvergenceRun]:
        row = self._conn.execute(
            "SELECT record_json FROM convergence_runs WHERE id = ?", (run_id,)
        ).fetchone()
        return self._deserialize(row) if row else None

    def query_by_tenant(self, tenant_id: str) -> List[ConvergenceRun]:
        rows = self._conn.execute(
            "SELECT record_json FROM convergence_runs WHERE tenant_id = ? ORDER BY rowid",
            (tenant_id,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_by_status(self, status: RunStatus) -> List[ConvergenceRun]:
        rows = self._conn.execute(
            "SELECT record_json FROM convergence_runs WHERE status = ? ORDER BY rowid",
            (status.value,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_recent(self, limit: int = 50) -> List[ConvergenceRun]:
        rows = self._conn.execute(
            "SELECT record_json FROM convergence_runs ORDER BY rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def verify_chain_integrity(self) -> bool:
        """Verify no records have been tampered with."""
        rows = self._conn.execute(
            "SELECT record_json, signature, prior_record_hash "
            "FROM convergence_runs ORDER BY rowid"
        ).fetchall()

        previous: Optional[str] = None
        for row in rows:
            if row["prior_record_hash"] != previous:
                return False
            if _sign(row["record_json"], previous) != row["signature"]:
                return False
            previous = row["signature"]
        return True

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) as cnt FROM convergence_runs").fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()
