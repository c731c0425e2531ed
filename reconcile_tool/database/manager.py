"""
History store for SQLite operations.

Keeps every finished RunReport so past runs can be listed and rendered
into reports after the fact.
"""

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.models import ErrorDetail, ExecutionResult, HandlerResult, ResultStatus, RunReport

logger = logging.getLogger(__name__)


class HistoryStore:
    """
    Manages the SQLite run history.

    A run row holds the report header and handler outcomes; resource
    results live in their own table, ordered by their position in the run.
    """

    def __init__(self, db_path: str):
        """
        Initialize history store.

        Args:
            db_path: Path to SQLite database file (parent directory is created)
        """
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _json_serializer(self, obj):
        """JSON serializer for datetime objects."""
        if isinstance(obj, datetime):
            return obj.isoformat()
        raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

    def initialize(self) -> None:
        """Initialize database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    host TEXT NOT NULL,
                    policy_name TEXT,
                    dry_run BOOLEAN DEFAULT FALSE,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    halted_by TEXT,
                    cancelled BOOLEAN DEFAULT FALSE,
                    exit_code INTEGER NOT NULL,
                    handler_results_json TEXT
                );

                CREATE TABLE IF NOT EXISTS resource_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    resource_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    message TEXT,
                    error_type TEXT,
                    error_message TEXT,
                    before_json TEXT,
                    after_json TEXT,
                    executed_at TEXT NOT NULL,
                    execution_time_ms INTEGER,
                    FOREIGN KEY (run_id) REFERENCES runs (run_id)
                );

                CREATE INDEX IF NOT EXISTS idx_runs_started_at ON runs(started_at);
                CREATE INDEX IF NOT EXISTS idx_results_run_id ON resource_results(run_id);
            """)

    def save_report(self, report: RunReport) -> None:
        """Save a run report and its results."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO runs (
                    run_id, host, policy_name, dry_run, started_at, completed_at,
                    halted_by, cancelled, exit_code, handler_results_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                report.run_id,
                report.host,
                report.policy_name,
                report.dry_run,
                report.started_at.isoformat(),
                report.completed_at.isoformat() if report.completed_at else None,
                report.halted_by,
                report.cancelled,
                report.exit_code,
                json.dumps([h.model_dump(mode="json") for h in report.handler_results]),
            ))

            conn.execute("DELETE FROM resource_results WHERE run_id = ?", (report.run_id,))

            for position, result in enumerate(report.results):
                conn.execute("""
                    INSERT INTO resource_results (
                        run_id, position, resource_id, kind, status, message,
                        error_type, error_message, before_json, after_json,
                        executed_at, execution_time_ms
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    report.run_id,
                    position,
                    result.resource_id,
                    result.kind,
                    result.status.value,
                    result.message,
                    result.error.type if result.error else None,
                    result.error.message if result.error else None,
                    json.dumps(result.before, default=self._json_serializer) if result.before is not None else None,
                    json.dumps(result.after, default=self._json_serializer) if result.after is not None else None,
                    result.executed_at.isoformat(),
                    result.execution_time_ms,
                ))
        logger.debug("Saved run %s to %s", report.run_id, self.db_path)

    def get_report(self, run_id: str) -> Optional[RunReport]:
        """
        Retrieve a run report by ID.

        Returns:
            Optional[RunReport]: Report if found, None otherwise
        """
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            run_row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
            if not run_row:
                return None
            return self._build_report(conn, run_row)

    def get_latest_report(self) -> Optional[RunReport]:
        """Get the most recent run report."""
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            run_row = conn.execute(
                "SELECT * FROM runs ORDER BY started_at DESC LIMIT 1"
            ).fetchone()
            if not run_row:
                return None
            return self._build_report(conn, run_row)

    def list_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        """
        List recent runs with per-status counts, newest first.
        """
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute("""
                SELECT r.run_id, r.host, r.policy_name, r.dry_run, r.started_at,
                       r.exit_code, r.halted_by, r.cancelled,
                       SUM(CASE WHEN s.status = 'unchanged' THEN 1 ELSE 0 END) AS unchanged,
                       SUM(CASE WHEN s.status = 'changed' THEN 1 ELSE 0 END) AS changed,
                       SUM(CASE WHEN s.status = 'failed' THEN 1 ELSE 0 END) AS failed,
                       SUM(CASE WHEN s.status = 'skipped' THEN 1 ELSE 0 END) AS skipped
                FROM runs r LEFT JOIN resource_results s ON s.run_id = r.run_id
                GROUP BY r.run_id
                ORDER BY r.started_at DESC
                LIMIT ?
            """, (limit,)).fetchall()

        return [
            {
                'run_id': row['run_id'],
                'host': row['host'],
                'policy_name': row['policy_name'],
                'dry_run': bool(row['dry_run']),
                'started_at': datetime.fromisoformat(row['started_at']),
                'exit_code': row['exit_code'],
                'halted_by': row['halted_by'],
                'cancelled': bool(row['cancelled']),
                'unchanged': row['unchanged'] or 0,
                'changed': row['changed'] or 0,
                'failed': row['failed'] or 0,
                'skipped': row['skipped'] or 0,
            }
            for row in rows
        ]

    def _build_report(self, conn: sqlite3.Connection, run_row) -> RunReport:
        """Build RunReport object from database rows."""
        result_rows = conn.execute("""
            SELECT * FROM resource_results WHERE run_id = ? ORDER BY position
        """, (run_row['run_id'],)).fetchall()

        results = []
        for row in result_rows:
            error = None
            if row['error_type']:
                error = ErrorDetail(type=row['error_type'], message=row['error_message'] or "")
            results.append(ExecutionResult(
                resource_id=row['resource_id'],
                kind=row['kind'],
                status=ResultStatus(row['status']),
                message=row['message'],
                error=error,
                before=json.loads(row['before_json']) if row['before_json'] else None,
                after=json.loads(row['after_json']) if row['after_json'] else None,
                executed_at=datetime.fromisoformat(row['executed_at']),
                execution_time_ms=row['execution_time_ms'],
            ))

        handler_results = [
            HandlerResult(**data)
            for data in json.loads(run_row['handler_results_json'] or "[]")
        ]

        return RunReport(
            run_id=run_row['run_id'],
            host=run_row['host'],
            policy_name=run_row['policy_name'],
            dry_run=bool(run_row['dry_run']),
            started_at=datetime.fromisoformat(run_row['started_at']),
            completed_at=datetime.fromisoformat(run_row['completed_at']) if run_row['completed_at'] else None,
            results=results,
            handler_results=handler_results,
            halted_by=run_row['halted_by'],
            cancelled=bool(run_row['cancelled']),
        )
