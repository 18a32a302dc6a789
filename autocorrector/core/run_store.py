"""
Run store: durable state of auto-correction runs, their cycle history,
progress logs, audit records and the per-chapter correction history.
"""

import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from .db import get_db, transaction
from .errors import ActiveRunExistsError, RunActiveError, RunNotFoundError
from .schema import (
    ACTIVE_STATUSES, RUN_STATUSES, AuditResult, CorrectionCycle, CorrectionRecord,
    CorrectionRun, LogEntry, parse_timestamp
)
from ..util.logging import StructuredLogger, get_logger

# Columns update_status() may set alongside the status
UPDATABLE_FIELDS = (
    "current_cycle", "final_score", "final_critical_issues", "total_issues_fixed",
    "total_structural_changes", "error_message", "completed_at"
)

_ACTIVE_SQL = ", ".join(f"'{s}'" for s in ACTIVE_STATUSES)


class RunStore:
    def __init__(self, db_path: str, logger: StructuredLogger = None, log_limit: int = 200):
        self.db_path = db_path
        self.logger = logger or get_logger("autocorrector.store")
        self.log_limit = log_limit

    # Runs

    def create(self, run: CorrectionRun) -> int:
        """
        Insert a run, atomically rejecting a second active run for the same document.

        Raises:
            ActiveRunExistsError: the document already has a non-terminal run
        """
        with get_db(self.db_path) as conn:
            try:
                with transaction(conn, immediate=True):
                    existing = conn.execute(
                        f"SELECT id FROM correction_runs WHERE document_id = ? AND status IN ({_ACTIVE_SQL})",
                        (run.document_id,)
                    ).fetchone()
                    if existing:
                        raise ActiveRunExistsError(run.document_id, existing["id"])

                    cursor = conn.execute(
                        """INSERT INTO correction_runs
                           (document_id, status, current_cycle, max_cycles, target_score, max_critical_issues, created_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?)""",
                        (run.document_id, run.status, run.current_cycle, run.max_cycles,
                         run.target_score, run.max_critical_issues, run.created_at.isoformat())
                    )
                    run_id = cursor.lastrowid
            except sqlite3.IntegrityError as e:
                raise ActiveRunExistsError(run.document_id) from e

        run.id = run_id
        self.logger.log_run_transition(run_id, run.status, {"document_id": run.document_id, "event": "created"})
        return run_id

    def find(self, run_id: int) -> Optional[CorrectionRun]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM correction_runs WHERE id = ?", (run_id,)).fetchone()
            if row is None:
                return None
            return self._load_run(conn, row)

    def get(self, run_id: int) -> CorrectionRun:
        run = self.find(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list_by_document(self, document_id: int) -> List[CorrectionRun]:
        """All runs of a document, newest first."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM correction_runs WHERE document_id = ? ORDER BY created_at DESC, id DESC",
                (document_id,)
            ).fetchall()
            return [self._load_run(conn, row) for row in rows]

    def list_active(self) -> List[CorrectionRun]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM correction_runs WHERE status IN ({_ACTIVE_SQL}) ORDER BY id"
            ).fetchall()
            return [self._load_run(conn, row) for row in rows]

    def update_status(self, run_id: int, status: str, **fields: Any) -> None:
        if status not in RUN_STATUSES:
            raise ValueError(f"Invalid run status: {status}")
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        assignments = ["status = ?"]
        values: List[Any] = [status]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            values.append(value.isoformat() if isinstance(value, datetime) else value)
        values.append(run_id)

        with get_db(self.db_path) as conn:
            cursor = conn.execute(f"UPDATE correction_runs SET {', '.join(assignments)} WHERE id = ?", values)
            if cursor.rowcount == 0:
                raise RunNotFoundError(run_id)

        self.logger.log_run_transition(run_id, status, {k: v for k, v in fields.items() if k != "completed_at"})

    def delete(self, run_id: int) -> None:
        """
        Delete a terminal run with its cycles, logs and audits.

        Raises:
            RunNotFoundError: no such run
            RunActiveError: the run is not terminal
        """
        with get_db(self.db_path) as conn:
            with transaction(conn, immediate=True):
                row = conn.execute("SELECT status FROM correction_runs WHERE id = ?", (run_id,)).fetchone()
                if row is None:
                    raise RunNotFoundError(run_id)
                if row["status"] in ACTIVE_STATUSES:
                    raise RunActiveError(run_id, row["status"])
                conn.execute("DELETE FROM correction_runs WHERE id = ?", (run_id,))

        self.logger.log_operation("run.delete", "success", {"run_id": run_id})

    # Cycles and progress log

    def append_cycle(self, run_id: int, cycle: CorrectionCycle) -> None:
        """Append a cycle; indices are dense from 1 and never exceed the run's max_cycles."""
        with get_db(self.db_path) as conn:
            with transaction(conn, immediate=True):
                row = conn.execute("SELECT max_cycles FROM correction_runs WHERE id = ?", (run_id,)).fetchone()
                if row is None:
                    raise RunNotFoundError(run_id)
                count = conn.execute("SELECT COUNT(*) FROM run_cycles WHERE run_id = ?", (run_id,)).fetchone()[0]
                if cycle.cycle != count + 1:
                    raise ValueError(f"Run {run_id}: expected cycle {count + 1}, got {cycle.cycle}")
                if cycle.cycle > row["max_cycles"]:
                    raise ValueError(f"Run {run_id}: cycle {cycle.cycle} exceeds max_cycles {row['max_cycles']}")

                conn.execute(
                    """INSERT INTO run_cycles
                       (run_id, cycle, audit_id, revision_id, overall_score, critical_issues, total_issues,
                        issues_fixed, structural_changes, result, started_at, completed_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (run_id, cycle.cycle, cycle.audit_id, cycle.revision_id, cycle.overall_score,
                     cycle.critical_issues, cycle.total_issues, cycle.issues_fixed, cycle.structural_changes,
                     cycle.result, cycle.started_at.isoformat(), cycle.completed_at.isoformat())
                )

        self.logger.log_cycle_result(run_id, cycle.cycle, cycle.result, {
            "score": cycle.overall_score,
            "critical": cycle.critical_issues,
            "total": cycle.total_issues,
            "fixed": cycle.issues_fixed
        })

    def append_log(self, run_id: int, entry: LogEntry) -> None:
        """Append a progress log entry, dropping the oldest beyond the log limit."""
        with get_db(self.db_path) as conn:
            with transaction(conn):
                conn.execute(
                    "INSERT INTO run_logs (run_id, ts, phase, message, details) VALUES (?, ?, ?, ?, ?)",
                    (run_id, entry.timestamp.isoformat(), entry.phase, entry.message,
                     json.dumps(entry.details) if entry.details else None)
                )
                conn.execute(
                    """DELETE FROM run_logs WHERE run_id = ? AND id NOT IN
                       (SELECT id FROM run_logs WHERE run_id = ? ORDER BY id DESC LIMIT ?)""",
                    (run_id, run_id, self.log_limit)
                )

    # Audits

    def save_audit(self, run_id: Optional[int], cycle: Optional[int], result: AuditResult) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.execute(
                """INSERT INTO audits
                   (run_id, cycle, consistency_score, summary, violations, entities, token_usage, failed_batches, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (run_id, cycle, result.consistency_score, result.summary,
                 json.dumps([v.to_dict() for v in result.violations]),
                 json.dumps(result.entities),
                 json.dumps(result.token_usage.to_dict()),
                 result.failed_batches,
                 datetime.now().isoformat())
            )
            return cursor.lastrowid

    def get_audit(self, audit_id: int) -> Optional[Dict[str, Any]]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM audits WHERE id = ?", (audit_id,)).fetchone()
        if row is None:
            return None
        return {
            "id": row["id"],
            "runId": row["run_id"],
            "cycle": row["cycle"],
            "consistencyScore": row["consistency_score"],
            "summary": row["summary"],
            "violations": json.loads(row["violations"]),
            "entities": json.loads(row["entities"]),
            "tokenUsage": json.loads(row["token_usage"]) if row["token_usage"] else None,
            "failedBatches": row["failed_batches"],
            "createdAt": row["created_at"]
        }

    # Correction history

    def append_correction_records(self, document_id: int, records: List[CorrectionRecord]) -> None:
        if not records:
            return
        with get_db(self.db_path) as conn:
            with transaction(conn):
                conn.executemany(
                    """INSERT INTO correction_history (document_id, chapter_number, run_id, issue, fix, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    [(document_id, r.chapter_number, r.run_id, r.issue, r.fix, r.created_at.isoformat()) for r in records]
                )

    def recent_corrections(self, document_id: int, chapter_number: int, limit: int = 5) -> List[CorrectionRecord]:
        """The chapter's most recent correction records, oldest first."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                """SELECT chapter_number, issue, fix, created_at, run_id FROM correction_history
                   WHERE document_id = ? AND chapter_number = ? ORDER BY id DESC LIMIT ?""",
                (document_id, chapter_number, limit)
            ).fetchall()
        return [
            CorrectionRecord(r["chapter_number"], r["issue"], r["fix"], parse_timestamp(r["created_at"]), r["run_id"])
            for r in reversed(rows)
        ]

    def _load_run(self, conn: sqlite3.Connection, row: sqlite3.Row) -> CorrectionRun:
        cycles = conn.execute(
            "SELECT * FROM run_cycles WHERE run_id = ? ORDER BY cycle", (row["id"],)
        ).fetchall()
        logs = conn.execute(
            "SELECT ts, phase, message, details FROM run_logs WHERE run_id = ? ORDER BY id", (row["id"],)
        ).fetchall()

        return CorrectionRun(
            id=row["id"],
            document_id=row["document_id"],
            status=row["status"],
            max_cycles=row["max_cycles"],
            target_score=row["target_score"],
            max_critical_issues=row["max_critical_issues"],
            current_cycle=row["current_cycle"],
            created_at=parse_timestamp(row["created_at"]),
            cycle_history=[
                CorrectionCycle(
                    cycle=c["cycle"],
                    overall_score=c["overall_score"],
                    critical_issues=c["critical_issues"],
                    total_issues=c["total_issues"],
                    issues_fixed=c["issues_fixed"],
                    structural_changes=c["structural_changes"],
                    result=c["result"],
                    started_at=parse_timestamp(c["started_at"]),
                    completed_at=parse_timestamp(c["completed_at"]),
                    audit_id=c["audit_id"],
                    revision_id=c["revision_id"]
                )
                for c in cycles
            ],
            progress_log=[
                LogEntry(parse_timestamp(l["ts"]), l["phase"], l["message"], json.loads(l["details"]) if l["details"] else None)
                for l in logs
            ],
            final_score=row["final_score"],
            final_critical_issues=row["final_critical_issues"],
            total_issues_fixed=row["total_issues_fixed"],
            total_structural_changes=row["total_structural_changes"],
            error_message=row["error_message"],
            completed_at=parse_timestamp(row["completed_at"])
        )
