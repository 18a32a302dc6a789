"""
SQLite persistence for runs, audits, correction history and documents.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from .config import ensure_db_directory

REQUIRED_TABLES = [
    'correction_runs', 'run_cycles', 'run_logs', 'audits',
    'correction_history', 'documents', 'chapters', 'document_revisions'
]


@contextmanager
def get_db(db_path: str) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path, timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection, immediate: bool = False) -> Generator[sqlite3.Connection, None, None]:
    """Run statements in one transaction. IMMEDIATE takes the write lock up front."""
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def init_db(db_path: str):
    """Initialize the database with required tables."""
    ensure_db_directory(db_path)
    with get_db(db_path) as conn:
        with transaction(conn):
            conn.execute('''
                CREATE TABLE IF NOT EXISTS correction_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    current_cycle INTEGER NOT NULL DEFAULT 0,
                    max_cycles INTEGER NOT NULL,
                    target_score INTEGER NOT NULL,
                    max_critical_issues INTEGER NOT NULL DEFAULT 0,
                    final_score REAL,
                    final_critical_issues INTEGER,
                    total_issues_fixed INTEGER,
                    total_structural_changes INTEGER,
                    error_message TEXT,
                    created_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP
                )
            ''')

            # One non-terminal run per document
            conn.execute('''
                CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_one_active_per_document
                ON correction_runs(document_id)
                WHERE status IN ('pending', 'auditing', 'correcting', 'approving', 'finalizing', 're_auditing')
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_runs_document ON correction_runs(document_id, created_at)')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS run_cycles (
                    run_id INTEGER NOT NULL REFERENCES correction_runs(id) ON DELETE CASCADE,
                    cycle INTEGER NOT NULL,
                    audit_id INTEGER,
                    revision_id INTEGER,
                    overall_score REAL NOT NULL,
                    critical_issues INTEGER NOT NULL,
                    total_issues INTEGER NOT NULL,
                    issues_fixed INTEGER NOT NULL,
                    structural_changes INTEGER NOT NULL,
                    result TEXT NOT NULL,
                    started_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (run_id, cycle)
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS run_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER NOT NULL REFERENCES correction_runs(id) ON DELETE CASCADE,
                    ts TIMESTAMP NOT NULL,
                    phase TEXT NOT NULL,
                    message TEXT NOT NULL,
                    details TEXT
                )
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_run_logs_run ON run_logs(run_id, id)')

            # Detection passes referenced by run_cycles.audit_id
            conn.execute('''
                CREATE TABLE IF NOT EXISTS audits (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER REFERENCES correction_runs(id) ON DELETE CASCADE,
                    cycle INTEGER,
                    consistency_score REAL NOT NULL,
                    summary TEXT,
                    violations TEXT NOT NULL,
                    entities TEXT NOT NULL,
                    token_usage TEXT,
                    failed_batches INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS correction_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id INTEGER NOT NULL,
                    chapter_number INTEGER NOT NULL,
                    run_id INTEGER,
                    issue TEXT NOT NULL,
                    fix TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_history_chapter ON correction_history(document_id, chapter_number, id)')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS documents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    genre TEXT,
                    language TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS chapters (
                    document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
                    chapter_number INTEGER NOT NULL,
                    title TEXT,
                    content TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (document_id, chapter_number)
                )
            ''')

            # Corrected-document snapshots referenced by run_cycles.revision_id
            conn.execute('''
                CREATE TABLE IF NOT EXISTS document_revisions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
                    note TEXT,
                    chapters TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
            ''')


def health_check(db_path: str):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table';").fetchall()
            table_names = [row[0] for row in rows]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
