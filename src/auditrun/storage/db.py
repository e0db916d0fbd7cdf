"""SQLite database connection management and schema migrations."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS protocols (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    github_url TEXT NOT NULL,
    contract_path TEXT NOT NULL,
    contract_name TEXT NOT NULL,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS scans (
    id TEXT PRIMARY KEY,
    protocol_id TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'QUEUED',
    current_step TEXT,
    findings_count INTEGER NOT NULL DEFAULT 0,
    error_code TEXT,
    error_message TEXT,
    target_branch TEXT,
    target_commit TEXT,
    agent_id TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    started_at REAL,
    completed_at REAL,
    FOREIGN KEY (protocol_id) REFERENCES protocols(id)
);

CREATE TABLE IF NOT EXISTS scan_steps (
    id TEXT PRIMARY KEY,
    scan_id TEXT NOT NULL,
    step TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'RUNNING',
    metadata TEXT NOT NULL DEFAULT '{}',
    error_code TEXT,
    error_message TEXT,
    started_at REAL NOT NULL,
    completed_at REAL,
    FOREIGN KEY (scan_id) REFERENCES scans(id)
);

CREATE TABLE IF NOT EXISTS findings (
    id TEXT PRIMARY KEY,
    scan_id TEXT NOT NULL,
    vulnerability_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    file_path TEXT NOT NULL,
    line_number INTEGER,
    function_selector TEXT,
    description TEXT NOT NULL,
    confidence_score REAL NOT NULL DEFAULT 0,
    ai_confidence_score REAL,
    remediation_suggestion TEXT,
    code_snippet TEXT,
    analysis_method TEXT NOT NULL DEFAULT 'STATIC',
    FOREIGN KEY (scan_id) REFERENCES scans(id)
);

CREATE TABLE IF NOT EXISTS proofs (
    id TEXT PRIMARY KEY,
    scan_id TEXT NOT NULL,
    finding_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    researcher_signature TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'PENDING',
    created_at REAL NOT NULL,
    FOREIGN KEY (scan_id) REFERENCES scans(id),
    FOREIGN KEY (finding_id) REFERENCES findings(id)
);

CREATE TABLE IF NOT EXISTS proof_submissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    proof_id TEXT NOT NULL,
    scan_id TEXT NOT NULL,
    protocol_id TEXT NOT NULL,
    message TEXT NOT NULL,
    submitted_at REAL NOT NULL,
    FOREIGN KEY (proof_id) REFERENCES proofs(id)
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'RESEARCHER',
    status TEXT NOT NULL DEFAULT 'ONLINE',
    capacity INTEGER NOT NULL DEFAULT 1,
    active_scans INTEGER NOT NULL DEFAULT 0,
    current_task TEXT,
    scans_completed INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS agent_runs (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    scan_id TEXT NOT NULL,
    worker_id TEXT NOT NULL DEFAULT '',
    runtime_version TEXT NOT NULL DEFAULT '',
    started_at REAL NOT NULL,
    completed_at REAL,
    duration REAL,
    error_code TEXT,
    error_message TEXT,
    FOREIGN KEY (agent_id) REFERENCES agents(id)
);

CREATE TABLE IF NOT EXISTS scan_jobs (
    id TEXT PRIMARY KEY,
    scan_id TEXT NOT NULL,
    protocol_id TEXT NOT NULL,
    target_branch TEXT,
    target_commit TEXT,
    queued_at REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'waiting',
    attempts_made INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    available_at REAL NOT NULL DEFAULT 0,
    canceled INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_scans_state
    ON scans(state);
CREATE INDEX IF NOT EXISTS idx_steps_scan
    ON scan_steps(scan_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_steps_one_running
    ON scan_steps(scan_id, step) WHERE status = 'RUNNING';
CREATE INDEX IF NOT EXISTS idx_findings_scan
    ON findings(scan_id);
CREATE INDEX IF NOT EXISTS idx_proofs_scan
    ON proofs(scan_id);
CREATE INDEX IF NOT EXISTS idx_jobs_due
    ON scan_jobs(status, available_at);
"""


async def get_db(db_path: str | Path) -> aiosqlite.Connection:
    """Open (or create) the database and run migrations."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")

    await _migrate(db)
    return db


async def _migrate(db: aiosqlite.Connection) -> None:
    """Run schema migrations if needed."""
    cursor = await db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    )
    row = await cursor.fetchone()

    if row is None:
        # Fresh database: create everything
        await db.executescript(SCHEMA_SQL)
        await db.execute(
            "INSERT INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        await db.commit()
        logger.info("Database initialized at schema version %d", SCHEMA_VERSION)
        return

    cursor = await db.execute("SELECT version FROM schema_version")
    row = await cursor.fetchone()
    current = row[0] if row else 0

    if current < SCHEMA_VERSION:
        logger.info(
            "Migrating database from version %d to %d",
            current,
            SCHEMA_VERSION,
        )
        if current < 2:
            # v2 added the submission outbox and per-agent capacity
            await db.execute(
                "ALTER TABLE agents ADD COLUMN capacity INTEGER NOT NULL DEFAULT 1"
            )
            await db.execute(
                "ALTER TABLE agents "
                "ADD COLUMN active_scans INTEGER NOT NULL DEFAULT 0"
            )
            await db.executescript(SCHEMA_SQL)
        await db.execute(
            "UPDATE schema_version SET version = ?",
            (SCHEMA_VERSION,),
        )
        await db.commit()
