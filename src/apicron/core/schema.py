"""
Scheduler tables.

Defines table names and DDL for the three tables the scheduling core
owns or reads.

Architecture:
    ::

        ┌────────────────────────────────────────────────────────────┐
        │ schedules        → schedule definitions + execution state  │
        │ schedule_locks   → one in-flight lease per schedule        │
        │ execution_tasks  → durable task queue (attempt, not_before)│
        └────────────────────────────────────────────────────────────┘

    Timestamps are stored as ISO-8601 UTC strings with fixed microsecond
    precision so lexical comparison matches chronological order.

Examples:
    >>> from apicron.core.schema import TABLES, create_tables
    >>> TABLES["schedules"]
    'schedules'
    >>> create_tables(conn)

Tags:
    schema, ddl, database, scheduling

Doc-Types:
    - Schema Documentation
"""

TABLES = {
    "schedules": "schedules",
    "schedule_locks": "schedule_locks",
    "execution_tasks": "execution_tasks",
}

DDL = {
    "schedules": """
        CREATE TABLE IF NOT EXISTS schedules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            schedule_type TEXT NOT NULL DEFAULT 'manual',
            enabled INTEGER NOT NULL DEFAULT 1,
            cron_expression TEXT,
            cron_description TEXT,
            timezone TEXT,
            max_retries INTEGER NOT NULL DEFAULT 3,
            retry_delay INTEGER NOT NULL DEFAULT 5,
            retry_delay_unit TEXT NOT NULL DEFAULT 'minutes',
            status TEXT NOT NULL DEFAULT 'active',
            api_source_id INTEGER,
            api_request_id INTEGER,
            api_extract_id INTEGER,
            destination_id INTEGER,
            last_executed_at TEXT,
            next_execution_at TEXT,
            execution_count INTEGER NOT NULL DEFAULT 0,
            failure_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "schedules_idx_dispatch": """
        CREATE INDEX IF NOT EXISTS idx_schedules_dispatch
        ON schedules(enabled, status, schedule_type)
    """,
    "schedule_locks": """
        CREATE TABLE IF NOT EXISTS schedule_locks (
            schedule_id INTEGER PRIMARY KEY,
            locked_by TEXT NOT NULL,
            locked_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
    """,
    "execution_tasks": """
        CREATE TABLE IF NOT EXISTS execution_tasks (
            task_id TEXT PRIMARY KEY,
            schedule_id INTEGER NOT NULL,
            attempt INTEGER NOT NULL DEFAULT 1,
            not_before TEXT NOT NULL,
            enqueued_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            claimed_by TEXT,
            claimed_at TEXT
        )
    """,
    "execution_tasks_idx_due": """
        CREATE INDEX IF NOT EXISTS idx_execution_tasks_due
        ON execution_tasks(status, not_before)
    """,
    "execution_tasks_idx_schedule": """
        CREATE INDEX IF NOT EXISTS idx_execution_tasks_schedule
        ON execution_tasks(schedule_id, status)
    """,
}


def create_tables(conn) -> None:
    """
    Create all scheduler tables.

    Safe to call multiple times (CREATE IF NOT EXISTS).
    """
    for _name, ddl in DDL.items():
        conn.execute(ddl)
    conn.commit()


__all__ = ["DDL", "TABLES", "create_tables"]
