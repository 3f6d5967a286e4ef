import os
from pathlib import Path
from typing import Callable
from urllib.parse import urlparse

from psycopg import Connection, connect
from psycopg.rows import dict_row

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "data" / "schema.sql"

# arbitrary but fixed; every insight writer takes this lock for the length of its transaction
INSIGHT_WRITER_LOCK_KEY = 7_204_311

# connect to postgres DB
def get_connection():
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL is required")
    conn = connect(database_url, row_factory=dict_row)
    return conn


def acquire_insight_writer_lock(conn: Connection) -> None:
    # released automatically on commit or rollback
    conn.execute("SELECT pg_advisory_xact_lock(%s)", (INSIGHT_WRITER_LOCK_KEY,))


def assert_test_database_safety() -> None:
    if os.getenv("APP_ENV", "").strip().lower() != "test":
        raise RuntimeError("APP_ENV must be 'test' before touching a test database")
    database_url = os.getenv("DATABASE_URL", "").strip()
    db_name = urlparse(database_url).path.lstrip("/")
    if "_test_" not in db_name:
        raise RuntimeError(f"refusing to use non-test database: {db_name or '<empty>'}")

# test table presence before altering
def _table_exists(conn: Connection, table_name: str) -> bool:
    row = conn.execute(
        """
        SELECT 1
        FROM information_schema.tables
        WHERE table_schema = 'public'
          AND table_name = %s
        LIMIT 1
        """,
        (table_name,),
    ).fetchone()
    return row is not None

# prevents second startup after migration from causing duplicate column errors
def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False
    row = conn.execute(
        """
        SELECT 1
        FROM information_schema.columns
        WHERE table_schema = 'public'
          AND table_name = %s
          AND column_name = %s
        LIMIT 1
        """,
        (table_name, column_name),
    ).fetchone()
    return row is not None

# group key lookups happen on every reconcile pass and every dedupe pass
def _migration_001_insight_group_key_index(conn: Connection) -> None:
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_insights_group_key
        ON insights(kind, person_ref, context_ref)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_insights_person
        ON insights(person_ref)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_insights_context
        ON insights(context_ref)
        """
    )


def _migration_002_evidence_indexes(conn: Connection) -> None:
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_evidence_occurred
        ON evidence(occurred_at, id)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_insight_evidence_links_insight
        ON insight_evidence_links(insight_id)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_insight_evidence_links_evidence
        ON insight_evidence_links(evidence_id)
        """
    )

# databases created before rows tracked their last reconcile write
def _migration_003_insight_updated_at(conn: Connection) -> None:
    if not _column_exists(conn, "insights", "updated_at"):
        conn.execute("ALTER TABLE insights ADD COLUMN updated_at TEXT")
    if not _column_exists(conn, "evidence", "ingested_at"):
        conn.execute("ALTER TABLE evidence ADD COLUMN ingested_at TEXT")


def _apply_migrations(conn: Connection) -> None:
    migrations: list[Callable[[Connection], None]] = [
        _migration_001_insight_group_key_index,
        _migration_002_evidence_indexes,
        _migration_003_insight_updated_at,
    ]
    for migration in migrations:
        migration(conn)


def _execute_script(conn: Connection, script: str) -> None:
    with conn.cursor() as cursor:
        cursor.execute(script)


def initialize_database():
    conn = get_connection()
    try:
        if not _table_exists(conn, "insights"):
            with open(SCHEMA_PATH, "r") as f:
                schema_sql = f.read()
            _execute_script(conn, schema_sql)
        _apply_migrations(conn)
        conn.commit()
    finally:
        conn.close()
