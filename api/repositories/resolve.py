# display-name lookups for person/context refs
# refs are opaque ids owned by identity resolution; this module never merges or validates them

from psycopg import Connection

from ingestion.time_utils import now_iso


def fetch_person_name_map(conn: Connection) -> dict[str, str]:
    rows = conn.execute("SELECT id, display_name FROM people").fetchall()
    return {str(row["id"]): row["display_name"] for row in rows if row["display_name"]}


def fetch_context_name_map(conn: Connection) -> dict[str, str]:
    rows = conn.execute("SELECT id, name FROM contexts").fetchall()
    return {str(row["id"]): row["name"] for row in rows if row["name"]}

# ingestion may carry the current display name along with a ref; latest name wins
def upsert_person_name(conn: Connection, person_ref: str, display_name: str) -> None:
    conn.execute(
        """
        INSERT INTO people (id, display_name, created_at)
        VALUES (%s, %s, %s)
        ON CONFLICT (id) DO UPDATE SET display_name = excluded.display_name
        """,
        (person_ref, display_name.strip(), now_iso()),
    )


def upsert_context_name(conn: Connection, context_ref: str, name: str) -> None:
    conn.execute(
        """
        INSERT INTO contexts (id, name, created_at)
        VALUES (%s, %s, %s)
        ON CONFLICT (id) DO UPDATE SET name = excluded.name
        """,
        (context_ref, name.strip(), now_iso()),
    )
