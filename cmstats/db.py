import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from .config import DEFAULT_DB_PATH
from .errors import CMStatsError
from .realms import PARENT_SLUG_BY_REGION
from .schema import PRAGMAS, ensure_schema

log = logging.getLogger(__name__)

BUSY_ATTEMPTS = 8


def is_busy_error(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and (
        "database is locked" in msg or "busy" in msg
    )


def busy_backoff(attempt: int) -> float:
    return min((attempt + 1) * 0.1, 1.0)


class Database:
    """
    One process-wide SQLite handle. Autocommit mode: every write path either runs a
    single statement or goes through transaction(), which always ends in COMMIT or
    ROLLBACK.
    """

    def __init__(self, path: str = DEFAULT_DB_PATH):
        self.path = path
        try:
            self.conn = sqlite3.connect(path, isolation_level=None, timeout=5.0)
        except sqlite3.Error as e:
            raise CMStatsError(f"cannot open database {path}: {e}") from e
        self.conn.row_factory = sqlite3.Row
        for pragma in PRAGMAS:
            self.conn.execute(pragma)
        ensure_schema(self.conn)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def reader(self) -> sqlite3.Connection:
        """Separate read-only connection for worker threads."""
        conn = sqlite3.connect(self.path, isolation_level=None, timeout=5.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA query_only=ON")
        return conn

    # ----------------------------------------------------------------------
    # statement helpers
    # ----------------------------------------------------------------------
    def execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        return self.retry_on_busy(self.conn.execute, sql, params)

    def query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        return self.conn.execute(sql, params).fetchone()

    def scalar(self, sql: str, params: tuple | list = (), default: Any = None) -> Any:
        row = self.conn.execute(sql, params).fetchone()
        if row is None or row[0] is None:
            return default
        return row[0]

    def retry_on_busy(self, fn: Callable, *args, **kwargs):
        for attempt in range(BUSY_ATTEMPTS):
            try:
                return fn(*args, **kwargs)
            except sqlite3.OperationalError as e:
                if not is_busy_error(e) or attempt == BUSY_ATTEMPTS - 1:
                    raise
                time.sleep(busy_backoff(attempt))

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        self.retry_on_busy(self.conn.execute, "BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")

    def run_in_transaction(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        """Run fn inside a transaction, restarting the whole unit on busy errors."""
        for attempt in range(BUSY_ATTEMPTS):
            try:
                with self.transaction() as conn:
                    return fn(conn)
            except sqlite3.OperationalError as e:
                if not is_busy_error(e) or attempt == BUSY_ATTEMPTS - 1:
                    raise
                time.sleep(busy_backoff(attempt))

    # ----------------------------------------------------------------------
    # reference data
    # ----------------------------------------------------------------------
    def ensure_dungeons(self, dungeons: list[dict]) -> None:
        with self.transaction() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO dungeons (id, slug, name, map_challenge_mode_id) VALUES (?, ?, ?, ?)",
                [(d["id"], d["slug"], d["name"], d["id"]) for d in dungeons],
            )

    def ensure_realms(self, realms: dict[str, dict]) -> None:
        with self.transaction() as conn:
            for key in sorted(realms):
                r = realms[key]
                conn.execute(
                    """
                    INSERT INTO realms (slug, name, region, connected_realm_id, parent_realm_slug)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(region, slug) DO UPDATE SET
                        name = excluded.name,
                        connected_realm_id = COALESCE(excluded.connected_realm_id, realms.connected_realm_id),
                        parent_realm_slug = COALESCE(excluded.parent_realm_slug, realms.parent_realm_slug)
                    """,
                    (r["slug"], r["name"], r["region"], r.get("id"), r.get("parent_realm_slug")),
                )
        log.debug(f"Ensured {len(realms)} realms")

    def sync_realm_parents(self) -> int:
        """Apply the merged-realm alias table to every stored realm (placeholders included)."""
        changed = 0
        with self.transaction() as conn:
            for region, children in PARENT_SLUG_BY_REGION.items():
                for child, parent in children.items():
                    cur = conn.execute(
                        """
                        UPDATE realms SET parent_realm_slug = ?
                        WHERE region = ? AND slug = ? AND COALESCE(parent_realm_slug, '') != ?
                        """,
                        (parent, region, child, parent),
                    )
                    changed += cur.rowcount
        return changed

    def get_realm_id(self, region: str, slug: str) -> int | None:
        return self.scalar("SELECT id FROM realms WHERE region = ? AND slug = ?", (region, slug))

    def get_dungeon_id(self, slug: str) -> int | None:
        return self.scalar("SELECT id FROM dungeons WHERE slug = ?", (slug,))

    def dungeon_count(self) -> int:
        return self.scalar("SELECT COUNT(*) FROM dungeons", default=0)

    def get_realm_pool(self, realm_id: int) -> list[sqlite3.Row]:
        """Every realm in the same pool as realm_id (leader plus children, same region)."""
        row = self.query_one(
            "SELECT slug, region, COALESCE(NULLIF(parent_realm_slug, ''), slug) AS leader FROM realms WHERE id = ?",
            (realm_id,),
        )
        if row is None:
            return []
        return self.query(
            """
            SELECT id, slug, name, region FROM realms
            WHERE region = ? AND (slug = ? OR parent_realm_slug = ?)
            ORDER BY CASE WHEN slug = ? THEN 0 ELSE 1 END, slug
            """,
            (row["region"], row["leader"], row["leader"], row["leader"]),
        )

    # ----------------------------------------------------------------------
    # fetch bookkeeping
    # ----------------------------------------------------------------------
    def record_fetch_status(self, region: str, realm_slug: str, dungeon_id: int, period_id: int,
                            status: str, http_status: int | None, message: str | None) -> None:
        if not period_id:
            return
        if message and len(message) > 512:
            message = message[:512]
        self.execute(
            """
            INSERT INTO fetch_status (region, realm_slug, dungeon_id, period_id, status, http_status, checked_at, message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(region, realm_slug, dungeon_id, period_id) DO UPDATE SET
                status = excluded.status,
                http_status = excluded.http_status,
                checked_at = excluded.checked_at,
                message = excluded.message
            """,
            (region, realm_slug, dungeon_id, period_id, status, http_status, int(time.time()), message),
        )

    def get_marker(self, realm_slug: str, dungeon_id: int, period_id: int) -> int:
        return self.scalar(
            "SELECT last_completed_ts FROM api_fetch_markers WHERE realm_slug = ? AND dungeon_id = ? AND period_id = ?",
            (realm_slug, dungeon_id, period_id),
            default=0,
        )

    def max_completed_ts(self, realm_id: int, dungeon_id: int) -> int:
        return self.scalar(
            "SELECT MAX(completed_timestamp) FROM challenge_runs WHERE realm_id = ? AND dungeon_id = ?",
            (realm_id, dungeon_id),
            default=0,
        )

    def update_fetch_metadata(self, fetch_type: str, runs: int, players: int) -> None:
        self.execute(
            """
            INSERT INTO api_fetch_metadata (fetch_type, last_fetch_time, runs_fetched, players_fetched)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(fetch_type) DO UPDATE SET
                last_fetch_time = excluded.last_fetch_time,
                runs_fetched = excluded.runs_fetched,
                players_fetched = excluded.players_fetched
            """,
            (fetch_type, int(time.time() * 1000), runs, players),
        )

    # ----------------------------------------------------------------------
    # seasons
    # ----------------------------------------------------------------------
    def upsert_season(self, season_number: int, region: str, name: str | None, start_ts: int | None) -> int:
        rows = self.retry_on_busy(
            self.conn.execute,
            """
            INSERT INTO seasons (season_number, region, season_name, start_timestamp)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(season_number, region) DO UPDATE SET
                season_name = excluded.season_name,
                start_timestamp = excluded.start_timestamp
            RETURNING id
            """,
            (season_number, region, name, start_ts),
        ).fetchall()
        return rows[0][0]

    def update_season_period_range(self, season_id: int, first_period: int, last_period: int) -> None:
        self.execute(
            "UPDATE seasons SET first_period_id = ?, last_period_id = ? WHERE id = ?",
            (first_period, last_period, season_id),
        )

    def update_season_end_timestamp(self, season_id: int, end_ts: int | None) -> None:
        self.execute("UPDATE seasons SET end_timestamp = ? WHERE id = ?", (end_ts, season_id))

    def link_period_to_season(self, period_id: int, season_id: int) -> None:
        self.execute(
            "INSERT OR IGNORE INTO period_seasons (period_id, season_id) VALUES (?, ?)",
            (period_id, season_id),
        )

    def get_all_seasons(self, region: str | None = None) -> list[sqlite3.Row]:
        if region:
            return self.query(
                "SELECT * FROM seasons WHERE region = ? ORDER BY start_timestamp DESC", (region,)
            )
        return self.query("SELECT * FROM seasons ORDER BY start_timestamp DESC, region")

    def season_number_for(self, region: str, completed_ts: int,
                          conn: sqlite3.Connection | None = None) -> int | None:
        row = (conn or self.conn).execute(
            """
            SELECT season_number FROM seasons
            WHERE region = ? AND start_timestamp <= ?
              AND (end_timestamp IS NULL OR end_timestamp > ?)
            ORDER BY start_timestamp DESC
            LIMIT 1
            """,
            (region, completed_ts, completed_ts),
        ).fetchone()
        return row[0] if row else None

    def assign_runs_to_seasons(self) -> tuple[int, int]:
        """
        Stamp season numbers onto runs that have none. Returns (assigned, orphaned);
        orphaned runs fall outside every known season window for their region.
        """
        pending = self.scalar("SELECT COUNT(*) FROM challenge_runs WHERE season_id IS NULL", default=0)
        with self.transaction() as conn:
            regions = [r[0] for r in conn.execute("SELECT DISTINCT region FROM seasons")]
            for region in regions:
                conn.execute(
                    """
                    UPDATE challenge_runs
                    SET season_id = (
                        SELECT s.season_number FROM seasons s
                        WHERE s.region = ?
                          AND s.start_timestamp <= challenge_runs.completed_timestamp
                          AND (s.end_timestamp IS NULL OR s.end_timestamp > challenge_runs.completed_timestamp)
                        ORDER BY s.start_timestamp DESC
                        LIMIT 1
                    )
                    WHERE season_id IS NULL
                      AND realm_id IN (SELECT id FROM realms WHERE region = ?)
                    """,
                    (region, region),
                )
        orphaned = self.scalar("SELECT COUNT(*) FROM challenge_runs WHERE season_id IS NULL", default=0)
        if orphaned:
            log.warning(f"{orphaned} runs fall outside every known season window")
        return pending - orphaned, orphaned
