"""Table/index DDL and the bounded set of idempotent migrations."""

import logging
import sqlite3

from .errors import SchemaError

log = logging.getLogger(__name__)

PRAGMAS = [
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA foreign_keys=ON",
    "PRAGMA cache_size=-64000",
]

TABLES = [
    """
    CREATE TABLE IF NOT EXISTS realms (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        slug TEXT NOT NULL,
        name TEXT,
        region TEXT NOT NULL,
        connected_realm_id INTEGER,
        parent_realm_slug TEXT,
        UNIQUE(region, slug)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dungeons (
        id INTEGER PRIMARY KEY,
        slug TEXT UNIQUE,
        name TEXT,
        map_challenge_mode_id INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS seasons (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        season_number INTEGER NOT NULL,
        region TEXT NOT NULL,
        season_name TEXT,
        start_timestamp INTEGER,
        end_timestamp INTEGER,
        first_period_id INTEGER,
        last_period_id INTEGER,
        UNIQUE(season_number, region)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS period_seasons (
        period_id INTEGER NOT NULL,
        season_id INTEGER NOT NULL,
        PRIMARY KEY (period_id, season_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS challenge_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        duration INTEGER NOT NULL,
        completed_timestamp INTEGER NOT NULL,
        keystone_level INTEGER,
        dungeon_id INTEGER NOT NULL,
        realm_id INTEGER NOT NULL,
        period_id INTEGER,
        period_start_timestamp INTEGER,
        period_end_timestamp INTEGER,
        team_signature TEXT NOT NULL,
        season_id INTEGER,
        UNIQUE(completed_timestamp, dungeon_id, duration, realm_id, team_signature)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS run_members (
        run_id INTEGER NOT NULL,
        player_id INTEGER NOT NULL,
        spec_id INTEGER,
        faction TEXT,
        PRIMARY KEY (run_id, player_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS players (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        name_lower TEXT NOT NULL,
        realm_id INTEGER NOT NULL,
        blizzard_character_id INTEGER,
        is_valid INTEGER DEFAULT 1,
        status_checked_at INTEGER,
        merged_into INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS player_fingerprints (
        player_id INTEGER PRIMARY KEY,
        fingerprint_hash TEXT NOT NULL UNIQUE,
        class_id INTEGER NOT NULL,
        level85_timestamp INTEGER NOT NULL,
        level90_timestamp INTEGER NOT NULL,
        earliest_heroic_timestamp INTEGER NOT NULL,
        last_seen_name TEXT,
        last_seen_realm_slug TEXT,
        last_seen_timestamp INTEGER,
        first_run_timestamp INTEGER,
        created_at INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS player_best_runs (
        player_id INTEGER NOT NULL,
        dungeon_id INTEGER NOT NULL,
        season_id INTEGER NOT NULL,
        run_id INTEGER NOT NULL,
        duration INTEGER NOT NULL,
        completed_timestamp INTEGER NOT NULL,
        global_ranking_filtered INTEGER,
        regional_ranking_filtered INTEGER,
        realm_ranking_filtered INTEGER,
        global_percentile_bracket TEXT,
        regional_percentile_bracket TEXT,
        realm_percentile_bracket TEXT,
        PRIMARY KEY (player_id, dungeon_id, season_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS player_profiles (
        player_id INTEGER NOT NULL,
        season_id INTEGER NOT NULL,
        name TEXT,
        realm_id INTEGER,
        main_spec_id INTEGER,
        class_name TEXT,
        dungeons_completed INTEGER NOT NULL DEFAULT 0,
        total_runs INTEGER NOT NULL DEFAULT 0,
        combined_best_time INTEGER,
        average_best_time REAL,
        global_ranking INTEGER,
        regional_ranking INTEGER,
        realm_ranking INTEGER,
        global_ranking_bracket TEXT,
        regional_ranking_bracket TEXT,
        realm_ranking_bracket TEXT,
        global_class_rank INTEGER,
        region_class_rank INTEGER,
        realm_class_rank INTEGER,
        global_class_bracket TEXT,
        region_class_bracket TEXT,
        realm_class_bracket TEXT,
        has_complete_coverage INTEGER NOT NULL DEFAULT 0,
        last_updated INTEGER,
        PRIMARY KEY (player_id, season_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS run_rankings (
        run_id INTEGER NOT NULL,
        dungeon_id INTEGER NOT NULL,
        ranking_type TEXT NOT NULL,
        ranking_scope TEXT NOT NULL,
        ranking INTEGER NOT NULL,
        percentile_bracket TEXT,
        season_id INTEGER NOT NULL,
        computed_at INTEGER,
        PRIMARY KEY (run_id, ranking_type, ranking_scope, season_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS player_rankings (
        player_id INTEGER NOT NULL,
        ranking_type TEXT NOT NULL,
        ranking_scope TEXT NOT NULL,
        ranking INTEGER,
        combined_best_time INTEGER,
        last_updated INTEGER,
        PRIMARY KEY (player_id, ranking_type, ranking_scope)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS player_details (
        player_id INTEGER PRIMARY KEY,
        race_id INTEGER,
        race_name TEXT,
        gender TEXT,
        class_id INTEGER,
        class_name TEXT,
        active_spec_id INTEGER,
        active_spec_name TEXT,
        guild_name TEXT,
        level INTEGER,
        average_item_level INTEGER,
        equipped_item_level INTEGER,
        avatar_url TEXT,
        last_login_timestamp INTEGER,
        last_updated INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS player_equipment (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        player_id INTEGER NOT NULL,
        slot_type TEXT NOT NULL,
        item_id INTEGER,
        upgrade_id INTEGER,
        quality TEXT,
        item_name TEXT,
        snapshot_timestamp INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS player_equipment_enchantments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        equipment_id INTEGER NOT NULL,
        enchantment_id INTEGER,
        slot_id INTEGER,
        slot_type TEXT,
        display_string TEXT,
        source_item_id INTEGER,
        source_item_name TEXT,
        spell_id INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS items (
        id INTEGER PRIMARY KEY,
        name TEXT,
        icon TEXT,
        type TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_fetch_markers (
        realm_slug TEXT NOT NULL,
        dungeon_id INTEGER NOT NULL,
        period_id INTEGER NOT NULL,
        last_completed_ts INTEGER NOT NULL,
        PRIMARY KEY (realm_slug, dungeon_id, period_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fetch_status (
        region TEXT NOT NULL,
        realm_slug TEXT NOT NULL,
        dungeon_id INTEGER NOT NULL,
        period_id INTEGER NOT NULL,
        status TEXT NOT NULL,
        http_status INTEGER,
        checked_at INTEGER NOT NULL,
        message TEXT,
        PRIMARY KEY (region, realm_slug, dungeon_id, period_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_fetch_metadata (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        fetch_type TEXT NOT NULL UNIQUE,
        last_fetch_time INTEGER,
        runs_fetched INTEGER,
        players_fetched INTEGER
    )
    """,
]

INDEXES = [
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_realms_region_slug ON realms(region, slug)",
    "CREATE INDEX IF NOT EXISTS idx_realms_parent ON realms(region, parent_realm_slug)",
    "CREATE INDEX IF NOT EXISTS idx_runs_dungeon_season ON challenge_runs(dungeon_id, season_id, duration)",
    "CREATE INDEX IF NOT EXISTS idx_runs_realm_dungeon ON challenge_runs(realm_id, dungeon_id, completed_timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_runs_season ON challenge_runs(season_id)",
    "CREATE INDEX IF NOT EXISTS idx_runs_team ON challenge_runs(team_signature)",
    "CREATE INDEX IF NOT EXISTS idx_members_player ON run_members(player_id)",
    "CREATE INDEX IF NOT EXISTS idx_players_name_realm ON players(name_lower, realm_id)",
    "CREATE INDEX IF NOT EXISTS idx_players_valid ON players(is_valid)",
    "CREATE INDEX IF NOT EXISTS idx_rr_partition ON run_rankings(dungeon_id, season_id, ranking_type, ranking_scope, ranking)",
    "CREATE INDEX IF NOT EXISTS idx_pbr_season ON player_best_runs(season_id, dungeon_id)",
    "CREATE INDEX IF NOT EXISTS idx_pp_season_cov ON player_profiles(season_id, has_complete_coverage, combined_best_time)",
    "CREATE INDEX IF NOT EXISTS idx_equipment_player_slot ON player_equipment(player_id, slot_type, snapshot_timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_enchant_equipment ON player_equipment_enchantments(equipment_id)",
    "CREATE INDEX IF NOT EXISTS idx_seasons_region_start ON seasons(region, start_timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_fetch_status_status ON fetch_status(status)",
]


# --------------------------------------------------------------------------
# Migrations
# --------------------------------------------------------------------------
def _table_sql(conn: sqlite3.Connection, table: str) -> str:
    row = conn.execute(
        "SELECT sql FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    return (row[0] or "") if row else ""


def column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    return any(r[1] == column for r in conn.execute(f"PRAGMA table_info({table})"))


def _migrate_realms_composite_slug(conn: sqlite3.Connection) -> None:
    sql = " ".join(_table_sql(conn, "realms").lower().split())
    if "slug text unique" not in sql:
        return
    log.info("[MIGRATE] realms: slug-unique -> (region, slug)-unique")
    parent_col = "parent_realm_slug" if column_exists(conn, "realms", "parent_realm_slug") else "NULL"
    conn.executescript(
        f"""
        BEGIN;
        CREATE TABLE realms_new (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            slug TEXT NOT NULL,
            name TEXT,
            region TEXT NOT NULL,
            connected_realm_id INTEGER,
            parent_realm_slug TEXT,
            UNIQUE(region, slug)
        );
        INSERT INTO realms_new (id, slug, name, region, connected_realm_id, parent_realm_slug)
            SELECT id, slug, name, region, connected_realm_id, {parent_col} FROM realms;
        DROP TABLE realms;
        ALTER TABLE realms_new RENAME TO realms;
        COMMIT;
        """
    )


def _migrate_seasons_region(conn: sqlite3.Connection) -> None:
    if not _table_sql(conn, "seasons") or column_exists(conn, "seasons", "region"):
        return
    log.info("[MIGRATE] seasons: adding region column (legacy rows -> us)")
    conn.executescript(
        """
        BEGIN;
        CREATE TABLE seasons_new (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            season_number INTEGER NOT NULL,
            region TEXT NOT NULL,
            season_name TEXT,
            start_timestamp INTEGER,
            end_timestamp INTEGER,
            first_period_id INTEGER,
            last_period_id INTEGER,
            UNIQUE(season_number, region)
        );
        INSERT INTO seasons_new (id, season_number, region, season_name, start_timestamp,
                                 end_timestamp, first_period_id, last_period_id)
            SELECT id, season_number, 'us', season_name, start_timestamp,
                   end_timestamp, first_period_id, last_period_id FROM seasons;
        DROP TABLE seasons;
        ALTER TABLE seasons_new RENAME TO seasons;
        COMMIT;
        """
    )


def _migrate_players_identity_columns(conn: sqlite3.Connection) -> None:
    for column, ddl in (
        ("blizzard_character_id", "ALTER TABLE players ADD COLUMN blizzard_character_id INTEGER"),
        ("is_valid", "ALTER TABLE players ADD COLUMN is_valid INTEGER DEFAULT 1"),
        ("status_checked_at", "ALTER TABLE players ADD COLUMN status_checked_at INTEGER"),
        ("merged_into", "ALTER TABLE players ADD COLUMN merged_into INTEGER"),
    ):
        if not column_exists(conn, "players", column):
            log.info(f"[MIGRATE] players: adding {column}")
            conn.execute(ddl)
    conn.commit()


def _migrate_player_rankings_pk(conn: sqlite3.Connection) -> None:
    sql = _table_sql(conn, "player_rankings")
    if not sql or "PRIMARY KEY" in sql.upper():
        return
    log.info("[MIGRATE] player_rankings: adding primary key, keeping newest rows")
    conn.executescript(
        """
        BEGIN;
        CREATE TABLE player_rankings_new (
            player_id INTEGER NOT NULL,
            ranking_type TEXT NOT NULL,
            ranking_scope TEXT NOT NULL,
            ranking INTEGER,
            combined_best_time INTEGER,
            last_updated INTEGER,
            PRIMARY KEY (player_id, ranking_type, ranking_scope)
        );
        INSERT INTO player_rankings_new
            SELECT player_id, ranking_type, ranking_scope, ranking, combined_best_time, last_updated
            FROM player_rankings
            WHERE rowid IN (
                SELECT MAX(rowid) FROM player_rankings
                GROUP BY player_id, ranking_type, ranking_scope
            );
        DROP TABLE player_rankings;
        ALTER TABLE player_rankings_new RENAME TO player_rankings;
        COMMIT;
        """
    )


MIGRATIONS = [
    _migrate_realms_composite_slug,
    _migrate_seasons_region,
    _migrate_players_identity_columns,
    _migrate_player_rankings_pk,
]


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create tables, run migrations, then build indexes. Any failure is fatal."""
    for stmt in TABLES:
        conn.execute(stmt)
    conn.commit()
    for migrate in MIGRATIONS:
        try:
            migrate(conn)
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.rollback()
            raise SchemaError(f"migration {migrate.__name__} failed: {e}") from e
    for stmt in INDEXES:
        try:
            conn.execute(stmt)
        except sqlite3.Error as e:
            raise SchemaError(f"index creation failed ({stmt}): {e}") from e
    conn.commit()
