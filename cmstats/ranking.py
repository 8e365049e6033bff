"""
Ranking materialization.

Everything here is derived data: run_rankings, player_best_runs, player_profiles
and the legacy player_rankings table are wiped and rebuilt inside one
transaction. Partitions are (dungeon, season) plus the scope columns; rows are
ordered by (duration, completed_timestamp, id) so ranks never tie.

Scopes are (ranking_type, ranking_scope) pairs:
    global   / all             global   / filtered
    regional / {region}        regional / {region}_filtered
    realm    / {pool}          realm    / {pool}_filtered
where a pool is a parent realm plus its children in the same region.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass

from .constants import class_for_spec
from .db import Database
from .errors import RankingError
from .utils import bracket_case_sql

log = logging.getLogger(__name__)

POOL_EXPR = "COALESCE(NULLIF(r.parent_realm_slug, ''), r.slug)"
RANK_ORDER = "duration, completed_timestamp, id"

RUN_BASE = f"""
    SELECT cr.id AS id, cr.dungeon_id AS dungeon_id, cr.season_id AS season_id,
           cr.duration AS duration, cr.completed_timestamp AS completed_timestamp,
           cr.team_signature AS team_signature, r.region AS region, {POOL_EXPR} AS pool
    FROM challenge_runs cr
    JOIN realms r ON r.id = cr.realm_id
    WHERE cr.season_id IS NOT NULL
"""

# ranking_type, "all" scope key, "filtered" scope key, extra partition columns
RUN_SCOPES = [
    ("global", "'all'", "'filtered'", ""),
    ("regional", "region", "region || '_filtered'", ", region"),
    ("realm", "pool", "pool || '_filtered'", ", region, pool"),
]


def _rank_all_sql(rtype: str, scope: str, part: str) -> str:
    return f"""
        INSERT INTO run_rankings (run_id, dungeon_id, ranking_type, ranking_scope, ranking, season_id, computed_at)
        SELECT id, dungeon_id, '{rtype}', {scope},
               ROW_NUMBER() OVER (PARTITION BY dungeon_id, season_id{part} ORDER BY {RANK_ORDER}),
               season_id, ?
        FROM ({RUN_BASE})
    """


def _rank_filtered_sql(rtype: str, scope: str, part: str) -> str:
    # one run per team: its fastest, then earliest, then lowest id
    return f"""
        WITH team_best AS (
            SELECT base.*,
                   ROW_NUMBER() OVER (
                       PARTITION BY dungeon_id, season_id{part}, team_signature ORDER BY {RANK_ORDER}
                   ) AS team_rank
            FROM ({RUN_BASE}) base
        )
        INSERT INTO run_rankings (run_id, dungeon_id, ranking_type, ranking_scope, ranking, season_id, computed_at)
        SELECT id, dungeon_id, '{rtype}', {scope},
               ROW_NUMBER() OVER (PARTITION BY dungeon_id, season_id{part} ORDER BY {RANK_ORDER}),
               season_id, ?
        FROM team_best
        WHERE team_rank = 1
    """


RUN_BRACKETS_SQL = f"""
    UPDATE run_rankings SET percentile_bracket = b.bracket
    FROM (
        SELECT run_id, ranking_type, ranking_scope, season_id,
               {bracket_case_sql("ranking", "total", "duration", "min_duration")} AS bracket
        FROM (
            SELECT rr.run_id, rr.ranking_type, rr.ranking_scope, rr.season_id, rr.ranking, cr.duration,
                   MIN(cr.duration) OVER w AS min_duration,
                   COUNT(*) OVER w AS total
            FROM run_rankings rr
            JOIN challenge_runs cr ON cr.id = rr.run_id
            JOIN realms r ON r.id = cr.realm_id
            WINDOW w AS (
                PARTITION BY rr.dungeon_id, rr.season_id, rr.ranking_type, rr.ranking_scope,
                             CASE WHEN rr.ranking_type = 'realm' THEN r.region ELSE '' END
            )
        )
    ) AS b
    WHERE run_rankings.run_id = b.run_id
      AND run_rankings.ranking_type = b.ranking_type
      AND run_rankings.ranking_scope = b.ranking_scope
      AND run_rankings.season_id = b.season_id
"""

BEST_RUNS_SQL = f"""
    WITH member_runs AS (
        SELECT rm.player_id, cr.dungeon_id, cr.season_id, cr.id AS run_id, cr.duration,
               cr.completed_timestamp, r.region, {POOL_EXPR} AS pool,
               ROW_NUMBER() OVER (
                   PARTITION BY rm.player_id, cr.dungeon_id, cr.season_id
                   ORDER BY cr.duration, cr.completed_timestamp, cr.id
               ) AS rn
        FROM run_members rm
        JOIN challenge_runs cr ON cr.id = rm.run_id
        JOIN realms r ON r.id = cr.realm_id
        JOIN players p ON p.id = rm.player_id
        WHERE cr.season_id IS NOT NULL AND COALESCE(p.is_valid, 1) != 0
    )
    INSERT INTO player_best_runs (
        player_id, dungeon_id, season_id, run_id, duration, completed_timestamp,
        global_ranking_filtered, regional_ranking_filtered, realm_ranking_filtered,
        global_percentile_bracket, regional_percentile_bracket, realm_percentile_bracket
    )
    SELECT b.player_id, b.dungeon_id, b.season_id, b.run_id, b.duration, b.completed_timestamp,
           g.ranking, rg.ranking, rl.ranking,
           g.percentile_bracket, rg.percentile_bracket, rl.percentile_bracket
    FROM member_runs b
    LEFT JOIN run_rankings g
           ON g.run_id = b.run_id AND g.season_id = b.season_id
          AND g.ranking_type = 'global' AND g.ranking_scope = 'filtered'
    LEFT JOIN run_rankings rg
           ON rg.run_id = b.run_id AND rg.season_id = b.season_id
          AND rg.ranking_type = 'regional' AND rg.ranking_scope = b.region || '_filtered'
    LEFT JOIN run_rankings rl
           ON rl.run_id = b.run_id AND rl.season_id = b.season_id
          AND rl.ranking_type = 'realm' AND rl.ranking_scope = b.pool || '_filtered'
    WHERE b.rn = 1
"""

PROFILES_SQL = """
    WITH agg AS (
        SELECT player_id, season_id, COUNT(*) AS dungeons_completed,
               SUM(duration) AS combined, AVG(duration) AS average
        FROM player_best_runs
        GROUP BY player_id, season_id
    ),
    totals AS (
        SELECT rm.player_id, cr.season_id, COUNT(*) AS total_runs
        FROM run_members rm
        JOIN challenge_runs cr ON cr.id = rm.run_id
        WHERE cr.season_id IS NOT NULL
        GROUP BY rm.player_id, cr.season_id
    ),
    specs AS (
        SELECT pbr.player_id, pbr.season_id, rm.spec_id,
               ROW_NUMBER() OVER (
                   PARTITION BY pbr.player_id, pbr.season_id ORDER BY COUNT(*) DESC, rm.spec_id ASC
               ) AS rn
        FROM player_best_runs pbr
        JOIN run_members rm ON rm.run_id = pbr.run_id AND rm.player_id = pbr.player_id
        WHERE rm.spec_id IS NOT NULL
        GROUP BY pbr.player_id, pbr.season_id, rm.spec_id
    )
    INSERT INTO player_profiles (
        player_id, season_id, name, realm_id, main_spec_id, class_name,
        dungeons_completed, total_runs, combined_best_time, average_best_time,
        has_complete_coverage, last_updated
    )
    SELECT a.player_id, a.season_id, p.name, p.realm_id, s.spec_id, spec_class(s.spec_id),
           a.dungeons_completed, COALESCE(t.total_runs, 0), a.combined, a.average,
           CASE WHEN a.dungeons_completed = ? THEN 1 ELSE 0 END, ?
    FROM agg a
    JOIN players p ON p.id = a.player_id
    LEFT JOIN totals t ON t.player_id = a.player_id AND t.season_id = a.season_id
    LEFT JOIN specs s ON s.player_id = a.player_id AND s.season_id = a.season_id AND s.rn = 1
"""


def _player_rank_sql(rank_cols: tuple[str, str, str], bracket_cols: tuple[str, str, str],
                     class_scoped: bool) -> str:
    extra = ", pp.class_name" if class_scoped else ""
    class_filter = "AND pp.class_name IS NOT NULL" if class_scoped else ""
    scopes = {
        "g": f"pp.season_id{extra}",
        "rg": f"pp.season_id, r.region{extra}",
        "rl": f"pp.season_id, r.region, {POOL_EXPR}{extra}",
    }
    windows = []
    for key, part in scopes.items():
        windows.append(
            f"ROW_NUMBER() OVER (PARTITION BY {part} ORDER BY pp.combined_best_time, pp.name, pp.player_id) AS {key}_rank, "
            f"COUNT(*) OVER (PARTITION BY {part}) AS {key}_n, "
            f"MIN(pp.combined_best_time) OVER (PARTITION BY {part}) AS {key}_min"
        )
    sets = []
    for key, rank_col, bracket_col in zip(scopes, rank_cols, bracket_cols):
        sets.append(f"{rank_col} = x.{key}_rank")
        sets.append(
            f"{bracket_col} = "
            + bracket_case_sql(f"x.{key}_rank", f"x.{key}_n", "x.combined_best_time", f"x.{key}_min")
        )
    return f"""
        UPDATE player_profiles SET {", ".join(sets)}
        FROM (
            SELECT pp.player_id, pp.season_id, pp.combined_best_time, {", ".join(windows)}
            FROM player_profiles pp
            JOIN realms r ON r.id = pp.realm_id
            WHERE pp.has_complete_coverage = 1 AND pp.combined_best_time IS NOT NULL {class_filter}
        ) AS x
        WHERE player_profiles.player_id = x.player_id AND player_profiles.season_id = x.season_id
    """


PLAYER_RANKS_SQL = _player_rank_sql(
    ("global_ranking", "regional_ranking", "realm_ranking"),
    ("global_ranking_bracket", "regional_ranking_bracket", "realm_ranking_bracket"),
    class_scoped=False,
)
CLASS_RANKS_SQL = _player_rank_sql(
    ("global_class_rank", "region_class_rank", "realm_class_rank"),
    ("global_class_bracket", "region_class_bracket", "realm_class_bracket"),
    class_scoped=True,
)

LEGACY_PLAYER_RANKINGS_SQL = f"""
    INSERT INTO player_rankings (player_id, ranking_type, ranking_scope, ranking, combined_best_time, last_updated)
    SELECT pp.player_id, t.ranking_type,
           CASE t.ranking_type WHEN 'global' THEN 'global' WHEN 'regional' THEN r.region ELSE {POOL_EXPR} END,
           CASE t.ranking_type WHEN 'global' THEN pp.global_ranking
                               WHEN 'regional' THEN pp.regional_ranking ELSE pp.realm_ranking END,
           pp.combined_best_time, ?
    FROM player_profiles pp
    JOIN realms r ON r.id = pp.realm_id
    CROSS JOIN (SELECT 'global' AS ranking_type UNION ALL SELECT 'regional' UNION ALL SELECT 'realm') t
    WHERE pp.season_id = (SELECT MAX(season_id) FROM player_profiles)
      AND pp.global_ranking IS NOT NULL
"""


@dataclass
class RankingStats:
    run_rankings: int = 0
    best_runs: int = 0
    profiles: int = 0
    ranked_players: int = 0
    seconds: float = 0.0


def _count(conn: sqlite3.Connection, table: str, where: str = "") -> int:
    return conn.execute(f"SELECT COUNT(*) FROM {table} {where}").fetchone()[0]


def rebuild_run_rankings(conn: sqlite3.Connection, computed_at: int) -> int:
    conn.execute("DELETE FROM run_rankings")
    for rtype, scope_all, scope_filtered, part in RUN_SCOPES:
        conn.execute(_rank_all_sql(rtype, scope_all, part), (computed_at,))
        conn.execute(_rank_filtered_sql(rtype, scope_filtered, part), (computed_at,))
    conn.execute(RUN_BRACKETS_SQL)
    return _count(conn, "run_rankings")


def rebuild_player_aggregates(conn: sqlite3.Connection, computed_at: int) -> tuple[int, int, int]:
    conn.execute("DELETE FROM player_best_runs")
    conn.execute("DELETE FROM player_profiles")
    conn.execute(BEST_RUNS_SQL)
    dungeon_total = _count(conn, "dungeons")
    conn.execute(PROFILES_SQL, (dungeon_total, computed_at))
    conn.execute(PLAYER_RANKS_SQL)
    conn.execute(CLASS_RANKS_SQL)
    conn.execute("DELETE FROM player_rankings")
    conn.execute(LEGACY_PLAYER_RANKINGS_SQL, (computed_at,))
    return (
        _count(conn, "player_best_runs"),
        _count(conn, "player_profiles"),
        _count(conn, "player_profiles", "WHERE global_ranking IS NOT NULL"),
    )


def rebuild_rankings(db: Database, computed_at: int | None = None, vacuum: bool = True) -> RankingStats:
    """
    Full rebuild of every derived table in one transaction. computed_at defaults to
    the newest run's completion time so that rebuilding unchanged data is a no-op.
    """
    start = time.monotonic()
    if not db.scalar("SELECT COUNT(*) FROM challenge_runs", default=0):
        raise RankingError("no runs found in database")
    if computed_at is None:
        computed_at = db.scalar("SELECT MAX(completed_timestamp) FROM challenge_runs", default=0)
    db.conn.create_function("spec_class", 1, class_for_spec, deterministic=True)

    stats = RankingStats()

    def work(conn: sqlite3.Connection) -> None:
        stats.run_rankings = rebuild_run_rankings(conn, computed_at)
        log.info(f"run_rankings: {stats.run_rankings} rows")
        stats.best_runs, stats.profiles, stats.ranked_players = rebuild_player_aggregates(conn, computed_at)
        log.info(
            f"player_best_runs: {stats.best_runs} rows, player_profiles: {stats.profiles} rows "
            f"({stats.ranked_players} ranked)"
        )

    db.run_in_transaction(work)
    if vacuum:
        try:
            db.conn.execute("VACUUM")
        except sqlite3.Error as e:
            log.warning(f"VACUUM failed: {e}")
    stats.seconds = time.monotonic() - start
    return stats
