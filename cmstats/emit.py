"""
Static JSON emitter.

Turns the materialized ranking tables into a paginated file tree under
config.output_dir:

    season/{n}/global/{dungeon}/{page}.json
    season/{n}/{region}/all/{dungeon}/{page}.json
    season/{n}/{region}/{pool}/{dungeon}/{page}.json
    season/{n}/players/global|regional/{region}|realm/{region}/{pool}/{page}.json
    season/{n}/players/class/{class}/...
    player/{region}/{realm}/{name}.json
    search/players-NNN.json

plus an index.json at the root and at each directory level a client walks
(seasons, scopes, dungeons, realms, player boards, classes).

Leaderboard pages list each team once (the filtered ranking). Realm pages exist
only for pool leaders; child realms are folded into their parent's pages.
"""

import logging
import os
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from . import __version__
from .config import Config
from .constants import CLASS_IDS, DUNGEON_SHORT_NAMES, SPECS, class_for_spec, class_key, spec_name
from .db import Database
from .errors import CMStatsError
from .ranking import POOL_EXPR
from .utils import chunked, name_to_slug, now_ms, pagination, total_pages
from .writer import write_json

log = logging.getLogger(__name__)

IN_BATCH = 10000
FILTERED_SUFFIX = "_filtered"
HREF_ROOT = "/api"
API_VERSION = "1.0"

LEADERBOARD_SCOPES_SQL = """
    SELECT rr.season_id, rr.dungeon_id, rr.ranking_type, rr.ranking_scope,
           CASE WHEN rr.ranking_type = 'global' THEN NULL ELSE r.region END AS region,
           COUNT(*) AS total
    FROM run_rankings rr
    JOIN challenge_runs cr ON cr.id = rr.run_id
    JOIN realms r ON r.id = cr.realm_id
    WHERE rr.ranking_scope LIKE '%filtered'
    GROUP BY rr.season_id, rr.dungeon_id, rr.ranking_type, rr.ranking_scope,
             CASE WHEN rr.ranking_type = 'global' THEN NULL ELSE r.region END
    ORDER BY rr.season_id, rr.ranking_type, rr.ranking_scope, rr.dungeon_id
"""

LEADERBOARD_SQL = """
    SELECT cr.id, cr.duration, cr.completed_timestamp, cr.keystone_level,
           d.name AS dungeon_name, r.name AS realm_name, r.region, rr.percentile_bracket
    FROM run_rankings rr
    JOIN challenge_runs cr ON cr.id = rr.run_id
    JOIN dungeons d ON d.id = cr.dungeon_id
    JOIN realms r ON r.id = cr.realm_id
    WHERE {where}
    ORDER BY rr.ranking
    LIMIT ? OFFSET ?
"""

MEMBERS_SQL = """
    SELECT rm.run_id, p.name, rm.spec_id, r.region, r.slug AS realm_slug
    FROM run_members rm
    JOIN players p ON p.id = rm.player_id
    JOIN realms r ON r.id = p.realm_id
    WHERE rm.run_id IN ({ids})
    ORDER BY rm.run_id, p.name, p.id
"""

PAGE_PLAYERS_SQL = """
    SELECT p.id, p.name, r.slug AS realm_slug, r.name AS realm_name, r.region,
           pd.class_name, pd.active_spec_name, pd.avatar_url, pd.guild_name, pd.race_name,
           pd.average_item_level, pd.equipped_item_level
    FROM players p
    JOIN realms r ON r.id = p.realm_id
    LEFT JOIN player_details pd ON pd.player_id = p.id
    WHERE COALESCE(p.is_valid, 1) != 0
      AND EXISTS (
          SELECT 1 FROM player_profiles pp
          WHERE pp.player_id = p.id AND pp.has_complete_coverage = 1
      )
    ORDER BY p.id
"""

PROFILES_IN_SQL = """
    SELECT * FROM player_profiles WHERE player_id IN ({ids}) ORDER BY player_id, season_id
"""

BEST_RUNS_IN_SQL = """
    SELECT pbr.*, d.name AS dungeon_name, d.slug AS dungeon_slug
    FROM player_best_runs pbr
    JOIN dungeons d ON d.id = pbr.dungeon_id
    WHERE pbr.player_id IN ({ids})
    ORDER BY pbr.player_id, pbr.season_id, d.slug
"""

EQUIPMENT_IN_SQL = """
    SELECT pe.*, i.icon AS item_icon, i.type AS item_type
    FROM player_equipment pe
    LEFT JOIN items i ON i.id = pe.item_id
    WHERE pe.player_id IN ({ids})
      AND pe.id = (
          SELECT latest.id FROM player_equipment latest
          WHERE latest.player_id = pe.player_id AND latest.slot_type = pe.slot_type
          ORDER BY latest.snapshot_timestamp DESC, latest.id DESC LIMIT 1
      )
    ORDER BY pe.player_id, pe.slot_type
"""

ENCHANTMENTS_IN_SQL = """
    SELECT * FROM player_equipment_enchantments WHERE equipment_id IN ({ids}) ORDER BY equipment_id, id
"""

PLAYER_BOARD_SQL = """
    SELECT p.id, p.name, r.slug AS realm_slug, r.name AS realm_name, r.region,
           pp.class_name, pd.active_spec_name, pp.main_spec_id, pp.combined_best_time,
           pp.dungeons_completed, pp.total_runs, pp.{rank} AS ranking, pp.{bracket} AS bracket
    FROM player_profiles pp
    JOIN players p ON p.id = pp.player_id
    JOIN realms r ON r.id = pp.realm_id
    LEFT JOIN player_details pd ON pd.player_id = pp.player_id
    WHERE pp.season_id = ? AND pp.{rank} IS NOT NULL {where}
    ORDER BY pp.{rank}
    LIMIT ? OFFSET ?
"""

PLAYER_BOARD_COUNT_SQL = """
    SELECT COUNT(*)
    FROM player_profiles pp
    JOIN realms r ON r.id = pp.realm_id
    WHERE pp.season_id = ? AND pp.{rank} IS NOT NULL {where}
"""

PLAYER_SCOPES_SQL = f"""
    SELECT DISTINCT r.region, {POOL_EXPR} AS pool, pp.class_name
    FROM player_profiles pp
    JOIN realms r ON r.id = pp.realm_id
    WHERE pp.season_id = ? AND pp.global_ranking IS NOT NULL
    ORDER BY r.region, pool, pp.class_name
"""

SEARCH_SQL = """
    SELECT p.id, p.name, r.region, r.slug AS realm_slug, r.name AS realm_name,
           pp.class_name, pp.global_ranking, pp.global_ranking_bracket
    FROM player_profiles pp
    JOIN players p ON p.id = pp.player_id
    JOIN realms r ON r.id = p.realm_id
    WHERE pp.season_id = ? AND pp.has_complete_coverage = 1 AND COALESCE(p.is_valid, 1) != 0
    ORDER BY pp.global_ranking IS NULL, pp.global_ranking, p.name, p.id
"""

REGION_REALMS_SQL = """
    SELECT r.slug, r.name, r.connected_realm_id, r.parent_realm_slug,
           COUNT(p.id) AS player_count
    FROM realms r
    LEFT JOIN players p ON p.realm_id = r.id AND COALESCE(p.is_valid, 1) != 0
    WHERE r.region = ?
    GROUP BY r.id
    ORDER BY r.slug
"""


def href(*parts) -> str:
    return "/".join((HREF_ROOT, *map(str, parts)))


def short_name(slug: str, name: str) -> str:
    """Fixed abbreviation for known dungeons, else initials (skipping "of"/"the") capped at 6."""
    if slug in DUNGEON_SHORT_NAMES:
        return DUNGEON_SHORT_NAMES[slug]
    return "".join(w[0].upper() for w in name.split() if w not in ("of", "the"))[:6]


def fetch_in(conn: sqlite3.Connection, sql: str, ids: list, params: tuple = ()) -> list[sqlite3.Row]:
    """Run sql once per IN-batch of ids; sql carries an {ids} placeholder."""
    out: list[sqlite3.Row] = []
    for chunk in chunked(list(ids), IN_BATCH):
        marks = ",".join("?" for _ in chunk)
        out.extend(conn.execute(sql.format(ids=marks), (*params, *chunk)).fetchall())
    return out


def _drop_none(d: dict) -> dict:
    return {k: v for k, v in d.items() if v is not None and v != ""}


def load_members(conn: sqlite3.Connection, run_ids: list[int]) -> dict[int, list[dict]]:
    members: dict[int, list[dict]] = {}
    for row in fetch_in(conn, MEMBERS_SQL, run_ids):
        members.setdefault(row["run_id"], []).append(
            _drop_none({
                "name": row["name"],
                "spec_id": row["spec_id"],
                "region": row["region"],
                "realm_slug": row["realm_slug"],
            })
        )
    return members


def leaderboard_page(rows: list[sqlite3.Row], members: dict[int, list[dict]], dungeon_name: str,
                     realm_name: str | None, total: int, page: int, page_size: int) -> dict:
    groups = []
    for row in rows:
        group = {
            "id": row["id"],
            "duration": row["duration"],
            "completed_timestamp": row["completed_timestamp"],
            "keystone_level": row["keystone_level"] or 0,
            "dungeon_name": row["dungeon_name"],
            "realm_name": row["realm_name"],
            "region": row["region"],
            "members": members.get(row["id"], []),
        }
        if row["percentile_bracket"]:
            group["ranking_percentile"] = row["percentile_bracket"]
        groups.append(group)
    payload = {"leading_groups": groups, "map": {"name": {"en_US": dungeon_name}}}
    if realm_name:
        payload["connected_realm"] = {"name": realm_name}
    payload["pagination"] = pagination(page, page_size, total)
    return payload


@dataclass
class LeaderboardJob:
    season: int
    dungeon_id: int
    dungeon_name: str
    ranking_type: str
    ranking_scope: str
    region: str | None
    total: int
    path: Path
    realm_name: str | None = None
    pool: str | None = None

    def where(self) -> tuple[str, tuple]:
        clause = "rr.dungeon_id = ? AND rr.season_id = ? AND rr.ranking_type = ? AND rr.ranking_scope = ?"
        params: tuple = (self.dungeon_id, self.season, self.ranking_type, self.ranking_scope)
        if self.region:
            clause += " AND r.region = ?"
            params += (self.region,)
        return clause, params


@dataclass
class PlayerBoardJob:
    season: int
    title: str
    path: Path
    rank: str
    bracket: str
    where: str = ""
    params: tuple = ()


@dataclass
class EmitStats:
    leaderboard_pages: int = 0
    player_pages: int = 0
    player_board_pages: int = 0
    search_shards: int = 0
    index_pages: int = 0
    seconds: float = 0.0


class StaticEmitter:
    def __init__(self, db: Database, config: Config):
        self.db = db
        self.config = config
        self.root = Path(config.output_dir)
        self.page_size = max(1, config.page_size)
        self.generated_at = config.generated_at if config.generated_at is not None else now_ms()
        self.stamp = datetime.fromtimestamp(self.generated_at / 1000, tz=timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )
        self.stats = EmitStats()

    def _write(self, path: Path, payload) -> None:
        write_json(path, payload, self.config.pretty_json)

    def _region_allowed(self, region: str | None) -> bool:
        return region is None or not self.config.regions or region in self.config.regions

    def _run_jobs(self, jobs: list, fn: Callable[[sqlite3.Connection, object], int]) -> int:
        """Drain jobs on the worker pool; each job gets its own read-only connection."""
        if not jobs:
            return 0

        def work(job) -> int:
            with closing(self.db.reader()) as conn:
                return fn(conn, job)

        with ThreadPoolExecutor(max_workers=max(1, self.config.emit_workers)) as pool:
            return sum(pool.map(work, jobs))

    # ----------------------------------------------------------------------
    # run leaderboards
    # ----------------------------------------------------------------------
    def leaderboard_jobs(self) -> list[LeaderboardJob]:
        dungeons = {r["id"]: r for r in self.db.query("SELECT id, slug, name FROM dungeons")}
        realm_names = {
            (r["region"], r["slug"]): r["name"] for r in self.db.query("SELECT region, slug, name FROM realms")
        }
        jobs = []
        for row in self.db.query(LEADERBOARD_SCOPES_SQL):
            dungeon = dungeons.get(row["dungeon_id"])
            if dungeon is None or not self._region_allowed(row["region"]):
                continue
            season_dir = self.root / "season" / str(row["season_id"])
            realm_name = pool = None
            if row["ranking_type"] == "global":
                path = season_dir / "global" / dungeon["slug"]
            elif row["ranking_type"] == "regional":
                path = season_dir / row["region"] / "all" / dungeon["slug"]
            else:
                pool = row["ranking_scope"][: -len(FILTERED_SUFFIX)]
                path = season_dir / row["region"] / pool / dungeon["slug"]
                realm_name = realm_names.get((row["region"], pool)) or pool
            jobs.append(LeaderboardJob(
                season=row["season_id"],
                dungeon_id=row["dungeon_id"],
                dungeon_name=dungeon["name"],
                ranking_type=row["ranking_type"],
                ranking_scope=row["ranking_scope"],
                region=row["region"],
                total=row["total"],
                path=path,
                realm_name=realm_name,
                pool=pool,
            ))
        return jobs

    def _render_leaderboard(self, conn: sqlite3.Connection, job: LeaderboardJob) -> int:
        where, params = job.where()
        sql = LEADERBOARD_SQL.format(where=where)
        pages = total_pages(job.total, self.page_size)
        for page in range(1, pages + 1):
            rows = conn.execute(sql, (*params, self.page_size, (page - 1) * self.page_size)).fetchall()
            members = load_members(conn, [r["id"] for r in rows])
            payload = leaderboard_page(rows, members, job.dungeon_name, job.realm_name,
                                       job.total, page, self.page_size)
            self._write(job.path / f"{page}.json", payload)
        return pages

    def emit_leaderboards(self) -> int:
        jobs = self.leaderboard_jobs()
        log.info(f"Leaderboards: {len(jobs)} scope/dungeon combinations")
        pages = self._run_jobs(jobs, self._render_leaderboard)
        self.stats.leaderboard_pages += pages
        log.info(f"Leaderboards: wrote {pages} pages")
        return pages

    # ----------------------------------------------------------------------
    # player pages
    # ----------------------------------------------------------------------
    def preload(self, player_ids: list[int]) -> dict:
        conn = self.db.conn
        profiles: dict[int, list[sqlite3.Row]] = {}
        for row in fetch_in(conn, PROFILES_IN_SQL, player_ids):
            profiles.setdefault(row["player_id"], []).append(row)
        best_runs: dict[int, list[sqlite3.Row]] = {}
        run_ids = []
        for row in fetch_in(conn, BEST_RUNS_IN_SQL, player_ids):
            best_runs.setdefault(row["player_id"], []).append(row)
            run_ids.append(row["run_id"])
        members = load_members(conn, sorted(set(run_ids)))
        equipment: dict[int, list[sqlite3.Row]] = {}
        equipment_ids = []
        for row in fetch_in(conn, EQUIPMENT_IN_SQL, player_ids):
            equipment.setdefault(row["player_id"], []).append(row)
            equipment_ids.append(row["id"])
        enchantments: dict[int, list[sqlite3.Row]] = {}
        for row in fetch_in(conn, ENCHANTMENTS_IN_SQL, equipment_ids):
            enchantments.setdefault(row["equipment_id"], []).append(row)
        log.info(
            f"Preloaded {len(profiles)} profiles, {len(run_ids)} best runs, "
            f"{len(equipment_ids)} equipment slots"
        )
        return {
            "profiles": profiles,
            "best_runs": best_runs,
            "members": members,
            "equipment": equipment,
            "enchantments": enchantments,
        }

    def player_payload(self, player: sqlite3.Row, data: dict) -> dict:
        pid = player["id"]
        info = {
            "id": pid,
            "name": player["name"],
            "realm_slug": player["realm_slug"],
            "realm_name": player["realm_name"],
            "region": player["region"],
            "class_name": player["class_name"],
            "active_spec_name": player["active_spec_name"],
            "avatar_url": player["avatar_url"],
            "guild_name": player["guild_name"],
            "race_name": player["race_name"],
            "average_item_level": player["average_item_level"],
            "equipped_item_level": player["equipped_item_level"],
        }
        seasons = {}
        for prof in data["profiles"].get(pid, []):
            if prof["main_spec_id"]:
                if not info["class_name"]:
                    info["class_name"] = class_for_spec(prof["main_spec_id"])
                if not info["active_spec_name"]:
                    info["active_spec_name"] = spec_name(prof["main_spec_id"])
            season = _drop_none({
                "main_spec_id": prof["main_spec_id"],
                "dungeons_completed": prof["dungeons_completed"],
                "total_runs": prof["total_runs"],
                "combined_best_time": prof["combined_best_time"],
                "global_ranking": prof["global_ranking"],
                "regional_ranking": prof["regional_ranking"],
                "realm_ranking": prof["realm_ranking"],
                "global_ranking_bracket": prof["global_ranking_bracket"],
                "regional_ranking_bracket": prof["regional_ranking_bracket"],
                "realm_ranking_bracket": prof["realm_ranking_bracket"],
                "last_updated": prof["last_updated"],
            })
            season["best_runs"] = {}
            seasons[str(prof["season_id"])] = season
        for run in data["best_runs"].get(pid, []):
            season = seasons.get(str(run["season_id"]))
            if season is None:
                continue
            best = {
                "dungeon_id": run["dungeon_id"],
                "dungeon_name": run["dungeon_name"],
                "dungeon_slug": run["dungeon_slug"],
                "run_id": run["run_id"],
                "duration": run["duration"],
                "completed_timestamp": run["completed_timestamp"],
            }
            best.update(_drop_none({
                "global_ranking_filtered": run["global_ranking_filtered"],
                "regional_ranking_filtered": run["regional_ranking_filtered"],
                "realm_ranking_filtered": run["realm_ranking_filtered"],
                "global_percentile_bracket": run["global_percentile_bracket"],
                "regional_percentile_bracket": run["regional_percentile_bracket"],
                "realm_percentile_bracket": run["realm_percentile_bracket"],
            }))
            best["team_members"] = data["members"].get(run["run_id"], [])
            season["best_runs"][run["dungeon_slug"]] = best
        player_json = _drop_none(info)
        player_json["seasons"] = seasons

        equipment = {}
        for eq in data["equipment"].get(pid, []):
            equipment[eq["slot_type"]] = {
                "id": eq["id"],
                "slot_type": eq["slot_type"],
                "item_id": eq["item_id"],
                "upgrade_id": eq["upgrade_id"],
                "quality": eq["quality"] or "",
                "item_name": eq["item_name"] or "",
                "snapshot_timestamp": eq["snapshot_timestamp"],
                "item_icon_slug": eq["item_icon"] or "",
                "item_type": eq["item_type"] or "",
                "enchantments": [
                    {
                        "enchantment_id": e["enchantment_id"],
                        "slot_id": e["slot_id"],
                        "slot_type": e["slot_type"] or "",
                        "display_string": e["display_string"] or "",
                        "source_item_id": e["source_item_id"],
                        "source_item_name": e["source_item_name"] or "",
                        "spell_id": e["spell_id"],
                    }
                    for e in data["enchantments"].get(eq["id"], [])
                ],
            }
        return {
            "player": player_json,
            "equipment": equipment,
            "generated_at": self.generated_at,
            "version": __version__,
        }

    def player_path(self, player: sqlite3.Row) -> Path:
        return self.root / "player" / player["region"] / player["realm_slug"] / f"{name_to_slug(player['name'])}.json"

    def emit_player_pages(self) -> int:
        players = [p for p in self.db.query(PAGE_PLAYERS_SQL) if self._region_allowed(p["region"])]
        log.info(f"Player pages: {len(players)} players with complete coverage")
        if not players:
            return 0
        data = self.preload([p["id"] for p in players])

        def work(player) -> int:
            self._write(self.player_path(player), self.player_payload(player, data))
            return 1

        with ThreadPoolExecutor(max_workers=max(1, self.config.emit_workers)) as pool:
            written = 0
            for n in pool.map(work, players):
                written += n
                if written % 500 == 0:
                    log.info(f"  ... {written} player pages written")
        self.stats.player_pages += written
        log.info(f"Player pages: wrote {written} files")
        return written

    # ----------------------------------------------------------------------
    # player leaderboards
    # ----------------------------------------------------------------------
    def player_scopes(self, season: int) -> list[sqlite3.Row]:
        """(region, pool, class_name) combinations with ranked players in season."""
        return [r for r in self.db.query(PLAYER_SCOPES_SQL, (season,)) if self._region_allowed(r["region"])]

    def player_board_seasons(self) -> list[int]:
        return [r[0] for r in self.db.query(
            "SELECT DISTINCT season_id FROM player_profiles WHERE global_ranking IS NOT NULL ORDER BY season_id"
        )]

    def player_board_jobs(self, season: int) -> list[PlayerBoardJob]:
        scopes = self.player_scopes(season)
        regions = sorted({r["region"] for r in scopes})
        pools = sorted({(r["region"], r["pool"]) for r in scopes})
        classes = sorted({r["class_name"] for r in scopes if r["class_name"]})
        base = self.root / "season" / str(season) / "players"
        pool_where = f"AND r.region = ? AND {POOL_EXPR} = ?"

        def scoped(prefix: Path, rank_cols: tuple[str, str, str], bracket_cols: tuple[str, str, str],
                   where: str = "", params: tuple = (), class_regions=None, class_pools=None) -> list:
            out = [PlayerBoardJob(season, "Global Player Rankings", prefix / "global",
                                  rank_cols[0], bracket_cols[0], where, params)]
            for region in class_regions if class_regions is not None else regions:
                out.append(PlayerBoardJob(
                    season, f"{region.upper()} Player Rankings", prefix / "regional" / region,
                    rank_cols[1], bracket_cols[1], f"{where} AND r.region = ?", (*params, region),
                ))
            for region, pool in class_pools if class_pools is not None else pools:
                out.append(PlayerBoardJob(
                    season, f"{region.upper()}/{pool} Player Rankings", prefix / "realm" / region / pool,
                    rank_cols[2], bracket_cols[2], f"{where} {pool_where}", (*params, region, pool),
                ))
            return out

        jobs = scoped(
            base,
            ("global_ranking", "regional_ranking", "realm_ranking"),
            ("global_ranking_bracket", "regional_ranking_bracket", "realm_ranking_bracket"),
        )
        for cls in classes:
            jobs += scoped(
                base / "class" / class_key(cls),
                ("global_class_rank", "region_class_rank", "realm_class_rank"),
                ("global_class_bracket", "region_class_bracket", "realm_class_bracket"),
                where="AND pp.class_name = ?",
                params=(cls,),
                class_regions=sorted({r["region"] for r in scopes if r["class_name"] == cls}),
                class_pools=sorted({(r["region"], r["pool"]) for r in scopes if r["class_name"] == cls}),
            )
        return jobs

    def _render_player_board(self, conn: sqlite3.Connection, job: PlayerBoardJob) -> int:
        total = conn.execute(
            PLAYER_BOARD_COUNT_SQL.format(rank=job.rank, where=job.where), (job.season, *job.params)
        ).fetchone()[0]
        pages = total_pages(total, self.page_size)
        sql = PLAYER_BOARD_SQL.format(rank=job.rank, bracket=job.bracket, where=job.where)
        for page in range(1, pages + 1):
            rows = conn.execute(
                sql, (job.season, *job.params, self.page_size, (page - 1) * self.page_size)
            ).fetchall()
            entries = []
            for row in rows:
                entry = {
                    "player_id": row["id"],
                    "name": row["name"],
                    "realm_slug": row["realm_slug"],
                    "realm_name": row["realm_name"],
                    "region": row["region"],
                    "class_name": row["class_name"] or "",
                    "active_spec_name": row["active_spec_name"] or spec_name(row["main_spec_id"]) or "",
                    "dungeons_completed": row["dungeons_completed"],
                    "total_runs": row["total_runs"],
                    "ranking": row["ranking"],
                }
                entry.update(_drop_none({
                    "ranking_percentile": row["bracket"],
                    "main_spec_id": row["main_spec_id"],
                    "combined_best_time": row["combined_best_time"],
                }))
                entries.append(entry)
            meta = pagination(page, self.page_size, total, total_key="totalPlayers")
            meta["totalRuns"] = total
            self._write(job.path / f"{page}.json", {
                "leaderboard": entries,
                "title": job.title,
                "generated_timestamp": self.generated_at,
                "pagination": meta,
            })
        return pages

    def emit_player_leaderboards(self) -> int:
        seasons = self.player_board_seasons()
        jobs = []
        for season in seasons:
            jobs += self.player_board_jobs(season)
        log.info(f"Player leaderboards: {len(jobs)} scopes across {len(seasons)} seasons")
        pages = self._run_jobs(jobs, self._render_player_board)
        self.stats.player_board_pages += pages
        log.info(f"Player leaderboards: wrote {pages} pages")
        return pages

    # ----------------------------------------------------------------------
    # search shards
    # ----------------------------------------------------------------------
    def emit_search(self) -> int:
        season = self.db.scalar("SELECT MAX(season_id) FROM player_profiles WHERE has_complete_coverage = 1")
        out_dir = self.root / "search"
        if season is None:
            log.info("Search: no complete-coverage profiles, skipping")
            return 0
        rows = [r for r in self.db.query(SEARCH_SQL, (season,)) if self._region_allowed(r["region"])]
        shard_size = max(1, self.config.shard_size)
        shards = 0
        for shards, chunk in enumerate(chunked(rows, shard_size), start=1):
            players = [
                _drop_none({
                    "id": r["id"],
                    "name": r["name"],
                    "region": r["region"],
                    "realm_slug": r["realm_slug"],
                    "realm_name": r["realm_name"],
                    "class_name": r["class_name"],
                    "global_ranking": r["global_ranking"],
                    "global_ranking_bracket": r["global_ranking_bracket"],
                })
                for r in chunk
            ]
            self._write(out_dir / f"players-{shards - 1:03d}.json", {
                "players": players,
                "metadata": {
                    "total_players": len(rows),
                    "returned_players": len(players),
                    "offset": (shards - 1) * shard_size,
                    "limit": shard_size,
                    "last_updated": self.stamp,
                },
            })
        # shards left over from a larger previous run
        if out_dir.is_dir():
            for stale in out_dir.glob("players-*.json"):
                suffix = stale.stem[len("players-"):]
                if suffix.isdigit() and int(suffix) >= shards:
                    stale.unlink()
        self.stats.search_shards += shards
        log.info(f"Search: {len(rows)} players in {shards} shards (season {season})")
        return shards

    # ----------------------------------------------------------------------
    # navigation indexes
    # ----------------------------------------------------------------------
    def _index(self, parts: tuple, data: list, extra: dict | None = None) -> None:
        payload = dict(extra or {})
        payload["data"] = data
        payload["metadata"] = {"total_count": len(data), "last_updated": self.stamp}
        self._write(self.root.joinpath(*map(str, parts), "index.json"), payload)
        self.stats.index_pages += 1

    def season_catalog(self, numbers: list[int]) -> list[dict]:
        """
        One entry per season number with its window merged across regions; a season
        stays open while any region leaves it open. With none open the newest is current.
        """
        merged: dict[int, dict] = {}
        for row in self.db.get_all_seasons():
            m = merged.setdefault(row["season_number"], {"name": None, "starts": [], "ends": []})
            m["name"] = m["name"] or row["season_name"]
            if row["start_timestamp"] is not None:
                m["starts"].append(row["start_timestamp"])
            m["ends"].append(row["end_timestamp"])
        out = []
        for n in numbers:
            m = merged.get(n, {"name": None, "starts": [], "ends": []})
            is_open = None in m["ends"]
            link = {"href": href("season", n, "index.json")}
            out.append({
                "id": n,
                "name": m["name"] or f"Season {n}",
                "start_timestamp": min(m["starts"], default=None),
                "end_timestamp": None if is_open else max(m["ends"], default=None),
                "is_current": is_open,
                "_links": {"self": link, "scopes": dict(link)},
            })
        if out and not any(s["is_current"] for s in out):
            out[-1]["is_current"] = True
        return out

    def _dungeon_entries(self, dungeons: list[sqlite3.Row], ids: set, *prefix) -> list[dict]:
        return [
            {
                "id": d["id"],
                "slug": d["slug"],
                "name": d["name"],
                "short_name": short_name(d["slug"], d["name"]),
                "map_challenge_mode_id": d["map_challenge_mode_id"],
                "_links": {"leaderboard": {"href": href(*prefix, d["slug"], "{page}.json")}},
            }
            for d in dungeons
            if d["id"] in ids
        ]

    def _board_indexes(self, season: int, boards: dict, dungeons: list[sqlite3.Row]) -> None:
        if boards["global"]:
            self._index(("season", season, "global"),
                        self._dungeon_entries(dungeons, boards["global"], "season", season, "global"))
        regions = sorted(set(boards["regional"]) | {region for region, _ in boards["realm"]})
        for region in regions:
            pools = {pool for r, pool in boards["realm"] if r == region}
            realms = []
            for row in self.db.query(REGION_REALMS_SQL, (region,)):
                pool = row["parent_realm_slug"] or row["slug"]
                if pool not in pools:
                    continue
                realms.append({
                    "slug": row["slug"],
                    "name": row["name"],
                    "connected_realm_id": row["connected_realm_id"],
                    "parent_realm": row["parent_realm_slug"] or None,
                    "player_count": row["player_count"],
                    "_links": {"dungeons": {"href": href("season", season, region, pool, "index.json")}},
                })
            self._index(("season", season, region), realms, {
                "all": {
                    "href": href("season", season, region, "all", "{dungeon}", "{page}.json"),
                    "note": "Regional aggregate leaderboard (all realms combined)",
                },
            })
            for pool in sorted(pools):
                ids = boards["realm"][(region, pool)]
                self._index(("season", season, region, pool),
                            self._dungeon_entries(dungeons, ids, "season", season, region, pool))

    def _player_scope_indexes(self, prefix: tuple, scopes: list) -> None:
        """regional/, realm/ and realm/{region}/ listings under prefix."""
        regions = sorted({r["region"] for r in scopes})
        self._index((*prefix, "regional"), [
            {"region": region, "href": href(*prefix, "regional", region, "{page}.json")} for region in regions
        ])
        self._index((*prefix, "realm"), [
            {"region": region, "href": href(*prefix, "realm", region, "index.json")} for region in regions
        ])
        for region in regions:
            pools = sorted({r["pool"] for r in scopes if r["region"] == region})
            self._index((*prefix, "realm", region), [
                {"realm": pool, "href": href(*prefix, "realm", region, pool, "{page}.json")} for pool in pools
            ])

    def _player_indexes(self, season: int) -> None:
        scopes = self.player_scopes(season)
        base = ("season", season, "players")
        self._index(base, [
            {"scope": "global", "_links": {"leaderboard": {"href": href(*base, "global", "{page}.json")}}},
            {"scope": "regional", "_links": {"leaderboard": {"href": href(*base, "regional", "index.json")}}},
            {"scope": "realm", "_links": {"leaderboard": {"href": href(*base, "realm", "index.json")}}},
            {"scope": "class", "_links": {"leaderboard": {"href": href(*base, "class", "index.json")}}},
        ])
        self._player_scope_indexes(base, scopes)
        classes = sorted({r["class_name"] for r in scopes if r["class_name"]},
                         key=lambda c: (CLASS_IDS.get(c, 0), c))
        self._index((*base, "class"), [
            {
                "id": CLASS_IDS.get(cls, 0),
                "key": class_key(cls),
                "name": cls,
                "specs": sorted(spec for owner, spec in SPECS.values() if owner == cls),
                "_links": {"scopes": {"href": href(*base, "class", class_key(cls), "index.json")}},
            }
            for cls in classes
        ])
        for cls in classes:
            prefix = (*base, "class", class_key(cls))
            self._index(prefix, [
                {"scope": "global", "href": href(*prefix, "global", "{page}.json")},
                {"scope": "regional", "href": href(*prefix, "regional", "index.json")},
                {"scope": "realm", "href": href(*prefix, "realm", "index.json")},
            ])
            self._player_scope_indexes(prefix, [r for r in scopes if r["class_name"] == cls])

    def emit_indexes(self) -> int:
        before = self.stats.index_pages
        dungeons = self.db.query("SELECT id, slug, name, map_challenge_mode_id FROM dungeons ORDER BY name, id")
        boards: dict[int, dict] = {}
        for job in self.leaderboard_jobs():
            b = boards.setdefault(job.season, {"global": set(), "regional": {}, "realm": {}})
            if job.ranking_type == "global":
                b["global"].add(job.dungeon_id)
            elif job.ranking_type == "regional":
                b["regional"].setdefault(job.region, set()).add(job.dungeon_id)
            else:
                b["realm"].setdefault((job.region, job.pool), set()).add(job.dungeon_id)
        player_seasons = set(self.player_board_seasons())
        seasons = self.season_catalog(sorted(set(boards) | player_seasons))

        self._write(self.root / "index.json", {
            "_links": {"self": {"href": href("index.json")}},
            "indexes": {"seasons": href("season", "index.json")},
            "endpoints": {
                "dungeon_leaderboard": href("season", "{season_id}", "{scope}", "{dungeon}", "{page}.json"),
                "player_leaderboard": href("season", "{season_id}", "players", "{scope}", "{page}.json"),
                "player_profile": href("player", "{region}", "{realm}", "{name}.json"),
                "search": href("search", "players-{shard}.json"),
            },
            "api_version": API_VERSION,
            "last_updated": self.stamp,
        })
        self.stats.index_pages += 1
        self._index(("season",), seasons)

        for season in seasons:
            n = season["id"]
            b = boards.get(n, {"global": set(), "regional": {}, "realm": {}})
            scopes = ["global"] if b["global"] else []
            scopes += sorted(set(b["regional"]) | {region for region, _ in b["realm"]})
            if n in player_seasons:
                scopes.append("players")
            self._index(("season", n), [
                {"scope": s, "_links": {"leaderboard": {"href": href("season", n, s, "index.json")}}}
                for s in scopes
            ])
            self._board_indexes(n, b, dungeons)
            if n in player_seasons:
                self._player_indexes(n)
        written = self.stats.index_pages - before
        log.info(f"Indexes: wrote {written} files across {len(seasons)} seasons")
        return written

    def run(self) -> EmitStats:
        start = time.monotonic()
        try:
            self.root.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as e:
            raise CMStatsError(f"cannot create output directory {self.root}: {e}") from e
        if not os.access(self.root, os.W_OK):
            raise CMStatsError(f"output directory {self.root} is not writable")
        self.emit_leaderboards()
        self.emit_player_pages()
        self.emit_player_leaderboards()
        self.emit_search()
        self.emit_indexes()
        self.stats.seconds = time.monotonic() - start
        return self.stats
