import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import AsyncIterable

from .blizzard import FetchResult, parse_member
from .config import Config
from .db import Database
from .errors import IngestError
from .logs import fmt_duration
from .realms import effective_realm_slug, normalize_realm_slug
from .utils import compute_team_signature

log = logging.getLogger(__name__)

PROGRESS_EVERY = 10


@dataclass
class IngestStats:
    results: int = 0
    batches: int = 0
    failed_batches: int = 0
    runs: int = 0
    players: int = 0
    up_to_date: int = 0
    not_found: int = 0
    errors: int = 0


@dataclass
class PendingItem:
    result: FetchResult
    realm_id: int | None
    dungeon_id: int
    period_id: int
    max_ts: int

    def describe(self) -> str:
        r = self.result.realm
        return f"{r['region']}/{r['slug']} dungeon={self.dungeon_id} period={self.period_id}"


def leaderboard_max_ts(leaderboard: dict) -> int:
    return max((g.get("completed_timestamp") or 0 for g in leaderboard.get("leading_groups") or []), default=0)


class LeaderboardIngester:
    """
    Drains a FetchResult stream into the store, N results per write transaction.
    Up-to-date endpoints are filtered out with read-only checks before any
    transaction opens.
    """

    def __init__(self, db: Database, config: Config):
        self.db = db
        self.config = config
        self.stats = IngestStats()

    # ----------------------------------------------------------------------
    # status accounting
    # ----------------------------------------------------------------------
    def record_status(self, result: FetchResult) -> None:
        realm, dungeon = result.realm, result.dungeon
        try:
            period_id = int(result.period)
        except (TypeError, ValueError):
            period_id = 0
        if result.ok:
            groups = (result.leaderboard or {}).get("leading_groups") or []
            status, http_status, message = "ok", 200, None if groups else "no runs returned"
        elif result.not_found:
            status, http_status, message = "missing", 404, None
        else:
            status, http_status, message = "error", result.error.status, str(result.error)
        self.db.record_fetch_status(
            realm["region"], realm["slug"], dungeon["id"], period_id, status, http_status, message
        )

    # ----------------------------------------------------------------------
    # pre-checks (read-only)
    # ----------------------------------------------------------------------
    def precheck(self, result: FetchResult) -> PendingItem | None:
        realm, dungeon, lb = result.realm, result.dungeon, result.leaderboard or {}
        realm_id = self.db.get_realm_id(realm["region"], realm["slug"])
        dungeon_id = self.db.get_dungeon_id(dungeon["slug"]) or dungeon["id"]
        period_id = int(lb.get("period") or result.period)
        max_ts = leaderboard_max_ts(lb)
        if max_ts <= 0:
            return None
        db_max = self.db.max_completed_ts(realm_id, dungeon_id) if realm_id else 0
        marker = self.db.get_marker(realm["slug"], dungeon_id, period_id)
        if max_ts <= max(db_max, marker):
            return None
        return PendingItem(result, realm_id, dungeon_id, period_id, max_ts)

    # ----------------------------------------------------------------------
    # transactional insert
    # ----------------------------------------------------------------------
    def _resolve_realm(self, conn: sqlite3.Connection, region: str, slug: str,
                       cache: dict, info: dict | None = None) -> int:
        key = (region, slug)
        if key in cache:
            return cache[key]
        row = conn.execute("SELECT id FROM realms WHERE region = ? AND slug = ?", key).fetchone()
        if row is None:
            # placeholder for a realm the catalogue does not know; aliased children join their pool
            name = info["name"] if info else slug
            connected = info.get("id") if info else None
            if info:
                parent = info.get("parent_realm_slug")
            else:
                leader = effective_realm_slug(region, slug)
                parent = leader if leader != slug else None
            conn.execute(
                """
                INSERT OR IGNORE INTO realms (slug, name, region, connected_realm_id, parent_realm_slug)
                VALUES (?, ?, ?, ?, ?)
                """,
                (slug, name, region, connected, parent),
            )
            row = conn.execute("SELECT id FROM realms WHERE region = ? AND slug = ?", key).fetchone()
            if info is None:
                log.debug(f"Created placeholder realm {region}/{slug}")
        cache[key] = row[0]
        return row[0]

    def _canonical_members(self, conn: sqlite3.Connection, members: list[dict], cache: dict) -> list[dict]:
        """
        Members with merged-away ids replaced by the id they were merged into.
        A member that collapses onto one already listed is dropped.
        """
        unseen = [m["id"] for m in members if m["id"] not in cache]
        if unseen:
            marks = ",".join("?" * len(unseen))
            redirects = dict(conn.execute(
                f"SELECT id, merged_into FROM players WHERE merged_into IS NOT NULL AND id IN ({marks})",
                unseen,
            ).fetchall())
            for pid in unseen:
                cache[pid] = redirects.get(pid, pid)
        out, seen = [], set()
        for m in members:
            pid = cache[m["id"]]
            if pid in seen:
                continue
            seen.add(pid)
            out.append(dict(m, id=pid, redirected=pid != m["id"]))
        return out

    def _upsert_player(self, conn: sqlite3.Connection, region: str, realm: dict, m: dict,
                       realm_cache: dict) -> int:
        member_slug = normalize_realm_slug(region, (m["realm_slug"] or realm["slug"]).lower())
        member_realm_id = self._resolve_realm(conn, region, member_slug, realm_cache)
        cur = conn.execute(
            """
            INSERT INTO players (id, name, name_lower, realm_id)
            VALUES (?, ?, lower(?), ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                name_lower = lower(excluded.name),
                realm_id = excluded.realm_id
            WHERE excluded.name != players.name OR excluded.realm_id != players.realm_id
            """,
            (m["id"], m["name"], m["name"], member_realm_id),
        )
        return 1 if cur.rowcount > 0 else 0

    def insert_items(self, conn: sqlite3.Connection, items: list[PendingItem]) -> tuple[int, int]:
        runs = players = 0
        realm_cache: dict = {}
        id_cache: dict = {}
        for item in items:
            realm, dungeon, lb = item.result.realm, item.result.dungeon, item.result.leaderboard or {}
            region = realm["region"]
            realm_id = self._resolve_realm(conn, region, realm["slug"], realm_cache, realm)
            conn.execute(
                "INSERT OR IGNORE INTO dungeons (id, slug, name, map_challenge_mode_id) VALUES (?, ?, ?, ?)",
                (item.dungeon_id, dungeon["slug"], dungeon["name"], item.dungeon_id),
            )
            for group in lb.get("leading_groups") or []:
                members = [m for m in (parse_member(raw) for raw in group.get("members") or []) if m]
                if not members:
                    continue
                members = self._canonical_members(conn, members, id_cache)
                try:
                    completed = group["completed_timestamp"]
                    duration = group["duration"]
                except KeyError as e:
                    raise IngestError(f"malformed leading group in {item.describe()}: missing {e}") from e
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO challenge_runs (
                        duration, completed_timestamp, keystone_level, dungeon_id, realm_id,
                        period_id, period_start_timestamp, period_end_timestamp,
                        team_signature, season_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        duration,
                        completed,
                        group.get("keystone_level"),
                        item.dungeon_id,
                        realm_id,
                        item.period_id,
                        lb.get("period_start_timestamp"),
                        lb.get("period_end_timestamp"),
                        compute_team_signature(m["id"] for m in members),
                        self.db.season_number_for(region, completed, conn),
                    ),
                )
                if cur.rowcount == 0:
                    continue
                run_id = cur.lastrowid
                runs += 1
                for m in members:
                    # a redirected id is the old identity; the canonical row keeps its own name and realm
                    if not m["redirected"]:
                        players += self._upsert_player(conn, region, realm, m, realm_cache)
                    conn.execute(
                        "INSERT OR IGNORE INTO run_members (run_id, player_id, spec_id, faction) VALUES (?, ?, ?, ?)",
                        (run_id, m["id"], m["spec_id"] or None, m["faction"] or None),
                    )
            conn.execute(
                """
                INSERT INTO api_fetch_markers (realm_slug, dungeon_id, period_id, last_completed_ts)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(realm_slug, dungeon_id, period_id) DO UPDATE SET
                    last_completed_ts = MAX(api_fetch_markers.last_completed_ts, excluded.last_completed_ts)
                """,
                (realm["slug"], item.dungeon_id, item.period_id, item.max_ts),
            )
        return runs, players

    def flush(self, batch: list[FetchResult]) -> tuple[int, int]:
        items = []
        for result in batch:
            item = self.precheck(result)
            if item is None:
                self.stats.up_to_date += 1
            else:
                items.append(item)
        if not items:
            return 0, 0
        self.stats.batches += 1
        try:
            runs, players = self.db.run_in_transaction(lambda conn: self.insert_items(conn, items))
        except (sqlite3.Error, IngestError, TypeError, ValueError) as e:
            self.stats.failed_batches += 1
            log.error(
                f"Batch {self.stats.batches} rolled back ({e}); skipped items: "
                + ", ".join(i.describe() for i in items)
            )
            return 0, 0
        self.stats.runs += runs
        self.stats.players += players
        log.info(
            f"Batch {self.stats.batches}: +{runs} runs, +{players} players "
            f"(total {self.stats.runs} runs, {self.stats.players} players)"
        )
        return runs, players

    async def process(self, stream: AsyncIterable[FetchResult]) -> IngestStats:
        start = time.monotonic()
        batch: list[FetchResult] = []
        async for result in stream:
            self.stats.results += 1
            self.record_status(result)
            if result.ok:
                batch.append(result)
            elif result.not_found:
                self.stats.not_found += 1
                if self.config.verbose:
                    log.debug(f"404 {result.realm['region']}/{result.realm['slug']} {result.dungeon['slug']} period {result.period}")
            else:
                self.stats.errors += 1
                log.warning(
                    f"Fetch failed {result.realm['region']}/{result.realm['slug']} "
                    f"{result.dungeon['slug']} period {result.period}: {result.error}"
                )
            if len(batch) >= self.config.batch_size:
                self.flush(batch)
                batch = []
            if self.stats.results % PROGRESS_EVERY == 0:
                log.info(
                    f"Progress: {self.stats.results} results, {self.stats.runs} runs, "
                    f"{self.stats.errors} errors, {self.stats.not_found} missing"
                )
        if batch:
            self.flush(batch)
        s = self.stats
        log.info(
            f"[STATS] results={s.results} runs={s.runs} players={s.players} batches={s.batches} "
            f"failed_batches={s.failed_batches} up_to_date={s.up_to_date} missing={s.not_found} "
            f"errors={s.errors} elapsed={fmt_duration(time.monotonic() - start)}"
        )
        return s
