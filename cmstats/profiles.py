import asyncio
import logging
import sqlite3
from dataclasses import dataclass

from .blizzard import BlizzardClient
from .config import Config
from .db import Database
from .errors import APIError
from .identity import mark_player_invalid, update_player_identity
from .logs import Heartbeat
from .realms import normalize_realm_slug
from .utils import now_ms

log = logging.getLogger(__name__)

ELIGIBLE_SQL = """
    SELECT p.id, p.name, p.realm_id, r.region, r.slug AS realm_slug,
           MIN(pp.global_ranking) AS best_rank,
           (SELECT cr.realm_id FROM run_members rm
              JOIN challenge_runs cr ON cr.id = rm.run_id
             WHERE rm.player_id = p.id
             ORDER BY cr.completed_timestamp DESC LIMIT 1) AS last_run_realm_id
    FROM players p
    JOIN realms r ON r.id = p.realm_id
    JOIN player_profiles pp ON pp.player_id = p.id AND pp.has_complete_coverage = 1
    LEFT JOIN player_details pd ON pd.player_id = p.id
    WHERE COALESCE(p.is_valid, 1) != 0
      AND (pd.last_updated IS NULL OR pd.last_updated < ?)
    GROUP BY p.id
    ORDER BY best_rank IS NULL, best_rank, p.id
    LIMIT ?
"""

DETAIL_FIELDS = (
    "race_id", "race_name", "gender", "class_id", "class_name", "active_spec_id",
    "active_spec_name", "guild_name", "level", "average_item_level", "equipped_item_level",
    "avatar_url", "last_login_timestamp",
)


@dataclass
class ProfileStats:
    processed: int = 0
    updated: int = 0
    not_found: int = 0
    errors: int = 0
    equipment_rows: int = 0


@dataclass
class ProfileFetch:
    player: sqlite3.Row
    realm_slug: str | None = None
    summary: dict | None = None
    equipment: dict | None = None
    media: dict | None = None
    error: APIError | None = None


def candidate_realms(db: Database, player: sqlite3.Row) -> list[str]:
    """Nominal realm first, then the rest of its pool, then the realm of the last run (same region)."""
    region = player["region"]
    out = [normalize_realm_slug(region, player["realm_slug"])]
    out += [r["slug"] for r in db.get_realm_pool(player["realm_id"])]
    if player["last_run_realm_id"]:
        row = db.query_one("SELECT slug, region FROM realms WHERE id = ?", (player["last_run_realm_id"],))
        if row is not None and row["region"] == region:
            out.append(row["slug"])
    uniq: list[str] = []
    for s in out:
        if s and s not in uniq:
            uniq.append(s)
    return uniq


def details_from_payload(summary: dict, media: dict | None) -> dict:
    avatar = None
    for asset in (media or {}).get("assets") or []:
        if asset.get("key") == "avatar":
            avatar = asset.get("value")
            break
    race = summary.get("race") or {}
    klass = summary.get("character_class") or {}
    spec = summary.get("active_spec") or {}
    return {
        "race_id": race.get("id"),
        "race_name": race.get("name"),
        "gender": (summary.get("gender") or {}).get("type"),
        "class_id": klass.get("id"),
        "class_name": klass.get("name"),
        "active_spec_id": spec.get("id"),
        "active_spec_name": spec.get("name"),
        "guild_name": (summary.get("guild") or {}).get("name"),
        "level": summary.get("level"),
        "average_item_level": summary.get("average_item_level"),
        "equipped_item_level": summary.get("equipped_item_level"),
        "avatar_url": avatar,
        "last_login_timestamp": summary.get("last_login_timestamp"),
    }


def enchant_signature(enchants: list[dict]) -> list[str]:
    def val(v, empty):
        return empty if v is None else v

    return sorted(
        "|".join(
            str(x)
            for x in (
                val(e.get("enchantment_id"), -1),
                val(e.get("source_item_id"), -1),
                val(e.get("slot_id"), -1),
                val(e.get("slot_type"), ""),
                val(e.get("spell_id"), -1),
                val(e.get("display_string"), ""),
            )
        )
        for e in enchants
    )


def parse_enchantments(item: dict) -> list[dict]:
    out = []
    for e in item.get("enchantments") or []:
        slot = e.get("enchantment_slot") or {}
        source = e.get("source_item") or {}
        spell = (e.get("spell") or {}).get("spell") or {}
        out.append({
            "enchantment_id": e.get("enchantment_id"),
            "slot_id": slot.get("id"),
            "slot_type": slot.get("type"),
            "display_string": e.get("display_string"),
            "source_item_id": source.get("id"),
            "source_item_name": source.get("name"),
            "spell_id": spell.get("id"),
        })
    return out


def store_equipment(conn: sqlite3.Connection, player_id: int, equipment: dict, ts: int) -> int:
    """Append a snapshot row for every slot that differs from its latest snapshot."""
    written = 0
    for item in equipment.get("equipped_items") or []:
        slot_type = (item.get("slot") or {}).get("type")
        if not slot_type:
            continue
        basics = (
            (item.get("item") or {}).get("id"),
            (item.get("quality") or {}).get("type"),
            item.get("name"),
            item.get("upgrade_id") or 0,
        )
        enchants = parse_enchantments(item)
        latest = conn.execute(
            """
            SELECT id, item_id, quality, item_name, upgrade_id FROM player_equipment
            WHERE player_id = ? AND slot_type = ?
            ORDER BY snapshot_timestamp DESC, id DESC LIMIT 1
            """,
            (player_id, slot_type),
        ).fetchone()
        if latest is not None:
            prev_basics = (latest["item_id"], latest["quality"], latest["item_name"], latest["upgrade_id"] or 0)
            prev_enchants = [
                dict(r) for r in conn.execute(
                    """
                    SELECT enchantment_id, slot_id, slot_type, display_string, source_item_id,
                           source_item_name, spell_id
                    FROM player_equipment_enchantments WHERE equipment_id = ?
                    """,
                    (latest["id"],),
                )
            ]
            if prev_basics == basics and enchant_signature(prev_enchants) == enchant_signature(enchants):
                continue
        cur = conn.execute(
            """
            INSERT INTO player_equipment (player_id, slot_type, item_id, upgrade_id, quality, item_name, snapshot_timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (player_id, slot_type, basics[0], item.get("upgrade_id"), basics[1], basics[2], ts),
        )
        equipment_id = cur.lastrowid
        for e in enchants:
            conn.execute(
                """
                INSERT INTO player_equipment_enchantments (
                    equipment_id, enchantment_id, slot_id, slot_type, display_string,
                    source_item_id, source_item_name, spell_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (equipment_id, e["enchantment_id"], e["slot_id"], e["slot_type"], e["display_string"],
                 e["source_item_id"], e["source_item_name"], e["spell_id"]),
            )
        written += 1
    return written


def insert_player_profile_data(db: Database, player_id: int, summary: dict,
                               equipment: dict | None, media: dict | None) -> int:
    """Upsert details (only when changed) and append changed equipment slots; returns equipment rows written."""
    details = details_from_payload(summary, media)
    ts = now_ms()

    def work(conn: sqlite3.Connection) -> int:
        cols = ", ".join(DETAIL_FIELDS)
        marks = ", ".join("?" for _ in DETAIL_FIELDS)
        updates = ", ".join(f"{f} = excluded.{f}" for f in DETAIL_FIELDS)
        changed = " OR ".join(f"player_details.{f} IS NOT excluded.{f}" for f in DETAIL_FIELDS)
        cur = conn.execute(
            f"""
            INSERT INTO player_details (player_id, {cols}, last_updated)
            VALUES (?, {marks}, ?)
            ON CONFLICT(player_id) DO UPDATE SET {updates}, last_updated = excluded.last_updated
            WHERE {changed}
            """,
            (player_id, *[details[f] for f in DETAIL_FIELDS], ts),
        )
        if cur.rowcount == 0:
            conn.execute("UPDATE player_details SET last_updated = ? WHERE player_id = ?", (ts, player_id))
        if equipment:
            return store_equipment(conn, player_id, equipment, ts)
        return 0

    return db.run_in_transaction(work)


class ProfileFetcher:
    def __init__(self, db: Database, client: BlizzardClient, config: Config):
        self.db = db
        self.client = client
        self.config = config
        self.stats = ProfileStats()
        self.sem = asyncio.Semaphore(max(1, config.profile_concurrency))

    def eligible(self) -> list[sqlite3.Row]:
        cutoff = now_ms() - self.config.stale_after * 1000
        return self.db.query(ELIGIBLE_SQL, (cutoff, self.config.max_players or -1))

    async def fetch(self, player: sqlite3.Row) -> ProfileFetch:
        region = player["region"]
        result = ProfileFetch(player)
        for realm in candidate_realms(self.db, player):
            try:
                result.summary = await self.client.fetch_character_summary(player["name"], realm, region)
            except APIError as e:
                if e.is_not_found:
                    continue
                result.error = e
                return result
            result.realm_slug = realm
            break
        if result.summary is None:
            result.error = APIError(404, "character not found on any candidate realm")
            return result
        name = result.summary.get("name") or player["name"]
        try:
            result.equipment = await self.client.fetch_character_equipment(name, result.realm_slug, region)
        except APIError as e:
            log.debug(f"equipment unavailable for {player['id']}: {e.status}")
        try:
            result.media = await self.client.fetch_character_media(name, result.realm_slug, region)
        except APIError as e:
            log.debug(f"media unavailable for {player['id']}: {e.status}")
        return result

    def store(self, f: ProfileFetch) -> None:
        pid = f.player["id"]
        self.stats.processed += 1
        if f.error is not None:
            if f.error.is_not_found:
                self.stats.not_found += 1
                mark_player_invalid(self.db, pid, "profile missing on every candidate realm")
            else:
                self.stats.errors += 1
                log.debug(f"profile fetch failed for {pid}: {f.error}")
            return
        self.stats.equipment_rows += insert_player_profile_data(self.db, pid, f.summary, f.equipment, f.media)
        realm = (f.summary.get("realm") or {}).get("slug") or f.realm_slug
        update_player_identity(self.db, pid, f.player["region"], f.summary.get("name"), realm, f.summary.get("id"))
        self.stats.updated += 1

    async def run(self) -> ProfileStats:
        players = self.eligible()
        log.info(f"Profiles: {len(players)} eligible players")
        hb = Heartbeat(log, "profiles", total=len(players))
        size = max(1, self.config.profile_batch_size)

        async def guarded(p):
            async with self.sem:
                return await self.fetch(p)

        for i in range(0, len(players), size):
            for f in await asyncio.gather(*(guarded(p) for p in players[i : i + size])):
                self.store(f)
            hb.tick(self.stats.processed)
        s = self.stats
        log.info(
            f"[STATS] profiles processed={s.processed} updated={s.updated} missing={s.not_found} "
            f"errors={s.errors} equipment_rows={s.equipment_rows}"
        )
        return s
