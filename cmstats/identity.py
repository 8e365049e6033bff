"""
Character identity reconciliation.

A character's fingerprint is built from values that never change once earned:
class, first level-85 and level-90 achievement timestamps, and the earliest
completion among a fixed set of heroic dungeon achievements. Two player rows
with the same fingerprint are the same character seen under different vendor
ids (faction change, transfer, rename); the most recently observed id becomes
canonical and inherits the other's run history.
"""

import asyncio
import hashlib
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field

from .blizzard import BlizzardClient
from .config import Config
from .constants import (
    ACHIEVEMENT_LEVEL_85,
    ACHIEVEMENT_LEVEL_90,
    HEROIC_DUNGEON_ACHIEVEMENTS,
    class_id_for_spec,
)
from .db import Database
from .errors import APIError, FingerprintError
from .logs import Heartbeat
from .realms import normalize_realm_slug
from .utils import compute_team_signature, now_ms

log = logging.getLogger(__name__)


# --------------------------------------------------------------------------
# Fingerprint computation
# --------------------------------------------------------------------------
def compute_fingerprint_hash(class_id: int, level85_ts: int, level90_ts: int, heroic_ts: int) -> str:
    return hashlib.sha256(f"{class_id}:{level85_ts}:{level90_ts}:{heroic_ts}".encode()).hexdigest()


@dataclass(frozen=True)
class Fingerprint:
    class_id: int
    level85_ts: int
    level90_ts: int
    heroic_ts: int

    def validate(self) -> None:
        missing = [
            label
            for label, value in (
                ("class", self.class_id),
                ("level85", self.level85_ts),
                ("level90", self.level90_ts),
                ("heroic", self.heroic_ts),
            )
            if not value or value <= 0
        ]
        if missing:
            raise FingerprintError(missing)

    @property
    def hash(self) -> str:
        return compute_fingerprint_hash(self.class_id, self.level85_ts, self.level90_ts, self.heroic_ts)


def extract_milestones(payload: dict) -> tuple[int, int, int]:
    """
    (level85_ts, level90_ts, earliest_heroic_ts) from an achievements payload.
    Only entries with a completion timestamp and completed criteria count.
    """
    earliest: dict[int, int] = {}
    for ach in payload.get("achievements") or []:
        ts = ach.get("completed_timestamp")
        if not ts or not (ach.get("criteria") or {}).get("is_completed"):
            continue
        aid = ach.get("id")
        if aid not in earliest or ts < earliest[aid]:
            earliest[aid] = ts
    l85 = earliest.get(ACHIEVEMENT_LEVEL_85, 0)
    l90 = earliest.get(ACHIEVEMENT_LEVEL_90, 0)
    heroic = min((earliest[a] for a in HEROIC_DUNGEON_ACHIEVEMENTS if a in earliest), default=0)
    missing = [
        label for label, value in (("level85", l85), ("level90", l90), ("heroic", heroic)) if not value
    ]
    if missing:
        raise FingerprintError(missing)
    return l85, l90, heroic


def derive_class_id(details_class_id: int | None, latest_spec_id: int | None) -> int:
    if details_class_id and details_class_id > 0:
        return details_class_id
    return class_id_for_spec(latest_spec_id)


# --------------------------------------------------------------------------
# Collision map
# --------------------------------------------------------------------------
class FingerprintIndex:
    """hash -> owning player id. Every operation holds the lock only for the dict access."""

    def __init__(self, entries: dict[str, int] | None = None):
        self._lock = threading.Lock()
        self._owners: dict[str, int] = dict(entries or {})

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners)

    def get(self, fp_hash: str) -> int | None:
        with self._lock:
            return self._owners.get(fp_hash)

    def claim(self, fp_hash: str, player_id: int) -> int | None:
        """Make player_id the owner of fp_hash; returns the previous owner (None if unseen)."""
        with self._lock:
            previous = self._owners.get(fp_hash)
            self._owners[fp_hash] = player_id
            return previous

    def restore(self, fp_hash: str, owner: int | None) -> None:
        with self._lock:
            if owner is None:
                self._owners.pop(fp_hash, None)
            else:
                self._owners[fp_hash] = owner


# --------------------------------------------------------------------------
# Shared player updates
# --------------------------------------------------------------------------
def mark_player_invalid(db: Database, player_id: int, reason: str) -> None:
    db.execute(
        "UPDATE players SET is_valid = 0, status_checked_at = ? WHERE id = ?",
        (now_ms(), player_id),
    )
    log.debug(f"player {player_id} marked invalid: {reason}")


def update_player_identity(db: Database, player_id: int, region: str, name: str | None,
                           realm_slug: str | None, character_id: int | None = None) -> None:
    """Record a confirmed-valid status plus the vendor's current name/realm for the player."""
    realm_id = None
    if realm_slug:
        realm_id = db.get_realm_id(region, normalize_realm_slug(region, realm_slug.lower()))
    db.execute(
        """
        UPDATE players SET
            is_valid = 1,
            status_checked_at = ?,
            blizzard_character_id = COALESCE(?, blizzard_character_id),
            name = COALESCE(?, name),
            name_lower = lower(COALESCE(?, name)),
            realm_id = COALESCE(?, realm_id)
        WHERE id = ?
        """,
        (now_ms(), character_id, name or None, name or None, realm_id, player_id),
    )


def migrate_player_history(conn: sqlite3.Connection, old_id: int, new_id: int) -> tuple[int, int]:
    """
    Move every run membership of old_id onto new_id and refresh the affected team
    signatures. A run that becomes identical to an already stored run is dropped.
    Returns (moved memberships, dropped duplicate runs).
    """
    run_ids = [r[0] for r in conn.execute("SELECT run_id FROM run_members WHERE player_id = ?", (old_id,))]
    moved = conn.execute(
        "UPDATE OR IGNORE run_members SET player_id = ? WHERE player_id = ?", (new_id, old_id)
    ).rowcount
    # runs where new_id already played alongside old_id
    conn.execute("DELETE FROM run_members WHERE player_id = ?", (old_id,))
    dropped = 0
    for run_id in run_ids:
        members = [r[0] for r in conn.execute("SELECT player_id FROM run_members WHERE run_id = ?", (run_id,))]
        cur = conn.execute(
            "UPDATE OR IGNORE challenge_runs SET team_signature = ? WHERE id = ?",
            (compute_team_signature(members), run_id),
        )
        if cur.rowcount == 0:
            conn.execute("DELETE FROM run_members WHERE run_id = ?", (run_id,))
            conn.execute("DELETE FROM challenge_runs WHERE id = ?", (run_id,))
            dropped += 1
    return moved, dropped


# --------------------------------------------------------------------------
# Engine
# --------------------------------------------------------------------------
@dataclass
class IdentityStats:
    processed: int = 0
    created: int = 0
    merged: int = 0
    skipped: int = 0
    marked_invalid: int = 0


@dataclass
class Outcome:
    kind: str  # fingerprint | invalid | skipped
    player_id: int
    reason: str = ""
    fingerprint: Fingerprint | None = None
    character_id: int | None = None
    seen_name: str = ""
    seen_realm: str = ""
    first_run_ts: int | None = None
    last_run_ts: int | None = None


CANDIDATE_SQL = """
    SELECT p.id, p.name, r.region, r.slug AS realm_slug, p.blizzard_character_id,
           pd.class_id AS details_class_id,
           (SELECT rm.spec_id FROM run_members rm
             WHERE rm.player_id = p.id AND rm.spec_id IS NOT NULL
             ORDER BY rm.run_id DESC LIMIT 1) AS latest_spec_id,
           (SELECT MIN(cr.completed_timestamp) FROM run_members rm
             JOIN challenge_runs cr ON cr.id = rm.run_id WHERE rm.player_id = p.id) AS first_run_ts,
           (SELECT MAX(cr.completed_timestamp) FROM run_members rm
             JOIN challenge_runs cr ON cr.id = rm.run_id WHERE rm.player_id = p.id) AS last_run_ts
    FROM players p
    JOIN realms r ON r.id = p.realm_id
    LEFT JOIN player_fingerprints pf ON pf.player_id = p.id
    LEFT JOIN player_details pd ON pd.player_id = p.id
    WHERE pf.player_id IS NULL AND COALESCE(p.is_valid, 1) != 0
    ORDER BY last_run_ts DESC, p.id
    LIMIT ?
"""


class IdentityEngine:
    def __init__(self, db: Database, client: BlizzardClient, config: Config):
        self.db = db
        self.client = client
        self.config = config
        self.stats = IdentityStats()
        self.index = FingerprintIndex(
            {r["fingerprint_hash"]: r["player_id"]
             for r in db.query("SELECT fingerprint_hash, player_id FROM player_fingerprints")}
        )

    def candidates(self, limit: int) -> list[sqlite3.Row]:
        return self.db.query(CANDIDATE_SQL, (limit,))

    async def evaluate(self, cand: sqlite3.Row) -> Outcome:
        """Network half of the state machine; touches no tables."""
        pid, region = cand["id"], cand["region"]
        base = dict(first_run_ts=cand["first_run_ts"], last_run_ts=cand["last_run_ts"])
        class_id = derive_class_id(cand["details_class_id"], cand["latest_spec_id"])
        if not class_id:
            return Outcome("invalid", pid, "missing-class", **base)

        realm = normalize_realm_slug(region, cand["realm_slug"])
        try:
            status = await self.client.fetch_character_status(cand["name"], realm, region)
        except APIError as e:
            if e.is_not_found:
                return Outcome("invalid", pid, "missing", **base)
            return Outcome("skipped", pid, f"status: {e.status}", **base)
        if not status.get("is_valid", False):
            return Outcome("invalid", pid, status.get("reason") or "invalid", **base)

        character = status.get("character") or {}
        name = character.get("name") or cand["name"]
        realm = (character.get("realm") or {}).get("slug") or realm
        try:
            achievements = await self.client.fetch_character_achievements(name, realm, region)
        except APIError as e:
            if e.is_not_found:
                return Outcome("invalid", pid, "missing", **base)
            return Outcome("skipped", pid, f"achievements: {e.status}", **base)
        try:
            l85, l90, heroic = extract_milestones(achievements)
            fp = Fingerprint(class_id, l85, l90, heroic)
            fp.validate()
        except FingerprintError as e:
            return Outcome("invalid", pid, f"incomplete ({e})", **base)

        seen = achievements.get("character") or {}
        return Outcome(
            "fingerprint",
            pid,
            fingerprint=fp,
            character_id=character.get("id") or cand["blizzard_character_id"],
            seen_name=seen.get("name") or name,
            seen_realm=(seen.get("realm") or {}).get("slug") or realm,
            **base,
        )

    def _store(self, conn: sqlite3.Connection, o: Outcome, merged_from: int | None) -> None:
        now = now_ms()
        fp = o.fingerprint
        if merged_from is not None:
            migrate_player_history(conn, merged_from, o.player_id)
            conn.execute(
                "UPDATE players SET is_valid = 0, status_checked_at = ?, merged_into = ? WHERE id = ?",
                (now, o.player_id, merged_from),
            )
            # ids merged into merged_from earlier now redirect straight to the new owner
            conn.execute(
                "UPDATE players SET merged_into = ? WHERE merged_into = ?", (o.player_id, merged_from)
            )
            conn.execute("DELETE FROM player_fingerprints WHERE player_id = ?", (merged_from,))
        conn.execute(
            """
            INSERT INTO player_fingerprints (
                player_id, fingerprint_hash, class_id, level85_timestamp, level90_timestamp,
                earliest_heroic_timestamp, last_seen_name, last_seen_realm_slug,
                last_seen_timestamp, first_run_timestamp, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(player_id) DO UPDATE SET
                fingerprint_hash = excluded.fingerprint_hash,
                class_id = excluded.class_id,
                level85_timestamp = excluded.level85_timestamp,
                level90_timestamp = excluded.level90_timestamp,
                earliest_heroic_timestamp = excluded.earliest_heroic_timestamp,
                last_seen_name = excluded.last_seen_name,
                last_seen_realm_slug = excluded.last_seen_realm_slug,
                last_seen_timestamp = excluded.last_seen_timestamp
            """,
            (
                o.player_id, fp.hash, fp.class_id, fp.level85_ts, fp.level90_ts, fp.heroic_ts,
                o.seen_name, o.seen_realm, o.last_run_ts or now, o.first_run_ts or now, now,
            ),
        )
        conn.execute(
            """
            UPDATE players SET is_valid = 1, status_checked_at = ?,
                blizzard_character_id = COALESCE(?, blizzard_character_id)
            WHERE id = ?
            """,
            (now, o.character_id, o.player_id),
        )

    def apply(self, o: Outcome) -> None:
        """Database half of the state machine; one transaction per candidate."""
        self.stats.processed += 1
        if o.kind == "skipped":
            self.stats.skipped += 1
            log.debug(f"player {o.player_id} skipped ({o.reason})")
            return
        if o.kind == "invalid":
            mark_player_invalid(self.db, o.player_id, o.reason)
            self.stats.marked_invalid += 1
            return

        fp_hash = o.fingerprint.hash
        previous = self.index.claim(fp_hash, o.player_id)
        merged_from = previous if previous not in (None, o.player_id) else None
        try:
            self.db.run_in_transaction(lambda conn: self._store(conn, o, merged_from))
        except sqlite3.Error:
            self.index.restore(fp_hash, previous)
            raise
        if merged_from is not None:
            self.stats.merged += 1
            log.info(f"Merged player {merged_from} into {o.player_id} (fingerprint {fp_hash[:12]})")
        else:
            self.stats.created += 1

    async def run(self) -> IdentityStats:
        batch_size = max(1, self.config.identity_batch_size)
        cap = self.config.max_players
        seen: set[int] = set()
        hb = Heartbeat(log, "fingerprints", total=cap)
        while True:
            remaining = cap - self.stats.processed if cap else batch_size
            if remaining <= 0:
                break
            rows = [r for r in self.candidates(batch_size + len(seen)) if r["id"] not in seen]
            rows = rows[: min(batch_size, remaining)]
            if not rows:
                break
            seen.update(r["id"] for r in rows)
            outcomes = await asyncio.gather(*(self.evaluate(r) for r in rows))
            for o in outcomes:
                self.apply(o)
            hb.tick(self.stats.processed)
        hb.tick(self.stats.processed, force=True)
        s = self.stats
        log.info(
            f"[STATS] fingerprints processed={s.processed} created={s.created} merged={s.merged} "
            f"skipped={s.skipped} invalid={s.marked_invalid} known={len(self.index)}"
        )
        return s


# --------------------------------------------------------------------------
# Status refresh
# --------------------------------------------------------------------------
@dataclass
class StatusStats:
    processed: int = 0
    valid: int = 0
    marked_invalid: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


async def refresh_statuses(db: Database, client: BlizzardClient, config: Config) -> StatusStats:
    """Re-check vendor status for players not checked within config.stale_after seconds."""
    cutoff = now_ms() - config.stale_after * 1000
    limit = config.max_players or -1
    rows = db.query(
        """
        SELECT p.id, p.name, r.region, r.slug AS realm_slug
        FROM players p JOIN realms r ON r.id = p.realm_id
        WHERE COALESCE(p.is_valid, 1) != 0
          AND (p.status_checked_at IS NULL OR p.status_checked_at < ?)
        ORDER BY COALESCE(p.status_checked_at, 0), p.id
        LIMIT ?
        """,
        (cutoff, limit),
    )
    stats = StatusStats()
    hb = Heartbeat(log, "status", total=len(rows))

    async def check(row):
        realm = normalize_realm_slug(row["region"], row["realm_slug"])
        try:
            return row, await client.fetch_character_status(row["name"], realm, row["region"]), None
        except APIError as e:
            return row, None, e

    start = time.monotonic()
    for chunk_start in range(0, len(rows), max(1, config.identity_batch_size)):
        chunk = rows[chunk_start : chunk_start + config.identity_batch_size]
        for row, status, err in await asyncio.gather(*(check(r) for r in chunk)):
            stats.processed += 1
            if err is not None:
                if err.is_not_found:
                    mark_player_invalid(db, row["id"], "missing")
                    stats.marked_invalid += 1
                else:
                    stats.skipped += 1
                    stats.errors.append(f"{row['id']}: {err.status}")
                continue
            if not status.get("is_valid", False):
                mark_player_invalid(db, row["id"], status.get("reason") or "invalid")
                stats.marked_invalid += 1
                continue
            character = status.get("character") or {}
            update_player_identity(
                db, row["id"], row["region"], character.get("name"),
                (character.get("realm") or {}).get("slug"), character.get("id"),
            )
            stats.valid += 1
        hb.tick(stats.processed)
    log.info(
        f"[STATS] status processed={stats.processed} valid={stats.valid} "
        f"invalid={stats.marked_invalid} skipped={stats.skipped} in {time.monotonic() - start:.1f}s"
    )
    return stats
