# tests/helpers.py

import asyncio
import os
import tempfile

from cmstats.blizzard import FetchResult
from cmstats.config import Config
from cmstats.constants import ACHIEVEMENT_LEVEL_85, ACHIEVEMENT_LEVEL_90
from cmstats.db import Database
from cmstats.errors import APIError


def create_test_db(tmp_dir: str | None = None) -> Database:
    """Fresh database on a temp path (WAL needs a real file, not :memory:)."""
    if tmp_dir is None:
        tmp_dir = tempfile.mkdtemp(prefix="cmstats-")
    return Database(os.path.join(tmp_dir, "test.db"))


def make_config(tmp_dir: str, **overrides) -> Config:
    cfg = Config(db_path=os.path.join(tmp_dir, "test.db"), output_dir=os.path.join(tmp_dir, "api"))
    cfg.generated_at = 1700000000000
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


# --------------------------------------------------------------------------
# Row builders
# --------------------------------------------------------------------------
def add_realm(db: Database, region: str, slug: str, name: str | None = None,
              parent: str | None = None, connected_id: int | None = None) -> int:
    db.execute(
        "INSERT INTO realms (slug, name, region, connected_realm_id, parent_realm_slug) VALUES (?, ?, ?, ?, ?)",
        (slug, name or slug.title(), region, connected_id, parent),
    )
    return db.get_realm_id(region, slug)


def add_dungeons(db: Database, count: int) -> list[int]:
    ids = list(range(1, count + 1))
    for i in ids:
        db.execute(
            "INSERT INTO dungeons (id, slug, name, map_challenge_mode_id) VALUES (?, ?, ?, ?)",
            (i, f"dungeon-{i}", f"Dungeon {i}", i),
        )
    return ids


def add_player(db: Database, pid: int, realm_id: int, name: str | None = None, valid: int = 1) -> int:
    name = name or f"Player{pid}"
    db.execute(
        "INSERT OR IGNORE INTO players (id, name, name_lower, realm_id, is_valid) VALUES (?, ?, lower(?), ?, ?)",
        (pid, name, name, realm_id, valid),
    )
    return pid


def add_run(db: Database, dungeon_id: int, realm_id: int, duration: int, completed_ts: int,
            members: list, season: int | None = 1, period: int = 1020) -> int:
    """
    Insert a run and its members. members holds player ids or (player_id, spec_id)
    pairs; unknown players are created on the run's realm.
    """
    pairs = [m if isinstance(m, tuple) else (m, None) for m in members]
    signature = ",".join(str(pid) for pid in sorted(pid for pid, _ in pairs))
    cur = db.execute(
        """
        INSERT INTO challenge_runs (duration, completed_timestamp, keystone_level, dungeon_id, realm_id,
                                    period_id, team_signature, season_id)
        VALUES (?, ?, 0, ?, ?, ?, ?, ?)
        """,
        (duration, completed_ts, dungeon_id, realm_id, period, signature, season),
    )
    run_id = cur.lastrowid
    for pid, spec in pairs:
        add_player(db, pid, realm_id)
        db.execute(
            "INSERT INTO run_members (run_id, player_id, spec_id) VALUES (?, ?, ?)", (run_id, pid, spec)
        )
    return run_id


def add_season(db: Database, number: int, region: str, start: int, end: int | None = None) -> int:
    row_id = db.upsert_season(number, region, f"Season {number}", start)
    db.update_season_end_timestamp(row_id, end)
    return row_id


# --------------------------------------------------------------------------
# Vendor payload builders
# --------------------------------------------------------------------------
def realm_info(region: str = "us", slug: str = "pagle", rid: int = 10, name: str | None = None) -> dict:
    return {"id": rid, "region": region, "slug": slug, "name": name or slug.title(), "parent_realm_slug": None}


def dungeon_info(did: int = 1, slug: str = "dungeon-1", name: str = "Dungeon 1") -> dict:
    return {"id": did, "slug": slug, "name": name}


def member(pid: int, name: str | None = None, realm_slug: str = "pagle", spec_id: int = 71) -> dict:
    return {
        "profile": {"id": pid, "name": name or f"Player{pid}", "realm": {"slug": realm_slug}},
        "specialization": {"id": spec_id},
        "faction": {"type": "ALLIANCE"},
    }


def group(duration: int, completed_ts: int, member_ids: list[int], realm_slug: str = "pagle") -> dict:
    return {
        "duration": duration,
        "completed_timestamp": completed_ts,
        "keystone_level": 1,
        "members": [member(pid, realm_slug=realm_slug) for pid in member_ids],
    }


def leaderboard_result(groups: list[dict], realm: dict | None = None, dungeon: dict | None = None,
                       period: str = "1020") -> FetchResult:
    lb = {
        "period": int(period),
        "period_start_timestamp": 1699900000000,
        "period_end_timestamp": 1700500000000,
        "leading_groups": groups,
    }
    return FetchResult(realm or realm_info(), dungeon or dungeon_info(), period, leaderboard=lb)


def error_result(status: int, realm: dict | None = None, dungeon: dict | None = None,
                 period: str = "1020") -> FetchResult:
    return FetchResult(realm or realm_info(), dungeon or dungeon_info(), period, error=APIError(status, "nope"))


async def stream(results):
    for r in results:
        yield r


def achievements_payload(l85: int, l90: int, heroic: int) -> dict:
    def ach(aid, ts):
        return {"id": aid, "completed_timestamp": ts, "criteria": {"is_completed": True}}

    return {
        "achievements": [ach(ACHIEVEMENT_LEVEL_85, l85), ach(ACHIEVEMENT_LEVEL_90, l90), ach(6456, heroic)],
    }


# --------------------------------------------------------------------------
# Fake HTTP layer
# --------------------------------------------------------------------------
class FakeResponse:
    def __init__(self, status: int = 200, payload=None, headers: dict | None = None, body: str = ""):
        self.status = status
        self.payload = payload
        self.headers = headers or {}
        self.body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type=None):
        return self.payload

    async def text(self):
        return self.body


class FakeSession:
    """Replays queued responses (or exceptions) in order and records requested urls."""

    def __init__(self, responses: list | None = None, default: FakeResponse | None = None):
        self.responses = list(responses or [])
        self.default = default
        self.calls: list[str] = []

    def get(self, url, headers=None):
        self.calls.append(url)
        if self.responses:
            nxt = self.responses.pop(0)
        else:
            nxt = self.default or FakeResponse(200, {})
        if isinstance(nxt, BaseException):
            raise nxt
        return nxt

    async def close(self):
        pass


class SlowResponse:
    def __init__(self, session: "SlowSession", response: FakeResponse):
        self.session = session
        self.response = response

    async def __aenter__(self):
        s = self.session
        s.in_flight += 1
        s.peak = max(s.peak, s.in_flight)
        try:
            await asyncio.sleep(s.delay)
        except BaseException:
            s.in_flight -= 1
            raise
        return self.response

    async def __aexit__(self, *exc):
        self.session.in_flight -= 1
        return False


class SlowSession(FakeSession):
    """Every response takes `delay` seconds; tracks how many are open at once."""

    def __init__(self, delay: float = 0.01, default: FakeResponse | None = None):
        super().__init__(default=default)
        self.delay = delay
        self.in_flight = 0
        self.peak = 0

    def get(self, url, headers=None):
        self.calls.append(url)
        return SlowResponse(self, self.default or FakeResponse(200, {"leading_groups": []}))


class FakeClient:
    """Character endpoints served from dicts keyed by lowercase name; missing keys are 404s."""

    def __init__(self, statuses: dict | None = None, achievements: dict | None = None,
                 summaries: dict | None = None, equipment: dict | None = None, media: dict | None = None):
        self.statuses = statuses or {}
        self.achievements = achievements or {}
        self.summaries = summaries or {}
        self.equipment = equipment or {}
        self.media = media or {}
        self.calls: list[tuple] = []

    def _lookup(self, table: dict, kind: str, name: str, realm_slug: str):
        self.calls.append((kind, name.lower(), realm_slug))
        value = table.get((name.lower(), realm_slug), table.get(name.lower()))
        if value is None:
            raise APIError(404, "not found")
        if isinstance(value, APIError):
            raise value
        return value

    async def fetch_character_status(self, name, realm_slug, region):
        return self._lookup(self.statuses, "status", name, realm_slug)

    async def fetch_character_achievements(self, name, realm_slug, region):
        return self._lookup(self.achievements, "achievements", name, realm_slug)

    async def fetch_character_summary(self, name, realm_slug, region):
        return self._lookup(self.summaries, "summary", name, realm_slug)

    async def fetch_character_equipment(self, name, realm_slug, region):
        return self._lookup(self.equipment, "equipment", name, realm_slug)

    async def fetch_character_media(self, name, realm_slug, region):
        return self._lookup(self.media, "media", name, realm_slug)

    def summary(self) -> str:
        return f"total={len(self.calls)}"
