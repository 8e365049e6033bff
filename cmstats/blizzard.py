import asyncio
import datetime
import email.utils as eut  # for HTTP-date parsing from Retry-After
import logging
import os
from dataclasses import dataclass
from typing import AsyncIterator
from urllib.parse import quote

import aiohttp
import requests

from . import __version__
from .config import Config, get_credentials
from .errors import APIError, AuthError, RateLimitExceeded
from .realms import normalize_realm_slug

log = logging.getLogger(__name__)

OAUTH_URL = "https://us.battle.net/oauth/token"
USER_AGENT = f"cmstats/{__version__}"
DEFAULT_RETRY_AFTER = 2.0
MAX_RATE_LIMIT_WAITS = 10


def api_base(region: str) -> str:
    return f"https://{region}.api.blizzard.com"


# --------------------------------------------------------------------------
# Authentication
# --------------------------------------------------------------------------
def get_access_token(region: str | None = None) -> str:
    static = os.getenv("BLIZZARD_API_TOKEN")
    if static:
        return static
    cid, cs = get_credentials(region)
    if not cid or not cs:
        raise AuthError("missing BLIZZARD_CLIENT_ID/BLIZZARD_CLIENT_SECRET (or BLIZZARD_API_TOKEN)")
    log.info(f"[AUTH] requesting client-credentials token ({region or 'default'})")
    try:
        resp = requests.post(
            OAUTH_URL,
            data={"grant_type": "client_credentials"},
            auth=(cid, cs),
            timeout=15,
        )
        resp.raise_for_status()
        return resp.json()["access_token"]
    except (requests.RequestException, KeyError, ValueError) as e:
        raise AuthError(f"token request failed: {e}") from e


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After as seconds; accepts integer seconds or an HTTP-date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(int(value)))
    except ValueError:
        pass
    try:
        dt = eut.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return max(0.0, (dt - datetime.datetime.now(datetime.timezone.utc)).total_seconds())


# --------------------------------------------------------------------------
# Leaderboard payload helpers
# --------------------------------------------------------------------------
@dataclass
class FetchResult:
    """One (realm, dungeon, period) outcome: exactly one of leaderboard / error is set."""

    realm: dict
    dungeon: dict
    period: str
    leaderboard: dict | None = None
    error: APIError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def not_found(self) -> bool:
        return self.error is not None and self.error.is_not_found


def parse_member(m: dict) -> dict | None:
    """
    Normalize both member shapes (flat and nested profile) to
    {id, name, realm_slug, spec_id, faction}; None when the id is missing.
    """
    profile = m.get("profile") or {}
    pid = m.get("id") if m.get("id") is not None else profile.get("id")
    if not pid:
        return None
    name = m.get("name") if m.get("name") is not None else profile.get("name", "")
    realm_slug = m.get("realm_slug")
    if realm_slug is None:
        realm_slug = (profile.get("realm") or {}).get("slug", "")
    spec_id = m.get("spec_id")
    if spec_id is None:
        spec_id = (m.get("specialization") or {}).get("id", 0)
    faction = m.get("faction")
    if isinstance(faction, dict):
        faction = faction.get("type", "")
    return {
        "id": int(pid),
        "name": name or "",
        "realm_slug": realm_slug or "",
        "spec_id": int(spec_id or 0),
        "faction": faction or "",
    }


# --------------------------------------------------------------------------
# Client
# --------------------------------------------------------------------------
class BlizzardClient:
    """
    Async vendor client. One aiohttp session, one semaphore bounding in-flight
    requests. Transport errors and 5xx are retried with exponential backoff,
    429 waits Retry-After without consuming an attempt, 404 is returned at once.
    """

    def __init__(self, config: Config, session: aiohttp.ClientSession | None = None,
                 token_provider=get_access_token):
        self.config = config
        self.session = session
        self._owns_session = session is None
        self.token_provider = token_provider
        self.sem = asyncio.Semaphore(config.concurrency)
        self.backoff = 1.0
        self._tokens: dict[str, str] = {}
        self._token_locks: dict[str, asyncio.Lock] = {}
        self.metrics = {"total": 0, "200": 0, "404": 0, "429": 0, "4xx": 0, "5xx": 0, "exceptions": 0}

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
                headers={"User-Agent": USER_AGENT},
            )
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None

    async def _token(self, region: str, stale: str | None = None) -> str:
        """
        Cached bearer token for region, fetched once however many requests wait on it.
        Passing the token a 401 came back with replaces it, unless another task already has.
        """
        cached = self._tokens.get(region)
        if cached is not None and cached != stale:
            return cached
        lock = self._token_locks.setdefault(region, asyncio.Lock())
        async with lock:
            cached = self._tokens.get(region)
            if cached is None or cached == stale:
                cached = await asyncio.to_thread(self.token_provider, region)
                self._tokens[region] = cached
            return cached

    async def get_json(self, url: str, region: str) -> dict:
        attempt = 0
        rate_waits = 0
        refreshed = False
        while True:
            token = await self._token(region)
            headers = {"Authorization": f"Bearer {token}", "User-Agent": USER_AGENT}
            self.metrics["total"] += 1
            try:
                async with self.sem:
                    async with self.session.get(url, headers=headers) as resp:
                        if resp.status == 200:
                            self.metrics["200"] += 1
                            try:
                                return await resp.json(content_type=None)
                            except ValueError as e:
                                raise APIError(200, f"invalid JSON: {e}") from e
                        body = await resp.text()
                        err = APIError(resp.status, body, parse_retry_after(resp.headers.get("Retry-After")))
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.metrics["exceptions"] += 1
                err = APIError(0, f"{type(e).__name__}: {e}")

            if err.status == 404:
                self.metrics["404"] += 1
                raise err
            if err.status == 429:
                self.metrics["429"] += 1
                rate_waits += 1
                if rate_waits > MAX_RATE_LIMIT_WAITS:
                    raise RateLimitExceeded(err.body, err.retry_after)
                wait = err.retry_after if err.retry_after is not None else DEFAULT_RETRY_AFTER
                log.debug(f"[RETRY] 429 for {url}; sleeping {wait:.1f}s")
                await asyncio.sleep(wait)
                continue
            if err.status == 401 and not refreshed:
                refreshed = True
                await self._token(region, stale=token)
                continue
            if err.status >= 500:
                self.metrics["5xx"] += 1
            elif err.status:
                self.metrics["4xx"] += 1

            attempt += 1
            retryable = err.status == 0 or err.status >= 500
            if not retryable or attempt >= self.config.max_attempts:
                raise err
            await asyncio.sleep(self.backoff * (2 ** (attempt - 1)))

    # ----------------------------------------------------------------------
    # leaderboards
    # ----------------------------------------------------------------------
    async def fetch_leaderboard(self, realm: dict, dungeon: dict, period: str) -> dict:
        region = realm["region"]
        url = (
            f"{api_base(region)}/data/wow/connected-realm/{realm['id']}"
            f"/mythic-leaderboard/{dungeon['id']}/period/{period}"
            f"?namespace=dynamic-classic-{region}"
        )
        return await self.get_json(url, region)

    async def fetch_all_realms(self, realms: dict[str, dict], dungeons: list[dict],
                               period: str) -> AsyncIterator[FetchResult]:
        """
        Lazy stream of exactly len(realms) * len(dungeons) results, in completion order.
        Closing the stream early cancels whatever is still in flight.
        """

        async def job(realm: dict, dungeon: dict) -> FetchResult:
            try:
                data = await self.fetch_leaderboard(realm, dungeon, period)
                return FetchResult(realm, dungeon, period, leaderboard=data)
            except APIError as e:
                return FetchResult(realm, dungeon, period, error=e)

        tasks = [
            asyncio.create_task(job(realm, dungeon))
            for _, realm in sorted(realms.items())
            for dungeon in dungeons
        ]
        try:
            for fut in asyncio.as_completed(tasks):
                yield await fut
        finally:
            pending = [t for t in tasks if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    # ----------------------------------------------------------------------
    # character profile endpoints
    # ----------------------------------------------------------------------
    def _character_url(self, name: str, realm_slug: str, region: str, suffix: str = "") -> str:
        realm = normalize_realm_slug(region, realm_slug.lower())
        return (
            f"{api_base(region)}/profile/wow/character/{quote(realm)}/{quote(name.lower())}{suffix}"
            f"?namespace=profile-classic-{region}&locale=en_US"
        )

    async def fetch_character_summary(self, name: str, realm_slug: str, region: str) -> dict:
        return await self.get_json(self._character_url(name, realm_slug, region), region)

    async def fetch_character_equipment(self, name: str, realm_slug: str, region: str) -> dict:
        return await self.get_json(self._character_url(name, realm_slug, region, "/equipment"), region)

    async def fetch_character_media(self, name: str, realm_slug: str, region: str) -> dict:
        return await self.get_json(self._character_url(name, realm_slug, region, "/character-media"), region)

    async def fetch_character_status(self, name: str, realm_slug: str, region: str) -> dict:
        return await self.get_json(self._character_url(name, realm_slug, region, "/status"), region)

    async def fetch_character_achievements(self, name: str, realm_slug: str, region: str) -> dict:
        return await self.get_json(self._character_url(name, realm_slug, region, "/achievements"), region)

    # ----------------------------------------------------------------------
    # seasons / periods
    # ----------------------------------------------------------------------
    async def fetch_season_index(self, region: str) -> dict:
        url = f"{api_base(region)}/data/wow/mythic-keystone/season/index?namespace=dynamic-classic-{region}&locale=en_US"
        return await self.get_json(url, region)

    async def fetch_season_detail(self, region: str, season_id: int) -> dict:
        url = f"{api_base(region)}/data/wow/mythic-keystone/season/{season_id}?namespace=dynamic-classic-{region}&locale=en_US"
        return await self.get_json(url, region)

    async def get_dynamic_period_list(self, region: str) -> list[str]:
        """Every period id referenced by the region's seasons, newest first."""
        index = await self.fetch_season_index(region)
        periods: set[int] = set()
        for season in index.get("seasons", []):
            detail = await self.fetch_season_detail(region, season["id"])
            periods.update(p["id"] for p in detail.get("periods", []) if p.get("id"))
        return [str(p) for p in sorted(periods, reverse=True)]

    def summary(self) -> str:
        m = self.metrics
        return (
            f"total={m['total']} | 200={m['200']} | 404={m['404']} | 429={m['429']} | "
            f"4xx={m['4xx']} | 5xx={m['5xx']} | exceptions={m['exceptions']}"
        )
