import asyncio
import logging
import time
from contextlib import asynccontextmanager

from .blizzard import BlizzardClient
from .config import Config
from .constants import DUNGEONS, FALLBACK_PERIODS
from .db import Database
from .emit import EmitStats, StaticEmitter
from .errors import APIError
from .identity import IdentityEngine, IdentityStats, StatusStats, refresh_statuses
from .ingest import IngestStats, LeaderboardIngester
from .logs import fmt_duration, memory_usage_mb
from .profiles import ProfileFetcher, ProfileStats
from .ranking import RankingStats, rebuild_rankings
from .realms import realm_catalog
from .seasons import sync_seasons

log = logging.getLogger(__name__)


def log_summary(label: str, started: float, client: BlizzardClient | None = None) -> None:
    log.info(
        f"[SUMMARY] {label} finished in {fmt_duration(time.monotonic() - started)}, "
        f"rss={memory_usage_mb():.1f} MB"
    )
    if client is not None:
        log.info(f"[SUMMARY] API calls: {client.summary()}")


@asynccontextmanager
async def open_client(config: Config, client: BlizzardClient | None = None):
    if client is not None:
        yield client
        return
    async with BlizzardClient(config) as owned:
        yield owned


def select_dungeons(config: Config) -> list[dict]:
    if not config.dungeons:
        return list(DUNGEONS)
    wanted = {d.lower() for d in config.dungeons}
    return [d for d in DUNGEONS if d["slug"] in wanted or str(d["id"]) in wanted]


def ensure_reference_data(db: Database, config: Config) -> dict[str, dict]:
    db.ensure_dungeons(DUNGEONS)
    realms = realm_catalog(config.regions, config.realms)
    db.ensure_realms(realms)
    changed = db.sync_realm_parents()
    if changed:
        log.info(f"Linked {changed} realms to their merged parent")
    return realms


# --------------------------------------------------------------------------
# fetch
# --------------------------------------------------------------------------
async def fetch_sweep(db: Database, config: Config, client: BlizzardClient,
                      ingester: LeaderboardIngester) -> None:
    realms = ensure_reference_data(db, config)
    dungeons = select_dungeons(config)
    by_region: dict[str, dict[str, dict]] = {}
    for key, realm in realms.items():
        by_region.setdefault(realm["region"], {})[key] = realm

    for region in sorted(by_region):
        periods = list(config.periods)
        if not periods:
            try:
                periods = await client.get_dynamic_period_list(region)
            except APIError as e:
                log.error(f"{region.upper()}: period list unavailable ({e}), skipping region")
                continue
        if not periods:
            log.warning(f"{region.upper()}: season index lists no periods, using fallback list")
            periods = list(FALLBACK_PERIODS)
        region_realms = by_region[region]
        log.info(
            f"{region.upper()}: {len(region_realms)} realms x {len(dungeons)} dungeons "
            f"x {len(periods)} periods"
        )
        for period in periods:
            await ingester.process(client.fetch_all_realms(region_realms, dungeons, period))


async def run_fetch(db: Database, config: Config, client: BlizzardClient | None = None) -> IngestStats:
    started = time.monotonic()
    ingester = LeaderboardIngester(db, config)
    async with open_client(config, client) as api:
        try:
            await asyncio.wait_for(fetch_sweep(db, config, api, ingester), timeout=config.fetch_timeout)
        except asyncio.TimeoutError:
            log.error(f"Fetch sweep timed out after {fmt_duration(config.fetch_timeout)}; keeping committed batches")
        db.update_fetch_metadata("challenge_mode_leaderboard", ingester.stats.runs, ingester.stats.players)
        log_summary("fetch", started, api)
    return ingester.stats


# --------------------------------------------------------------------------
# vendor-backed maintenance stages
# --------------------------------------------------------------------------
async def run_seasons(db: Database, config: Config, client: BlizzardClient | None = None) -> int:
    regions = config.regions or sorted({r["region"] for r in realm_catalog().values()})
    async with open_client(config, client) as api:
        return await sync_seasons(api, db, regions)


async def run_status(db: Database, config: Config, client: BlizzardClient | None = None) -> StatusStats:
    started = time.monotonic()
    async with open_client(config, client) as api:
        stats = await refresh_statuses(db, api, config)
        log_summary("status", started, api)
    return stats


async def run_fingerprints(db: Database, config: Config,
                           client: BlizzardClient | None = None) -> IdentityStats:
    started = time.monotonic()
    async with open_client(config, client) as api:
        stats = await IdentityEngine(db, api, config).run()
        log_summary("fingerprints", started, api)
    return stats


async def run_profiles(db: Database, config: Config, client: BlizzardClient | None = None) -> ProfileStats:
    started = time.monotonic()
    async with open_client(config, client) as api:
        fetcher = ProfileFetcher(db, api, config)
        try:
            await asyncio.wait_for(fetcher.run(), timeout=config.profile_timeout)
        except asyncio.TimeoutError:
            log.error(
                f"Profile fetch timed out after {fmt_duration(config.profile_timeout)} "
                f"({fetcher.stats.processed} players stored)"
            )
        log_summary("profiles", started, api)
    return fetcher.stats


# --------------------------------------------------------------------------
# offline stages
# --------------------------------------------------------------------------
def run_process(db: Database, config: Config) -> RankingStats:
    started = time.monotonic()
    stats = rebuild_rankings(db)
    log.info(
        f"[STATS] rankings run_rankings={stats.run_rankings} best_runs={stats.best_runs} "
        f"profiles={stats.profiles} ranked_players={stats.ranked_players}"
    )
    log_summary("process", started)
    return stats


def run_generate(db: Database, config: Config) -> EmitStats:
    started = time.monotonic()
    stats = StaticEmitter(db, config).run()
    log.info(
        f"[STATS] generate leaderboard_pages={stats.leaderboard_pages} player_pages={stats.player_pages} "
        f"player_board_pages={stats.player_board_pages} search_shards={stats.search_shards} "
        f"index_pages={stats.index_pages}"
    )
    log_summary("generate", started)
    return stats


async def run_build(db: Database, config: Config, client: BlizzardClient | None = None) -> dict:
    """seasons, fetch, fingerprints, process, profiles (optional), generate."""
    started = time.monotonic()
    results: dict = {}
    async with open_client(config, client) as api:
        results["seasons"] = await run_seasons(db, config, api)
        results["fetch"] = await run_fetch(db, config, api)
        results["fingerprints"] = await run_fingerprints(db, config, api)
        results["process"] = run_process(db, config)
        if config.skip_profiles:
            log.info("Skipping profile enrichment")
        else:
            results["profiles"] = await run_profiles(db, config, api)
        results["generate"] = run_generate(db, config)
        log_summary("build", started, api)
    return results
