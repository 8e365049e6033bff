import logging

from .blizzard import BlizzardClient
from .db import Database
from .errors import APIError

log = logging.getLogger(__name__)


async def sync_region_seasons(client: BlizzardClient, db: Database, region: str) -> int:
    """
    Mirror the vendor season index for one region: upsert every season, record its
    period range and period links, and close each season at the next one's start.
    Returns the number of seasons stored.
    """
    index = await client.fetch_season_index(region)
    season_ids = sorted(s["id"] for s in index.get("seasons", []) if s.get("id"))
    stored: list[tuple[int, int]] = []  # (row id, start ts)
    for number in season_ids:
        try:
            detail = await client.fetch_season_detail(region, number)
        except APIError as e:
            log.warning(f"Season {number} ({region}) detail failed: {e}")
            continue
        name = detail.get("season_name") or f"Season {number}"
        start = detail.get("start_timestamp")
        row_id = db.upsert_season(number, region, name, start)
        periods = sorted(p["id"] for p in detail.get("periods", []) if p.get("id"))
        if periods:
            db.update_season_period_range(row_id, periods[0], periods[-1])
            for period_id in periods:
                db.link_period_to_season(period_id, row_id)
        stored.append((row_id, start or 0))
        log.info(f"Season {number} ({region.upper()}): {name}, {len(periods)} periods")

    stored.sort(key=lambda s: s[1])
    for (row_id, _), (_, next_start) in zip(stored, stored[1:]):
        db.update_season_end_timestamp(row_id, next_start)
    if stored:
        db.update_season_end_timestamp(stored[-1][0], None)
    return len(stored)


async def sync_seasons(client: BlizzardClient, db: Database, regions: list[str]) -> int:
    total = 0
    for region in regions:
        try:
            total += await sync_region_seasons(client, db, region)
        except APIError as e:
            log.error(f"Season sync failed for {region.upper()}: {e}")
    assigned, orphaned = db.assign_runs_to_seasons()
    log.info(f"Seasons synced: {total}; runs assigned={assigned}, outside any season={orphaned}")
    return total
