#!/usr/bin/env python3
"""
Challenge-mode leaderboard sync runner.

    sync_cm.py init
    sync_cm.py fetch --region us,eu --period 1034
    sync_cm.py process
    sync_cm.py generate --out web/public/api
    sync_cm.py build --skip-profiles

Every option falls back to the environment (CMSTATS_DB, CMSTATS_VERBOSE,
CMSTATS_CONCURRENCY, CMSTATS_OUTPUT) and then to the Config defaults.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import fields

from cmstats import __version__
from cmstats.config import REGIONS, Config
from cmstats.db import Database
from cmstats.errors import CMStatsError
from cmstats.logs import setup_logging
from cmstats import pipeline

log = logging.getLogger("sync_cm")


def _csv(value: str) -> list[str]:
    return [v.strip().lower() for v in value.split(",") if v.strip()]


def _regions(value: str) -> list[str]:
    regions = _csv(value)
    bad = [r for r in regions if r not in REGIONS]
    if bad:
        raise argparse.ArgumentTypeError(f"invalid region(s) {', '.join(bad)}; must be one of: {', '.join(REGIONS)}")
    return regions


# --------------------------------------------------------------------------
# CLI
# --------------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", dest="db_path", default=None, help="SQLite path (env CMSTATS_DB, default local.db)")
    common.add_argument("-v", "--verbose", action="store_true", default=None, help="Debug logging (env CMSTATS_VERBOSE)")

    scope = argparse.ArgumentParser(add_help=False)
    scope.add_argument("--region", dest="regions", type=_regions, default=None, help="Comma-separated regions: us, eu, kr, tw")
    scope.add_argument("--realm", dest="realms", type=_csv, default=None, help="Comma-separated realm slugs")

    fetch = argparse.ArgumentParser(add_help=False)
    fetch.add_argument("--dungeon", dest="dungeons", type=_csv, default=None, help="Comma-separated dungeon slugs or ids")
    fetch.add_argument("--period", dest="periods", type=_csv, default=None, help="Comma-separated period ids (default: from season index)")
    fetch.add_argument("--concurrency", type=int, default=None, help="Max in-flight API requests (env CMSTATS_CONCURRENCY)")
    fetch.add_argument("--batch-size", type=int, default=None, help="Leaderboard results per write transaction")
    fetch.add_argument("--fetch-timeout", type=float, default=None, help="Seconds before the sweep is cancelled")

    players = argparse.ArgumentParser(add_help=False)
    players.add_argument("--max-players", type=int, default=None, help="Process at most this many players (0 = all)")
    players.add_argument("--stale-after", type=int, default=None, help="Seconds before a player is re-checked")

    identity = argparse.ArgumentParser(add_help=False)
    identity.add_argument("--identity-batch-size", type=int, default=None, help="Candidates evaluated concurrently")

    profiles = argparse.ArgumentParser(add_help=False)
    profiles.add_argument("--profile-concurrency", type=int, default=None, help="Concurrent profile fetches")
    profiles.add_argument("--profile-timeout", type=float, default=None, help="Seconds before profile fetching stops")

    output = argparse.ArgumentParser(add_help=False)
    output.add_argument("--out", dest="output_dir", default=None, help="Output root (env CMSTATS_OUTPUT)")
    output.add_argument("--page-size", type=int, default=None, help="Rows per page (default 25)")
    output.add_argument("--shard-size", type=int, default=None, help="Players per search shard (default 5000)")
    output.add_argument("--workers", dest="emit_workers", type=int, default=None, help="File-writing workers (default 10)")
    output.add_argument("--pretty", dest="pretty_json", action="store_true", default=None, help="Indent JSON output")

    parser = argparse.ArgumentParser(description="Challenge-mode leaderboard sync runner")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init", parents=[common, scope], help="Create schema, run migrations, seed reference data")
    sub.add_parser("seasons", parents=[common, scope], help="Sync seasons from the season index")
    sub.add_parser("fetch", parents=[common, scope, fetch], help="Leaderboard sweep")
    sub.add_parser("status", parents=[common, players, identity], help="Refresh character status for stale players")
    sub.add_parser("fingerprints", parents=[common, players, identity], help="Identity reconciliation pass")
    sub.add_parser("profiles", parents=[common, players, profiles], help="Profile enrichment")
    sub.add_parser("process", parents=[common], help="Rebuild rankings")
    sub.add_parser("generate", parents=[common, scope, output], help="Write the static JSON tree")
    build = sub.add_parser(
        "build", parents=[common, scope, fetch, players, identity, profiles, output],
        help="seasons + fetch + fingerprints + process + profiles + generate",
    )
    build.add_argument("--skip-profiles", action="store_true", default=None, help="Skip profile enrichment")
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    known = {f.name for f in fields(Config)}
    return Config.from_env(**{k: v for k, v in vars(args).items() if k in known})


# --------------------------------------------------------------------------
# Commands
# --------------------------------------------------------------------------
def cmd_init(db: Database, config: Config) -> int:
    realms = pipeline.ensure_reference_data(db, config)
    log.info(f"Schema ready at {config.db_path}: {db.dungeon_count()} dungeons, {len(realms)} realms ensured")
    return 0


def cmd_seasons(db: Database, config: Config) -> int:
    asyncio.run(pipeline.run_seasons(db, config))
    return 0


def cmd_fetch(db: Database, config: Config) -> int:
    stats = asyncio.run(pipeline.run_fetch(db, config))
    return 1 if stats.failed_batches and not stats.runs else 0


def cmd_status(db: Database, config: Config) -> int:
    asyncio.run(pipeline.run_status(db, config))
    return 0


def cmd_fingerprints(db: Database, config: Config) -> int:
    asyncio.run(pipeline.run_fingerprints(db, config))
    return 0


def cmd_profiles(db: Database, config: Config) -> int:
    asyncio.run(pipeline.run_profiles(db, config))
    return 0


def cmd_process(db: Database, config: Config) -> int:
    pipeline.run_process(db, config)
    return 0


def cmd_generate(db: Database, config: Config) -> int:
    pipeline.run_generate(db, config)
    return 0


def cmd_build(db: Database, config: Config) -> int:
    asyncio.run(pipeline.run_build(db, config))
    return 0


COMMANDS = {
    "init": cmd_init,
    "seasons": cmd_seasons,
    "fetch": cmd_fetch,
    "status": cmd_status,
    "fingerprints": cmd_fingerprints,
    "profiles": cmd_profiles,
    "process": cmd_process,
    "generate": cmd_generate,
    "build": cmd_build,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = config_from_args(args)
    setup_logging(config.verbose)
    try:
        with Database(config.db_path) as db:
            return COMMANDS[args.command](db, config)
    except CMStatsError as e:
        log.error(f"{args.command} failed: {e}")
        return 1
    except KeyboardInterrupt:
        log.warning(f"{args.command} interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
