import os
from dataclasses import dataclass, field, fields

REGIONS = ("us", "eu", "kr", "tw")

DEFAULT_DB_PATH = "local.db"
DEFAULT_OUTPUT_DIR = os.path.join("web", "public", "api")


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """
    Process-wide settings. Built once by the runner and handed to every stage;
    nothing in the package reads os.environ after this point except credentials.
    """

    db_path: str = DEFAULT_DB_PATH
    verbose: bool = False

    # outbound HTTP
    concurrency: int = 20
    request_timeout: float = 15.0
    max_attempts: int = 3
    fetch_timeout: float = 45 * 60
    profile_timeout: float = 30 * 60

    # ingestion / identity / profiles
    batch_size: int = 10
    identity_batch_size: int = 25
    profile_batch_size: int = 20
    profile_concurrency: int = 20
    max_players: int = 0
    stale_after: int = 7 * 24 * 3600

    # static output
    output_dir: str = DEFAULT_OUTPUT_DIR
    page_size: int = 25
    shard_size: int = 5000
    emit_workers: int = 10
    pretty_json: bool = False
    generated_at: int | None = None

    # filters (empty = everything)
    regions: list[str] = field(default_factory=list)
    realms: list[str] = field(default_factory=list)
    dungeons: list[str] = field(default_factory=list)
    periods: list[str] = field(default_factory=list)
    skip_profiles: bool = False

    @classmethod
    def from_env(cls, **overrides) -> "Config":
        cfg = cls(
            db_path=os.getenv("CMSTATS_DB", DEFAULT_DB_PATH),
            verbose=_env_bool("CMSTATS_VERBOSE"),
            concurrency=int(os.getenv("CMSTATS_CONCURRENCY", "20")),
            output_dir=os.getenv("CMSTATS_OUTPUT", DEFAULT_OUTPUT_DIR),
        )
        known = {f.name for f in fields(cls)}
        for key, value in overrides.items():
            if key not in known:
                raise TypeError(f"unknown config field {key!r}")
            if value is None:
                continue
            setattr(cfg, key, value)
        return cfg


def get_credentials(region: str | None = None) -> tuple[str | None, str | None]:
    """Region-suffixed pair wins over the generic BLIZZARD_CLIENT_ID/SECRET pair."""
    if region:
        r = region.upper()
        cid = os.getenv(f"BLIZZARD_CLIENT_ID_{r}")
        cs = os.getenv(f"BLIZZARD_CLIENT_SECRET_{r}")
        if cid and cs:
            return cid, cs
    return os.getenv("BLIZZARD_CLIENT_ID"), os.getenv("BLIZZARD_CLIENT_SECRET")
