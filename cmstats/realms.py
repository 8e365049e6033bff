"""Realm slug normalization and merged-realm pools."""

from .constants import REALMS

# child slug -> parent slug, per region (post-merge redirects)
PARENT_SLUG_BY_REGION: dict[str, dict[str, str]] = {
    "us": {
        "nazgrim": "pagle",
        "galakras": "pagle",
        "raden": "pagle",
        "ra-den": "pagle",
        "lei-shen": "pagle",
        "leishen": "pagle",
        "immerseus": "pagle",
    },
    "eu": {
        "shekzeer": "mirage-raceway",
        "garalon": "mirage-raceway",
        "norushen": "mirage-raceway",
        "hoptallus": "mirage-raceway",
        "hotallus": "mirage-raceway",
        "ook-ook": "everlook",
        "ookook": "everlook",
    },
}

_AU_RENAMES = {"arugal": "arugal-au", "remulos": "remulos-au", "yojamba": "yojamba-au"}


def normalize_realm_slug(region: str, slug: str) -> str:
    """Map vendor slug variants the API rejects to the canonical slug (us OCE realms moved to -au)."""
    if region == "us":
        return _AU_RENAMES.get(slug, slug)
    return slug


def _norm(value: str | None) -> str:
    return (value or "").strip().lower()


def parent_slug(region: str, slug: str) -> str | None:
    return PARENT_SLUG_BY_REGION.get(_norm(region), {}).get(_norm(slug))


def effective_realm_slug(region: str, slug: str) -> str:
    """Pool leader slug for a realm: its merged parent, or itself."""
    s = _norm(slug)
    if not s:
        return ""
    return parent_slug(region, s) or s


def realm_catalog(
    regions: list[str] | None = None, realms: list[str] | None = None
) -> dict[str, dict]:
    """
    Known realms (optionally filtered) with parent_realm_slug filled from the alias table.
    A realm filter entry matches either the catalogue key or the vendor slug.
    """
    wanted_regions = {r.lower() for r in regions or []}
    wanted_realms = {r.lower() for r in realms or []}
    out: dict[str, dict] = {}
    for key, info in REALMS.items():
        if wanted_regions and info["region"] not in wanted_regions:
            continue
        if wanted_realms and key not in wanted_realms and info["slug"] not in wanted_realms:
            continue
        row = dict(info)
        row["parent_realm_slug"] = parent_slug(info["region"], info["slug"])
        out[key] = row
    return out
