import math
import re
import time
from typing import Iterable, Iterator

# (label, cumulative rank percentage upper bound); "artifact" is decided by value, not rank
BRACKET_THRESHOLDS: list[tuple[str, float]] = [
    ("excellent", 1.0),
    ("legendary", 5.0),
    ("epic", 20.0),
    ("rare", 40.0),
    ("uncommon", 60.0),
]


def now_ms() -> int:
    return int(time.time() * 1000)


def compute_team_signature(player_ids: Iterable[int]) -> str:
    """Sorted, comma-joined member ids; the stable identity of a team."""
    return ",".join(str(pid) for pid in sorted(player_ids))


def name_to_slug(name: str) -> str:
    """
    Filesystem-safe lowercase slug for a player name. Unicode letters and digits
    survive (diacritics included); path separators and spaces become '-', other
    punctuation is dropped, dash runs collapse and outer dashes are trimmed.
    """
    s = (name or "").strip().lower()
    s = s.replace("/", "-").replace("\\", "-")
    out = []
    for ch in s:
        if ch == " ":
            out.append("-")
        elif ch in "-_" or ch.isalpha() or ch.isdigit():
            out.append(ch)
    slug = re.sub(r"-{2,}", "-", "".join(out)).strip("-")
    return slug or "player"


def percentile_bracket(rank: int, total: int, value: int | None = None,
                       min_value: int | None = None) -> str:
    if value is not None and min_value is not None and value == min_value:
        return "artifact"
    if total <= 0 or rank <= 0:
        return "common"
    pct = rank * 100.0 / total
    for label, bound in BRACKET_THRESHOLDS:
        if pct <= bound:
            return label
    return "common"


def bracket_case_sql(rank: str, total: str, value: str, min_value: str) -> str:
    """SQL CASE expression equivalent to percentile_bracket() over the named columns."""
    whens = "\n".join(
        f"    WHEN ({rank} * 100.0 / {total}) <= {bound} THEN '{label}'"
        for label, bound in BRACKET_THRESHOLDS
    )
    return (
        "CASE\n"
        f"    WHEN {value} = {min_value} THEN 'artifact'\n"
        f"{whens}\n"
        "    ELSE 'common'\n"
        "END"
    )


def total_pages(total: int, page_size: int) -> int:
    if total <= 0 or page_size <= 0:
        return 0
    return math.ceil(total / page_size)


def pagination(page: int, page_size: int, total: int, total_key: str = "totalRuns") -> dict:
    pages = total_pages(total, page_size)
    return {
        "currentPage": page,
        "pageSize": page_size,
        total_key: total,
        "totalPages": pages,
        "hasNextPage": page < pages,
        "hasPrevPage": page > 1,
    }


def chunked(items: list, size: int) -> Iterator[list]:
    for i in range(0, len(items), size):
        yield items[i : i + size]
