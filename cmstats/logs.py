import logging
import os
import sys
import time

import psutil

LOG_FORMAT = "[%(levelname)s] %(message)s"


def setup_logging(verbose: bool = False) -> None:
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    # aiohttp/urllib3 are chatty at DEBUG
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


DURATION_UNITS = (("d", 86_400), ("h", 3_600), ("m", 60), ("s", 1))


def fmt_duration(seconds: float, parts: int = 2) -> str:
    """Elapsed time as its `parts` largest non-zero units: 3725 -> "1h 2m"."""
    remaining = max(0, int(seconds))
    out = []
    for unit, size in DURATION_UNITS:
        qty, remaining = divmod(remaining, size)
        if qty:
            out.append(f"{qty}{unit}")
    return " ".join(out[:parts]) or "0s"


class Heartbeat:
    """Rate-limited progress line for long loops (every `every` items or `interval` seconds)."""

    def __init__(self, logger: logging.Logger, label: str, total: int = 0,
                 every: int = 200, interval: float = 30.0):
        self.logger = logger
        self.label = label
        self.total = total
        self.every = every
        self.interval = interval
        self.start = time.monotonic()
        self.last = self.start
        self.last_count = 0

    def tick(self, count: int, force: bool = False) -> None:
        now = time.monotonic()
        due = count - self.last_count >= self.every or now - self.last >= self.interval
        if not (force or due):
            return
        elapsed = now - self.start
        rate = count / elapsed if elapsed > 0 else 0.0
        if self.total and count and count < self.total:
            eta = fmt_duration((elapsed / count) * (self.total - count))
        else:
            eta = "-"
        target = f"/{self.total}" if self.total else ""
        self.logger.info(
            f"[HEARTBEAT] {self.label}: {count}{target} done, rate={rate:.1f}/s, "
            f"ETA={eta}, elapsed={fmt_duration(elapsed)}"
        )
        self.last = now
        self.last_count = count


def memory_usage_mb() -> float:
    return psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)
