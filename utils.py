"""Shared text and time helpers for the session scanners."""

import math
import re
from datetime import UTC, datetime
from typing import Any

ANSI = {
    "reset": "\033[0m",
    "bold": "\033[1m",
    "dim": "\033[2m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "magenta": "\033[35m",
    "cyan": "\033[36m",
}

WHITESPACE_RE = re.compile(r"\s+")

# (unit, seconds) from largest to smallest.
RELATIVE_UNITS = [
    ("year", 31_536_000),
    ("month", 2_592_000),
    ("week", 604_800),
    ("day", 86_400),
    ("hour", 3_600),
    ("minute", 60),
    ("second", 1),
]


def col(text: object, *styles: str, enabled: bool = True) -> str:
    """Colorize text with ANSI codes."""
    if not enabled:
        return str(text)
    return "".join(ANSI.get(s, "") for s in styles) + str(text) + ANSI["reset"]


def shorten_plain(s: str, max_len: int) -> str:
    """Shorten string with ellipsis if needed."""
    if len(s) <= max_len:
        return s
    if max_len <= 1:
        return s[:max_len]
    return s[: max_len - 1] + "…"


def collapse_whitespace(s: str) -> str:
    return WHITESPACE_RE.sub(" ", s).strip()


def summarize(s: str, max_len: int = 80) -> str:
    """Collapse whitespace onto one line and shorten to max_len."""
    return shorten_plain(collapse_whitespace(s), max_len)


def tok(n: int) -> str:
    """Format token count with K/M/B suffix."""
    if n >= 1_000_000_000:
        return f"{n / 1e9:.1f}B"
    if n >= 1_000_000:
        return f"{n / 1e6:.1f}M"
    if n >= 10_000:
        return f"{n / 1e3:.0f}K"
    if n >= 1_000:
        return f"{n / 1e3:.1f}K"
    return str(n)


def as_non_empty_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def parse_ts(ts: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware datetime (naive values are UTC)."""
    if not isinstance(ts, str) or not ts.strip():
        return None
    try:
        dt = datetime.fromisoformat(ts.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def iso_utc(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_relative_time(dt: datetime, now: datetime | None = None) -> str:
    """Render dt relative to now, e.g. "3 hours ago", "yesterday", "in 2 minutes"."""
    if now is None:
        now = datetime.now(tz=UTC)
    diff = (dt - now).total_seconds()
    abs_diff = round(abs(diff))

    unit, value = "second", 0
    for unit, seconds in RELATIVE_UNITS:
        if abs_diff >= seconds or unit == "second":
            # Round half away from zero so "-1.5 days" reads as 2 days ago.
            value = int(math.copysign(math.floor(abs(diff) / seconds + 0.5), diff))
            break

    if value == 0:
        return "now" if unit == "second" else f"this {unit}"
    if unit == "day" and abs(value) == 1:
        return "yesterday" if value < 0 else "tomorrow"
    if unit in ("week", "month", "year") and abs(value) == 1:
        return f"last {unit}" if value < 0 else f"next {unit}"
    count = abs(value)
    label = unit if count == 1 else unit + "s"
    return f"{count} {label} ago" if value < 0 else f"in {count} {label}"
