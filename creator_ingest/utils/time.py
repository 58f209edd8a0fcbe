"""Time utilities (UTC now, epoch conversion, elapsed formatting)."""
from __future__ import annotations
from datetime import datetime, timezone, timedelta

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def from_epoch(ts: float | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)

def parse_timestamp(value) -> datetime | None:
    """Best-effort parse of provider timestamps (ISO strings, epoch seconds)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return from_epoch(float(value))
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            # Twitter style: "Tue Dec 12 12:00:00 +0000 2023"
            parsed = datetime.strptime(text, "%a %b %d %H:%M:%S %z %Y")
        except ValueError:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

def format_elapsed(start: datetime, end: datetime | None = None) -> str:
    end_ts = end or utc_now()
    delta: timedelta = end_ts - start
    ms = int(delta.total_seconds() * 1000)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms/1000:.2f}s"
    return f"{delta.total_seconds()/60:.2f}m"

__all__ = ["utc_now", "from_epoch", "parse_timestamp", "format_elapsed"]
