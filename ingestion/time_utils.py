from __future__ import annotations

from datetime import datetime, timezone


def now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def parse_iso_utc(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# naive input is read as the caller's local time, like a user typing "3pm"
def to_utc_iso(value: str | None, *, strict: bool = False) -> str | None:
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        if strict:
            raise
        return value
    if parsed.tzinfo is None:
        local_tz = datetime.now().astimezone().tzinfo
        parsed = parsed.replace(tzinfo=local_tz)
    return parsed.astimezone(timezone.utc).isoformat()


def whole_days_between(a: datetime, b: datetime) -> int:
    # truncates toward zero, so 36 hours either way is one day
    return int(abs((a - b).total_seconds()) // 86400)
