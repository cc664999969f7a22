from datetime import datetime, timezone


def utcnow() -> datetime:
    # naive UTC, matching the DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso(dt_str: str) -> datetime:
    # Accepts "2026-01-20T18:00:00", "...+02:00" and the "Z" suffix
    return to_naive_utc(datetime.fromisoformat(dt_str.replace("Z", "+00:00")))
