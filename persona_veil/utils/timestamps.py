from datetime import datetime, timezone

_TIME_SLOTS = [
    ("00-04", 0), ("04-08", 4), ("08-12", 8),
    ("12-16", 12), ("16-20", 16), ("20-24", 20),
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch(dt: datetime | None) -> float | None:
    return None if dt is None else dt.timestamp()


def from_epoch(ts: float | None) -> datetime | None:
    return None if ts is None else datetime.fromtimestamp(ts, tz=timezone.utc)


def _hour_to_slot_start(hour: int) -> int:
    for _, start in reversed(_TIME_SLOTS):
        if hour >= start:
            return start
    return 0


def obfuscate_timestamp(dt: datetime) -> datetime:
    """Coarsen a timestamp to the start of its 4-hour UTC slot."""
    dt = dt.astimezone(timezone.utc)
    return dt.replace(hour=_hour_to_slot_start(dt.hour), minute=0, second=0, microsecond=0)
