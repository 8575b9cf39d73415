from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from sheetsync.config import Settings


def now_local(settings: Settings) -> datetime:
    return datetime.now(ZoneInfo(settings.app_timezone))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_local(settings: Settings, value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(ZoneInfo(settings.app_timezone))


def isoformat_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
