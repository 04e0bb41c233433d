from datetime import datetime, timezone
from typing import Optional


def to_iso(moment: datetime) -> str:
    """UTC timestamp with millisecond precision, sortable as text."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def utc_now(now: Optional[datetime] = None) -> datetime:
    return now or datetime.now(timezone.utc)


def utc_now_iso(now: Optional[datetime] = None) -> str:
    return to_iso(utc_now(now))
