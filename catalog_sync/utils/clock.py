"""Timezone-aware clock helpers."""
from collections.abc import Callable
from datetime import datetime

import pytz

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from the store."""
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)
