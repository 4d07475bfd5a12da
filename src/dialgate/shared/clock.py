"""
Time helpers.

All stored timestamps are timezone-aware UTC. Local calendar days are only
computed on demand, in the target's zone or the configured default.
"""

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dialgate.shared.logging import get_logger

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def resolve_timezone(name: str | None, default: str = "UTC") -> tzinfo:
    """Resolve an IANA zone name, falling back to ``default`` when unknown."""
    for candidate in (name, default):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown time zone, falling back", extra={"zone": candidate})
    return timezone.utc


def local_date(moment: datetime, zone: tzinfo) -> date:
    return ensure_aware(moment).astimezone(zone).date()


def calendar_days_between(earlier: datetime, later: datetime, zone: tzinfo) -> int:
    """Whole local calendar days from ``earlier`` to ``later``, never negative."""
    return max(0, (local_date(later, zone) - local_date(earlier, zone)).days)


def start_of_next_day(moment: datetime, zone: tzinfo) -> datetime:
    """UTC instant at which the local day following ``moment`` begins."""
    next_day = local_date(moment, zone) + timedelta(days=1)
    return datetime.combine(next_day, time.min, tzinfo=zone).astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return ensure_aware(datetime.fromisoformat(value))
