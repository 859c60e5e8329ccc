"""
Calendar bucket keys for windowed counters.

All keys are computed in UTC so that the recorder, the aggregator and the
scheduled sweep agree on which bucket "now" falls into:

- day:   ``YYYY-MM-DD``
- week:  ``YYYY-Www`` (ISO-8601 week, Thursday-anchored; the year is the ISO year)
- month: ``YYYY-MM``
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def iso_week(day: date) -> tuple[int, int]:
    """
    Return ``(iso_year, week_number)`` for a calendar day.

    The week containing the year's first Thursday is week 1, so early-January
    days may belong to the previous ISO year and late-December days to the next.
    """
    iso_year, week, _ = day.isocalendar()
    return iso_year, week


def day_key(day: date) -> str:
    return day.strftime("%Y-%m-%d")


def week_key(day: date) -> str:
    iso_year, week = iso_week(day)
    return f"{iso_year}-W{week:02d}"


def month_key(day: date) -> str:
    return day.strftime("%Y-%m")


@dataclass(frozen=True)
class BucketKeys:
    """The three bucket keys a single moment falls into."""
    day: str
    week: str
    month: str

    def as_dict(self) -> dict[str, str]:
        return {"day": self.day, "week": self.week, "month": self.month}


def bucket_keys(moment: datetime | None = None) -> BucketKeys:
    """Bucket keys for ``moment`` (default: now), evaluated on the UTC calendar."""
    current = as_utc(moment) if moment is not None else utc_now()
    day = current.date()
    return BucketKeys(day=day_key(day), week=week_key(day), month=month_key(day))


def utc_day_window(day: date) -> tuple[datetime, datetime]:
    """Half-open ``[start, end)`` UTC window covering one calendar day."""
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)
