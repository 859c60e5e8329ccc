from datetime import date, datetime, timedelta, timezone

from samplerec.periods import as_utc, bucket_keys, iso_week, utc_day_window, week_key


def test_iso_week_is_thursday_anchored():
    # 2023-01-01 is a Sunday and still belongs to the last ISO week of 2022
    assert iso_week(date(2023, 1, 1)) == (2022, 52)
    assert iso_week(date(2023, 1, 2)) == (2023, 1)
    assert iso_week(date(2023, 12, 31))[1] in (52, 53)


def test_week_key_uses_iso_year():
    assert week_key(date(2023, 1, 1)) == "2022-W52"
    assert week_key(date(2023, 1, 5)) == "2023-W01"
    # 2024-12-30 is a Monday in ISO week 1 of 2025
    assert week_key(date(2024, 12, 30)) == "2025-W01"


def test_bucket_keys_for_moment():
    keys = bucket_keys(datetime(2024, 3, 13, 12, 0, tzinfo=timezone.utc))
    assert keys.as_dict() == {"day": "2024-03-13", "week": "2024-W11", "month": "2024-03"}


def test_bucket_keys_use_utc_calendar():
    # 23:30 in UTC-5 is already the next day in UTC
    local = datetime(2024, 3, 31, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
    keys = bucket_keys(local)
    assert keys.day == "2024-04-01"
    assert keys.month == "2024-04"


def test_naive_datetimes_are_treated_as_utc():
    naive = datetime(2024, 1, 1, 8, 0)
    assert as_utc(naive).tzinfo == timezone.utc
    assert as_utc(naive).hour == 8


def test_utc_day_window_is_half_open():
    start, end = utc_day_window(date(2024, 2, 28))
    assert start == datetime(2024, 2, 28, tzinfo=timezone.utc)
    assert end == datetime(2024, 2, 29, tzinfo=timezone.utc)
