from datetime import datetime, timezone

import pytest

from zenith.util.dates import (
    datetime_to_jd, format_jd, jd_to_datetime, parse_query_time, parse_utc
)

J2000 = 2451545.0


class TestJulianDay:

    def test_j2000(self):
        assert datetime_to_jd(datetime(2000, 1, 1, 12, tzinfo=timezone.utc)) == J2000

    def test_naive_is_utc(self):
        assert datetime_to_jd(datetime(2000, 1, 1, 12)) == J2000

    def test_back_to_datetime(self):
        assert jd_to_datetime(J2000 + 0.25) == datetime(2000, 1, 1, 18, tzinfo=timezone.utc)

    def test_format(self):
        assert format_jd(J2000) == "2000-01-01T12:00:00Z"

    def test_format_out_of_range(self):
        assert format_jd(1e12) is None


class TestParsing:

    @pytest.mark.parametrize("text", [
        "2000-01-01T12:00:00Z",
        "2000-01-01T12:00:00+00:00",
        "2000-01-01 12:00:00 UTC",
        "2000-01-01T13:00:00+01:00",
        "2000-01-01T12:00:00",
        "Jan 1 2000 12:00",
    ])
    def test_formats(self, text):
        assert datetime_to_jd(parse_utc(text)) == pytest.approx(J2000, abs=1e-9)

    @pytest.mark.parametrize("text", ["", "   ", "not a date"])
    def test_unparseable(self, text):
        with pytest.raises(ValueError):
            parse_utc(text)

    def test_query_time_number(self):
        assert parse_query_time(J2000) == J2000
        assert parse_query_time("2451545.5") == 2451545.5

    def test_query_time_timestamp(self):
        assert parse_query_time(utc="2000-01-01T12:00:00Z") == pytest.approx(J2000)
        assert parse_query_time("2000-01-01T12:00:00Z") == pytest.approx(J2000)

    def test_query_time_needs_exactly_one(self):
        with pytest.raises(ValueError):
            parse_query_time()
        with pytest.raises(ValueError):
            parse_query_time(J2000, utc="2000-01-01T12:00:00Z")

    @pytest.mark.parametrize("value", ["nan", "inf", float("nan")])
    def test_query_time_non_finite(self, value):
        with pytest.raises(ValueError):
            parse_query_time(value)
