from datetime import date, datetime, timezone

from flow_pressure.session import get_market_session, is_trading_session, market_status, minutes_to_close, us_equity_holidays


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestMarketSession:
    def test_regular_session(self):
        # 10:00 ET on a Wednesday in June (EDT, UTC-4)
        status = market_status(utc(2024, 6, 12, 14, 0))
        assert status["session"] == "REG"
        assert status["is_open"] is True
        assert is_trading_session(utc(2024, 6, 12, 14, 0))

    def test_pre_and_post_market(self):
        assert get_market_session(utc(2024, 6, 12, 12, 0)) == "PRE"
        assert get_market_session(utc(2024, 6, 12, 21, 0)) == "POST"
        assert get_market_session(utc(2024, 6, 13, 2, 0)) == "CLOSED"

    def test_session_boundaries(self):
        assert get_market_session(utc(2024, 6, 12, 13, 30)) == "REG"
        assert get_market_session(utc(2024, 6, 12, 13, 29)) == "PRE"
        assert get_market_session(utc(2024, 6, 12, 20, 1)) == "POST"

    def test_weekend_is_closed(self):
        status = market_status(utc(2024, 6, 15, 15, 0))
        assert status["session"] == "CLOSED"
        assert status["reason"] == "weekend"

    def test_holiday_is_closed(self):
        status = market_status(utc(2024, 7, 4, 15, 0))
        assert status["session"] == "CLOSED"
        assert status["reason"] == "holiday"

    def test_naive_datetimes_are_utc(self):
        assert get_market_session(datetime(2024, 6, 12, 14, 0)) == "REG"


class TestHolidays:
    def test_known_2024_holidays(self):
        holidays = us_equity_holidays(2024)
        assert date(2024, 1, 15) in holidays  # MLK day
        assert date(2024, 3, 29) in holidays  # Good Friday
        assert date(2024, 5, 27) in holidays  # Memorial Day
        assert date(2024, 11, 28) in holidays  # Thanksgiving
        assert date(2024, 12, 25) in holidays

    def test_weekend_holidays_are_observed(self):
        # July 4th 2026 is a Saturday
        assert date(2026, 7, 3) in us_equity_holidays(2026)


class TestMinutesToClose:
    def test_inside_session(self):
        assert minutes_to_close(utc(2024, 6, 12, 19, 50)) == 10

    def test_outside_session(self):
        assert minutes_to_close(utc(2024, 6, 15, 15, 0)) is None
