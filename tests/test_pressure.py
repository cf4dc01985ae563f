import math

from conftest import make_quote

from flow_pressure.pressure import (
    PressureScorer,
    calculate_pressure_index,
    pressure_action,
    pressure_zone,
    score_quote,
)


class TestPressureIndex:
    def test_position_in_range(self):
        assert calculate_pressure_index(105, 100, 110) == 50.0
        assert calculate_pressure_index(100, 100, 110) == 0.0
        assert calculate_pressure_index(110, 100, 110) == 100.0

    def test_zero_range_is_neutral(self):
        assert calculate_pressure_index(42, 42, 42) == 50.0

    def test_clamped_outside_range(self):
        assert calculate_pressure_index(120, 100, 110) == 100.0
        assert calculate_pressure_index(90, 100, 110) == 0.0

    def test_non_finite_inputs_stay_bounded(self):
        assert 0.0 <= calculate_pressure_index(math.nan, 100, 110) <= 100.0
        assert calculate_pressure_index(math.inf, math.nan, math.nan) == 50.0


class TestScoreQuote:
    def test_final_pressure_bounds_and_rounding(self):
        record = score_quote(make_quote("AAPL", 110.0, high=110.0, low=100.0, volume=10_000_000.0))
        assert record.pressure_index == 100.0
        assert record.adjusted_pressure == 100.0
        assert 0.0 <= record.final_pressure <= 100.0
        assert record.action == "SELL"
        assert record.zone == "SELL_ZONE"

    def test_volume_adjustment(self):
        record = score_quote(make_quote("AAPL", 100.0, high=110.0, low=100.0, volume=100_000.0))
        assert record.pressure_index == 0.0
        assert record.volatility_adjustment == 10.0
        assert record.final_pressure == 5.0
        assert record.action == "BUY"
        assert record.zone == "BUY_ZONE"

    def test_zero_range_quote(self):
        record = score_quote(make_quote("AAPL", 50.0, high=50.0, low=50.0, volume=0.0))
        assert record.final_pressure == 50.0
        assert record.action == "HOLD"
        assert record.suggestion == "Medium pressure - observe"


class TestThresholds:
    def test_action_thresholds(self):
        assert pressure_action(44.9) == "BUY"
        assert pressure_action(45.0) == "HOLD"
        assert pressure_action(70.0) == "HOLD"
        assert pressure_action(70.1) == "SELL"

    def test_zone_thresholds(self):
        assert pressure_zone(39.9) == "BUY_ZONE"
        assert pressure_zone(40.0) == "NEUTRAL_ZONE"
        assert pressure_zone(70.1) == "SELL_ZONE"


class TestPressureScorer:
    def test_calculate_persists_and_averages(self, store, quotes, reg_clock):
        quotes.set_price("AAPL", 110.0, high=110.0, low=100.0, volume=0.0)
        quotes.set_price("MSFT", 100.0, high=110.0, low=100.0, volume=0.0)
        scorer = PressureScorer(store, quotes, reg_clock)

        outcome = scorer.calculate(["aapl", "msft", "nvda"])

        assert outcome["market_avg_pressure"] == 50.0
        assert outcome["stats"] == {"total": 3, "successful": 2, "failed": 1}
        assert outcome["errors"][0]["symbol"] == "NVDA"
        assert store.pressure.count() == 2
        assert store.pressure.latest("AAPL").final_pressure == 100.0

    def test_all_failures_default_average(self, store, quotes, reg_clock):
        outcome = PressureScorer(store, quotes, reg_clock).calculate(["NVDA"])
        assert outcome["market_avg_pressure"] == 50.0

    def test_export_keeps_latest_per_symbol(self, store, quotes, reg_clock):
        scorer = PressureScorer(store, quotes, reg_clock)
        quotes.set_price("AAPL", 100.0, high=110.0, low=100.0, volume=0.0)
        scorer.calculate(["AAPL"])
        reg_clock.advance(minutes=1)
        quotes.set_price("AAPL", 110.0, high=110.0, low=100.0, volume=0.0)
        scorer.calculate(["AAPL"])

        report = scorer.export("2024-06-12")
        assert report["total_symbols"] == 1
        assert report["symbols"][0].final_pressure == 100.0
        assert report["market_summary"]["sell_signals"] == 1
        assert scorer.export("2024-06-11")["total_symbols"] == 0
