from datetime import datetime, timezone

import pytest

from conftest import FixedClock, StubAdvisor, make_candles

from flow_pressure.autotrader import AutoTrader, calculate_confidence, evaluate_exit, load_model_defaults
from flow_pressure.errors import StaleRecordError
from flow_pressure.models import AutoTrade, ModelConfig, SemanticPressure


def seed_sentiment(store, symbol: str, score: float) -> None:
    store.semantic.create(
        SemanticPressure(symbol=symbol, spi=50.0, base_pressure=50.0, sentiment_score=score, sentiment="positive")
    )


def open_trade(store, symbol: str = "AAPL", buy_price: float = 100.0, shares: float = 10, entry_time: str = "") -> AutoTrade:
    return store.auto_trades.create(
        AutoTrade(
            symbol=symbol,
            shares=shares,
            buy_price=buy_price,
            total_cost=buy_price * shares,
            entry_time=entry_time or "2024-06-12T14:00:00+00:00",
            entry_confidence=75.0,
        )
    )


@pytest.fixture
def trader(store, quotes, events, reg_clock, tmp_path) -> AutoTrader:
    return AutoTrader(
        store,
        quotes,
        None,
        events,
        reg_clock,
        capital=10_000.0,
        account_id="default",
        config_path=tmp_path / "missing.yaml",
    )


@pytest.fixture
def active(trader) -> AutoTrader:
    trader.initialize(activate=True)
    return trader


def hot_symbol(store, quotes, symbol: str = "AAPL", change_pct: float = 2.0, sentiment: float = 0.6) -> None:
    quotes.set_price(symbol, 100.0, change_pct=change_pct)
    quotes.bars[symbol] = make_candles(recent_volume=10_000.0)
    seed_sentiment(store, symbol, sentiment)


class TestConfigDefaults:
    def test_missing_file_gives_model_defaults(self, tmp_path):
        assert load_model_defaults(tmp_path / "nope.yaml") == ModelConfig()

    def test_shipped_yaml_matches_defaults(self):
        from pathlib import Path

        shipped = load_model_defaults(Path(__file__).resolve().parents[1] / "config" / "autotrader.yaml")
        assert shipped == ModelConfig()

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "autotrader.yaml"
        path.write_text(
            "model_version: v5\nweights:\n  volume_weight: 40\nentry:\n  bogus: 1\nsizing:\n  max_open_positions: 5\n",
            encoding="utf-8",
        )
        config = load_model_defaults(path)
        assert config.model_version == "v5"
        assert config.volume_weight == 40.0
        assert isinstance(config.volume_weight, float)
        assert config.max_open_positions == 5
        assert not hasattr(config, "bogus")


class TestConfidence:
    def test_weighted_blend(self):
        assert calculate_confidence(10, 2.0, 60, ModelConfig()) == 72

    def test_scores_are_capped(self):
        assert calculate_confidence(1000, 1000, 1000, ModelConfig()) == 92

    def test_zero_weights(self):
        config = ModelConfig(volume_weight=0, social_sentiment_weight=0, price_momentum_weight=0, institutional_flow_weight=0)
        assert calculate_confidence(10, 2, 60, config) == 0


class TestExitRules:
    now = datetime(2024, 6, 12, 14, 0, tzinfo=timezone.utc)

    def trade(self, **overrides) -> AutoTrade:
        values = dict(symbol="AAPL", shares=1, buy_price=100.0, total_cost=100.0, entry_time=self.now.isoformat())
        values.update(overrides)
        return AutoTrade(**values)

    def test_profit_target(self):
        assert evaluate_exit(self.trade(), 104.0, ModelConfig(), self.now).startswith("Profit target reached")

    def test_stop_loss(self):
        assert evaluate_exit(self.trade(), 98.0, ModelConfig(), self.now).startswith("Stop loss triggered")

    def test_hold_when_nothing_fires(self):
        assert evaluate_exit(self.trade(), 100.2, ModelConfig(), self.now) is None

    def test_time_based_exit_needs_gain(self):
        later = datetime(2024, 6, 12, 14, 2, tzinfo=timezone.utc)
        assert evaluate_exit(self.trade(), 100.8, ModelConfig(), later).startswith("Time-based exit")
        assert evaluate_exit(self.trade(), 100.2, ModelConfig(), later) is None

    def test_extreme_move_when_targets_are_wide(self):
        config = ModelConfig(profit_target_pct=50, stop_loss_pct=-50)
        assert evaluate_exit(self.trade(), 94.0, config, self.now).startswith("Extreme volatility")

    def test_close_window(self):
        near_close = datetime(2024, 6, 12, 19, 55, tzinfo=timezone.utc)
        reason = evaluate_exit(self.trade(entry_time=near_close.isoformat()), 100.0, ModelConfig(), near_close)
        assert reason.startswith("Approaching market close")


class TestInitialize:
    def test_creates_config_once(self, trader, store):
        first = trader.initialize()
        second = trader.initialize()
        assert first["config"].id == second["config"].id
        assert store.model_configs.count() == 1
        assert first["config"].is_active is False

    def test_activate_and_pause(self, trader):
        assert trader.initialize(activate=True)["config"].is_active is True
        assert trader.initialize(activate=False)["config"].is_active is False


class TestScanAndTrade:
    def test_market_closed(self, store, quotes, events, closed_clock):
        trader = AutoTrader(store, quotes, None, events, closed_clock)
        assert trader.scan_and_trade(["AAPL"]) == {"success": False, "message": "Market is closed"}

    def test_requires_initialized_and_active(self, trader):
        assert trader.scan_and_trade(["AAPL"]) == {"success": False, "error": "Model not initialized"}
        trader.initialize()
        assert trader.scan_and_trade(["AAPL"]) == {"success": False, "message": "AutoTrader is not active"}

    def test_enters_best_candidate(self, active, store, quotes):
        hot_symbol(store, quotes, "AAPL", change_pct=2.0)
        hot_symbol(store, quotes, "MSFT", change_pct=4.0)

        outcome = active.scan_and_trade(["AAPL", "MSFT"])

        assert outcome["total_actions"] == 1
        entry = outcome["results"][0]
        assert entry["action"] == "ENTER"
        assert entry["symbol"] == "MSFT"
        assert entry["shares"] == 4
        assert entry["price"] == pytest.approx(100.05)
        trade = store.auto_trades.first(status="OPEN")
        assert trade.origin == "auto"
        assert trade.fees == pytest.approx(4 * 100.05 * 0.008)
        assert active.load_config().total_trades_executed == 1
        assert outcome["open_positions"] == 1

    def test_skips_symbols_below_thresholds(self, active, store, quotes):
        quotes.set_price("LOWV", 100.0, change_pct=2.0)
        quotes.bars["LOWV"] = make_candles()
        hot_symbol(store, quotes, "DOWN", change_pct=-1.0)
        hot_symbol(store, quotes, "SADS", sentiment=0.1)

        assert active.evaluate_entry("LOWV", active.load_config()).reason == "Volume too low (1.0x)"
        assert active.evaluate_entry("DOWN", active.load_config()).reason == "No upward momentum"
        assert active.evaluate_entry("SADS", active.load_config()).reason == "Social sentiment not bullish"
        assert active.scan_and_trade(["LOWV", "DOWN", "SADS"])["total_actions"] == 0

    def test_stale_fallback_quote_is_not_traded(self, active, store, quotes):
        hot_symbol(store, quotes)
        quotes.set_price("AAPL", 100.0, change_pct=2.0, error_flag=True)
        decision = active.evaluate_entry("AAPL", active.load_config())
        assert decision.enter is False
        assert decision.reason == "Only stale fallback data available"

    def test_advisor_social_read(self, store, quotes, events, reg_clock, tmp_path):
        advisor = StubAdvisor({"Quick sentiment": {"sentiment": "bullish", "confidence": 80}})
        trader = AutoTrader(store, quotes, advisor, events, reg_clock, config_path=tmp_path / "missing.yaml")
        assert trader.social_score("AAPL") == 80
        seed_sentiment(store, "AAPL", -0.5)
        assert trader.social_score("AAPL") == -50

    def test_respects_max_open_positions(self, active, store, quotes):
        for symbol in ("A", "B", "C"):
            open_trade(store, symbol)
            quotes.set_price(symbol, 100.0)
        hot_symbol(store, quotes, "MSFT")
        outcome = active.scan_and_trade(["MSFT"])
        assert outcome["total_actions"] == 0
        assert outcome["open_positions"] == 3

    def test_does_not_reenter_held_symbol(self, active, store, quotes):
        hot_symbol(store, quotes, "AAPL")
        open_trade(store, "AAPL", buy_price=100.0)
        assert active.scan_and_trade(["AAPL"])["total_actions"] == 0

    def test_profit_target_exit(self, active, store, quotes):
        trade = open_trade(store, "AAPL", buy_price=100.0)
        quotes.set_price("AAPL", 104.0)

        outcome = active.scan_and_trade(["AAPL"])

        assert outcome["results"][0]["action"] == "EXIT"
        closed = store.auto_trades.require(trade.id)
        assert closed.status == "CLOSED"
        assert closed.sell_price == pytest.approx(104.0 * 0.9995)
        assert closed.trade_type == "WIN"
        assert closed.exit_reason.startswith("Profit target reached")

    def test_order_journal_trades_are_not_auto_exited(self, active, store, quotes):
        trade = open_trade(store, "AAPL")
        store.auto_trades.update(trade.id, {"origin": "order"})
        quotes.set_price("AAPL", 80.0)
        assert active.scan_and_trade(["AAPL"])["total_actions"] == 0
        assert store.auto_trades.require(trade.id).status == "OPEN"


class TestAdaptation:
    def test_low_win_rate_shifts_weights(self):
        changes, state, _ = AutoTrader.adapt(ModelConfig(), 50.0, 0.0)
        assert changes == {"social_sentiment_weight": 35.0, "volume_weight": 25.0}
        assert state == "Adjusting"

    def test_weight_bounds(self):
        changes, _, _ = AutoTrader.adapt(ModelConfig(social_sentiment_weight=45, volume_weight=12), 10.0, 0.0)
        assert changes == {"social_sentiment_weight": 50.0, "volume_weight": 10.0}

    def test_latency_reset(self):
        changes, state, _ = AutoTrader.adapt(ModelConfig(latency_compensation_sec=3.5), 80.0, 0.0)
        assert changes == {"latency_compensation_sec": 2.8}
        assert state == "Learning"

    def test_optimized_and_stable(self):
        assert AutoTrader.adapt(ModelConfig(), 80.0, 25.0)[:2] == ({}, "Optimized")
        assert AutoTrader.adapt(ModelConfig(), 80.0, 5.0)[:2] == ({}, "Stable")


class TestEndOfDaySettlement:
    def test_force_closes_and_adapts(self, active, store, quotes):
        open_trade(store, "AAPL", buy_price=100.0, shares=10)
        quotes.set_price("AAPL", 99.0)

        outcome = active.end_of_day_settlement()

        assert outcome["success"] is True
        assert store.auto_trades.count(status="OPEN") == 0
        report = outcome["report"]
        assert report.total_trades == 1
        assert report.win_rate == 0.0
        assert report.profit_usd == pytest.approx(-10.0)
        config = active.load_config()
        assert config.model_state == "Adjusting"
        assert config.social_sentiment_weight == 35.0
        assert config.volume_weight == 25.0
        assert config.last_performance_win_rate == 0.0
        assert outcome["learning"]["new_state"] == "Adjusting"

    def test_no_trades_leaves_config_unchanged(self, active):
        before = active.load_config()
        outcome = active.end_of_day_settlement()
        assert outcome["success"] is True
        assert outcome["report"] is None
        assert active.load_config().version == before.version

    def test_not_initialized(self, trader):
        assert trader.end_of_day_settlement() == {"success": False, "error": "Model not initialized"}

    def test_concurrent_writer_exhausts_retries(self, active, store):
        def meddle(current):
            store.model_configs.update(current.id, {"learning_notes": "someone else"})
            return {"model_state": "Learning"}

        with pytest.raises(StaleRecordError):
            active._write_config(meddle)
        assert active.load_config().model_state == "Stable"

    def test_write_retries_after_one_conflict(self, active, store):
        calls = []

        def meddle_once(current):
            calls.append(current.version)
            if len(calls) == 1:
                store.model_configs.update(current.id, {"learning_notes": "someone else"})
            return {"model_state": "Learning"}

        written = active._write_config(meddle_once)
        assert written.model_state == "Learning"
        assert written.learning_notes == "someone else"
        assert len(calls) == 2


class TestClock:
    def test_clock_is_injected(self, store, quotes, events):
        clock = FixedClock(datetime(2024, 6, 12, 14, 0, tzinfo=timezone.utc))
        trader = AutoTrader(store, quotes, None, events, clock)
        trader.initialize()
        assert trader.load_config().updated_at == clock().isoformat()
