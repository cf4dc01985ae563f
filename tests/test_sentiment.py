from conftest import StubAdvisor

from flow_pressure.models import PressureRecord, SemanticPressure
from flow_pressure.sentiment import SentimentScorer, analyze_keywords, calculate_spi, sentiment_label, spi_suggestion


def pressure_record(symbol: str, final: float, price: float, timestamp: str) -> PressureRecord:
    return PressureRecord(
        symbol=symbol,
        price=price,
        day_high=price,
        day_low=price,
        volume=0.0,
        pressure_index=final,
        volatility_adjustment=0.0,
        adjusted_pressure=final,
        final_pressure=final,
        action="HOLD",
        zone="NEUTRAL_ZONE",
        timestamp=timestamp,
    )


BULLISH_NEWS = {
    "financial news": {"news_headlines": ["Record growth after partnership"], "key_events": [], "overall_sentiment": "positive"},
    "social media": {"sentiment": "positive", "trending_topics": ["upgrade"], "mention_volume": "high"},
}


class TestKeywords:
    def test_positive_text(self):
        result = analyze_keywords("Strong growth and a new partnership announced")
        assert result.score == 1.0
        assert result.positive == ["partnership", "growth"]
        assert result.negative == []

    def test_mixed_text(self):
        result = analyze_keywords("growth slowed, lawsuit filed")
        assert result.score == 0.0
        assert result.negative == ["lawsuit"]

    def test_empty_text(self):
        assert analyze_keywords("").score == 0.0

    def test_keyword_weights(self):
        result = analyze_keywords("growth but lawsuit", {"growth": 3.0})
        assert result.score == 0.5


class TestSpi:
    def test_bounds_at_extremes(self):
        assert calculate_spi(100.0, 1.0) == 100.0
        assert calculate_spi(0.0, -1.0) == 0.0
        assert calculate_spi(50.0, 0.4) == 60.0

    def test_labels(self):
        assert sentiment_label(0.21) == "positive"
        assert sentiment_label(0.2) == "neutral"
        assert sentiment_label(-0.21) == "negative"

    def test_suggestion(self):
        assert spi_suggestion(75, "growth") == "Bullish sentiment (SPI: 75) - Key: growth"
        assert spi_suggestion(50, None) == "Neutral sentiment (SPI: 50)"
        assert spi_suggestion(20, "lawsuit") == "Bearish sentiment (SPI: 20) - Risk: lawsuit"


class TestSentimentScorer:
    def test_without_advisor_is_neutral(self, store, reg_clock):
        scorer = SentimentScorer(store, None, clock=reg_clock)
        record = scorer.analyze_symbol("AAPL")
        assert record.spi == 50.0
        assert record.sentiment == "neutral"
        assert record.alert_triggered is False

    def test_uses_latest_pressure_as_base(self, store, reg_clock):
        store.pressure.create(pressure_record("AAPL", 40.0, 100.0, reg_clock().isoformat()))
        scorer = SentimentScorer(store, StubAdvisor(BULLISH_NEWS), clock=reg_clock)

        record = scorer.analyze_symbol("AAPL")

        assert record.base_pressure == 40.0
        assert record.sentiment_score == 1.0
        assert record.spi == 65.0
        assert record.top_keyword == "partnership"
        assert record.news_count == 1
        assert record.social_mentions == 100

    def test_large_spi_move_raises_alert(self, store, reg_clock):
        store.pressure.create(pressure_record("AAPL", 60.0, 100.0, reg_clock().isoformat()))
        scorer = SentimentScorer(store, StubAdvisor(BULLISH_NEWS), clock=reg_clock)

        outcome = scorer.analyze(["aapl"])

        assert outcome["stats"]["alerts_triggered"] == 1
        assert outcome["alerts"][0]["spi_change"] == 35.0
        assert store.events.count(severity="warning") == 1

    def test_failing_advisor_degrades(self, store, reg_clock):
        scorer = SentimentScorer(store, StubAdvisor(fail=True), clock=reg_clock)
        outcome = scorer.analyze(["AAPL"])
        assert outcome["stats"]["successful"] == 1
        assert outcome["results"][0]["data"].sentiment == "neutral"

    def test_export(self, store, reg_clock):
        scorer = SentimentScorer(store, StubAdvisor(BULLISH_NEWS), clock=reg_clock)
        scorer.analyze(["AAPL", "MSFT"])
        report = scorer.export()
        assert report["total_symbols"] == 2
        assert report["market_summary"]["bullish_count"] == 2


class TestSentimentLearning:
    def _history(self, store, spis, prices):
        for index, (spi, price) in enumerate(zip(spis, prices)):
            stamp = f"2024-06-12T14:0{index}:00+00:00"
            store.pressure.create(pressure_record("AAPL", 50.0, price, stamp))
            store.semantic.create(
                SemanticPressure(
                    symbol="AAPL",
                    spi=spi,
                    base_pressure=50.0,
                    sentiment_score=0.5,
                    sentiment="positive",
                    positive_keywords=["growth"],
                    timestamp=stamp,
                )
            )

    def test_agreeing_history_increases_weights(self, store, reg_clock):
        self._history(store, [50, 55, 60], [100, 101, 102])
        outcome = SentimentScorer(store, None, clock=reg_clock).learn(["AAPL"])
        result = outcome["learning_results"][0]
        assert result["adjustment"] == "increase_weights"
        assert result["keyword_weights"] == {"growth": 1.1}
        assert store.semantic.latest("AAPL").keyword_weights == {"growth": 1.1}

    def test_disagreeing_history_decreases_weights(self, store, reg_clock):
        self._history(store, [50, 55, 60], [102, 101, 100])
        result = SentimentScorer(store, None, clock=reg_clock).learn(["AAPL"])["learning_results"][0]
        assert result["adjustment"] == "decrease_weights"
        assert result["keyword_weights"] == {"growth": 0.9}

    def test_short_history_is_skipped(self, store, reg_clock):
        assert SentimentScorer(store, None, clock=reg_clock).learn(["AAPL"])["learning_results"] == []
