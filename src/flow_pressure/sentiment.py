"""Semantic Pressure Index.

Keyword sentiment over advisor-gathered news and social chatter, folded into
the latest stored pressure reading:

    spi = clamp(base_pressure + sentiment_score * 25, 0, 100)

News and social lookups go through the advisor and fall back to empty,
neutral answers when it is unavailable.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Sequence

from loguru import logger

from .advisor import Advisor, judge_or_default
from .db import Store
from .events import EventLog
from .models import SemanticPressure
from .session import Clock, utc_now
from .settings import settings


# ── Keyword lists ────────────────────────────────────────────────

POSITIVE_KEYWORDS = [
    "funding", "loan approved", "capital increase", "investment round",
    "acquisition", "merger", "order expected", "patent granted",
    "r&d success", "partnership", "clinical success", "profit", "growth",
    "expansion", "revenue increase", "breakthrough", "collaboration",
    "deal signed", "contract won", "bullish", "upgrade", "outperform",
]

NEGATIVE_KEYWORDS = [
    "loss widened", "delisting", "bankruptcy", "cash shortage",
    "layoff", "failed test", "order canceled", "lawsuit", "recall",
    "decline", "drop", "plunge", "bearish", "downgrade", "loss",
    "debt", "investigation", "fraud", "scandal", "suspended",
]

SPI_SENTIMENT_MULTIPLIER = 25.0
SPI_ALERT_CHANGE = 15.0
SENTIMENT_LABEL_THRESHOLD = 0.2
DEFAULT_PRESSURE = 50.0
MENTION_VOLUME = {"high": 100, "medium": 50, "low": 10}
WEIGHT_STEP = 0.1
WEIGHT_BOUNDS = (0.1, 3.0)

NEWS_SCHEMA = {
    "type": "object",
    "properties": {
        "news_headlines": {"type": "array", "items": {"type": "string"}},
        "overall_sentiment": {"type": "string", "enum": ["positive", "negative", "neutral"]},
        "key_events": {"type": "array", "items": {"type": "string"}},
    },
}
NEWS_DEFAULT = {"news_headlines": [], "overall_sentiment": "neutral", "key_events": []}

SOCIAL_SCHEMA = {
    "type": "object",
    "properties": {
        "sentiment": {"type": "string", "enum": ["positive", "negative", "neutral"]},
        "trending_topics": {"type": "array", "items": {"type": "string"}},
        "mention_volume": {"type": "string", "enum": ["high", "medium", "low"]},
    },
}
SOCIAL_DEFAULT = {"sentiment": "neutral", "trending_topics": [], "mention_volume": None}


@dataclass
class KeywordSentiment:
    score: float
    positive: list[str] = field(default_factory=list)
    negative: list[str] = field(default_factory=list)


def analyze_keywords(text: str, keyword_weights: dict[str, float] | None = None) -> KeywordSentiment:
    """(positive weight - negative weight) / total weight, 0 when nothing matches."""
    if not text:
        return KeywordSentiment(score=0.0)
    weights = keyword_weights or {}
    lowered = text.lower()
    positive = [keyword for keyword in POSITIVE_KEYWORDS if keyword in lowered]
    negative = [keyword for keyword in NEGATIVE_KEYWORDS if keyword in lowered]
    positive_score = sum(weights.get(keyword, 1.0) for keyword in positive)
    negative_score = sum(weights.get(keyword, 1.0) for keyword in negative)
    total = positive_score + negative_score
    score = (positive_score - negative_score) / total if total > 0 else 0.0
    return KeywordSentiment(score=max(-1.0, min(1.0, score)), positive=positive, negative=negative)


def calculate_spi(base_pressure: float, sentiment_score: float) -> float:
    return max(0.0, min(100.0, base_pressure + sentiment_score * SPI_SENTIMENT_MULTIPLIER))


def sentiment_label(score: float) -> str:
    if score > SENTIMENT_LABEL_THRESHOLD:
        return "positive"
    if score < -SENTIMENT_LABEL_THRESHOLD:
        return "negative"
    return "neutral"


def spi_suggestion(spi: float, top_keyword: str | None) -> str:
    if spi > 60:
        text = f"Bullish sentiment (SPI: {spi:.0f})"
        return f"{text} - Key: {top_keyword}" if top_keyword else text
    if spi >= 40:
        return f"Neutral sentiment (SPI: {spi:.0f})"
    text = f"Bearish sentiment (SPI: {spi:.0f})"
    return f"{text} - Risk: {top_keyword}" if top_keyword else text


class SentimentScorer:
    def __init__(
        self,
        store: Store,
        advisor: Advisor | None = None,
        events: EventLog | None = None,
        clock: Clock = utc_now,
        delay_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.advisor = advisor
        self.events = events or EventLog(store)
        self.clock = clock
        self.delay_seconds = settings.sentiment_delay_seconds if delay_seconds is None else delay_seconds
        self._sleep = sleep

    # ── Public API ────────────────────────────────────────────────

    def analyze(self, symbols: Sequence[str]) -> dict:
        results: list[dict] = []
        alerts: list[dict] = []
        for symbol in symbols:
            symbol = symbol.upper()
            if self.delay_seconds:
                self._sleep(self.delay_seconds)
            try:
                record = self.analyze_symbol(symbol)
            except Exception as exc:
                logger.error("Sentiment analysis failed for {}: {}", symbol, exc)
                results.append({"success": False, "symbol": symbol, "error": str(exc)})
                continue
            results.append({"success": True, "data": record})
            if record.alert_triggered and record.top_keyword:
                alerts.append(
                    {
                        "symbol": symbol,
                        "keyword": record.top_keyword,
                        "spi_change": record.spi_change,
                        "sentiment": record.sentiment,
                    }
                )

        successful = sum(1 for item in results if item["success"])
        return {
            "success": True,
            "timestamp": self.clock().isoformat(),
            "results": results,
            "alerts": alerts,
            "stats": {
                "total": len(symbols),
                "successful": successful,
                "failed": len(results) - successful,
                "alerts_triggered": len(alerts),
            },
        }

    def analyze_symbol(self, symbol: str) -> SemanticPressure:
        pressure = self.store.pressure.latest(symbol)
        base_pressure = pressure.final_pressure if pressure is not None else DEFAULT_PRESSURE
        previous = self.store.semantic.latest(symbol)
        previous_spi = previous.spi if previous is not None else DEFAULT_PRESSURE
        keyword_weights = dict(previous.keyword_weights) if previous is not None else {}

        news = self._fetch_news(symbol)
        social = self._fetch_social(symbol)
        text = " ".join(
            str(item)
            for item in [*news["news_headlines"], *news["key_events"], *social["trending_topics"]]
        )
        analysis = analyze_keywords(text, keyword_weights)

        spi = calculate_spi(base_pressure, analysis.score)
        spi_change = spi - previous_spi
        keywords = [*analysis.positive, *analysis.negative]
        top_keyword = keywords[0] if keywords else None
        alert_triggered = abs(spi_change) > SPI_ALERT_CHANGE

        record = self.store.semantic.create(
            SemanticPressure(
                symbol=symbol,
                spi=round(spi, 1),
                base_pressure=base_pressure,
                sentiment_score=round(analysis.score, 2),
                sentiment=sentiment_label(analysis.score),
                positive_keywords=analysis.positive,
                negative_keywords=analysis.negative,
                top_keyword=top_keyword,
                spi_change=round(spi_change, 1),
                alert_triggered=alert_triggered,
                news_count=len(news["news_headlines"]),
                social_mentions=MENTION_VOLUME.get(str(social.get("mention_volume")), 0),
                suggestion=spi_suggestion(spi, top_keyword),
                keyword_weights=keyword_weights,
                timestamp=self.clock().isoformat(),
            )
        )
        logger.info("{}: SPI {:.1f} ({})", symbol, record.spi, record.sentiment)

        if alert_triggered:
            self.events.warning(
                "sentiment",
                f"{symbol} SPI moved {spi_change:+.1f} to {spi:.1f}",
                {"symbol": symbol, "keyword": top_keyword, "spi_change": round(spi_change, 1)},
                event_type="spi_alert",
            )
        return record

    def export(self, day: str | None = None) -> dict:
        day = day or self.clock().date().isoformat()
        latest: dict[str, SemanticPressure] = {}
        for record in self.store.semantic.filter(order_by="timestamp"):
            if record.timestamp[:10] == day:
                latest[record.symbol] = record

        records = list(latest.values())
        labels = [record.sentiment for record in records]
        return {
            "report_date": day,
            "total_symbols": len(records),
            "symbols": records,
            "market_summary": {
                "avg_spi": round(sum(r.spi for r in records) / len(records), 1) if records else DEFAULT_PRESSURE,
                "bullish_count": labels.count("positive"),
                "bearish_count": labels.count("negative"),
                "neutral_count": labels.count("neutral"),
            },
            "generated_at": self.clock().isoformat(),
        }

    def learn(self, symbols: Sequence[str]) -> dict:
        """Compare SPI direction with price direction over recent readings.

        Keywords seen in the latest reading get their weight nudged up when SPI
        tracked price (correlation above 0.6) and down otherwise.
        """
        learning_results: list[dict] = []
        for symbol in symbols:
            symbol = symbol.upper()
            semantic = self.store.semantic.filter(symbol=symbol, order_by="timestamp", descending=True, limit=10)
            pressure = self.store.pressure.filter(symbol=symbol, order_by="timestamp", descending=True, limit=10)
            if len(semantic) < 2 or len(pressure) < 2:
                continue

            agreements = 0
            comparisons = 0
            for index in range(min(len(semantic) - 1, len(pressure) - 1, 5)):
                spi_change = semantic[index].spi - semantic[index + 1].spi
                price_change = pressure[index].price - pressure[index + 1].price
                if (spi_change > 0 and price_change > 0) or (spi_change < 0 and price_change < 0):
                    agreements += 1
                comparisons += 1

            correlation = agreements / comparisons if comparisons else 0.0
            adjustment = "increase_weights" if correlation > 0.6 else "decrease_weights"
            latest = semantic[0]
            step = WEIGHT_STEP if adjustment == "increase_weights" else -WEIGHT_STEP
            weights = dict(latest.keyword_weights)
            for keyword in latest.keywords:
                weight = weights.get(keyword, 1.0) + step
                weights[keyword] = round(min(WEIGHT_BOUNDS[1], max(WEIGHT_BOUNDS[0], weight)), 2)
            if weights != latest.keyword_weights:
                self.store.semantic.update(latest.id, {"keyword_weights": weights}, expected_version=latest.version)

            learning_results.append(
                {
                    "symbol": symbol,
                    "correlation_rate": round(correlation, 2),
                    "adjustment": adjustment,
                    "keyword_weights": weights,
                }
            )

        return {"success": True, "learning_results": learning_results, "message": "Sentiment learning completed"}

    # ── Advisor lookups ───────────────────────────────────────────

    def _fetch_news(self, symbol: str) -> dict:
        prompt = (
            f"Summarise the latest financial news about {symbol} stock from the past 24 hours. "
            "Focus on earnings, partnerships, products, regulatory news and analyst reports."
        )
        answer = judge_or_default(self.advisor, prompt, NEWS_SCHEMA, NEWS_DEFAULT)
        return {
            "news_headlines": _string_list(answer.get("news_headlines")),
            "overall_sentiment": answer.get("overall_sentiment", "neutral"),
            "key_events": _string_list(answer.get("key_events")),
        }

    def _fetch_social(self, symbol: str) -> dict:
        prompt = (
            f"Summarise social media discussion about {symbol} stock on Reddit and X over the past 6 hours. "
            "Identify the general sentiment, trending topics and mention volume."
        )
        answer = judge_or_default(self.advisor, prompt, SOCIAL_SCHEMA, SOCIAL_DEFAULT)
        return {
            "sentiment": answer.get("sentiment", "neutral"),
            "trending_topics": _string_list(answer.get("trending_topics")),
            "mention_volume": answer.get("mention_volume"),
        }


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]
