"""Big-money flow detector.

Turns a window of one-minute bars into a ``MarketAnalysis`` (volume spike,
largest bar, aggressor side, breakout / support break), optionally merges an
advisor ``Intelligence`` judgment, and emits an IN or OUT signal only when at
least two independent conditions agree.  IN is checked first, so a tie goes
to IN; one IN plus one OUT condition is NONE.

The rule-based conditions never depend on the advisor: without intelligence
the detector runs on technicals alone.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Sequence

from loguru import logger

from .advisor import Advisor, judge_or_default
from .db import Store
from .errors import QuoteUnavailableError, TradeValidationError
from .models import Signal
from .quotes import Candle, QuoteSource
from .session import Clock, utc_now
from .settings import settings


ALGORITHM_VERSION = "BigMoney-v3.0"

VOLUME_MULTIPLE = 4
STRONG_VOLUME_MULTIPLE = 6
LARGE_TRADE_MULTIPLE = 8
EXTREME_TRADE_MULTIPLE = 10
PRICE_MOVE_PCT = 0.3
BREAKOUT_FACTOR = 1.005
SUPPORT_FACTOR = 0.995

REQUIRED_MANUAL_FIELDS = (
    "symbol",
    "recent_volume",
    "baseline_volume",
    "biggest_trade_size",
    "avg_trade_size",
    "recent_price_move",
    "recent_aggressor",
)

INTELLIGENCE_SCHEMA = {
    "type": "object",
    "properties": {
        "sentiment_score": {"type": "number", "description": "-100 (very bearish) to +100 (very bullish)"},
        "social_buzz_level": {"type": "number", "description": "Social media activity 0-100"},
        "institutional_signal": {"type": "string", "enum": ["BULLISH", "BEARISH", "NEUTRAL"]},
        "latest_news_headlines": {"type": "array", "items": {"type": "string"}},
        "key_catalysts": {"type": "array", "items": {"type": "string"}},
        "risk_factors": {"type": "array", "items": {"type": "string"}},
        "recommendation": {"type": "string", "enum": ["STRONG_BUY", "BUY", "HOLD", "SELL", "STRONG_SELL"]},
        "confidence_level": {"type": "number", "description": "Confidence in the analysis 0-100"},
    },
}


def _average(values: Sequence[float | None]) -> float:
    clean = [float(v) for v in values if v is not None and not math.isnan(float(v))]
    return sum(clean) / len(clean) if clean else 0.0


def _number(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


@dataclass
class MarketAnalysis:
    symbol: str
    baseline_volume: float
    recent_volume: float
    biggest_trade_size: float
    avg_trade_size: float
    recent_aggressor: str
    recent_price_move: str
    support_break: bool = False
    breakout_punch: bool = False
    prior_similar_signals: int = 0
    current_price: float | None = None
    details: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "MarketAnalysis":
        missing = [name for name in REQUIRED_MANUAL_FIELDS if payload.get(name) is None]
        if missing:
            raise TradeValidationError(f"Missing required field: {missing[0]}")
        move = str(payload["recent_price_move"]).lower()
        aggressor = str(payload["recent_aggressor"]).lower()
        if move not in ("up", "down", "flat"):
            raise TradeValidationError(f"recent_price_move must be up, down or flat, got {move!r}")
        if aggressor not in ("took_ask", "hit_bid", "mixed"):
            raise TradeValidationError(f"recent_aggressor must be took_ask, hit_bid or mixed, got {aggressor!r}")
        current_price = payload.get("current_price")
        return cls(
            symbol=str(payload["symbol"]).upper(),
            baseline_volume=_number(payload["baseline_volume"]),
            recent_volume=_number(payload["recent_volume"]),
            biggest_trade_size=_number(payload["biggest_trade_size"]),
            avg_trade_size=_number(payload["avg_trade_size"]),
            recent_aggressor=aggressor,
            recent_price_move=move,
            support_break=bool(payload.get("support_break") or False),
            breakout_punch=bool(payload.get("breakout_punch") or False),
            prior_similar_signals=int(_number(payload.get("prior_similar_signals"), 0)),
            current_price=_number(current_price) if current_price is not None else None,
        )


@dataclass
class Intelligence:
    sentiment_score: float = 0.0
    social_buzz_level: float = 0.0
    institutional_signal: str = "NEUTRAL"
    latest_news_headlines: list[str] = field(default_factory=list)
    key_catalysts: list[str] = field(default_factory=list)
    risk_factors: list[str] = field(default_factory=list)
    recommendation: str = "HOLD"
    confidence_level: float | None = None

    @classmethod
    def from_payload(cls, payload: dict | None) -> "Intelligence | None":
        if not payload:
            return None

        def _strings(value: Any) -> list[str]:
            return [str(item) for item in value] if isinstance(value, list) else []

        signal = str(payload.get("institutional_signal") or "NEUTRAL").upper()
        confidence = payload.get("confidence_level")
        return cls(
            sentiment_score=_number(payload.get("sentiment_score")),
            social_buzz_level=_number(payload.get("social_buzz_level")),
            institutional_signal=signal if signal in ("BULLISH", "BEARISH", "NEUTRAL") else "NEUTRAL",
            latest_news_headlines=_strings(payload.get("latest_news_headlines")),
            key_catalysts=_strings(payload.get("key_catalysts")),
            risk_factors=_strings(payload.get("risk_factors")),
            recommendation=str(payload.get("recommendation") or "HOLD"),
            confidence_level=_number(confidence) if confidence is not None else None,
        )


@dataclass
class SignalEvaluation:
    signal_type: str
    conditions: list[str]
    intensity: int | None
    intensity_reasons: list[str]
    continuation_prob: int
    probability_reasons: list[str]
    recommendation: str


def analyze_market_data(
    symbol: str,
    candles: Sequence[Candle],
    recent_bars: int | None = None,
    baseline_bars: int | None = None,
    current_price: float | None = None,
) -> MarketAnalysis:
    recent_bars = recent_bars or settings.signal_recent_bars
    baseline_bars = baseline_bars or settings.signal_baseline_bars
    recent = list(candles[-recent_bars:])
    baseline = list(candles[-baseline_bars:-recent_bars]) if len(candles) > recent_bars else []
    if not recent or not baseline:
        raise QuoteUnavailableError(f"Not enough bars for {symbol}: {len(candles)}")

    price = current_price if current_price is not None else recent[-1].close
    baseline_volumes = [bar.volume for bar in baseline]
    baseline_volume = _average(baseline_volumes)
    recent_volume = sum(bar.volume or 0 for bar in recent)
    positive_volumes = [bar.volume for bar in recent if bar.volume > 0]
    biggest_trade_size = max(positive_volumes) if positive_volumes else 0.0

    first_close = recent[0].close
    price_change = (price - first_close) / first_close * 100 if first_close else 0.0
    move = "up" if price_change > PRICE_MOVE_PCT else "down" if price_change < -PRICE_MOVE_PCT else "flat"

    aggressor_score = sum(
        (recent[i].close - recent[i - 1].close) * (recent[i].volume or 0) for i in range(1, len(recent))
    )
    aggressor = "took_ask" if aggressor_score > 0 else "hit_bid" if aggressor_score < 0 else "mixed"

    baseline_closes = [bar.close for bar in baseline if bar.close > 0]
    baseline_high = max(baseline_closes) if baseline_closes else price
    baseline_low = min(baseline_closes) if baseline_closes else price
    volume_spike = recent_volume / (baseline_volume * recent_bars) if baseline_volume > 0 else 0.0
    prior = 2 if volume_spike > 3 else 1 if volume_spike > 2 else 0

    return MarketAnalysis(
        symbol=symbol,
        baseline_volume=baseline_volume,
        recent_volume=recent_volume,
        biggest_trade_size=biggest_trade_size,
        avg_trade_size=baseline_volume,
        recent_aggressor=aggressor,
        recent_price_move=move,
        support_break=price < baseline_low * SUPPORT_FACTOR,
        breakout_punch=price > baseline_high * BREAKOUT_FACTOR,
        prior_similar_signals=prior,
        current_price=price,
        details={
            "recent_price_change_pct": round(price_change, 4),
            "aggressor_score": aggressor_score,
            "volume_spike_ratio": round(volume_spike, 4),
            "recent_high": max(bar.high for bar in recent),
            "recent_low": min(bar.low for bar in recent),
            "baseline_high": baseline_high,
            "baseline_low": baseline_low,
        },
    )


# ── Rules ────────────────────────────────────────────────────────

def collect_conditions(data: MarketAnalysis, intel: Intelligence | None) -> tuple[list[str], list[str]]:
    inbound: list[str] = []
    outbound: list[str] = []
    heavy_volume = data.recent_volume >= data.baseline_volume * VOLUME_MULTIPLE
    large_trade = data.biggest_trade_size >= data.avg_trade_size * LARGE_TRADE_MULTIPLE

    if heavy_volume:
        inbound.append("recent_volume >= baseline_volume * 4")
    if large_trade:
        inbound.append("biggest_trade_size >= avg_trade_size * 8")
    if data.breakout_punch:
        inbound.append("breakout_punch")
    if data.recent_aggressor == "took_ask" and data.recent_price_move == "up":
        inbound.append("took_ask AND price_up")

    if heavy_volume and data.recent_price_move == "down":
        outbound.append("high_volume AND price_down")
    if large_trade and data.recent_aggressor == "hit_bid":
        outbound.append("large_trade AND hit_bid")
    if data.support_break:
        outbound.append("support_break")
    if data.recent_aggressor == "hit_bid" and data.recent_price_move == "down":
        outbound.append("hit_bid AND price_down")

    if intel is not None:
        if intel.sentiment_score > 50:
            inbound.append(f"positive_sentiment ({intel.sentiment_score:g})")
        if intel.institutional_signal == "BULLISH":
            inbound.append("institutional_bullish")
        if intel.social_buzz_level > 70:
            inbound.append("high_social_buzz")
        if intel.sentiment_score < -50:
            outbound.append(f"negative_sentiment ({intel.sentiment_score:g})")
        if intel.institutional_signal == "BEARISH":
            outbound.append("institutional_bearish")
        if len(intel.risk_factors) > 2:
            outbound.append("high_risk_factors")

    return inbound, outbound


def classify(inbound: list[str], outbound: list[str]) -> tuple[str, list[str]]:
    if len(inbound) >= 2:
        return "IN", inbound
    if len(outbound) >= 2:
        return "OUT", outbound
    return "NONE", []


def intensity_score(data: MarketAnalysis, signal_type: str, intel: Intelligence | None) -> tuple[int, list[str]]:
    """Intensity for IN, panic for OUT; both start at 1 and clamp to [1, 5]."""
    score = 1
    reasons: list[str] = []
    if data.biggest_trade_size >= data.avg_trade_size * EXTREME_TRADE_MULTIPLE:
        score += 2
        reasons.append("+2: biggest_trade >= avg * 10")
    if data.recent_volume >= data.baseline_volume * STRONG_VOLUME_MULTIPLE:
        score += 1
        reasons.append("+1: volume >= baseline * 6")
    if data.prior_similar_signals >= 2:
        score += 1
        reasons.append("+1: prior_signals >= 2")
    if signal_type == "IN" and data.breakout_punch:
        score += 1
        reasons.append("+1: breakout_punch")
    elif signal_type == "OUT" and data.support_break:
        score += 1
        reasons.append("+1: support_break")
    if intel is not None:
        if signal_type == "IN" and intel.sentiment_score > 70:
            score += 1
            reasons.append("+1: strong_positive_sentiment")
        elif signal_type == "OUT" and intel.sentiment_score < -70:
            score += 1
            reasons.append("+1: strong_negative_sentiment")
    return min(5, max(1, score)), reasons


def continuation_probability(data: MarketAnalysis, signal_type: str, intel: Intelligence | None) -> tuple[int, list[str]]:
    prob = 40
    reasons: list[str] = []
    if data.prior_similar_signals >= 2:
        prob += 20
        reasons.append("+20: prior_signals >= 2")
    if signal_type == "IN" and data.recent_aggressor == "took_ask" and data.recent_price_move == "up":
        prob += 20
        reasons.append("+20: took_ask & up")
    elif signal_type == "OUT" and data.recent_aggressor == "hit_bid" and data.recent_price_move == "down":
        prob += 20
        reasons.append("+20: hit_bid & down")
    if data.biggest_trade_size >= data.avg_trade_size * EXTREME_TRADE_MULTIPLE:
        prob += 10
        reasons.append("+10: biggest_trade >= avg * 10")
    if data.recent_price_move == "flat":
        prob -= 10
        reasons.append("-10: price stalled")

    if intel is not None:
        if signal_type == "IN":
            if intel.institutional_signal == "BULLISH":
                prob += 15
                reasons.append("+15: institutional_bullish")
            if intel.social_buzz_level > 80:
                prob += 10
                reasons.append("+10: viral_social_buzz")
            if intel.key_catalysts:
                prob += 10
                reasons.append("+10: catalysts")
        elif signal_type == "OUT":
            if intel.institutional_signal == "BEARISH":
                prob += 15
                reasons.append("+15: institutional_bearish")
            if len(intel.risk_factors) > 2:
                prob += 10
                reasons.append("+10: multiple_risk_factors")
        if intel.confidence_level is not None and intel.confidence_level < 50:
            prob -= 15
            reasons.append("-15: low_advisor_confidence")

    return min(95, max(10, prob)), reasons


def recommendation_text(signal_type: str, prob: int, intel: Intelligence | None) -> str:
    if signal_type == "IN":
        if prob >= 80:
            text = "Strong buy signal with multi-source confirmation"
        elif prob >= 70:
            text = "Suggest small buy to follow big money"
        elif prob >= 50:
            text = "Small position with tight stop-loss"
        else:
            text = "Watch only, do not chase"
    elif signal_type == "OUT":
        if prob >= 80:
            text = "Strong sell signal with multiple risk factors"
        elif prob >= 70:
            text = "Suggest reduce or exit, preserve cash"
        elif prob >= 50:
            text = "Suggest half position, lock profit"
        else:
            text = "Possibly fake-out, watch, do not panic sell"
    else:
        text = "No clear big money action"

    if intel is not None and intel.latest_news_headlines:
        text += f" | Latest: {intel.latest_news_headlines[0]}"
    return text


def evaluate(data: MarketAnalysis, intel: Intelligence | None = None) -> SignalEvaluation:
    inbound, outbound = collect_conditions(data, intel)
    signal_type, conditions = classify(inbound, outbound)
    intensity: int | None = None
    intensity_reasons: list[str] = []
    if signal_type != "NONE":
        intensity, intensity_reasons = intensity_score(data, signal_type, intel)
    prob, prob_reasons = continuation_probability(data, signal_type, intel)
    return SignalEvaluation(
        signal_type=signal_type,
        conditions=conditions,
        intensity=intensity,
        intensity_reasons=intensity_reasons,
        continuation_prob=prob,
        probability_reasons=prob_reasons,
        recommendation=recommendation_text(signal_type, prob, intel),
    )


# ── Detector service ─────────────────────────────────────────────

class SignalDetector:
    def __init__(
        self,
        store: Store,
        quote_source: QuoteSource | None = None,
        advisor: Advisor | None = None,
        clock: Clock = utc_now,
        lookback_minutes: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.quote_source = quote_source
        self.advisor = advisor
        self.clock = clock
        self.lookback_minutes = lookback_minutes or settings.signal_lookback_minutes
        self._sleep = sleep

    def fetch_intelligence(self, symbol: str) -> Intelligence | None:
        prompt = (
            f"Analyse {symbol} stock using the latest news, social media discussion, institutional activity "
            "and upcoming catalysts. Score overall sentiment from -100 to +100, social buzz 0-100, classify "
            "institutional activity as BULLISH, BEARISH or NEUTRAL, and list headlines, catalysts and risks."
        )
        return Intelligence.from_payload(judge_or_default(self.advisor, prompt, INTELLIGENCE_SCHEMA, {}))

    def recent_signal_count(self, symbol: str, signal_type: str) -> int:
        cutoff = (self.clock() - timedelta(minutes=self.lookback_minutes)).isoformat()
        return sum(
            1
            for signal in self.store.signals.filter(symbol=symbol, signal_type=signal_type)
            if signal.timestamp >= cutoff
        )

    def detect(self, data: MarketAnalysis, intel: Intelligence | None = None, source: str = "auto") -> dict:
        """Evaluates one analysis and persists the signal when it is IN or OUT."""
        result = evaluate(data, intel)
        if result.signal_type != "NONE":
            persisted = self.recent_signal_count(data.symbol, result.signal_type)
            if persisted > data.prior_similar_signals:
                data.prior_similar_signals = persisted
                result = evaluate(data, intel)

        payload: dict[str, Any] = {
            "symbol": data.symbol,
            "signal_type": result.signal_type,
            "conditions": result.conditions,
            "intensity": result.intensity,
            "continuation_prob": result.continuation_prob,
            "recommendation": result.recommendation,
            "analysis": asdict(data),
            "intelligence": asdict(intel) if intel is not None else None,
        }
        if result.signal_type == "NONE":
            return {"success": True, "signal": None, **payload}

        debug_notes = " | ".join(
            [
                f"Signal: {result.signal_type}",
                f"Conditions: {', '.join(result.conditions)}",
                f"Intensity: {result.intensity}/5 ({', '.join(result.intensity_reasons) or 'base'})",
                f"Cont Prob: {result.continuation_prob}% ({', '.join(result.probability_reasons) or 'base'})",
                "Advisor intelligence included" if intel is not None else "Technical analysis only",
                source,
            ]
        )
        signal = self.store.signals.create(
            Signal(
                symbol=data.symbol,
                signal_type=result.signal_type,
                continuation_prob=result.continuation_prob,
                intensity=result.intensity if result.signal_type == "IN" else None,
                panic=result.intensity if result.signal_type == "OUT" else None,
                conditions=result.conditions,
                recommendation=result.recommendation,
                debug_notes=debug_notes,
                current_price=data.current_price,
                recent_volume=data.recent_volume,
                baseline_volume=data.baseline_volume,
                algorithm_version=f"{ALGORITHM_VERSION}-{'Full' if intel is not None else source.capitalize()}",
                timestamp=self.clock().isoformat(),
            )
        )
        logger.info("{}: {} signal ({}% continuation)", data.symbol, signal.signal_type, signal.continuation_prob)
        return {"success": True, "signal": signal, **payload}

    def evaluate_manual(self, payload: dict) -> dict:
        return self.detect(MarketAnalysis.from_payload(payload), None, source="manual")

    def scan_symbol(self, symbol: str, include_intelligence: bool | None = None) -> dict:
        if self.quote_source is None:
            raise QuoteUnavailableError("No quote source configured for scanning")
        symbol = symbol.upper()
        include = settings.signal_include_intelligence if include_intelligence is None else include_intelligence
        bars = self.quote_source.get_intraday_bars(symbol)
        data = analyze_market_data(symbol, bars)
        intel = self.fetch_intelligence(symbol) if include else None
        return self.detect(data, intel, source="auto")

    def scan(self, symbols: Sequence[str], include_intelligence: bool | None = None, pause_seconds: float | None = None) -> dict:
        include = settings.signal_include_intelligence if include_intelligence is None else include_intelligence
        pause = pause_seconds if pause_seconds is not None else (2.0 if include else 0.5)
        results: list[dict] = []
        for index, symbol in enumerate(symbols):
            if index and pause:
                self._sleep(pause)
            try:
                outcome = self.scan_symbol(symbol, include)
            except QuoteUnavailableError as exc:
                logger.warning("Signal scan skipped {}: {}", symbol, exc)
                results.append({"symbol": symbol.upper(), "success": False, "error": str(exc)})
                continue
            if outcome["signal"] is not None:
                results.append({"symbol": symbol.upper(), "success": True, "signal": outcome["signal"]})

        return {
            "success": True,
            "mode": "auto_scan_with_intelligence" if include else "auto_scan",
            "scanned": len(symbols),
            "signals_detected": sum(1 for item in results if item["success"]),
            "results": results,
        }
