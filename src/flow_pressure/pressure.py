from __future__ import annotations

import math
from datetime import datetime
from typing import Sequence

from loguru import logger

from .db import Store
from .errors import QuoteUnavailableError
from .models import PressureRecord, Quote
from .quotes import QuoteSource
from .session import Clock, utc_now


BUY_ACTION_BELOW = 45.0
SELL_ACTION_ABOVE = 70.0
BUY_ZONE_BELOW = 40.0
SELL_ZONE_ABOVE = 70.0
VOLUME_ADJUSTMENT_FACTOR = 0.0001

SUGGESTIONS = {
    "BUY": "Low pressure - consider buying",
    "HOLD": "Medium pressure - observe",
    "SELL": "High pressure - reduce position",
}


def _finite(value: float, default: float = 0.0) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return default
    return value if math.isfinite(value) else default


def calculate_pressure_index(current: float, low: float, high: float) -> float:
    """Position of ``current`` within the day's range, 0 at the low and 100 at the high."""
    current, low, high = _finite(current), _finite(low), _finite(high)
    if high == low:
        return 50.0
    if high < low:
        low, high = high, low
    return min(100.0, max(0.0, (current - low) / (high - low) * 100))


def volatility_adjustment(volume: float) -> float:
    return max(0.0, _finite(volume)) * VOLUME_ADJUSTMENT_FACTOR


def pressure_zone(pressure: float) -> str:
    if pressure < BUY_ZONE_BELOW:
        return "BUY_ZONE"
    if pressure > SELL_ZONE_ABOVE:
        return "SELL_ZONE"
    return "NEUTRAL_ZONE"


def pressure_action(pressure: float) -> str:
    if pressure < BUY_ACTION_BELOW:
        return "BUY"
    if pressure > SELL_ACTION_ABOVE:
        return "SELL"
    return "HOLD"


def score_quote(quote: Quote, timestamp: str = "") -> PressureRecord:
    basic = calculate_pressure_index(quote.last_price, quote.low, quote.high)
    adjustment = volatility_adjustment(quote.volume)
    adjusted = min(100.0, basic + adjustment)
    final = (basic + adjusted) / 2
    action = pressure_action(final)

    return PressureRecord(
        symbol=quote.symbol,
        price=_finite(quote.last_price),
        day_high=_finite(quote.high),
        day_low=_finite(quote.low),
        volume=max(0.0, _finite(quote.volume)),
        pressure_index=round(basic, 1),
        volatility_adjustment=round(adjustment, 4),
        adjusted_pressure=round(adjusted, 1),
        final_pressure=round(final, 1),
        action=action,
        zone=pressure_zone(final),
        suggestion=SUGGESTIONS[action],
        timestamp=timestamp or quote.timestamp,
    )


class PressureScorer:
    def __init__(self, store: Store, quote_source: QuoteSource, clock: Clock = utc_now) -> None:
        self.store = store
        self.quote_source = quote_source
        self.clock = clock

    def calculate(self, symbols: Sequence[str]) -> dict:
        now = self.clock().isoformat()
        results: list[dict] = []
        errors: list[dict] = []
        total_pressure = 0.0

        for symbol in symbols:
            symbol = symbol.upper()
            try:
                quote = self.quote_source.get_quote(symbol)
            except QuoteUnavailableError as exc:
                logger.warning("Pressure skipped for {}: {}", symbol, exc)
                errors.append({"symbol": symbol, "error": str(exc)})
                results.append({"success": False, "symbol": symbol, "error": str(exc)})
                continue

            record = self.store.pressure.create(score_quote(quote, timestamp=now))
            total_pressure += record.final_pressure
            results.append({"success": True, "data": record})
            logger.info("{}: pressure {:.1f} - {}", symbol, record.final_pressure, record.action)

        successful = len(results) - len(errors)
        market_avg = total_pressure / successful if successful else 50.0
        return {
            "success": True,
            "timestamp": now,
            "market_avg_pressure": round(market_avg, 1),
            "results": results,
            "errors": errors,
            "stats": {"total": len(symbols), "successful": successful, "failed": len(errors)},
        }

    def export(self, day: str | None = None) -> dict:
        """Latest record per symbol for ``day`` (YYYY-MM-DD, UTC) with action counts."""
        day = day or self.clock().date().isoformat()
        latest: dict[str, PressureRecord] = {}
        for record in self.store.pressure.filter(order_by="timestamp"):
            if record.timestamp[:10] == day:
                latest[record.symbol] = record

        records = list(latest.values())
        actions = [record.action for record in records]
        return {
            "report_date": day,
            "total_symbols": len(records),
            "symbols": records,
            "market_summary": {
                "avg_pressure": round(sum(r.final_pressure for r in records) / len(records), 1) if records else 50.0,
                "buy_signals": actions.count("BUY"),
                "hold_signals": actions.count("HOLD"),
                "sell_signals": actions.count("SELL"),
            },
            "generated_at": datetime.now().astimezone().isoformat(),
        }
