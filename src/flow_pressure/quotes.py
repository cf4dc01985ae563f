"""Quote providers.

``YahooQuoteSource`` pulls one-minute bars from yfinance and derives the
day's OHLC and volume from them.  ``FallbackQuoteSource`` walks providers in
priority order and, when every provider fails, hands back the last good
stored quote flagged ``error_flag=True`` / ``source="fallback"``.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Protocol, Sequence

import yfinance as yf
from loguru import logger

from .db import Store
from .errors import QuoteUnavailableError
from .models import Quote
from .ratelimit import RateLimiter
from .session import Clock, get_market_session, utc_now
from .settings import settings

warnings.filterwarnings("ignore", category=FutureWarning, module="yfinance")


@dataclass
class Candle:
    """Single OHLCV bar."""
    timestamp: str
    open: float
    high: float
    low: float
    close: float
    volume: float


class QuoteSource(Protocol):
    name: str

    def get_quote(self, symbol: str) -> Quote: ...

    def get_intraday_bars(self, symbol: str) -> list[Candle]: ...


def quote_from_candles(symbol: str, candles: Sequence[Candle], source: str) -> Quote:
    if not candles:
        raise QuoteUnavailableError(f"No bars for {symbol}")

    last = candles[-1]
    day = last.timestamp[:10]
    today = [bar for bar in candles if bar.timestamp[:10] == day]
    earlier = [bar for bar in candles if bar.timestamp[:10] < day]
    prev_close = earlier[-1].close if earlier else today[0].open
    change_pct = ((last.close - prev_close) / prev_close * 100) if prev_close else 0.0

    return Quote(
        symbol=symbol,
        last_price=last.close,
        prev_close=prev_close,
        change_pct=round(change_pct, 4),
        volume=sum(bar.volume for bar in today),
        high=max(bar.high for bar in today),
        low=min(bar.low for bar in today),
        open=today[0].open,
        source=source,
        timestamp=last.timestamp,
    )


class YahooQuoteSource:
    name = "yahoo"

    def __init__(self, period: str | None = None, interval: str | None = None) -> None:
        self.period = period or settings.quote_history_range
        self.interval = interval or settings.quote_history_interval

    def get_intraday_bars(self, symbol: str) -> list[Candle]:
        try:
            df = yf.Ticker(symbol).history(period=self.period, interval=self.interval, prepost=True)
        except Exception as exc:
            raise QuoteUnavailableError(f"yfinance history failed for {symbol}: {exc}") from exc

        if df is None or df.empty:
            raise QuoteUnavailableError(f"No data returned for {symbol} period={self.period} interval={self.interval}")

        candles: list[Candle] = []
        for ts, row in df.iterrows():
            candles.append(
                Candle(
                    timestamp=ts.isoformat() if hasattr(ts, "isoformat") else str(ts),
                    open=float(row.get("Open", 0.0)),
                    high=float(row.get("High", 0.0)),
                    low=float(row.get("Low", 0.0)),
                    close=float(row.get("Close", 0.0)),
                    volume=float(row.get("Volume", 0.0)),
                )
            )
        return candles

    def get_quote(self, symbol: str) -> Quote:
        return quote_from_candles(symbol, self.get_intraday_bars(symbol), self.name)


class StoredQuoteSource:
    """Serves the most recent non-fallback quote already in the store."""

    name = "stored"

    def __init__(self, store: Store) -> None:
        self.store = store

    def get_quote(self, symbol: str) -> Quote:
        quote = self.store.quotes.latest(symbol, error_flag=False)
        if quote is None:
            raise QuoteUnavailableError(f"No stored quote for {symbol}")
        return quote

    def get_intraday_bars(self, symbol: str) -> list[Candle]:
        raise QuoteUnavailableError(f"{self.name} source has no intraday bars")


class FallbackQuoteSource:
    name = "fallback"

    def __init__(
        self,
        providers: Sequence[QuoteSource],
        store: Store | None = None,
        limiter: RateLimiter | None = None,
    ) -> None:
        self.providers = list(providers)
        self.store = store
        self.limiter = limiter or RateLimiter(settings.quote_min_interval_seconds)

    def get_quote(self, symbol: str) -> Quote:
        errors: list[str] = []
        for provider in self.providers:
            self.limiter.wait()
            try:
                return provider.get_quote(symbol)
            except Exception as exc:
                errors.append(f"{provider.name}: {exc}")
                logger.warning("Quote provider {} failed for {}: {}", provider.name, symbol, exc)

        if self.store is not None:
            last_good = self.store.quotes.latest(symbol, error_flag=False)
            if last_good is not None:
                logger.warning("Serving last known quote for {} from {}", symbol, last_good.timestamp)
                return replace(last_good, error_flag=True, source="fallback", id="", version=0)

        raise QuoteUnavailableError(f"All quote providers failed for {symbol}: {'; '.join(errors)}")

    def get_intraday_bars(self, symbol: str) -> list[Candle]:
        for provider in self.providers:
            self.limiter.wait()
            try:
                bars = provider.get_intraday_bars(symbol)
            except Exception as exc:
                logger.debug("Bar provider {} failed for {}: {}", provider.name, symbol, exc)
                continue
            if bars:
                return bars
        raise QuoteUnavailableError(f"No intraday bars available for {symbol}")


def build_quote_source(store: Store, providers_csv: str | None = None) -> FallbackQuoteSource:
    registry = {
        "yahoo": YahooQuoteSource,
        "stored": lambda: StoredQuoteSource(store),
    }
    names = [item.strip().lower() for item in (providers_csv or settings.quote_providers_csv).split(",") if item.strip()]
    providers: list[QuoteSource] = []
    for name in names:
        factory = registry.get(name)
        if factory is None:
            logger.warning("Unknown quote provider '{}' ignored", name)
            continue
        providers.append(factory())
    return FallbackQuoteSource(providers, store)


def refresh_quotes(
    symbols: Sequence[str],
    source: QuoteSource,
    store: Store,
    clock: Clock = utc_now,
) -> list[Quote]:
    """Polls every symbol once and appends a Quote row per success."""
    now: datetime = clock()
    session = get_market_session(now)
    stored: list[Quote] = []
    for symbol in symbols:
        try:
            quote = source.get_quote(symbol.upper())
        except QuoteUnavailableError as exc:
            logger.warning("Quote refresh skipped {}: {}", symbol, exc)
            continue
        stored.append(store.quotes.create(replace(quote, session=session, timestamp=now.isoformat(), id="", version=0)))

    logger.info("Quote refresh stored {}/{} symbols ({})", len(stored), len(symbols), session)
    return stored
