from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from flow_pressure.db import Store
from flow_pressure.errors import AdvisorError, QuoteUnavailableError
from flow_pressure.events import EventLog
from flow_pressure.models import Quote
from flow_pressure.quotes import Candle


# Wednesday 2024-06-12 10:00 ET, regular session
REG_TIME = datetime(2024, 6, 12, 14, 0, tzinfo=timezone.utc)
# Saturday 2024-06-15 12:00 ET
CLOSED_TIME = datetime(2024, 6, 15, 16, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class StubQuoteSource:
    name = "stub"

    def __init__(self, quotes: dict[str, Quote] | None = None, bars: dict[str, list[Candle]] | None = None) -> None:
        self.quotes = dict(quotes or {})
        self.bars = dict(bars or {})

    def set_price(self, symbol: str, price: float, **fields) -> None:
        self.quotes[symbol] = make_quote(symbol, price, **fields)

    def get_quote(self, symbol: str) -> Quote:
        if symbol not in self.quotes:
            raise QuoteUnavailableError(f"no stub quote for {symbol}")
        return self.quotes[symbol]

    def get_intraday_bars(self, symbol: str) -> list[Candle]:
        if symbol not in self.bars:
            raise QuoteUnavailableError(f"no stub bars for {symbol}")
        return self.bars[symbol]


class StubAdvisor:
    """Returns canned answers keyed by a substring of the prompt."""

    name = "stub"

    def __init__(self, answers: dict[str, dict] | None = None, fail: bool = False) -> None:
        self.answers = answers or {}
        self.fail = fail
        self.prompts: list[str] = []

    def judge(self, prompt: str, schema: dict) -> dict:
        self.prompts.append(prompt)
        if self.fail:
            raise AdvisorError("stub advisor down")
        for needle, answer in self.answers.items():
            if needle in prompt:
                return dict(answer)
        return {}


def make_quote(symbol: str, price: float, **fields) -> Quote:
    values = {
        "prev_close": price,
        "change_pct": 0.0,
        "volume": 1_000_000.0,
        "high": price,
        "low": price,
        "open": price,
        "session": "REG",
        "source": "stub",
        "timestamp": REG_TIME.isoformat(),
    }
    values.update(fields)
    return Quote(symbol=symbol, last_price=price, **values)


def make_candles(
    count: int = 270,
    price: float = 100.0,
    volume: float = 1_000.0,
    recent: int = 30,
    recent_volume: float | None = None,
    recent_step: float = 0.0,
    start: datetime = REG_TIME - timedelta(minutes=300),
) -> list[Candle]:
    """Flat baseline bars followed by ``recent`` bars with their own volume and drift."""
    candles: list[Candle] = []
    for index in range(count):
        in_recent = index >= count - recent
        close = price + recent_step * (index - (count - recent) + 1) if in_recent else price
        bar_volume = recent_volume if in_recent and recent_volume is not None else volume
        candles.append(
            Candle(
                timestamp=(start + timedelta(minutes=index)).isoformat(),
                open=close,
                high=close,
                low=close,
                close=close,
                volume=bar_volume,
            )
        )
    return candles


def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def store(tmp_path) -> Store:
    return Store(tmp_path / "flow.sqlite3").initialize()


@pytest.fixture
def events(store) -> EventLog:
    return EventLog(store)


@pytest.fixture
def reg_clock() -> FixedClock:
    return FixedClock(REG_TIME)


@pytest.fixture
def closed_clock() -> FixedClock:
    return FixedClock(CLOSED_TIME)


@pytest.fixture
def quotes() -> StubQuoteSource:
    return StubQuoteSource()
