from __future__ import annotations

import time
from collections.abc import Callable
from typing import Sequence

from .advisor import Advisor, NullAdvisor, build_advisor
from .alerts import AlertRouter
from .autotrader import AutoTrader
from .db import Store
from .events import EventLog
from .ledger import Ledger, TradeService
from .orders import OrderEngine
from .pressure import PressureScorer
from .quotes import QuoteSource, build_quote_source, refresh_quotes
from .sentiment import SentimentScorer
from .session import Clock, utc_now
from .settings import settings
from .signals import SignalDetector


class Services:
    """Wires one store, quote source and advisor into every handler.

    The HTTP app, the scheduler and the operator scripts all build one of
    these so that they share collaborators and the same sqlite file.
    """

    def __init__(
        self,
        store: Store | None = None,
        quote_source: QuoteSource | None = None,
        advisor: Advisor | None = None,
        alerts: AlertRouter | None = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        execution_delay_seconds: float | None = None,
    ) -> None:
        self.store = store or Store()
        self.clock = clock
        self.events = EventLog(self.store, alerts)
        self.quote_source = quote_source if quote_source is not None else build_quote_source(self.store)
        if advisor is None:
            advisor = build_advisor()
        # a missing provider is the same as no advisor: callers fall back to defaults silently
        self.advisor = None if isinstance(advisor, NullAdvisor) else advisor

        self.ledger = Ledger(self.store, self.events, clock, sleep=sleep)
        self.trades = TradeService(self.store, self.ledger, self.quote_source, clock)
        self.orders = OrderEngine(
            self.store,
            self.quote_source,
            self.advisor,
            trade_service=self.trades,
            events=self.events,
            clock=clock,
            execution_delay_seconds=execution_delay_seconds,
            sleep=sleep,
        )
        self.pressure = PressureScorer(self.store, self.quote_source, clock)
        self.sentiment = SentimentScorer(self.store, self.advisor, self.events, clock, sleep=sleep)
        self.signals = SignalDetector(self.store, self.quote_source, self.advisor, clock, sleep=sleep)
        self.autotrader = AutoTrader(self.store, self.quote_source, self.advisor, self.events, clock)

    def initialize(self) -> "Services":
        self.store.initialize()
        return self

    def run_cycle(self, symbols: Sequence[str] | None = None) -> dict:
        """One pass of every handler, in data-flow order."""
        symbols = [symbol.upper() for symbol in (symbols or settings.watchlist)]
        quotes = refresh_quotes(symbols, self.quote_source, self.store, self.clock)
        pressure = self.pressure.calculate(symbols)
        sentiment = self.sentiment.analyze(symbols)
        signals = self.signals.scan(symbols)
        orders = self.orders.check()
        autotrader = self.autotrader.scan_and_trade(symbols)
        return {
            "quotes_stored": len(quotes),
            "market_avg_pressure": pressure["market_avg_pressure"],
            "spi_alerts": sentiment["stats"]["alerts_triggered"],
            "signals_detected": signals["signals_detected"],
            "orders_checked": orders["checked"],
            "orders_executed": sum(1 for item in orders["results"] if item["status"] == "EXECUTED"),
            "autotrader": autotrader,
        }
