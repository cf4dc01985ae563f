"""Scheduled auto-trader.

One ``scan_and_trade`` cycle first walks every open auto-trade and closes
those whose exit rule fires, then opens at most one new position from the
best-ranked candidate that clears the entry thresholds.  The tunable weights
and thresholds live in a versioned ``ModelConfig`` record; the end-of-day
settlement re-reads it and writes the adapted values back with a version
check so two concurrent settlements cannot clobber each other.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Sequence

import yaml
from loguru import logger

from .advisor import Advisor, judge_or_default
from .db import Store
from .errors import QuoteUnavailableError, RecordNotFoundError, StaleRecordError
from .events import EventLog
from .locks import keyed_lock
from .models import AutoTrade, ModelConfig
from .quotes import QuoteSource
from .reports import generate_performance_report
from .session import Clock, is_trading_session, minutes_to_close, utc_now
from .settings import settings
from .signals import analyze_market_data


CONFIG_SECTIONS = ("weights", "entry", "exit", "sizing", "learning")
CONFIG_WRITE_ATTEMPTS = 3
SOCIAL_WEIGHT_CAP = 50.0
VOLUME_WEIGHT_FLOOR = 10.0
LATENCY_LIMIT_SEC = 3.0
LATENCY_RESET_SEC = 2.8

SOCIAL_SCHEMA = {
    "type": "object",
    "properties": {
        "sentiment": {"type": "string", "enum": ["bullish", "bearish", "neutral"]},
        "confidence": {"type": "number", "minimum": 0, "maximum": 100},
    },
}


def load_model_defaults(file_path: Path | None = None) -> ModelConfig:
    """Defaults for a fresh ``ModelConfig``, overridden by the YAML file when present."""
    file_path = file_path or settings.autotrader_config_path
    if not file_path.exists():
        return ModelConfig()

    raw = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
    defaults = ModelConfig()
    known = {item.name: type(getattr(defaults, item.name)) for item in fields(ModelConfig)}
    overrides: dict = {}
    for section in CONFIG_SECTIONS:
        for key, value in (raw.get(section) or {}).items():
            if key not in known or key in ("id", "version"):
                logger.warning("Ignoring unknown auto-trader setting {}.{}", section, key)
                continue
            cast = known[key]
            overrides[key] = cast(value) if cast in (int, float, bool, str) else value
    if "model_version" in raw:
        overrides["model_version"] = str(raw["model_version"])
    return ModelConfig(**{**{item.name: getattr(defaults, item.name) for item in fields(ModelConfig)}, **overrides})


def calculate_confidence(
    volume_ratio: float, price_change_pct: float, social_score: float, config: ModelConfig
) -> int:
    volume_score = min(volume_ratio * 20, 100.0)
    momentum_score = min(abs(price_change_pct) * 20, 100.0)
    social = max(0.0, min(100.0, 50 + social_score / 2))
    institutional = max(0.0, min(100.0, config.institutional_flow_placeholder))

    total_weight = (
        config.volume_weight
        + config.social_sentiment_weight
        + config.price_momentum_weight
        + config.institutional_flow_weight
    )
    if total_weight <= 0:
        return 0
    blended = (
        volume_score * config.volume_weight
        + social * config.social_sentiment_weight
        + momentum_score * config.price_momentum_weight
        + institutional * config.institutional_flow_weight
    ) / total_weight
    return round(blended)


@dataclass
class EntryDecision:
    symbol: str
    enter: bool
    reason: str
    confidence: int = 0
    volume_ratio: float = 0.0
    price_change_pct: float = 0.0
    social_score: float = 0.0
    price: float = 0.0


def evaluate_exit(trade: AutoTrade, price: float, config: ModelConfig, now: datetime) -> str | None:
    """Reason to close ``trade`` at ``price``, or None to keep holding."""
    if trade.buy_price <= 0:
        return "Invalid entry price"
    current_return = (price - trade.buy_price) / trade.buy_price * 100

    if current_return >= config.profit_target_pct:
        return f"Profit target reached: +{current_return:.2f}%"
    if current_return <= config.stop_loss_pct:
        return f"Stop loss triggered: {current_return:.2f}%"

    held_seconds = (now - datetime.fromisoformat(trade.entry_time)).total_seconds()
    if held_seconds > config.avg_holding_time_sec and current_return > config.momentum_fade_min_gain_pct:
        return f"Time-based exit with profit: +{current_return:.2f}%"
    if abs(current_return) >= config.extreme_move_pct:
        return f"Extreme volatility: {current_return:.2f}%"

    remaining = minutes_to_close(now)
    if remaining is not None and remaining <= settings.autotrader_close_window_minutes:
        return f"Approaching market close ({remaining:.0f} min left): {current_return:+.2f}%"
    return None


class AutoTrader:
    def __init__(
        self,
        store: Store,
        quote_source: QuoteSource | None = None,
        advisor: Advisor | None = None,
        events: EventLog | None = None,
        clock: Clock = utc_now,
        capital: float | None = None,
        account_id: str | None = None,
        config_path: Path | None = None,
    ) -> None:
        self.store = store
        self.quote_source = quote_source
        self.advisor = advisor
        self.events = events or EventLog(store)
        self.clock = clock
        self.capital = settings.autotrader_capital_usd if capital is None else capital
        self.account_id = account_id or settings.default_account_id
        self.config_path = config_path

    # ── Config ────────────────────────────────────────────────────

    def load_config(self) -> ModelConfig | None:
        return self.store.model_configs.first()

    def initialize(self, activate: bool | None = None) -> dict:
        config = self.load_config()
        if config is None:
            defaults = load_model_defaults(self.config_path)
            defaults.updated_at = self.clock().isoformat()
            config = self.store.model_configs.create(defaults)
            self.events.info("autotrader", "AutoTrader engine initialized", {"config_id": config.id})
        if activate is not None and config.is_active != activate:
            config = self.store.model_configs.update(
                config.id,
                {"is_active": activate, "updated_at": self.clock().isoformat()},
                expected_version=config.version,
            )
            logger.info("AutoTrader {}", "activated" if activate else "paused")
        return {"success": True, "config": config, "message": "AutoTrader engine ready"}

    def _write_config(self, build_changes) -> ModelConfig:
        """Re-read the config and apply ``build_changes(config)`` with a version check."""
        for _ in range(CONFIG_WRITE_ATTEMPTS):
            config = self.load_config()
            if config is None:
                raise RecordNotFoundError("model_configs: no active config")
            changes = build_changes(config)
            try:
                return self.store.model_configs.update(config.id, changes, expected_version=config.version)
            except StaleRecordError:
                logger.warning("Model config changed concurrently; retrying write")
        raise StaleRecordError("model_configs", config.id, config.version)

    # ── Market inputs ─────────────────────────────────────────────

    def _last_price(self, symbol: str) -> float | None:
        if self.quote_source is not None:
            try:
                price = self.quote_source.get_quote(symbol).last_price
                if price and math.isfinite(price):
                    return price
            except QuoteUnavailableError as exc:
                logger.warning("Quote unavailable for {}: {}", symbol, exc)
        quote = self.store.quotes.latest(symbol)
        if quote is not None and quote.last_price and math.isfinite(quote.last_price):
            return quote.last_price
        return None

    def volume_ratio(self, symbol: str) -> float:
        if self.quote_source is None:
            return 0.0
        try:
            data = analyze_market_data(symbol, self.quote_source.get_intraday_bars(symbol))
        except QuoteUnavailableError as exc:
            logger.debug("No volume baseline for {}: {}", symbol, exc)
            return 0.0
        return float(data.details.get("volume_spike_ratio", 0.0))

    def social_score(self, symbol: str) -> float:
        """-100..100; stored sentiment when available, otherwise a quick advisor read."""
        semantic = self.store.semantic.latest(symbol)
        if semantic is not None:
            return semantic.sentiment_score * 100
        answer = judge_or_default(
            self.advisor,
            f"Quick sentiment for {symbol}: bullish, bearish or neutral, with a confidence 0-100.",
            SOCIAL_SCHEMA,
            {"sentiment": "neutral", "confidence": 0},
        )
        try:
            confidence = float(answer.get("confidence") or 0)
        except (TypeError, ValueError):
            confidence = 0.0
        sign = {"bullish": 1, "bearish": -1}.get(str(answer.get("sentiment")).lower(), 0)
        return sign * max(0.0, min(100.0, confidence))

    def evaluate_entry(self, symbol: str, config: ModelConfig) -> EntryDecision:
        if self.quote_source is not None:
            try:
                quote = self.quote_source.get_quote(symbol)
            except QuoteUnavailableError as exc:
                return EntryDecision(symbol, False, f"Quote unavailable: {exc}")
        else:
            quote = self.store.quotes.latest(symbol)
            if quote is None:
                return EntryDecision(symbol, False, "No stored quote")
        if quote.error_flag:
            return EntryDecision(symbol, False, "Only stale fallback data available")

        ratio = self.volume_ratio(symbol)
        decision = EntryDecision(symbol, False, "", volume_ratio=ratio, price_change_pct=quote.change_pct, price=quote.last_price)
        if ratio < config.min_volume_ratio:
            decision.reason = f"Volume too low ({ratio:.1f}x)"
            return decision
        if quote.change_pct <= 0:
            decision.reason = "No upward momentum"
            return decision

        decision.social_score = self.social_score(symbol)
        if decision.social_score < config.min_social_score:
            decision.reason = "Social sentiment not bullish"
            return decision

        decision.confidence = calculate_confidence(ratio, quote.change_pct, decision.social_score, config)
        if decision.confidence < config.min_confidence_threshold:
            decision.reason = f"Confidence {decision.confidence}% < threshold {config.min_confidence_threshold:.0f}%"
            return decision

        decision.enter = True
        decision.reason = f"Confidence {decision.confidence}%, volume {ratio:.1f}x"
        return decision

    # ── Cycle ─────────────────────────────────────────────────────

    def _close(self, trade: AutoTrade, price: float, reason: str, commission_rate: float) -> AutoTrade | None:
        pl_amount = (price - trade.buy_price) * trade.shares
        pl_percent = (price - trade.buy_price) / trade.buy_price * 100 if trade.buy_price else 0.0
        try:
            return self.store.auto_trades.update(
                trade.id,
                {
                    "sell_price": price,
                    "exit_time": self.clock().isoformat(),
                    "pl_amount": pl_amount,
                    "pl_percent": pl_percent,
                    "status": "CLOSED",
                    "trade_type": "WIN" if pl_amount >= 0 else "LOSS",
                    "fees": trade.fees + price * trade.shares * commission_rate,
                    "exit_reason": reason,
                },
                expected_version=trade.version,
            )
        except StaleRecordError:
            logger.warning("Trade {} changed while closing; left for the next cycle", trade.id)
            return None

    def scan_and_trade(self, symbols: Sequence[str] | None = None) -> dict:
        now = self.clock()
        if not is_trading_session(now):
            return {"success": False, "message": "Market is closed"}
        config = self.load_config()
        if config is None:
            return {"success": False, "error": "Model not initialized"}
        if not config.is_active:
            return {"success": False, "message": "AutoTrader is not active"}
        symbols = [symbol.upper() for symbol in (symbols or settings.watchlist)]
        if not symbols:
            return {"success": False, "error": "No symbols provided"}

        results: list[dict] = []
        slip = config.slippage_pct / 100

        with keyed_lock("autotrader", self.account_id):
            for trade in self.store.auto_trades.filter(status="OPEN", origin="auto", account_id=self.account_id):
                last = self._last_price(trade.symbol)
                if last is None:
                    continue
                exit_price = last * (1 - slip)
                reason = evaluate_exit(trade, exit_price, config, now)
                if reason is None:
                    continue
                closed = self._close(trade, exit_price, reason, config.commission_rate)
                if closed is not None:
                    results.append(
                        {"action": "EXIT", "symbol": trade.symbol, "price": exit_price, "return_pct": closed.pl_percent, "reason": reason}
                    )
                    logger.info("Exited {} at {:.2f}: {:+.2f}%", trade.symbol, exit_price, closed.pl_percent)

            open_trades = self.store.auto_trades.filter(status="OPEN", account_id=self.account_id)
            auto_open = [trade for trade in open_trades if trade.origin == "auto"]
            held = {trade.symbol for trade in open_trades}
            candidates: list[EntryDecision] = []
            if len(auto_open) < config.max_open_positions:
                for symbol in symbols:
                    if symbol in held:
                        continue
                    decision = self.evaluate_entry(symbol, config)
                    logger.debug("{}: {}", symbol, decision.reason)
                    if decision.enter:
                        candidates.append(decision)

            for decision in sorted(candidates, key=lambda item: item.confidence, reverse=True):
                entry_price = decision.price * (1 + slip)
                shares = math.floor(self.capital * config.max_position_size_pct / 100 / entry_price)
                if shares <= 0:
                    continue
                total_cost = shares * entry_price
                self.store.auto_trades.create(
                    AutoTrade(
                        symbol=decision.symbol,
                        shares=shares,
                        buy_price=entry_price,
                        total_cost=total_cost,
                        entry_time=now.isoformat(),
                        account_id=self.account_id,
                        fees=total_cost * config.commission_rate,
                        entry_confidence=decision.confidence,
                        entry_flow_strength=decision.confidence,
                        entry_reason=f"Opportunity detected: {decision.reason}",
                        origin="auto",
                    )
                )
                self._write_config(lambda current: {"total_trades_executed": current.total_trades_executed + 1})
                results.append(
                    {
                        "action": "ENTER",
                        "symbol": decision.symbol,
                        "price": entry_price,
                        "shares": shares,
                        "confidence": decision.confidence,
                    }
                )
                logger.info("Entered {} at {:.2f}: {} shares, {}% confidence", decision.symbol, entry_price, shares, decision.confidence)
                break

            open_positions = self.store.auto_trades.count(status="OPEN", origin="auto", account_id=self.account_id)

        return {"success": True, "results": results, "total_actions": len(results), "open_positions": open_positions}

    # ── Settlement ────────────────────────────────────────────────

    @staticmethod
    def adapt(config: ModelConfig, win_rate: float, total_return_pct: float) -> tuple[dict, str, str]:
        if win_rate < config.win_rate_floor:
            social = min(config.social_sentiment_weight + 10, SOCIAL_WEIGHT_CAP)
            volume = max(config.volume_weight - 5, VOLUME_WEIGHT_FLOOR)
            notes = (
                f"Win rate {win_rate:.1f}% < {config.win_rate_floor:.0f}%. Increased social weight to "
                f"{social:.0f}, reduced volume weight to {volume:.0f}."
            )
            return {"social_sentiment_weight": social, "volume_weight": volume}, "Adjusting", notes
        if config.latency_compensation_sec > LATENCY_LIMIT_SEC:
            return {"latency_compensation_sec": LATENCY_RESET_SEC}, "Learning", f"Latency too high. Reduced to {LATENCY_RESET_SEC}s."
        if total_return_pct > config.optimized_return_pct:
            return {}, "Optimized", f"Excellent performance {total_return_pct:.1f}%. Maintaining current settings."
        return {}, "Stable", "Performance stable. No adjustments needed."

    def end_of_day_settlement(self, report_date: str | None = None) -> dict:
        config = self.load_config()
        if config is None:
            return {"success": False, "error": "Model not initialized"}

        with keyed_lock("autotrader", self.account_id):
            open_trades = self.store.auto_trades.filter(status="OPEN", origin="auto", account_id=self.account_id)
            for trade in open_trades:
                price = self._last_price(trade.symbol) or trade.buy_price
                closed = self._close(trade, price, "Market close - forced exit", config.commission_rate)
                if closed is not None:
                    logger.info("Force closed {}: {:+.2f}%", trade.symbol, closed.pl_percent)

        outcome = generate_performance_report(
            self.store, report_date, origin="auto", capital_start=self.capital, clock=self.clock
        )
        if not outcome["success"]:
            self.events.info("autotrader", "End of day settlement: no completed trades, configuration unchanged")
            return {
                "success": True,
                "report": None,
                "learning": {"new_state": config.model_state, "notes": outcome["message"], "adjustments": {}},
                "message": f"End of day settlement complete. {len(open_trades)} positions closed.",
            }

        report = outcome["report"]
        learning: dict = {}

        def _changes(current: ModelConfig) -> dict:
            adjustments, state, notes = self.adapt(current, report.win_rate, report.total_return_pct)
            learning.update(new_state=state, notes=notes, adjustments=adjustments)
            return {
                **adjustments,
                "model_state": state,
                "learning_notes": notes,
                "last_performance_win_rate": report.win_rate,
                "last_performance_return": report.total_return_pct,
                "updated_at": self.clock().isoformat(),
            }

        self._write_config(_changes)
        self.events.info(
            "autotrader",
            "End of day settlement complete",
            {"win_rate": report.win_rate, "total_return": report.total_return_pct, "model_state": learning["new_state"]},
        )
        return {
            "success": True,
            "report": report,
            "learning": learning,
            "message": f"End of day settlement complete. {len(open_trades)} positions closed.",
        }
