"""Advanced order engine.

Orders move ``PENDING -> FILLED`` or ``PENDING -> CANCELLED`` and never leave
a terminal state.  A BRACKET parent owns a stop-loss and a take-profit child
on the opposite side; the children share an OCO id so that one exit cancels
the other, and they only become eligible once the parent has filled.  An OCO
order is created together with its sibling under a fresh ``OCO_<ts>`` id.

Work on an order runs under a keyed lock: the OCO group's lock when the order
belongs to one, otherwise the order's own lock, so a fill and a cancel of the
same group are serialised.
"""

from __future__ import annotations

import math
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from typing import Any

from loguru import logger

from .advisor import Advisor, judge_or_default
from .db import Store
from .errors import QuoteUnavailableError, TradeValidationError
from .events import EventLog
from .ledger import TradeService, trade_costs
from .locks import keyed_lock
from .models import (
    ORDER_TYPES,
    PRESSURE_CONDITIONS,
    SENTIMENT_TRIGGERS,
    SIDES,
    TERMINAL_ORDER_STATUSES,
    AdvancedOrder,
    AutoTrade,
)
from .quotes import QuoteSource
from .session import Clock, utc_now
from .settings import settings


AUTO_HELD_NOTE = "Symbol is held by an open auto-trader position; waiting for it to close."

SENTIMENT_TO_TRIGGER = {"positive": "BULLISH", "negative": "BEARISH", "neutral": "NEUTRAL"}
TIMINGS = ("EXECUTE_NOW", "WAIT_FOR_BETTER_PRICE", "CANCEL_RISKY")
RISK_LEVELS = ("LOW", "MEDIUM", "HIGH")

ORDER_ADVICE_SCHEMA = {
    "type": "object",
    "properties": {
        "confidence": {"type": "number", "description": "Confidence score 0-100"},
        "timing": {"type": "string", "enum": list(TIMINGS)},
        "risk_level": {"type": "string", "enum": list(RISK_LEVELS)},
        "reasoning": {"type": "string"},
        "suggested_stop_loss": {"type": "number"},
        "suggested_take_profit": {"type": "number"},
    },
}


@dataclass
class MarketSnapshot:
    price: float
    pressure: float = 50.0
    sentiment: str = "neutral"
    spi: float = 50.0

    @property
    def sentiment_trigger(self) -> str:
        return SENTIMENT_TO_TRIGGER.get(self.sentiment.lower(), self.sentiment.upper())


def _price_crossed(order: AdvancedOrder, price: float) -> bool | None:
    """Type-specific price condition, or None when the order has none."""
    if order.order_type == "STOP_LOSS":
        if order.stop_loss_price is None:
            return False
        return price <= order.stop_loss_price if order.side == "SELL" else price >= order.stop_loss_price
    if order.order_type == "TAKE_PROFIT":
        if order.take_profit_price is None:
            return False
        return price >= order.take_profit_price if order.side == "SELL" else price <= order.take_profit_price
    if order.order_type == "OCO" and (order.stop_loss_price is not None or order.take_profit_price is not None):
        stop = replace(order, order_type="STOP_LOSS")
        take = replace(order, order_type="TAKE_PROFIT")
        return bool(
            (order.stop_loss_price is not None and _price_crossed(stop, price))
            or (order.take_profit_price is not None and _price_crossed(take, price))
        )
    return None


def should_trigger(order: AdvancedOrder, market: MarketSnapshot) -> bool:
    """True only when every configured condition on the order holds."""
    if order.pressure_condition != "NONE" and order.pressure_trigger is not None:
        if order.pressure_condition == "ABOVE" and market.pressure < order.pressure_trigger:
            return False
        if order.pressure_condition == "BELOW" and market.pressure > order.pressure_trigger:
            return False

    if order.sentiment_trigger != "ANY" and order.sentiment_trigger != market.sentiment_trigger:
        return False

    crossed = _price_crossed(order, market.price)
    return True if crossed is None else crossed


def percent_price(entry: float, percent: float) -> float:
    return entry * (1 + percent / 100)


def _optional_float(data: dict, name: str) -> float | None:
    value = data.get(name)
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise TradeValidationError(f"{name} must be a number") from exc
    if not math.isfinite(number):
        raise TradeValidationError(f"{name} must be finite")
    return number


def _optional_price(data: dict, name: str) -> float | None:
    price = _optional_float(data, name)
    if price is not None and price <= 0:
        raise TradeValidationError(f"{name} must be a positive number")
    return price


def _new_oco_id(now_seconds: float) -> str:
    return f"OCO_{int(now_seconds * 1000)}_{uuid.uuid4().hex[:6]}"


class OrderEngine:
    def __init__(
        self,
        store: Store,
        quote_source: QuoteSource | None = None,
        advisor: Advisor | None = None,
        trade_service: TradeService | None = None,
        events: EventLog | None = None,
        clock: Clock = utc_now,
        execution_delay_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.quote_source = quote_source
        self.advisor = advisor
        self.trade_service = trade_service
        self.events = events or EventLog(store)
        self.clock = clock
        self.execution_delay_seconds = (
            settings.execution_delay_seconds if execution_delay_seconds is None else execution_delay_seconds
        )
        self._sleep = sleep

    # ── Market data ───────────────────────────────────────────────

    def market_snapshot(self, symbol: str) -> MarketSnapshot:
        pressure = self.store.pressure.latest(symbol)
        semantic = self.store.semantic.latest(symbol)

        price: float | None = None
        if self.quote_source is not None:
            try:
                price = self.quote_source.get_quote(symbol).last_price
            except QuoteUnavailableError as exc:
                logger.warning("Live quote unavailable for {}: {}", symbol, exc)
        if not price:
            quote = self.store.quotes.latest(symbol)
            price = quote.last_price if quote is not None else None
        if not price and pressure is not None:
            price = pressure.price

        return MarketSnapshot(
            price=float(price) if price and math.isfinite(price) else 0.0,
            pressure=pressure.final_pressure if pressure is not None and math.isfinite(pressure.final_pressure) else 50.0,
            sentiment=semantic.sentiment if semantic is not None else "neutral",
            spi=semantic.spi if semantic is not None else 50.0,
        )

    def advise(self, order: AdvancedOrder, market: MarketSnapshot) -> dict:
        def _fmt(value: float | None, percent: float | None) -> str:
            if value is not None:
                return f"${value:.2f}"
            if percent is not None:
                return f"{percent}%"
            return "None"

        entry = f"${order.entry_price:.2f}" if order.entry_price is not None else "Market"
        prompt = (
            "Analyze this simulated trading order and provide execution advice.\n"
            f"Symbol: {order.symbol}\nOrder Type: {order.order_type}\nSide: {order.side}\n"
            f"Quantity: {order.quantity:g}\nEntry Price: {entry}\n"
            f"Current Price: ${market.price:.2f}\nPressure Index: {market.pressure:.0f}/100\n"
            f"Sentiment: {market.sentiment}\nSPI: {market.spi:.0f}\n"
            f"Stop Loss: {_fmt(order.stop_loss_price, order.stop_loss_percent)}\n"
            f"Take Profit: {_fmt(order.take_profit_price, order.take_profit_percent)}"
        )
        default = {
            "confidence": 50,
            "timing": "EXECUTE_NOW",
            "risk_level": "MEDIUM",
            "reasoning": "AI analysis unavailable, proceeding with order as specified.",
            "suggested_stop_loss": order.stop_loss_price,
            "suggested_take_profit": order.take_profit_price,
        }
        advice = judge_or_default(self.advisor, prompt, ORDER_ADVICE_SCHEMA, default)

        try:
            confidence = float(advice.get("confidence", 50))
        except (TypeError, ValueError):
            confidence = 50.0
        advice["confidence"] = min(100.0, max(0.0, confidence)) if math.isfinite(confidence) else 50.0
        if advice.get("timing") not in TIMINGS:
            advice["timing"] = "EXECUTE_NOW"
        if advice.get("risk_level") not in RISK_LEVELS:
            advice["risk_level"] = "MEDIUM"
        for key in ("suggested_stop_loss", "suggested_take_profit"):
            value = advice.get(key)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value) or value <= 0:
                advice[key] = None
        return advice

    # ── Create ────────────────────────────────────────────────────

    def _validate(self, data: dict) -> dict:
        symbol = str(data.get("symbol") or "").upper().strip()
        order_type = str(data.get("order_type") or "MARKET").upper()
        side = str(data.get("side") or "").upper()
        pressure_condition = str(data.get("pressure_condition") or "NONE").upper()
        sentiment_trigger = str(data.get("sentiment_trigger") or "ANY").upper()
        quantity = _optional_float(data, "quantity")

        if not symbol:
            raise TradeValidationError("symbol is required")
        if order_type not in ORDER_TYPES:
            raise TradeValidationError(f"order_type must be one of {ORDER_TYPES}")
        if side not in SIDES:
            raise TradeValidationError("side must be BUY or SELL")
        if quantity is None or quantity <= 0:
            raise TradeValidationError("quantity must be a positive number")
        if pressure_condition not in PRESSURE_CONDITIONS:
            raise TradeValidationError(f"pressure_condition must be one of {PRESSURE_CONDITIONS}")
        if sentiment_trigger not in SENTIMENT_TRIGGERS:
            raise TradeValidationError(f"sentiment_trigger must be one of {SENTIMENT_TRIGGERS}")
        if order_type == "OCO" and not isinstance(data.get("oco_pair"), dict):
            raise TradeValidationError("OCO orders require oco_pair data for the sibling order")

        return {
            "symbol": symbol,
            "order_type": order_type,
            "side": side,
            "quantity": quantity,
            "entry_price": _optional_price(data, "entry_price"),
            "stop_loss_price": _optional_price(data, "stop_loss_price"),
            "stop_loss_percent": _optional_float(data, "stop_loss_percent"),
            "take_profit_price": _optional_price(data, "take_profit_price"),
            "take_profit_percent": _optional_float(data, "take_profit_percent"),
            "pressure_trigger": _optional_float(data, "pressure_trigger"),
            "pressure_condition": pressure_condition,
            "sentiment_trigger": sentiment_trigger,
            "account_id": str(data.get("account_id") or settings.default_account_id),
        }

    def create(self, order_data: dict) -> dict:
        fields = self._validate(order_data)
        market = self.market_snapshot(fields["symbol"])
        entry = fields["entry_price"] or (market.price or None)
        if entry is None:
            logger.warning("No price available for {}; order will fill at the check-time price", fields["symbol"])

        stop_price = fields["stop_loss_price"]
        take_price = fields["take_profit_price"]
        if stop_price is None and fields["stop_loss_percent"] is not None and entry:
            stop_price = percent_price(entry, fields["stop_loss_percent"])
        if take_price is None and fields["take_profit_percent"] is not None and entry:
            take_price = percent_price(entry, fields["take_profit_percent"])
        for name, level in (("stop_loss_percent", stop_price), ("take_profit_percent", take_price)):
            if level is not None and level <= 0:
                raise TradeValidationError(f"{name} puts the price level at or below zero")

        now = self.clock().isoformat()
        draft = AdvancedOrder(
            **{**fields, "entry_price": entry, "stop_loss_price": stop_price, "take_profit_price": take_price},
            created_at=now,
            last_checked=now,
        )
        advice = self.advise(draft, market)
        draft.stop_loss_price = stop_price if stop_price is not None else advice["suggested_stop_loss"]
        draft.take_profit_price = take_price if take_price is not None else advice["suggested_take_profit"]
        draft.ai_confidence = advice["confidence"]
        draft.ai_timing = advice["timing"]
        draft.ai_risk_level = advice["risk_level"]
        draft.ai_reasoning = str(advice.get("reasoning") or "")

        if draft.order_type == "STOP_LOSS" and draft.stop_loss_price is None:
            raise TradeValidationError("STOP_LOSS orders need stop_loss_price or stop_loss_percent")
        if draft.order_type == "TAKE_PROFIT" and draft.take_profit_price is None:
            raise TradeValidationError("TAKE_PROFIT orders need take_profit_price or take_profit_percent")
        if draft.order_type == "BRACKET" and (draft.stop_loss_price is None or draft.take_profit_price is None):
            raise TradeValidationError("BRACKET orders need both a stop-loss and a take-profit level")

        cost = None
        if entry:
            costs = trade_costs(entry, draft.quantity)
            cost = {
                "base_cost": costs.base,
                "fee": costs.fee,
                "slippage": costs.slippage,
                "total": costs.buy_total if draft.side == "BUY" else costs.sell_proceeds,
            }
            draft.fee_estimate = costs.fee
            draft.slippage_estimate = costs.slippage
            draft.total_cost_estimate = cost["total"]

        created: list[AdvancedOrder] = []
        try:
            if draft.order_type == "OCO":
                draft.oco_pair_id = _new_oco_id(self.clock().timestamp())
            main = self.store.orders.create(draft)
            created.append(main)
            sibling = None
            if main.order_type == "BRACKET":
                main = self._spawn_bracket_children(main, created)
            elif main.order_type == "OCO":
                sibling = self._spawn_oco_sibling(main, order_data["oco_pair"], created)
        except Exception as exc:
            for order in created:
                self.store.orders.update(order.id, {"status": "CANCELLED", "status_note": f"creation failed: {exc}"})
            self.events.critical("orders", f"Order creation rolled back: {exc}", {"symbol": draft.symbol}, event_type="order_error")
            raise

        self.events.info(
            "orders",
            f"{main.order_type} {main.side} {main.symbol} x {main.quantity:g} created",
            {"order_id": main.id, "ai_confidence": main.ai_confidence},
        )
        return {
            "success": True,
            "order": main,
            "children": [order for order in created if order.parent_order_id == main.id],
            "oco_sibling": sibling,
            "ai_analysis": advice,
            "cost_estimate": cost,
            "market_data": asdict(market),
            "message": f"Order created successfully. AI confidence: {main.ai_confidence:.0f}%",
        }

    def _spawn_bracket_children(self, parent: AdvancedOrder, created: list[AdvancedOrder]) -> AdvancedOrder:
        exit_side = "SELL" if parent.side == "BUY" else "BUY"
        group = _new_oco_id(self.clock().timestamp())
        common = {
            "symbol": parent.symbol,
            "side": exit_side,
            "quantity": parent.quantity,
            "account_id": parent.account_id,
            "parent_order_id": parent.id,
            "oco_pair_id": group,
            "created_at": parent.created_at,
            "last_checked": parent.created_at,
        }
        stop = self.store.orders.create(AdvancedOrder(order_type="STOP_LOSS", stop_loss_price=parent.stop_loss_price, **common))
        created.append(stop)
        take = self.store.orders.create(AdvancedOrder(order_type="TAKE_PROFIT", take_profit_price=parent.take_profit_price, **common))
        created.append(take)
        return self.store.orders.update(parent.id, {"child_order_ids": [stop.id, take.id]}, expected_version=parent.version)

    def _spawn_oco_sibling(self, main: AdvancedOrder, pair: dict, created: list[AdvancedOrder]) -> AdvancedOrder:
        order_type = str(pair.get("order_type") or "").upper()
        side = str(pair.get("side") or main.side).upper()
        if order_type not in ORDER_TYPES or order_type in ("BRACKET", "OCO"):
            raise TradeValidationError("oco_pair.order_type must be MARKET, STOP_LOSS or TAKE_PROFIT")
        if side not in SIDES:
            raise TradeValidationError("oco_pair.side must be BUY or SELL")

        entry = _optional_price(pair, "entry_price") or main.entry_price
        stop = _optional_price(pair, "stop_loss_price")
        take = _optional_price(pair, "take_profit_price")
        if stop is None and _optional_float(pair, "stop_loss_percent") is not None and entry:
            stop = percent_price(entry, float(pair["stop_loss_percent"]))
        if take is None and _optional_float(pair, "take_profit_percent") is not None and entry:
            take = percent_price(entry, float(pair["take_profit_percent"]))
        if order_type == "STOP_LOSS" and stop is None:
            raise TradeValidationError("oco_pair STOP_LOSS needs a stop-loss level")
        if order_type == "TAKE_PROFIT" and take is None:
            raise TradeValidationError("oco_pair TAKE_PROFIT needs a take-profit level")

        sibling = self.store.orders.create(
            AdvancedOrder(
                symbol=main.symbol,
                order_type=order_type,
                side=side,
                quantity=main.quantity,
                entry_price=entry,
                stop_loss_price=stop,
                take_profit_price=take,
                account_id=main.account_id,
                oco_pair_id=main.oco_pair_id,
                created_at=main.created_at,
                last_checked=main.created_at,
            )
        )
        created.append(sibling)
        logger.info("OCO pair created: {} & {}", main.id, sibling.id)
        return sibling

    # ── Check / execute ───────────────────────────────────────────

    def _lock_for(self, order: AdvancedOrder):
        if order.oco_pair_id:
            return keyed_lock("oco", order.oco_pair_id)
        return keyed_lock("order", order.id)

    def check(self, account_id: str | None = None) -> dict:
        criteria: dict[str, Any] = {"status": "PENDING"}
        if account_id:
            criteria["account_id"] = account_id
        pending = self.store.orders.filter(order_by="created_at", **criteria)
        results = [self._check_one(order.id) for order in pending]
        return {"success": True, "checked": len(pending), "results": results}

    def _check_one(self, order_id: str) -> dict:
        order = self.store.orders.get(order_id)
        if order is None or order.status != "PENDING":
            return {"order_id": order_id, "status": "SKIPPED", "reason": "No longer pending"}

        with self._lock_for(order):
            # another fill in the same pass may already have cancelled this order
            order = self.store.orders.require(order_id)
            if order.status != "PENDING":
                return {"order_id": order_id, "status": order.status, "reason": "Resolved earlier in this pass"}
            try:
                return self._evaluate(order)
            except Exception as exc:
                self.events.warning(
                    "orders", f"Error processing order {order.id}: {exc}", {"order_id": order.id}, event_type="order_error"
                )
                return {"order_id": order.id, "status": "ERROR", "error": str(exc)}

    def _evaluate(self, order: AdvancedOrder) -> dict:
        now = self.clock().isoformat()
        if order.parent_order_id:
            parent = self.store.orders.get(order.parent_order_id)
            if parent is None or parent.status != "FILLED":
                self.store.orders.update(order.id, {"last_checked": now})
                return {"order_id": order.id, "status": "PENDING", "reason": "Waiting for parent order fill"}

        market = self.market_snapshot(order.symbol)
        order = self.store.orders.update(order.id, {"last_checked": now}, expected_version=order.version)
        if market.price <= 0:
            self.events.warning("orders", f"No usable price for {order.symbol}; order left pending", {"order_id": order.id})
            return {"order_id": order.id, "status": "PENDING", "reason": "Quote unavailable"}

        if not should_trigger(order, market):
            return {"order_id": order.id, "status": "PENDING", "reason": "Conditions not met"}

        logger.info("Order triggered: {} {} {} {}", order.id, order.symbol, order.order_type, order.side)
        execution = self.execute(order, market)
        if not execution["success"]:
            return {"order_id": order.id, "status": "PENDING", "reason": execution["message"]}
        return {"order_id": order.id, "status": "EXECUTED", "execution": execution}

    def execute(self, order: AdvancedOrder, market: MarketSnapshot) -> dict:
        if self.execution_delay_seconds:
            self._sleep(self.execution_delay_seconds)

        price = market.price
        costs = trade_costs(price, order.quantity)
        if order.side == "BUY" and self.store.auto_trades.count(
            account_id=order.account_id, symbol=order.symbol, status="OPEN", origin="auto"
        ):
            self.store.orders.update(order.id, {"status_note": AUTO_HELD_NOTE})
            logger.info("Order {} left pending: {} is held by the auto-trader", order.id, order.symbol)
            return {"success": False, "message": AUTO_HELD_NOTE}

        if self.trade_service is not None:
            settlement = self.trade_service.execute(order.side, order.symbol, order.quantity, order.account_id, price=price)
            if not settlement.success:
                self.store.orders.update(order.id, {"status_note": settlement.message})
                self.events.warning(
                    "orders",
                    f"Ledger rejected {order.side} {order.symbol} for order {order.id}: {settlement.message}",
                    {"order_id": order.id},
                    event_type="settlement",
                )
                return {"success": False, "message": settlement.message}

        trade = self._book_trade(order, price, market)
        filled_time = self.clock().isoformat()
        self.store.orders.update(
            order.id,
            {"status": "FILLED", "filled_price": price, "filled_quantity": order.quantity, "filled_time": filled_time},
            expected_version=order.version,
        )
        logger.info("Order filled: {} {} @ ${:.2f}", order.symbol, order.side, price)

        if order.oco_pair_id:
            self.cancel_oco_group(order.oco_pair_id, except_order_id=order.id)

        return {
            "success": True,
            "filled_price": price,
            "cost_breakdown": {
                "base_cost": costs.base,
                "fee": costs.fee,
                "slippage": costs.slippage,
                "total": costs.buy_total if order.side == "BUY" else costs.sell_proceeds,
            },
            "trade": trade,
        }

    def _book_trade(self, order: AdvancedOrder, price: float, market: MarketSnapshot) -> AutoTrade | None:
        costs = trade_costs(price, order.quantity)
        now = self.clock().isoformat()
        reason = f"Advanced order: {order.order_type} {order.side} executed at ${price:.2f}. {order.ai_reasoning}".strip()
        open_trade = self.store.auto_trades.first(
            account_id=order.account_id, symbol=order.symbol, status="OPEN", origin="order"
        )

        if order.side == "BUY":
            if open_trade is not None:
                shares = open_trade.shares + order.quantity
                return self.store.auto_trades.update(
                    open_trade.id,
                    {
                        "shares": shares,
                        "buy_price": (open_trade.buy_price * open_trade.shares + price * order.quantity) / shares,
                        "total_cost": open_trade.total_cost + costs.buy_total,
                        "fees": open_trade.fees + costs.fee + costs.slippage,
                    },
                    expected_version=open_trade.version,
                )
            return self.store.auto_trades.create(
                AutoTrade(
                    symbol=order.symbol,
                    shares=order.quantity,
                    buy_price=price,
                    total_cost=costs.buy_total,
                    entry_time=now,
                    account_id=order.account_id,
                    fees=costs.fee + costs.slippage,
                    entry_confidence=order.ai_confidence,
                    entry_flow_strength=market.pressure,
                    entry_reason=reason,
                    origin="order",
                )
            )

        if open_trade is None:
            logger.warning("SELL order {} filled with no open trade for {}", order.id, order.symbol)
            return None

        sold = min(order.quantity, open_trade.shares)
        pl_amount = (price - open_trade.buy_price) * sold
        pl_percent = (price - open_trade.buy_price) / open_trade.buy_price * 100 if open_trade.buy_price else 0.0
        closing = {
            "sell_price": price,
            "exit_time": now,
            "pl_amount": pl_amount,
            "pl_percent": pl_percent,
            "trade_type": "WIN" if pl_amount >= 0 else "LOSS",
            "exit_reason": reason,
            "status": "CLOSED",
        }
        if sold >= open_trade.shares:
            closed = self.store.auto_trades.update(
                open_trade.id,
                {**closing, "fees": open_trade.fees + costs.fee + costs.slippage},
                expected_version=open_trade.version,
            )
        else:
            remaining = open_trade.shares - sold
            cost_share = open_trade.total_cost * sold / open_trade.shares
            self.store.auto_trades.update(
                open_trade.id,
                {"shares": remaining, "total_cost": open_trade.total_cost - cost_share},
                expected_version=open_trade.version,
            )
            closed = self.store.auto_trades.create(
                replace(
                    open_trade,
                    shares=sold,
                    total_cost=cost_share,
                    fees=costs.fee + costs.slippage,
                    id="",
                    version=0,
                    **closing,
                )
            )
        logger.info("Position closed: {}, P/L {:+.2f}%", order.symbol, pl_percent)
        return closed

    # ── Cancel ────────────────────────────────────────────────────

    def cancel_oco_group(self, oco_pair_id: str, except_order_id: str | None = None) -> list[str]:
        cancelled: list[str] = []
        with keyed_lock("oco", oco_pair_id):
            now = self.clock().isoformat()
            for order in self.store.orders.filter(oco_pair_id=oco_pair_id):
                if order.id == except_order_id or order.status in TERMINAL_ORDER_STATUSES:
                    continue
                self.store.orders.update(order.id, {"status": "CANCELLED", "last_checked": now})
                cancelled.append(order.id)
                logger.info("OCO order cancelled: {}", order.id)
        return cancelled

    def cancel(self, order_id: str) -> dict:
        order = self.store.orders.get(order_id)
        if order is None:
            return {"success": False, "error": "Order not found"}

        with self._lock_for(order):
            order = self.store.orders.require(order_id)
            if order.status in TERMINAL_ORDER_STATUSES:
                return {"success": False, "error": f"Order already {order.status}", "order": order}

            now = self.clock().isoformat()
            order = self.store.orders.update(order.id, {"status": "CANCELLED", "last_checked": now})
            cancelled = [order.id]
            for child_id in order.child_order_ids:
                child = self.store.orders.get(child_id)
                if child is None or child.status in TERMINAL_ORDER_STATUSES:
                    continue
                with self._lock_for(child):
                    self.store.orders.update(child_id, {"status": "CANCELLED", "last_checked": now})
                cancelled.append(child_id)
            if order.oco_pair_id:
                cancelled.extend(self.cancel_oco_group(order.oco_pair_id, except_order_id=order.id))

        self.events.info("orders", f"Order {order_id} cancelled", {"cancelled": cancelled})
        return {"success": True, "message": "Order cancelled", "cancelled": cancelled, "order": order}
