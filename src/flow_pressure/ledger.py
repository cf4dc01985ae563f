"""Paper-trading ledger.

Every mutation of an account goes through ``ledger_guarded``: the account's
keyed lock is taken, the account and its positions are inspected and
repaired by ``LedgerGuard`` before the operation runs, and the totals are
reconciled afterwards.  The invariants kept are

* ``total_value == cash_balance + equity_value`` and ``cash_balance >= 0``;
* every stored position has ``quantity > 0`` and ``avg_cost >= 0``.

Rejected trades never touch cash or positions but are still written to the
``trade_records`` audit table.
"""

from __future__ import annotations

import functools
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .db import Store
from .errors import QuoteUnavailableError
from .events import EventLog
from .locks import keyed_lock
from .models import SIDES, Account, PortfolioPosition, TradeRecord
from .quotes import QuoteSource
from .session import Clock, get_market_session, utc_now
from .settings import settings


SESSION_REJECTION = "Simulated orders are only accepted during the regular session (09:30-16:00 ET)."
QUANTITY_EPSILON = 1e-9


def _valid(value: Any) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value) and value >= 0


@dataclass
class TradeCosts:
    base: float
    fee: float
    slippage: float

    @property
    def buy_total(self) -> float:
        return self.base + self.fee + self.slippage

    @property
    def sell_proceeds(self) -> float:
        return self.base - self.fee - self.slippage


def trade_costs(price: float, quantity: float, fee_rate: float | None = None, slippage_rate: float | None = None) -> TradeCosts:
    fee_rate = settings.fee_rate if fee_rate is None else fee_rate
    slippage_rate = settings.slippage_rate if slippage_rate is None else slippage_rate
    base = price * quantity
    return TradeCosts(base=base, fee=base * fee_rate, slippage=base * slippage_rate)


@dataclass
class TradeResult:
    success: bool
    action: str
    symbol: str
    quantity: float
    message: str
    fill_price: float = 0.0
    fee: float = 0.0
    slippage: float = 0.0
    total: float = 0.0
    cash_balance: float | None = None
    cost_basis: float | None = None
    realized_pnl: float | None = None
    account: Account | None = None
    position: PortfolioPosition | None = None
    record: TradeRecord | None = None
    sync_error_pct: float | None = None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "action": self.action,
            "symbol": self.symbol,
            "quantity": self.quantity,
            "message": self.message,
            "fill_price": self.fill_price,
            "fee": round(self.fee, 4),
            "slippage": round(self.slippage, 4),
            "total": round(self.total, 4),
            "cash_balance": self.cash_balance,
            "realized_pnl": self.realized_pnl,
        }


class LedgerGuard:
    """Detects and repairs invariant violations in accounts and positions."""

    def __init__(self, store: Store, events: EventLog, clock: Clock = utc_now) -> None:
        self.store = store
        self.events = events
        self.clock = clock

    def load_account(self, account_id: str, create: bool = True) -> Account | None:
        account = self.store.accounts.get(account_id)
        if account is None and create:
            cash = float(settings.paper_starting_cash)
            account = self.store.accounts.create(
                Account(
                    cash_balance=cash,
                    equity_value=0.0,
                    total_value=cash,
                    last_update=self.clock().isoformat(),
                    id=account_id,
                )
            )
            self.events.info("ledger", f"New account created for {account_id}", {"account_id": account_id})
        return account

    def repair_account(self, account: Account) -> Account:
        fixes: list[str] = []
        cash, equity, total = account.cash_balance, account.equity_value, account.total_value
        if not _valid(cash):
            fixes.append(f"Invalid cash_balance {cash}, fixing to 0")
            cash = 0.0
        if not _valid(equity):
            fixes.append(f"Invalid equity_value {equity}, fixing to 0")
            equity = 0.0
        if not _valid(total):
            fixes.append(f"Invalid total_value {total}, recalculating")
            total = cash + equity
        if not fixes:
            return account

        self.events.critical(
            "ledger",
            "Account data corruption detected and fixed",
            {"account_id": account.id, "fixes": fixes},
            event_type="ledger_repair",
        )
        return self.store.accounts.update(
            account.id,
            {"cash_balance": cash, "equity_value": equity, "total_value": total, "last_update": self.clock().isoformat()},
            expected_version=account.version,
        )

    def repair_position(self, position: PortfolioPosition) -> PortfolioPosition | None:
        """Returns the repaired position, or None when it was deleted."""
        fixes: list[str] = []
        quantity, avg_cost = position.quantity, position.avg_cost
        if not _valid(quantity):
            fixes.append(f"Invalid quantity {quantity}, fixing to 0")
            quantity = 0.0
        if not _valid(avg_cost):
            fallback = position.current_price if _valid(position.current_price) else 0.0
            fixes.append(f"Invalid avg_cost {avg_cost}, fixing to {fallback}")
            avg_cost = fallback

        if fixes:
            self.events.critical(
                "ledger",
                f"Position data corruption detected and fixed for {position.symbol}",
                {"account_id": position.account_id, "symbol": position.symbol, "fixes": fixes},
                event_type="ledger_repair",
            )

        if quantity <= QUANTITY_EPSILON:
            self.store.positions.delete(position.id)
            return None
        if not fixes:
            return position
        return self.store.positions.update(
            position.id,
            {"quantity": quantity, "avg_cost": avg_cost, "updated_at": self.clock().isoformat()},
            expected_version=position.version,
        )

    def inspect(self, account_id: str, create: bool = True) -> tuple[Account | None, list[PortfolioPosition]]:
        account = self.load_account(account_id, create=create)
        if account is None:
            return None, []
        account = self.repair_account(account)
        positions = [
            repaired
            for position in self.store.positions.filter(account_id=account_id)
            if (repaired := self.repair_position(position)) is not None
        ]
        return account, positions

    def reconcile(self, account_id: str, reference_total: float | None = None) -> tuple[Account, float]:
        """Recompute equity and total from positions; return the account and sync error %."""
        account = self.store.accounts.require(account_id)
        equity = 0.0
        for position in self.store.positions.filter(account_id=account_id):
            mark = position.current_price if _valid(position.current_price) and position.current_price > 0 else position.avg_cost
            if _valid(position.quantity) and _valid(mark):
                equity += position.quantity * mark
        if not _valid(equity):
            self.events.critical("ledger", f"Invalid equity_value calculated: {equity}, resetting", {"account_id": account_id})
            equity = 0.0

        cash = account.cash_balance if _valid(account.cash_balance) else 0.0
        total = cash + equity
        reference = account.total_value if reference_total is None else reference_total
        sync_error = abs(reference - total) / total * 100 if total > 0 and _valid(reference) else 0.0
        if sync_error > settings.ledger_sync_tolerance_pct:
            self.events.warning(
                "ledger",
                f"High sync error detected: {sync_error:.2f}%",
                {"account_id": account_id, "reference_total": reference, "recomputed_total": total},
            )

        account = self.store.accounts.update(
            account_id,
            {"cash_balance": cash, "equity_value": equity, "total_value": total, "last_update": self.clock().isoformat()},
            expected_version=account.version,
        )
        return account, sync_error


def ledger_guarded(method: Callable[..., TradeResult]) -> Callable[..., TradeResult]:
    """Run a ledger mutation under the account lock with pre- and post-checks.

    The wrapped method receives the repaired ``Account`` in place of the
    account id.  Successful BUY/SELL results are reconciled against the
    pre-trade total minus the trade's fee and slippage.
    """

    @functools.wraps(method)
    def wrapper(self: "Ledger", account_id: str, *args: Any, **kwargs: Any) -> TradeResult:
        with keyed_lock("ledger", account_id):
            account, _ = self.guard.inspect(account_id)
            result = method(self, account, *args, **kwargs)
            if result.success and result.action in SIDES:
                reference = account.total_value - result.fee - result.slippage
                result.account, result.sync_error_pct = self.guard.reconcile(account_id, reference)
                result.cash_balance = result.account.cash_balance
            return result

    return wrapper


class Ledger:
    def __init__(
        self,
        store: Store,
        events: EventLog | None = None,
        clock: Clock = utc_now,
        fee_rate: float | None = None,
        slippage_rate: float | None = None,
        record_retries: int | None = None,
        record_retry_delay: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.events = events or EventLog(store)
        self.clock = clock
        self.guard = LedgerGuard(store, self.events, clock)
        self.fee_rate = settings.fee_rate if fee_rate is None else fee_rate
        self.slippage_rate = settings.slippage_rate if slippage_rate is None else slippage_rate
        self.record_retries = settings.trade_record_retries if record_retries is None else record_retries
        self.record_retry_delay = (
            settings.trade_record_retry_delay_seconds if record_retry_delay is None else record_retry_delay
        )
        self._sleep = sleep

    # ── Audit ─────────────────────────────────────────────────────

    def record_trade(self, record: TradeRecord) -> TradeRecord:
        for attempt in range(self.record_retries + 1):
            try:
                return self.store.trades.create(record)
            except Exception as exc:
                if attempt == self.record_retries:
                    self.events.critical(
                        "ledger",
                        f"Failed to record trade after {self.record_retries} retries: {exc}",
                        {"symbol": record.symbol, "action": record.action, "account_id": record.account_id},
                    )
                    raise
                self._sleep(self.record_retry_delay)
        raise AssertionError("unreachable")

    def reject(
        self,
        account_id: str,
        symbol: str,
        quantity: float,
        note: str,
        fill_price: float = 0.0,
        cash: float | None = None,
        session: str | None = None,
    ) -> TradeResult:
        now = self.clock()
        recorded_cash = 0.0 if cash is None else cash
        record = self.record_trade(
            TradeRecord(
                account_id=account_id,
                timestamp=now.isoformat(),
                action="REJECTED",
                symbol=symbol,
                quantity=quantity,
                fill_price=fill_price,
                cash_before=recorded_cash,
                cash_after=recorded_cash,
                note=note,
                market_session=session or get_market_session(now),
            )
        )
        self.events.info("trade", f"REJECTED {symbol} x {quantity}: {note}", {"account_id": account_id})
        return TradeResult(
            success=False,
            action="REJECTED",
            symbol=symbol,
            quantity=quantity,
            message=note,
            fill_price=fill_price,
            cash_balance=cash,
            record=record,
        )

    def _record_fill(self, account: Account, action: str, symbol: str, quantity: float, price: float,
                     costs: TradeCosts, cash_after: float, note: str) -> TradeRecord:
        now = self.clock()
        return self.record_trade(
            TradeRecord(
                account_id=account.id,
                timestamp=now.isoformat(),
                action=action,
                symbol=symbol,
                quantity=quantity,
                fill_price=price,
                fee=costs.fee,
                slippage=costs.slippage,
                cash_before=account.cash_balance,
                cash_after=cash_after,
                note=note,
                market_session=get_market_session(now),
            )
        )

    # ── Mutations ─────────────────────────────────────────────────

    @ledger_guarded
    def buy(self, account: Account, symbol: str, quantity: float, price: float) -> TradeResult:
        costs = trade_costs(price, quantity, self.fee_rate, self.slippage_rate)
        if account.cash_balance < costs.buy_total:
            return self.reject(
                account.id, symbol, quantity, "Insufficient funds, order not filled.",
                fill_price=price, cash=account.cash_balance,
            )

        now = self.clock().isoformat()
        existing = self.store.positions.first(account_id=account.id, symbol=symbol)
        if existing is not None:
            existing = self.guard.repair_position(existing)
        if existing is not None:
            total_shares = existing.quantity + quantity
            avg_cost = (existing.avg_cost * existing.quantity + price * quantity) / total_shares
            position = self.store.positions.update(
                existing.id,
                {
                    "quantity": total_shares,
                    "avg_cost": avg_cost,
                    "current_price": price,
                    "unrealized_pnl": (price - avg_cost) * total_shares,
                    "unrealized_pnl_pct": (price - avg_cost) / avg_cost * 100 if avg_cost else 0.0,
                    "updated_at": now,
                },
                expected_version=existing.version,
            )
        else:
            position = self.store.positions.create(
                PortfolioPosition(
                    account_id=account.id,
                    symbol=symbol,
                    quantity=quantity,
                    avg_cost=price,
                    current_price=price,
                    updated_at=now,
                )
            )

        cash_after = account.cash_balance - costs.buy_total
        self.store.accounts.update(account.id, {"cash_balance": cash_after, "last_update": now}, expected_version=account.version)
        message = f"Bought {symbol} x {quantity:g} at ${price:.2f} (simulated)."
        record = self._record_fill(account, "BUY", symbol, quantity, price, costs, cash_after, message)
        self.events.info("trade", f"BUY executed: {symbol} x {quantity:g} @ ${price:.2f}", {"account_id": account.id})
        return TradeResult(
            success=True,
            action="BUY",
            symbol=symbol,
            quantity=quantity,
            message=message,
            fill_price=price,
            fee=costs.fee,
            slippage=costs.slippage,
            total=costs.buy_total,
            cash_balance=cash_after,
            position=position,
            record=record,
        )

    @ledger_guarded
    def sell(self, account: Account, symbol: str, quantity: float, price: float) -> TradeResult:
        position = self.store.positions.first(account_id=account.id, symbol=symbol)
        if position is not None:
            position = self.guard.repair_position(position)
        if position is None or position.quantity + QUANTITY_EPSILON < quantity:
            return self.reject(
                account.id, symbol, quantity, "Insufficient shares, order not filled.",
                fill_price=price, cash=account.cash_balance,
            )

        now = self.clock().isoformat()
        costs = trade_costs(price, quantity, self.fee_rate, self.slippage_rate)
        remaining = position.quantity - quantity
        remaining_position: PortfolioPosition | None = None
        if remaining <= QUANTITY_EPSILON:
            self.store.positions.delete(position.id)
        else:
            remaining_position = self.store.positions.update(
                position.id,
                {
                    "quantity": remaining,
                    "current_price": price,
                    "unrealized_pnl": (price - position.avg_cost) * remaining,
                    "unrealized_pnl_pct": (price - position.avg_cost) / position.avg_cost * 100 if position.avg_cost else 0.0,
                    "updated_at": now,
                },
                expected_version=position.version,
            )

        cash_after = account.cash_balance + costs.sell_proceeds
        self.store.accounts.update(account.id, {"cash_balance": cash_after, "last_update": now}, expected_version=account.version)
        message = f"Sold {symbol} x {quantity:g} at ${price:.2f} (simulated)."
        record = self._record_fill(account, "SELL", symbol, quantity, price, costs, cash_after, message)
        self.events.info("trade", f"SELL executed: {symbol} x {quantity:g} @ ${price:.2f}", {"account_id": account.id})
        return TradeResult(
            success=True,
            action="SELL",
            symbol=symbol,
            quantity=quantity,
            message=message,
            fill_price=price,
            fee=costs.fee,
            slippage=costs.slippage,
            total=costs.sell_proceeds,
            cash_balance=cash_after,
            cost_basis=position.avg_cost,
            realized_pnl=(price - position.avg_cost) * quantity,
            position=remaining_position,
            record=record,
        )

    def revalue(self, account_id: str, quote_source: QuoteSource | None = None) -> dict:
        """Mark every position to the latest quote and recompute the account totals."""
        with keyed_lock("ledger", account_id):
            stored_positions = self.store.positions.count(account_id=account_id)
            account, positions = self.guard.inspect(account_id, create=False)
            if account is None:
                return {"success": False, "error": f"Account {account_id} not found"}

            removed = stored_positions - len(positions)
            now = self.clock().isoformat()
            for position in positions:
                price = self._latest_price(position.symbol, quote_source)
                if price is None or not _valid(price) or price <= 0:
                    self.events.warning(
                        "ledger", f"Invalid price for {position.symbol}: {price}", {"symbol": position.symbol, "price": price}
                    )
                    continue
                pnl = (price - position.avg_cost) * position.quantity
                pnl_pct = (price - position.avg_cost) / position.avg_cost * 100 if position.avg_cost else 0.0
                if not (math.isfinite(pnl) and math.isfinite(pnl_pct)):
                    self.events.warning("ledger", f"Invalid P/L calculation for {position.symbol}", {"symbol": position.symbol})
                    continue
                self.store.positions.update(
                    position.id,
                    {"current_price": price, "unrealized_pnl": pnl, "unrealized_pnl_pct": pnl_pct, "updated_at": now},
                    expected_version=position.version,
                )

            account, _ = self.guard.reconcile(account_id)
            stored = self.store.accounts.require(account_id)
            sync_error = (
                abs(stored.total_value - (stored.cash_balance + stored.equity_value)) / stored.total_value * 100
                if stored.total_value > 0
                else 0.0
            )

        response = {
            "success": True,
            "cash_balance": account.cash_balance,
            "equity_value": account.equity_value,
            "total_value": account.total_value,
            "sync_error": f"{sync_error:.4f}%",
        }
        if removed > 0:
            response["warnings"] = f"{removed} invalid position(s) removed"
        return response

    def _latest_price(self, symbol: str, quote_source: QuoteSource | None) -> float | None:
        if quote_source is not None:
            try:
                return quote_source.get_quote(symbol).last_price
            except QuoteUnavailableError as exc:
                self.events.warning("ledger", f"Quote unavailable for {symbol}: {exc}", {"symbol": symbol})
                return None
        quote = self.store.quotes.latest(symbol)
        return quote.last_price if quote is not None else None


class TradeService:
    """Manual BUY/SELL entry point with session gating and request validation."""

    def __init__(
        self,
        store: Store,
        ledger: Ledger | None = None,
        quote_source: QuoteSource | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.clock = clock
        self.ledger = ledger or Ledger(store, clock=clock)
        self.events = self.ledger.events
        self.quote_source = quote_source

    def execute(
        self,
        action: str,
        symbol: str,
        quantity: float,
        account_id: str | None = None,
        price: float | None = None,
    ) -> TradeResult:
        account_id = account_id or settings.default_account_id
        action = str(action or "").upper()
        symbol = str(symbol or "").upper().strip()

        problem = self._validate(action, symbol, quantity, price)
        if problem:
            return self.ledger.reject(account_id, symbol or "?", _as_quantity(quantity), problem)

        session = get_market_session(self.clock())
        if session != "REG":
            return self.ledger.reject(account_id, symbol, float(quantity), SESSION_REJECTION, session=session)

        if price is None:
            price = self._current_price(symbol)
            if price is None:
                self.events.warning("trade", f"No quote found for {symbol}", {"symbol": symbol})
                return self.ledger.reject(account_id, symbol, float(quantity), f"Stock quote not found for {symbol}.")

        if action == "BUY":
            return self.ledger.buy(account_id, symbol, float(quantity), float(price))
        return self.ledger.sell(account_id, symbol, float(quantity), float(price))

    @staticmethod
    def _validate(action: str, symbol: str, quantity: Any, price: float | None) -> str:
        if action not in SIDES:
            return f"Invalid action {action!r}; expected BUY or SELL."
        if not symbol:
            return "Symbol is required."
        if not isinstance(quantity, (int, float)) or isinstance(quantity, bool) or not math.isfinite(quantity) or quantity <= 0:
            return "Quantity must be a positive number."
        if price is not None and (not math.isfinite(price) or price <= 0):
            return "Price must be a positive number."
        return ""

    def _current_price(self, symbol: str) -> float | None:
        if self.quote_source is not None:
            try:
                quote = self.quote_source.get_quote(symbol)
            except QuoteUnavailableError:
                quote = None
            if quote is not None and _valid(quote.last_price) and quote.last_price > 0:
                return quote.last_price
        quote = self.store.quotes.latest(symbol)
        if quote is not None and _valid(quote.last_price) and quote.last_price > 0:
            return quote.last_price
        return None


def _as_quantity(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0
