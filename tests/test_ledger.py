import math
import sqlite3
import threading

import pytest

from conftest import StubQuoteSource, make_quote, no_sleep

from flow_pressure.ledger import SESSION_REJECTION, Ledger, LedgerGuard, TradeService, trade_costs
from flow_pressure.models import Account, PortfolioPosition


def open_account(store, cash: float = 1000.0, account_id: str = "acct") -> Account:
    return store.accounts.create(Account(cash_balance=cash, equity_value=0.0, total_value=cash, id=account_id))


def assert_consistent(account: Account) -> None:
    assert account.cash_balance >= 0
    assert account.total_value == pytest.approx(account.cash_balance + account.equity_value)


@pytest.fixture
def ledger(store, events, reg_clock) -> Ledger:
    return Ledger(store, events, reg_clock, sleep=no_sleep)


class TestTradeCosts:
    def test_buy_and_sell_totals(self):
        costs = trade_costs(100.0, 5)
        assert costs.base == 500.0
        assert costs.fee == pytest.approx(4.0)
        assert costs.slippage == pytest.approx(0.25)
        assert costs.buy_total == pytest.approx(504.25)
        assert costs.sell_proceeds == pytest.approx(495.75)


class TestLedgerBuySell:
    def test_buy_worked_example(self, store, ledger):
        open_account(store)
        result = ledger.buy("acct", "AAPL", 5, 100.0)

        assert result.success is True
        assert result.cash_balance == pytest.approx(495.75)
        assert result.total == pytest.approx(504.25)
        position = store.positions.first(account_id="acct", symbol="AAPL")
        assert position.quantity == 5
        assert position.avg_cost == 100.0
        assert result.account.equity_value == pytest.approx(500.0)
        assert result.sync_error_pct == pytest.approx(0.0)
        assert_consistent(store.accounts.require("acct"))

    def test_buy_averages_into_existing_position(self, store, ledger):
        open_account(store, cash=10_000.0)
        ledger.buy("acct", "AAPL", 5, 100.0)
        ledger.buy("acct", "AAPL", 5, 110.0)
        position = store.positions.first(account_id="acct", symbol="AAPL")
        assert position.quantity == 10
        assert position.avg_cost == pytest.approx(105.0)
        assert store.positions.count(account_id="acct") == 1

    def test_insufficient_funds_is_rejected_without_mutation(self, store, ledger):
        open_account(store)
        result = ledger.buy("acct", "AAPL", 20, 100.0)

        assert result.success is False
        assert result.action == "REJECTED"
        assert result.message == "Insufficient funds, order not filled."
        assert store.accounts.require("acct").cash_balance == 1000.0
        assert store.positions.count() == 0
        record = store.trades.first(action="REJECTED")
        assert record.cash_before == record.cash_after == 1000.0

    def test_sell_closes_position(self, store, ledger):
        open_account(store)
        ledger.buy("acct", "AAPL", 5, 100.0)
        result = ledger.sell("acct", "AAPL", 5, 110.0)

        assert result.success is True
        assert result.realized_pnl == pytest.approx(50.0)
        assert result.cash_balance == pytest.approx(495.75 + 550.0 - 4.4 - 0.275)
        assert store.positions.count(account_id="acct") == 0
        assert_consistent(store.accounts.require("acct"))

    def test_partial_sell_keeps_remainder(self, store, ledger):
        open_account(store)
        ledger.buy("acct", "AAPL", 5, 100.0)
        result = ledger.sell("acct", "AAPL", 2, 100.0)
        assert result.position.quantity == 3
        assert store.positions.first(account_id="acct").quantity == 3

    def test_insufficient_shares(self, store, ledger):
        open_account(store)
        result = ledger.sell("acct", "AAPL", 1, 100.0)
        assert result.success is False
        assert result.message == "Insufficient shares, order not filled."
        assert store.accounts.require("acct").cash_balance == 1000.0

    def test_every_fill_is_audited(self, store, ledger):
        open_account(store)
        ledger.buy("acct", "AAPL", 5, 100.0)
        record = store.trades.first(action="BUY")
        assert record.fee == pytest.approx(4.0)
        assert record.cash_before == 1000.0
        assert record.cash_after == pytest.approx(495.75)
        assert record.market_session == "REG"

    def test_new_account_uses_starting_cash(self, store, ledger):
        result = ledger.buy("fresh", "AAPL", 1, 10.0)
        assert result.success is True
        account = store.accounts.require("fresh")
        assert account.total_value == pytest.approx(100_000 - 10.0 * 0.008 - 10.0 * 0.0005)


class TestLedgerGuard:
    def test_repairs_corrupted_account(self, store, events, reg_clock):
        store.accounts.create(Account(cash_balance=-50.0, equity_value=math.nan, total_value=5.0, id="acct"))
        guard = LedgerGuard(store, events, reg_clock)

        account, _ = guard.inspect("acct")

        assert account.cash_balance == 0.0
        assert account.equity_value == 0.0
        critical = store.events.filter(severity="critical")
        assert len(critical) == 1
        assert len(critical[0].details["fixes"]) == 2

    def test_invalid_total_is_recalculated(self, store, events, reg_clock):
        store.accounts.create(Account(cash_balance=100.0, equity_value=50.0, total_value=-1.0, id="acct"))
        account = LedgerGuard(store, events, reg_clock).repair_account(store.accounts.require("acct"))
        assert account.total_value == 150.0

    def test_zero_quantity_position_is_removed(self, store, events, reg_clock):
        open_account(store)
        store.positions.create(PortfolioPosition(account_id="acct", symbol="AAPL", quantity=-3.0, avg_cost=10.0))
        _, positions = LedgerGuard(store, events, reg_clock).inspect("acct")
        assert positions == []
        assert store.positions.count() == 0

    def test_invalid_avg_cost_uses_current_price(self, store, events, reg_clock):
        open_account(store)
        store.positions.create(
            PortfolioPosition(account_id="acct", symbol="AAPL", quantity=2.0, avg_cost=-1.0, current_price=12.0)
        )
        _, positions = LedgerGuard(store, events, reg_clock).inspect("acct")
        assert positions[0].avg_cost == 12.0

    def test_trade_proceeds_against_repaired_state(self, store, ledger):
        store.accounts.create(Account(cash_balance=math.inf, total_value=0.0, id="acct"))
        result = ledger.buy("acct", "AAPL", 1, 10.0)
        assert result.success is False
        assert store.accounts.require("acct").cash_balance == 0.0

    def test_reconcile_flags_sync_error(self, store, events, reg_clock):
        open_account(store)
        guard = LedgerGuard(store, events, reg_clock)
        account, sync_error = guard.reconcile("acct", reference_total=1100.0)
        assert account.total_value == 1000.0
        assert sync_error == pytest.approx(10.0)
        assert store.events.count(severity="warning") == 1


class TestRevalue:
    def test_marks_positions_to_market(self, store, ledger):
        open_account(store)
        ledger.buy("acct", "AAPL", 5, 100.0)
        source = StubQuoteSource({"AAPL": make_quote("AAPL", 110.0)})

        outcome = ledger.revalue("acct", source)

        assert outcome["success"] is True
        assert outcome["equity_value"] == pytest.approx(550.0)
        assert outcome["total_value"] == pytest.approx(495.75 + 550.0)
        assert outcome["sync_error"] == "0.0000%"
        position = store.positions.first(account_id="acct")
        assert position.unrealized_pnl == pytest.approx(50.0)
        assert position.unrealized_pnl_pct == pytest.approx(10.0)

    def test_reports_removed_positions(self, store, ledger):
        open_account(store)
        store.positions.create(PortfolioPosition(account_id="acct", symbol="MSFT", quantity=0.0, avg_cost=10.0))
        outcome = ledger.revalue("acct", StubQuoteSource())
        assert outcome["warnings"] == "1 invalid position(s) removed"

    def test_missing_quote_keeps_last_mark(self, store, ledger):
        open_account(store)
        ledger.buy("acct", "AAPL", 5, 100.0)
        outcome = ledger.revalue("acct", StubQuoteSource())
        assert outcome["equity_value"] == pytest.approx(500.0)
        assert store.events.count(severity="warning") == 2

    def test_unknown_account(self, store, ledger):
        assert ledger.revalue("nobody") == {"success": False, "error": "Account nobody not found"}


class TestTradeService:
    def test_rejects_outside_regular_session(self, store, closed_clock):
        open_account(store)
        service = TradeService(store, Ledger(store, clock=closed_clock, sleep=no_sleep), clock=closed_clock)

        result = service.execute("BUY", "AAPL", 1, "acct", price=10.0)

        assert result.success is False
        assert result.message == SESSION_REJECTION
        record = store.trades.first(action="REJECTED")
        assert record.market_session == "CLOSED"
        assert store.accounts.require("acct").cash_balance == 1000.0
        assert store.positions.count() == 0

    def test_validation_failures(self, store, ledger, reg_clock):
        service = TradeService(store, ledger, clock=reg_clock)
        assert service.execute("HOLD", "AAPL", 1, "acct").message == "Invalid action 'HOLD'; expected BUY or SELL."
        assert service.execute("BUY", "", 1, "acct").message == "Symbol is required."
        assert service.execute("BUY", "AAPL", 0, "acct").message == "Quantity must be a positive number."
        assert service.execute("BUY", "AAPL", 1, "acct", price=-5.0).message == "Price must be a positive number."
        assert store.trades.count(action="REJECTED") == 4

    def test_prices_from_quote_source(self, store, ledger, reg_clock):
        open_account(store)
        service = TradeService(store, ledger, StubQuoteSource({"AAPL": make_quote("AAPL", 100.0)}), reg_clock)
        result = service.execute("buy", "aapl", 5, "acct")
        assert result.success is True
        assert result.fill_price == 100.0
        assert result.cash_balance == pytest.approx(495.75)

    def test_falls_back_to_stored_quote(self, store, ledger, reg_clock):
        open_account(store)
        store.quotes.create(make_quote("AAPL", 50.0))
        service = TradeService(store, ledger, StubQuoteSource(), reg_clock)
        assert service.execute("BUY", "AAPL", 1, "acct").fill_price == 50.0

    def test_no_quote_is_rejected(self, store, ledger, reg_clock):
        open_account(store)
        result = TradeService(store, ledger, StubQuoteSource(), reg_clock).execute("BUY", "AAPL", 1, "acct")
        assert result.success is False
        assert result.message == "Stock quote not found for AAPL."


class TestTradeRecordRetries:
    def test_gives_up_after_retries(self, store, events, reg_clock):
        calls = []

        def failing_create(record):
            calls.append(record)
            raise sqlite3.OperationalError("disk I/O error")

        ledger = Ledger(store, events, reg_clock, record_retries=2, sleep=no_sleep)
        store.trades.create = failing_create
        with pytest.raises(sqlite3.OperationalError):
            ledger.reject("acct", "AAPL", 1, "test")
        assert len(calls) == 3
        assert store.events.count(severity="critical") == 1


class TestConcurrentMutation:
    def test_parallel_buys_cannot_double_spend(self, store, events, reg_clock):
        open_account(store, cash=600.0)
        ledger = Ledger(store, events, reg_clock, sleep=no_sleep)
        start = threading.Barrier(2)
        results = []

        def buy():
            start.wait(timeout=5)
            results.append(ledger.buy("acct", "AAPL", 5, 100.0))

        workers = [threading.Thread(target=buy) for _ in range(2)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=30)

        assert sorted(result.success for result in results) == [False, True]
        account = store.accounts.require("acct")
        assert account.cash_balance == pytest.approx(600.0 - 504.25)
        assert_consistent(account)
        assert store.positions.first(account_id="acct").quantity == 5
        assert store.trades.count(action="BUY") == 1
        assert store.trades.count(action="REJECTED") == 1


class TestRejectedCashBalance:
    def test_zero_cash_is_reported(self, store, ledger):
        open_account(store, cash=0.0)
        result = ledger.buy("acct", "AAPL", 1, 10.0)
        assert result.success is False
        assert result.cash_balance == 0.0
        assert result.to_dict()["cash_balance"] == 0.0

    def test_unknown_balance_stays_empty(self, store, ledger):
        result = ledger.reject("acct", "AAPL", 1, "no quote")
        assert result.cash_balance is None
        assert store.trades.first(action="REJECTED").cash_before == 0.0
