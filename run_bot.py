"""
  ============================================
   FLOW PRESSURE -- One-Click Launcher
  ============================================

  Usage:
    python run_bot.py                # HTTP API + scheduled handlers
    python run_bot.py --once         # single pass of every handler, then exit
    python run_bot.py --loop         # run passes in the foreground
    python run_bot.py --loop --interval 60   # seconds between passes

  Each pass:
    1. Refreshes quotes for the watchlist
    2. Scores pressure and semantic pressure (SPI)
    3. Scans for IN/OUT money-flow signals
    4. Checks pending advanced orders
    5. Runs one auto-trader cycle (regular session only)
"""

import argparse
import os
import signal
import sys
import time

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "src"))

from loguru import logger

from flow_pressure.logging_config import configure_logging
from flow_pressure.main import run_service
from flow_pressure.services import Services
from flow_pressure.session import market_status
from flow_pressure.settings import settings


# ── Safe shutdown ─────────────────────────────────────────────────
_shutdown_requested = False


def _signal_handler(signum, frame):
    global _shutdown_requested
    _shutdown_requested = True
    logger.info("Graceful stop requested... finishing current pass")


def print_status(services: Services, summary: dict, cycle: int) -> None:
    account = services.store.accounts.get(settings.default_account_id)
    open_trades = services.store.auto_trades.filter(status="OPEN")
    pending = services.store.orders.count(status="PENDING")
    status = market_status(services.clock())

    print()
    print("=" * 62)
    print(f"  PASS {cycle}  --  session {status['session']} ({status['reason']})")
    print("=" * 62)
    if account is not None:
        print(f"  Cash:        ${account.cash_balance:,.2f}")
        print(f"  Equity:      ${account.equity_value:,.2f}")
        print(f"  Total:       ${account.total_value:,.2f}")
    print(f"  Quotes:      {summary['quotes_stored']} stored")
    print(f"  Pressure:    market avg {summary['market_avg_pressure']:.1f}")
    print(f"  Signals:     {summary['signals_detected']} detected, {summary['spi_alerts']} SPI alerts")
    print(f"  Orders:      {summary['orders_executed']}/{summary['orders_checked']} executed, {pending} pending")
    auto = summary["autotrader"]
    print(f"  AutoTrader:  {auto.get('message') or auto.get('error') or str(auto.get('total_actions', 0)) + ' actions'}")
    if open_trades:
        print("  OPEN TRADES:")
        for trade in open_trades:
            print(f"    {trade.symbol:8s} {trade.shares:g} @ ${trade.buy_price:.2f}  [{trade.origin}]")
    print("=" * 62)


def run_passes(once: bool, interval_seconds: int) -> None:
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    configure_logging(settings.log_level, settings.log_file)
    services = Services().initialize()
    services.autotrader.initialize()
    cycle = 0

    while not _shutdown_requested:
        cycle += 1
        try:
            summary = services.run_cycle()
        except Exception as exc:
            logger.exception("Pass {} failed: {}", cycle, exc)
        else:
            print_status(services, summary, cycle)

        if once:
            break
        waited = 0
        while waited < interval_seconds and not _shutdown_requested:
            time.sleep(1)
            waited += 1

    logger.info("Stopped after {} pass(es)", cycle)


def main():
    parser = argparse.ArgumentParser(
        description="Flow pressure paper-trading engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--once", action="store_true", help="Run a single pass then exit")
    parser.add_argument("--loop", action="store_true", help="Run passes in the foreground instead of the API")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between passes (default: 60)")
    args = parser.parse_args()

    if args.once or args.loop:
        run_passes(once=args.once, interval_seconds=max(1, args.interval))
    else:
        run_service()


if __name__ == "__main__":
    main()
