"""Run one pass of every handler immediately.

Exercises the full pipeline against the configured database:
  quote refresh -> pressure -> SPI -> signal scan -> order check -> auto-trader
"""
import sys
import time

sys.path.insert(0, "src")

from flow_pressure.logging_config import configure_logging
from flow_pressure.services import Services
from flow_pressure.settings import settings


def main():
    print("=" * 60)
    print("FLOW PRESSURE SMOKE TEST")
    print(f"Watchlist: {', '.join(settings.watchlist)}")
    print(f"Advisor:   {settings.ai_provider}")
    print(f"Database:  {settings.db_path}")
    print("=" * 60)

    configure_logging(settings.log_level)
    services = Services().initialize()
    services.autotrader.initialize()

    print(f"\nStarting pass at {time.strftime('%H:%M:%S')}...")
    t0 = time.time()
    summary = services.run_cycle()
    print(f"Pass completed in {time.time() - t0:.1f}s")

    for key, value in summary.items():
        if key != "autotrader":
            print(f"  {key:22s} {value}")

    signals = services.store.signals.filter(order_by="timestamp", descending=True, limit=10)
    if signals:
        print(f"\nRecent signals ({len(signals)}):")
        for item in signals:
            score = item.intensity if item.signal_type == "IN" else item.panic
            print(f"  {item.symbol:8s} {item.signal_type:4s} score={score} cont={item.continuation_prob}%")
    else:
        print("\nNo signals recorded.")

    orders = services.store.orders.filter(order_by="created_at", descending=True, limit=10)
    if orders:
        print(f"\nRecent orders ({len(orders)}):")
        for order in orders:
            print(f"  {order.side:4s} {order.symbol:8s} {order.order_type:11s} qty={order.quantity:g} [{order.status}]")
    else:
        print("\nNo orders placed.")


if __name__ == "__main__":
    main()
