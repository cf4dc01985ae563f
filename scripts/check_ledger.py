"""Mark the paper account to market and print its positions.

Runs the same revaluation the API exposes, so any invalid position is
repaired or removed and the sync error is reported.
"""
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT / "src") not in sys.path:
    sys.path.insert(0, str(ROOT / "src"))

from flow_pressure.services import Services
from flow_pressure.settings import settings

account_id = sys.argv[1] if len(sys.argv) > 1 else settings.default_account_id
services = Services().initialize()
outcome = services.ledger.revalue(account_id, services.quote_source)
if not outcome["success"]:
    print(outcome["error"])
    sys.exit(1)

print(f"Account {account_id} mark-to-market:")
total_pnl = 0.0
for position in services.store.positions.filter(account_id=account_id, order_by="symbol"):
    total_pnl += position.unrealized_pnl
    print(
        f"- {position.symbol:8s} qty={position.quantity:g} avg=${position.avg_cost:.4f} "
        f"mark=${position.current_price:.4f} pnl=${position.unrealized_pnl:+.2f} ({position.unrealized_pnl_pct:+.2f}%)"
    )

print(f"\nCash:   ${outcome['cash_balance']:,.2f}")
print(f"Equity: ${outcome['equity_value']:,.2f}")
print(f"Total:  ${outcome['total_value']:,.2f}")
print(f"Unrealized PnL: ${total_pnl:+.2f}")
print(f"Sync error: {outcome['sync_error']}")
if "warnings" in outcome:
    print(f"Warnings: {outcome['warnings']}")
