"""Read-only aggregators over closed trades.

``generate_performance_report`` summarises one day of closed AutoTrades and
persists a ``PerformanceReport``.  ``backtest_trade_history`` replays closed
trades through a filter/sizing strategy to show how a different set of
rules would have fared over the same history.
"""

from __future__ import annotations

import math
import statistics
from dataclasses import asdict, dataclass, field
from datetime import datetime

from loguru import logger

from .db import Store
from .models import AutoTrade, PerformanceReport
from .session import Clock, utc_now
from .settings import settings


HIGH_CONFIDENCE = 70.0


def _learning_state(win_rate: float) -> str:
    if win_rate >= 70:
        return "Optimized"
    if win_rate >= 60:
        return "Learning"
    if win_rate < 55:
        return "Adjusting"
    return "Stable"


def _advice(win_rate: float, total_return_pct: float) -> tuple[str, str]:
    if win_rate < 65:
        return (
            "Increase social sentiment weight by 10%, reduce volume weight by 5%.",
            "Market volatility detected. Strategy is being adjusted automatically.",
        )
    if total_return_pct > 20:
        return (
            "Model performing well. Maintain current strategy.",
            f"Outstanding session: simulated profit +{total_return_pct:.1f}%.",
        )
    return (
        "Performance stable. Continue monitoring market conditions.",
        f"Solid performance with {win_rate:.1f}% win rate.",
    )


def closed_trades_on(store: Store, report_date: str, origin: str | None = None) -> list[AutoTrade]:
    criteria = {"status": "CLOSED"}
    if origin:
        criteria["origin"] = origin
    return [
        trade
        for trade in store.auto_trades.filter(order_by="exit_time", **criteria)
        if (trade.exit_time or "")[:10] == report_date
    ]


def generate_performance_report(
    store: Store,
    report_date: str | None = None,
    origin: str | None = None,
    capital_start: float | None = None,
    clock: Clock = utc_now,
) -> dict:
    report_date = report_date or clock().date().isoformat()
    trades = closed_trades_on(store, report_date, origin)
    if not trades:
        return {"success": False, "message": f"No completed trades found for {report_date}"}

    capital_start = settings.autotrader_capital_usd if capital_start is None else capital_start
    profit = sum(trade.pl_amount for trade in trades)
    capital_end = capital_start + profit
    wins = [trade for trade in trades if trade.trade_type == "WIN"]
    win_rate = len(wins) / len(trades) * 100
    returns = [trade.pl_percent for trade in trades]
    total_return_pct = profit / capital_start * 100 if capital_start else 0.0

    best = max(trades, key=lambda trade: trade.pl_percent)
    worst = min(trades, key=lambda trade: trade.pl_percent)
    confident = [trade for trade in trades if trade.entry_confidence >= HIGH_CONFIDENCE]
    confident_wins = sum(1 for trade in confident if trade.trade_type == "WIN")
    suggestion, message = _advice(win_rate, total_return_pct)

    report = PerformanceReport(
        report_date=report_date,
        capital_start=capital_start,
        capital_end=round(capital_end, 2),
        total_trades=len(trades),
        win_trades=len(wins),
        lose_trades=len(trades) - len(wins),
        win_rate=round(win_rate, 2),
        avg_return_pct=round(statistics.fmean(returns), 4),
        total_return_pct=round(total_return_pct, 4),
        profit_usd=round(profit, 2),
        best_stock=best.symbol,
        best_stock_return=round(best.pl_percent, 4),
        worst_stock=worst.symbol,
        worst_stock_return=round(worst.pl_percent, 4),
        high_confidence_win_rate=round(confident_wins / len(confident) * 100, 2) if confident else 0.0,
        ai_learning_state=_learning_state(win_rate),
        suggestion=suggestion,
        message=message,
        trade_details=[
            {
                "symbol": trade.symbol,
                "result": trade.trade_type,
                "return_pct": round(trade.pl_percent, 2),
                "pl_amount": round(trade.pl_amount, 2),
                "confidence": round(trade.entry_confidence),
                "origin": trade.origin,
            }
            for trade in trades
        ],
        created_at=clock().isoformat(),
    )

    existing = store.reports.first(report_date=report_date)
    if existing is None:
        saved = store.reports.create(report)
    else:
        changes = {key: value for key, value in asdict(report).items() if key not in ("id", "version")}
        saved = store.reports.update(existing.id, changes, expected_version=existing.version)

    logger.info(
        "Performance report {}: {} trades, win rate {:.1f}%, return {:+.2f}%, state {}",
        report_date,
        saved.total_trades,
        saved.win_rate,
        saved.total_return_pct,
        saved.ai_learning_state,
    )
    return {
        "success": True,
        "report": saved,
        "summary": {
            "date": report_date,
            "total_trades": saved.total_trades,
            "win_rate": f"{saved.win_rate:.1f}%",
            "total_return": f"{saved.total_return_pct:.1f}%",
            "profit_usd": f"{saved.profit_usd:.2f}",
            "ai_state": saved.ai_learning_state,
        },
    }


# ── Backtest ──────────────────────────────────────────────────────

@dataclass
class BacktestStrategy:
    """Filters and sizing applied when replaying trade history."""
    name: str = "default"
    entry_confidence_min: float = 60.0
    volatility_threshold: float = 10.0   # skip trades that moved more than this many %
    max_consecutive_losses: int = 3      # skip one trade after this many losses in a row
    max_position_size: float = 0.10      # fraction of capital per trade
    profit_target: float = 3.5
    stop_loss: float = -1.8
    max_daily_loss: float = -10.0        # stop replaying once down this many %
    initial_capital: float = 10_000.0


@dataclass
class BacktestResult:
    strategy: str
    initial_capital: float
    final_capital: float
    total_return: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    avg_win: float
    avg_loss: float
    largest_win: float
    largest_loss: float
    profit_factor: float
    sharpe_ratio: float
    max_drawdown: float
    consecutive_wins_max: int
    consecutive_losses_max: int
    avg_trade_duration_minutes: float
    equity_curve: list[dict] = field(default_factory=list)
    trade_log: list[dict] = field(default_factory=list)
    performance_by_symbol: dict[str, dict] = field(default_factory=dict)
    stopped_early: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def _minutes_between(start: str | None, end: str | None) -> float:
    if not start or not end:
        return 0.0
    try:
        return (datetime.fromisoformat(end) - datetime.fromisoformat(start)).total_seconds() / 60
    except ValueError:
        return 0.0


def backtest_trade_history(strategy: BacktestStrategy, trades: list[AutoTrade]) -> BacktestResult:
    capital = strategy.initial_capital
    peak = capital
    max_drawdown = 0.0
    losses_in_row = 0
    streak_wins = streak_losses = 0
    max_wins = max_losses = 0
    total_minutes = 0.0
    stopped_early = False

    equity_curve: list[dict] = [{"time": None, "equity": capital}]
    trade_log: list[dict] = []
    step_returns: list[float] = []
    by_symbol: dict[str, dict] = {}

    history = sorted((trade for trade in trades if trade.status == "CLOSED"), key=lambda trade: trade.entry_time)
    for trade in history:
        if trade.entry_confidence < strategy.entry_confidence_min:
            continue
        if abs(trade.pl_percent) > strategy.volatility_threshold:
            continue
        if losses_in_row >= strategy.max_consecutive_losses:
            losses_in_row = 0
            continue

        position = capital * strategy.max_position_size
        realised = min(strategy.profit_target, max(strategy.stop_loss, trade.pl_percent))
        pnl = position * realised / 100
        capital_before = capital
        capital += pnl
        peak = max(peak, capital)
        max_drawdown = min(max_drawdown, (capital - peak) / peak * 100 if peak else 0.0)

        won = pnl >= 0
        trade_log.append(
            {
                "symbol": trade.symbol,
                "entry_time": trade.entry_time,
                "exit_time": trade.exit_time,
                "position_size": position,
                "return_pct": realised,
                "pnl": pnl,
                "capital_after": capital,
                "result": "WIN" if won else "LOSS",
            }
        )
        equity_curve.append({"time": trade.exit_time, "equity": capital})
        step_returns.append(pnl / capital_before * 100 if capital_before else 0.0)
        total_minutes += _minutes_between(trade.entry_time, trade.exit_time)

        if won:
            streak_wins, streak_losses, losses_in_row = streak_wins + 1, 0, 0
            max_wins = max(max_wins, streak_wins)
        else:
            streak_wins, streak_losses, losses_in_row = 0, streak_losses + 1, losses_in_row + 1
            max_losses = max(max_losses, streak_losses)

        stats = by_symbol.setdefault(trade.symbol, {"trades": 0, "wins": 0, "total_pnl": 0.0})
        stats["trades"] += 1
        stats["wins"] += int(won)
        stats["total_pnl"] += pnl

        if (capital - strategy.initial_capital) / strategy.initial_capital * 100 <= strategy.max_daily_loss:
            stopped_early = True
            break

    for stats in by_symbol.values():
        stats["win_rate"] = stats["wins"] / stats["trades"] * 100
        stats["avg_pnl"] = stats["total_pnl"] / stats["trades"]

    winners = [entry for entry in trade_log if entry["result"] == "WIN"]
    losers = [entry for entry in trade_log if entry["result"] == "LOSS"]
    gross_win = sum(entry["pnl"] for entry in winners)
    gross_loss = abs(sum(entry["pnl"] for entry in losers))
    if gross_loss > 0:
        profit_factor = gross_win / gross_loss
    else:
        profit_factor = 999.0 if gross_win > 0 else 0.0

    sharpe = 0.0
    if len(step_returns) > 1:
        deviation = statistics.pstdev(step_returns)
        if deviation > 0:
            sharpe = statistics.fmean(step_returns) / deviation * math.sqrt(252)

    count = len(trade_log)
    return BacktestResult(
        strategy=strategy.name,
        initial_capital=strategy.initial_capital,
        final_capital=round(capital, 2),
        total_return=round((capital - strategy.initial_capital) / strategy.initial_capital * 100, 4),
        total_trades=count,
        winning_trades=len(winners),
        losing_trades=len(losers),
        win_rate=round(len(winners) / count * 100, 2) if count else 0.0,
        avg_win=statistics.fmean([entry["return_pct"] for entry in winners]) if winners else 0.0,
        avg_loss=statistics.fmean([entry["return_pct"] for entry in losers]) if losers else 0.0,
        largest_win=max((entry["return_pct"] for entry in trade_log), default=0.0),
        largest_loss=min((entry["return_pct"] for entry in trade_log), default=0.0),
        profit_factor=profit_factor,
        sharpe_ratio=round(sharpe, 4),
        max_drawdown=round(max_drawdown, 4),
        consecutive_wins_max=max_wins,
        consecutive_losses_max=max_losses,
        avg_trade_duration_minutes=total_minutes / count if count else 0.0,
        equity_curve=equity_curve,
        trade_log=trade_log[:100],
        performance_by_symbol=by_symbol,
        stopped_early=stopped_early,
    )
