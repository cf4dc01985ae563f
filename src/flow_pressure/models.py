"""Record types persisted by the engine.

Each record is a plain dataclass with an ``id`` and an optimistic-locking
``version`` as its last two fields.  Optional values are ``None``; literal
fields are validated by the repository on insert (see ``LITERAL_FIELDS``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


Side = Literal["BUY", "SELL"]
OrderType = Literal["MARKET", "STOP_LOSS", "TAKE_PROFIT", "BRACKET", "OCO"]
OrderStatus = Literal["PENDING", "FILLED", "CANCELLED"]
PressureCondition = Literal["NONE", "ABOVE", "BELOW"]
SentimentTrigger = Literal["ANY", "BULLISH", "BEARISH", "NEUTRAL"]
SignalType = Literal["IN", "OUT", "NONE"]
Severity = Literal["info", "warning", "critical"]
Session = Literal["PRE", "REG", "POST", "CLOSED"]

SIDES = ("BUY", "SELL")
ORDER_TYPES = ("MARKET", "STOP_LOSS", "TAKE_PROFIT", "BRACKET", "OCO")
ORDER_STATUSES = ("PENDING", "FILLED", "CANCELLED")
TERMINAL_ORDER_STATUSES = ("FILLED", "CANCELLED")
PRESSURE_CONDITIONS = ("NONE", "ABOVE", "BELOW")
SENTIMENT_TRIGGERS = ("ANY", "BULLISH", "BEARISH", "NEUTRAL")
SIGNAL_TYPES = ("IN", "OUT", "NONE")
SEVERITIES = ("info", "warning", "critical")
TRADE_ACTIONS = ("BUY", "SELL", "REJECTED")
TRADE_STATUSES = ("OPEN", "CLOSED")
PRESSURE_ACTIONS = ("BUY", "HOLD", "SELL")
SENTIMENT_LABELS = ("positive", "neutral", "negative")
MODEL_STATES = ("Stable", "Learning", "Adjusting", "Optimized")


@dataclass
class Quote:
    symbol: str
    last_price: float
    prev_close: float = 0.0
    change_pct: float = 0.0
    volume: float = 0.0
    high: float = 0.0
    low: float = 0.0
    open: float = 0.0
    session: str = "CLOSED"
    source: str = ""
    timestamp: str = ""
    error_flag: bool = False
    id: str = ""
    version: int = 0


@dataclass
class PressureRecord:
    symbol: str
    price: float
    day_high: float
    day_low: float
    volume: float
    pressure_index: float
    volatility_adjustment: float
    adjusted_pressure: float
    final_pressure: float
    action: str
    zone: str
    suggestion: str = ""
    timestamp: str = ""
    id: str = ""
    version: int = 0


@dataclass
class SemanticPressure:
    symbol: str
    spi: float
    base_pressure: float
    sentiment_score: float
    sentiment: str
    positive_keywords: list[str] = field(default_factory=list)
    negative_keywords: list[str] = field(default_factory=list)
    top_keyword: str | None = None
    spi_change: float = 0.0
    alert_triggered: bool = False
    news_count: int = 0
    social_mentions: int = 0
    suggestion: str = ""
    keyword_weights: dict[str, float] = field(default_factory=dict)
    timestamp: str = ""
    id: str = ""
    version: int = 0

    @property
    def keywords(self) -> list[str]:
        return [*self.positive_keywords, *self.negative_keywords]


@dataclass
class Signal:
    symbol: str
    signal_type: str
    continuation_prob: int
    intensity: int | None = None
    panic: int | None = None
    conditions: list[str] = field(default_factory=list)
    recommendation: str = ""
    debug_notes: str = ""
    current_price: float | None = None
    recent_volume: float | None = None
    baseline_volume: float | None = None
    algorithm_version: str = ""
    timestamp: str = ""
    id: str = ""
    version: int = 0


@dataclass
class AdvancedOrder:
    symbol: str
    order_type: str
    side: str
    quantity: float
    entry_price: float | None = None
    stop_loss_price: float | None = None
    stop_loss_percent: float | None = None
    take_profit_price: float | None = None
    take_profit_percent: float | None = None
    pressure_trigger: float | None = None
    pressure_condition: str = "NONE"
    sentiment_trigger: str = "ANY"
    status: str = "PENDING"
    account_id: str = "default"
    parent_order_id: str | None = None
    child_order_ids: list[str] = field(default_factory=list)
    oco_pair_id: str | None = None
    ai_confidence: float = 50.0
    ai_timing: str = "EXECUTE_NOW"
    ai_risk_level: str = "MEDIUM"
    ai_reasoning: str = ""
    fee_estimate: float = 0.0
    slippage_estimate: float = 0.0
    total_cost_estimate: float = 0.0
    created_at: str = ""
    last_checked: str = ""
    filled_price: float | None = None
    filled_quantity: float | None = None
    filled_time: str | None = None
    status_note: str = ""
    id: str = ""
    version: int = 0


@dataclass
class AutoTrade:
    symbol: str
    shares: float
    buy_price: float
    total_cost: float
    entry_time: str
    status: str = "OPEN"
    account_id: str = "default"
    sell_price: float | None = None
    exit_time: str | None = None
    pl_amount: float = 0.0
    pl_percent: float = 0.0
    trade_type: str | None = None
    fees: float = 0.0
    entry_confidence: float = 50.0
    entry_flow_strength: float | None = None
    entry_reason: str = ""
    exit_reason: str = ""
    origin: str = "auto"
    id: str = ""
    version: int = 0


@dataclass
class Account:
    cash_balance: float
    equity_value: float = 0.0
    total_value: float = 0.0
    last_update: str = ""
    id: str = ""
    version: int = 0


@dataclass
class PortfolioPosition:
    account_id: str
    symbol: str
    quantity: float
    avg_cost: float
    current_price: float = 0.0
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    updated_at: str = ""
    id: str = ""
    version: int = 0


@dataclass
class TradeRecord:
    account_id: str
    timestamp: str
    action: str
    symbol: str
    quantity: float
    fill_price: float = 0.0
    fee: float = 0.0
    slippage: float = 0.0
    cash_before: float = 0.0
    cash_after: float = 0.0
    note: str = ""
    market_session: str = "CLOSED"
    id: str = ""
    version: int = 0


@dataclass
class LogEntry:
    timestamp: str
    source: str
    message: str
    severity: str = "info"
    details: dict | None = None
    id: str = ""
    version: int = 0


@dataclass
class ModelConfig:
    model_version: str = "v4.0"
    is_active: bool = False
    latency_compensation_sec: float = 2.8
    volume_weight: float = 30.0
    social_sentiment_weight: float = 25.0
    price_momentum_weight: float = 25.0
    institutional_flow_weight: float = 20.0
    institutional_flow_placeholder: float = 60.0
    min_confidence_threshold: float = 70.0
    min_volume_ratio: float = 3.0
    min_social_score: float = 20.0
    profit_target_pct: float = 3.5
    stop_loss_pct: float = -1.8
    max_position_size_pct: float = 5.0
    max_open_positions: int = 3
    avg_holding_time_sec: float = 60.0
    momentum_fade_min_gain_pct: float = 0.5
    extreme_move_pct: float = 5.0
    slippage_pct: float = 0.05
    commission_rate: float = 0.008
    win_rate_floor: float = 65.0
    optimized_return_pct: float = 20.0
    model_state: str = "Stable"
    learning_notes: str = ""
    total_trades_executed: int = 0
    last_performance_win_rate: float | None = None
    last_performance_return: float | None = None
    updated_at: str = ""
    id: str = ""
    version: int = 0


@dataclass
class PerformanceReport:
    report_date: str
    capital_start: float
    capital_end: float
    total_trades: int
    win_trades: int
    lose_trades: int
    win_rate: float
    avg_return_pct: float
    total_return_pct: float
    profit_usd: float
    best_stock: str | None = None
    best_stock_return: float | None = None
    worst_stock: str | None = None
    worst_stock_return: float | None = None
    high_confidence_win_rate: float = 0.0
    ai_learning_state: str = "Stable"
    suggestion: str = ""
    message: str = ""
    trade_details: list[dict] = field(default_factory=list)
    created_at: str = ""
    id: str = ""
    version: int = 0


LITERAL_FIELDS: dict[type, dict[str, tuple[str, ...]]] = {
    Quote: {"session": ("PRE", "REG", "POST", "CLOSED")},
    PressureRecord: {"action": PRESSURE_ACTIONS},
    SemanticPressure: {"sentiment": SENTIMENT_LABELS},
    Signal: {"signal_type": SIGNAL_TYPES},
    AdvancedOrder: {
        "order_type": ORDER_TYPES,
        "side": SIDES,
        "status": ORDER_STATUSES,
        "pressure_condition": PRESSURE_CONDITIONS,
        "sentiment_trigger": SENTIMENT_TRIGGERS,
    },
    AutoTrade: {"status": TRADE_STATUSES},
    TradeRecord: {"action": TRADE_ACTIONS},
    LogEntry: {"severity": SEVERITIES},
    ModelConfig: {"model_state": MODEL_STATES},
}
