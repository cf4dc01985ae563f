from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from .errors import RecordNotFoundError, TradeValidationError
from .reports import BacktestStrategy, backtest_trade_history, generate_performance_report
from .services import Services
from .session import market_status
from .settings import settings


class OrdersPayload(BaseModel):
    mode: Literal["create", "check", "cancel"]
    order_data: dict[str, Any] | None = None
    order_id: str | None = None
    account_id: str | None = None


class TradePayload(BaseModel):
    action: str
    symbol: str
    quantity: float
    account_id: str | None = None


class RevaluePayload(BaseModel):
    account_id: str | None = None


class PressurePayload(BaseModel):
    mode: Literal["calculate", "export"] = "calculate"
    symbols: list[str] | None = None
    date: str | None = None


class SentimentPayload(BaseModel):
    mode: Literal["analyze", "export", "learn"] = "analyze"
    symbols: list[str] | None = None
    date: str | None = None


class SignalsPayload(BaseModel):
    mode: Literal["scan", "manual"] = "scan"
    symbols: list[str] | None = None
    include_intelligence: bool | None = None
    analysis: dict[str, Any] | None = None


class AutoTraderPayload(BaseModel):
    mode: Literal["initialize", "scan_and_trade", "end_of_day_settlement"]
    symbols: list[str] | None = None
    activate: bool | None = None
    report_date: str | None = None


class BacktestPayload(BaseModel):
    name: str = "default"
    start_date: str | None = None
    end_date: str | None = None
    initial_capital: float = Field(default=10_000.0, gt=0, le=100_000_000)
    entry_confidence_min: float = Field(default=60.0, ge=0, le=100)
    volatility_threshold: float = Field(default=10.0, gt=0)
    max_consecutive_losses: int = Field(default=3, ge=1)
    max_position_size: float = Field(default=0.10, gt=0, le=1)
    profit_target: float = 3.5
    stop_loss: float = -1.8
    max_daily_loss: float = -10.0


def _symbols(requested: list[str] | None) -> list[str]:
    return [symbol.upper() for symbol in (requested or settings.watchlist)]


def create_app(services: Services | None = None, start_scheduler: bool | None = None) -> FastAPI:
    """Build the HTTP surface over ``services`` (a default set is built when omitted)."""
    services = services or Services()
    run_scheduler = settings.scheduler_enabled if start_scheduler is None else start_scheduler
    app = FastAPI(title="Flow Pressure API", version="0.1.0")
    app.state.services = services
    app.state.scheduler = None

    @app.on_event("startup")
    def on_startup() -> None:
        services.initialize()
        if run_scheduler:
            from .scheduler import FlowScheduler

            app.state.scheduler = FlowScheduler(services)
            app.state.scheduler.start()

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        if app.state.scheduler is not None:
            app.state.scheduler.stop()

    @app.exception_handler(TradeValidationError)
    def handle_validation(request: Request, exc: TradeValidationError) -> JSONResponse:
        logger.info("Rejected {} {}: {}", request.method, request.url.path, exc)
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.exception_handler(RecordNotFoundError)
    def handle_not_found(request: Request, exc: RecordNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.exception_handler(Exception)
    def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on {} {}", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "time": datetime.now(timezone.utc).isoformat(), "market": market_status()}

    @app.post("/orders")
    def post_orders(payload: OrdersPayload) -> dict[str, Any]:
        if payload.mode == "create":
            if not payload.order_data:
                raise TradeValidationError("order_data is required")
            return services.orders.create(payload.order_data)
        if payload.mode == "check":
            return services.orders.check(payload.account_id)
        if not payload.order_id:
            raise TradeValidationError("order_id is required")
        outcome = services.orders.cancel(payload.order_id)
        if not outcome["success"] and outcome.get("error") == "Order not found":
            raise HTTPException(status_code=404, detail=outcome["error"])
        return outcome

    @app.post("/trade")
    def post_trade(payload: TradePayload) -> dict[str, Any]:
        result = services.trades.execute(payload.action, payload.symbol, payload.quantity, payload.account_id)
        return result.to_dict()

    @app.post("/account/revalue")
    def post_revalue(payload: RevaluePayload) -> dict[str, Any]:
        account_id = payload.account_id or settings.default_account_id
        outcome = services.ledger.revalue(account_id, services.quote_source)
        if not outcome["success"]:
            raise HTTPException(status_code=404, detail=outcome["error"])
        return outcome

    @app.post("/pressure")
    def post_pressure(payload: PressurePayload) -> dict[str, Any]:
        if payload.mode == "export":
            return services.pressure.export(payload.date)
        return services.pressure.calculate(_symbols(payload.symbols))

    @app.post("/sentiment")
    def post_sentiment(payload: SentimentPayload) -> dict[str, Any]:
        if payload.mode == "export":
            return services.sentiment.export(payload.date)
        if payload.mode == "learn":
            return services.sentiment.learn(_symbols(payload.symbols))
        return services.sentiment.analyze(_symbols(payload.symbols))

    @app.post("/signals")
    def post_signals(payload: SignalsPayload) -> dict[str, Any]:
        if payload.mode == "manual":
            if not payload.analysis:
                raise TradeValidationError("analysis is required in manual mode")
            return services.signals.evaluate_manual(payload.analysis)
        return services.signals.scan(_symbols(payload.symbols), payload.include_intelligence)

    @app.post("/autotrader")
    def post_autotrader(payload: AutoTraderPayload) -> dict[str, Any]:
        if payload.mode == "initialize":
            return services.autotrader.initialize(payload.activate)
        if payload.mode == "scan_and_trade":
            return services.autotrader.scan_and_trade(payload.symbols)
        return services.autotrader.end_of_day_settlement(payload.report_date)

    @app.get("/reports/{report_date}")
    def get_report(report_date: str, generate: bool = False) -> dict[str, Any]:
        if generate:
            outcome = generate_performance_report(services.store, report_date, clock=services.clock)
            if not outcome["success"]:
                raise HTTPException(status_code=404, detail=outcome["message"])
            return outcome
        report = services.store.reports.first(report_date=report_date)
        if report is None:
            raise HTTPException(status_code=404, detail=f"No report for {report_date}")
        return {"success": True, "report": report}

    @app.post("/backtest")
    def post_backtest(payload: BacktestPayload) -> dict[str, Any]:
        now = services.clock()
        start = payload.start_date or (now - timedelta(days=30)).date().isoformat()
        end = payload.end_date or now.date().isoformat()
        trades = [
            trade
            for trade in services.store.auto_trades.filter(status="CLOSED", order_by="entry_time")
            if start <= trade.entry_time[:10] <= end
        ]
        if not trades:
            raise HTTPException(status_code=404, detail="No closed trades in the requested period")
        options = payload.model_dump(exclude={"start_date", "end_date"})
        result = backtest_trade_history(BacktestStrategy(**options), trades)
        return {"success": True, "start_date": start, "end_date": end, "result": result.to_dict()}

    return app

