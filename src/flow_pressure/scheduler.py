from __future__ import annotations

from collections.abc import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .quotes import refresh_quotes
from .services import Services
from .session import is_trading_session
from .settings import settings


class FlowScheduler:
    """Re-invokes the handlers on fixed cadences while the regular session is open."""

    def __init__(self, services: Services) -> None:
        self.services = services
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _session_gated(self, name: str, handler: Callable[[], object]) -> Callable[[], None]:
        def job() -> None:
            if not is_trading_session(self.services.clock()):
                return
            try:
                handler()
            except Exception as exc:
                # one failed pass must not unschedule the job
                logger.exception("Scheduled job {} failed: {}", name, exc)

        return job

    def jobs(self) -> dict[str, tuple[Callable[[], object], int]]:
        services = self.services
        return {
            "quote_refresh": (
                lambda: refresh_quotes(settings.watchlist, services.quote_source, services.store, services.clock),
                settings.quote_refresh_interval_seconds,
            ),
            "pressure": (lambda: services.pressure.calculate(settings.watchlist), settings.pressure_interval_seconds),
            "signal_scan": (lambda: services.signals.scan(settings.watchlist), settings.signal_scan_interval_seconds),
            "order_check": (services.orders.check, settings.order_check_interval_seconds),
            "autotrader": (lambda: services.autotrader.scan_and_trade(settings.watchlist), settings.autotrader_interval_seconds),
        }

    def start(self) -> None:
        for name, (handler, seconds) in self.jobs().items():
            self.scheduler.add_job(
                self._session_gated(name, handler),
                trigger=IntervalTrigger(seconds=seconds),
                id=name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.add_job(
            self.services.autotrader.end_of_day_settlement,
            trigger=CronTrigger(
                day_of_week="mon-fri",
                hour=settings.session_close_hour,
                minute=settings.session_close_minute,
            ),
            id="end_of_day_settlement",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "Scheduler started: {} interval jobs, settlement at {:02d}:{:02d} {}",
            len(self.jobs()),
            settings.session_close_hour,
            settings.session_close_minute,
            settings.timezone,
        )

    def stop(self) -> None:
        self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
