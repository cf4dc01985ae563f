from __future__ import annotations

from datetime import datetime, timezone

from loguru import logger

from .alerts import AlertRouter
from .db import Store
from .models import SEVERITIES, LogEntry


_LOGURU_LEVELS = {"info": "INFO", "warning": "WARNING", "critical": "CRITICAL"}


class EventLog:
    """Writes domain events to loguru, the ``event_log`` table and the alert webhook.

    ``record`` never raises: a failed insert or webhook call is logged and
    swallowed so that bookkeeping problems cannot abort a trade in flight.
    """

    def __init__(self, store: Store, alerts: AlertRouter | None = None) -> None:
        self.store = store
        self.alerts = alerts or AlertRouter()

    def record(
        self,
        source: str,
        message: str,
        severity: str = "info",
        details: dict | None = None,
        event_type: str | None = None,
    ) -> LogEntry | None:
        if severity not in SEVERITIES:
            severity = "warning"
        logger.log(_LOGURU_LEVELS[severity], "[{}] {}", source, message)

        entry: LogEntry | None = None
        try:
            entry = self.store.events.create(
                LogEntry(
                    timestamp=datetime.now(timezone.utc).isoformat(),
                    source=source,
                    message=message,
                    severity=severity,
                    details=details,
                )
            )
        except Exception as exc:
            logger.error("Failed to persist event from {}: {}", source, exc)

        try:
            self.alerts.send(event_type or "", message, {"source": source, **(details or {})}, severity)
        except Exception as exc:
            logger.warning("Alert routing failed for {}: {}", event_type, exc)
        return entry

    def info(self, source: str, message: str, details: dict | None = None, event_type: str | None = None) -> LogEntry | None:
        return self.record(source, message, "info", details, event_type)

    def warning(self, source: str, message: str, details: dict | None = None, event_type: str | None = None) -> LogEntry | None:
        return self.record(source, message, "warning", details, event_type)

    def critical(self, source: str, message: str, details: dict | None = None, event_type: str | None = None) -> LogEntry | None:
        return self.record(source, message, "critical", details, event_type)

    def recent(self, limit: int = 50, severity: str | None = None) -> list[LogEntry]:
        if severity is None:
            return self.store.events.filter(descending=True, limit=limit)
        return self.store.events.filter(severity=severity, descending=True, limit=limit)
