from __future__ import annotations


class FlowPressureError(RuntimeError):
    pass


class QuoteUnavailableError(FlowPressureError):
    pass


class AdvisorError(FlowPressureError):
    pass


class AdvisorRateLimitError(AdvisorError):
    """Upstream model provider throttled the request (HTTP 429)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TradeValidationError(FlowPressureError):
    pass


class RecordNotFoundError(FlowPressureError):
    pass


class StaleRecordError(FlowPressureError):
    """Optimistic update lost the race against a concurrent writer."""

    def __init__(self, table: str, record_id: str, expected_version: int) -> None:
        super().__init__(f"{table}:{record_id} changed since version {expected_version}")
        self.table = table
        self.record_id = record_id
        self.expected_version = expected_version


class InvalidRecordError(FlowPressureError, ValueError):
    """A record failed validation at the repository boundary."""
