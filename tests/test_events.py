import requests

from flow_pressure.alerts import AlertRouter
from flow_pressure.events import EventLog


class FakeResponse:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class TestAlertRouter:
    def test_disabled_without_webhook(self):
        router = AlertRouter(webhook_url="", event_types_csv="spi_alert")
        assert router.send("spi_alert", "SPI jumped") is False

    def test_filters_event_types(self, monkeypatch):
        sent = []
        monkeypatch.setattr(requests, "post", lambda url, json, timeout: sent.append((url, json)) or FakeResponse())
        router = AlertRouter(webhook_url="https://hooks.example/flow", event_types_csv="spi_alert, order_error")

        assert router.send("spi_alert", "SPI jumped", {"symbol": "AAPL"}, "warning") is True
        assert router.send("settlement", "done") is False

        assert len(sent) == 1
        url, payload = sent[0]
        assert url == "https://hooks.example/flow"
        assert payload == {
            "event_type": "spi_alert",
            "severity": "warning",
            "message": "SPI jumped",
            "metadata": {"symbol": "AAPL"},
        }


class TestEventLog:
    def test_persists_and_filters_by_severity(self, store):
        log = EventLog(store, AlertRouter(webhook_url=""))
        log.info("orders", "created")
        log.critical("ledger", "repaired", {"fixes": ["cash"]})

        assert [entry.message for entry in log.recent()] == ["repaired", "created"]
        critical = log.recent(severity="critical")
        assert len(critical) == 1
        assert critical[0].details == {"fixes": ["cash"]}

    def test_unknown_severity_becomes_warning(self, store):
        entry = EventLog(store, AlertRouter(webhook_url="")).record("x", "odd", severity="debug")
        assert entry.severity == "warning"

    def test_webhook_failure_does_not_raise(self, store, monkeypatch):
        monkeypatch.setattr(requests, "post", lambda url, json, timeout: FakeResponse(500))
        log = EventLog(store, AlertRouter(webhook_url="https://hooks.example/flow", event_types_csv="order_error"))

        entry = log.critical("orders", "rollback", event_type="order_error")

        assert entry is not None
        assert store.events.count(severity="critical") == 1
