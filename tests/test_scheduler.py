from conftest import StubQuoteSource, no_sleep

from flow_pressure.advisor import NullAdvisor
from flow_pressure.scheduler import FlowScheduler
from flow_pressure.services import Services


def build_services(store, clock) -> Services:
    return Services(store=store, quote_source=StubQuoteSource(), advisor=NullAdvisor(), clock=clock, sleep=no_sleep)


class TestFlowScheduler:
    def test_registers_every_interval_job(self, store, reg_clock):
        jobs = FlowScheduler(build_services(store, reg_clock)).jobs()
        assert set(jobs) == {"quote_refresh", "pressure", "signal_scan", "order_check", "autotrader"}
        assert all(seconds > 0 for _, seconds in jobs.values())

    def test_jobs_skip_outside_the_session(self, store, closed_clock):
        calls = []
        scheduler = FlowScheduler(build_services(store, closed_clock))
        scheduler._session_gated("quote_refresh", lambda: calls.append(1))()
        assert calls == []

    def test_failed_pass_is_logged_not_raised(self, store, reg_clock):
        calls = []

        def boom():
            calls.append(1)
            raise RuntimeError("quote feed down")

        FlowScheduler(build_services(store, reg_clock))._session_gated("quote_refresh", boom)()
        assert calls == [1]

    def test_advisorless_services(self, store, reg_clock):
        assert build_services(store, reg_clock).advisor is None
