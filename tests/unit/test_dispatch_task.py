"""
CELERY DISPATCH TASK TESTS

Таск вызывается напрямую (.run), без брокера.
"""
from types import SimpleNamespace

import pytest

import service as service_module
import tasks
from channel_adapters import DeliveryResult


class StubFanout:

    def __init__(self, results=None, error=None):
        self.results = results or {}
        self.error = error
        self.calls = []

    async def dispatch(self, proposal_id):
        self.calls.append(proposal_id)
        if self.error is not None:
            raise self.error
        return self.results


class TestDispatchTask:

    def test_reports_delivery_per_channel(self, monkeypatch):
        fanout = StubFanout({"telegram": DeliveryResult(ok=True), "email": DeliveryResult(ok=False, detail="down")})
        monkeypatch.setattr(service_module, "get_service", lambda: SimpleNamespace(fanout=fanout))

        report = tasks.dispatch_proposal.run("p-1")

        assert report == {"telegram": True, "email": False}
        assert fanout.calls == ["p-1"]

    def test_failure_is_retried(self, monkeypatch):
        fanout = StubFanout(error=ConnectionError("db unreachable"))
        monkeypatch.setattr(service_module, "get_service", lambda: SimpleNamespace(fanout=fanout))

        # outside a worker Task.retry re-raises the original exception
        with pytest.raises(ConnectionError):
            tasks.dispatch_proposal.run("p-1")

    def test_task_is_routed_to_soul_queue(self):
        from celery_config import celery_app

        assert celery_app.conf.task_routes["tasks.*"]["queue"] == "soul"
        assert tasks.dispatch_proposal.name == "tasks.dispatch_proposal"
