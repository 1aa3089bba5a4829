"""Tests for OrchestrationDispatcher -- inline and pooled bundle drivers."""

import threading
import time

import pytest

from bundle_batch.services.dispatcher import OrchestrationDispatcher


class TestInline:
    def test_result_is_resolved_immediately(self):
        dispatcher = OrchestrationDispatcher(lambda bundle_id: f"ran {bundle_id}", inline=True)
        future = dispatcher.submit("b-1")
        assert future.done()
        assert future.result() == "ran b-1"

    def test_failure_is_carried_by_future(self):
        def run(bundle_id):
            raise RuntimeError("boom")

        dispatcher = OrchestrationDispatcher(run, inline=True)
        future = dispatcher.submit("b-1")
        assert isinstance(future.exception(), RuntimeError)


class TestPooled:
    def test_runs_every_bundle(self):
        ran: list[str] = []
        lock = threading.Lock()

        def run(bundle_id):
            with lock:
                ran.append(bundle_id)
            return bundle_id

        dispatcher = OrchestrationDispatcher(run, max_concurrent_bundles=3)
        futures = [dispatcher.submit(f"b-{i}") for i in range(10)]
        assert sorted(f.result(timeout=5) for f in futures) == sorted(f"b-{i}" for i in range(10))
        dispatcher.shutdown()
        assert sorted(ran) == sorted(f"b-{i}" for i in range(10))

    def test_concurrency_is_bounded(self):
        lock = threading.Lock()
        active = 0
        peak = 0

        def run(bundle_id):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1

        dispatcher = OrchestrationDispatcher(run, max_concurrent_bundles=2)
        for i in range(8):
            dispatcher.submit(f"b-{i}")
        dispatcher.shutdown(wait=True)
        assert 1 <= peak <= 2

    def test_one_failure_does_not_affect_others(self, captured_logs):
        def run(bundle_id):
            if bundle_id == "b-bad":
                raise ValueError("bad bundle")
            return bundle_id

        dispatcher = OrchestrationDispatcher(run, max_concurrent_bundles=2)
        bad = dispatcher.submit("b-bad")
        good = dispatcher.submit("b-good")
        assert good.result(timeout=5) == "b-good"
        assert isinstance(bad.exception(timeout=5), ValueError)
        dispatcher.shutdown()
        assert any(
            r["message"] == "bundle_run_failed" and r.get("bundle_id") == "b-bad"
            for r in captured_logs()
        )

    def test_shutdown_is_idempotent(self):
        dispatcher = OrchestrationDispatcher(lambda b: b)
        dispatcher.submit("b-1").result(timeout=5)
        dispatcher.shutdown()
        dispatcher.shutdown()

    def test_bound_must_be_positive(self):
        with pytest.raises(ValueError):
            OrchestrationDispatcher(lambda b: b, max_concurrent_bundles=0)
