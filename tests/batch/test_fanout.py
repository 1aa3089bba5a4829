"""
Tests for VehicleFanOut -- bounded concurrency, per-vehicle isolation,
ordered fan-in and crash re-entry.
"""

import threading
import time

import pytest

from bundle_kernel.domain.types import VehicleStatus
from bundle_kernel.exceptions import PermanentError, TransientError
from bundle_batch.services.fanout import (
    RENDER_STAGE,
    UNHANDLED_EXCEPTION,
    VehicleFanOut,
)
from bundle_batch.services.retry import RetryPolicy


@pytest.fixture
def fanout(store):
    return VehicleFanOut(store, concurrency=3, retry_policy=RetryPolicy(max_attempts=2), sleep=lambda s: None)


@pytest.fixture
def bundle(store, seed_bundle):
    seed_bundle("b-1", [("C-1", 10), ("C-2", 20), ("C-3", 30), ("C-4", 40)])
    return store.require_bundle("b-1")


def _render_with(script: dict[str, list[Exception]]):
    lock = threading.Lock()

    def operation(bundle, vehicle):
        with lock:
            errors = script.get(vehicle.contract_id, [])
            error = errors.pop(0) if errors else None
        if error is not None:
            raise error
        return {"render_artifact_ref": f"mem://{vehicle.contract_id}"}

    return operation


class TestFanOut:
    def test_all_succeed(self, fanout, store, bundle):
        outcome = fanout.run(bundle, store.query_vehicles("b-1"), RENDER_STAGE, _render_with({}))

        assert outcome.all_succeeded
        assert outcome.succeeded_ids == ("C-1", "C-2", "C-3", "C-4")
        assert outcome.dispatched == 4
        for vehicle in store.list_vehicles("b-1"):
            assert vehicle.status is VehicleStatus.RENDERED
            assert vehicle.render_artifact_ref == f"mem://{vehicle.contract_id}"
            assert vehicle.attempt_count == 1

    def test_transient_failure_retried_per_vehicle(self, fanout, store, bundle):
        operation = _render_with({"C-2": [TransientError("timeout")]})
        outcome = fanout.run(bundle, store.query_vehicles("b-1"), RENDER_STAGE, operation)

        assert outcome.all_succeeded
        assert store.get_vehicle("b-1", "C-2").attempt_count == 2
        assert store.get_vehicle("b-1", "C-1").attempt_count == 1

    def test_failures_are_isolated(self, fanout, store, bundle):
        operation = _render_with({
            "C-2": [PermanentError("template missing")],
            "C-3": [TransientError("timeout"), TransientError("timeout")],
            "C-4": [ZeroDivisionError("bug")],
        })
        outcome = fanout.run(bundle, store.query_vehicles("b-1"), RENDER_STAGE, operation)

        assert outcome.succeeded_ids == ("C-1",)
        assert outcome.failed_ids == ("C-2", "C-3", "C-4")
        codes = {r.contract_id: r.error_code for r in outcome.failed}
        assert codes == {
            "C-2": "PERMANENT_FAILURE",
            "C-3": "RETRY_EXHAUSTED",
            "C-4": UNHANDLED_EXCEPTION,
        }

        c3 = store.get_vehicle("b-1", "C-3")
        assert c3.status is VehicleStatus.RENDER_FAILED
        assert c3.attempt_count == 2
        assert "ZeroDivisionError" in store.get_vehicle("b-1", "C-4").error_message
        assert store.get_vehicle("b-1", "C-1").status is VehicleStatus.RENDERED

    def test_results_ordered_by_sequence_not_completion(self, fanout, store, bundle):
        delays = {"C-1": 0.06, "C-2": 0.04, "C-3": 0.02, "C-4": 0.0}

        def slow_first(bundle, vehicle):
            time.sleep(delays[vehicle.contract_id])
            return {"render_artifact_ref": vehicle.contract_id}

        outcome = fanout.run(bundle, store.query_vehicles("b-1"), RENDER_STAGE, slow_first)
        assert [r.sequence_no for r in outcome.succeeded] == [10, 20, 30, 40]

    def test_concurrency_is_bounded(self, store, bundle):
        lock = threading.Lock()
        active = 0
        peak = 0

        def tracked(bundle, vehicle):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.03)
            with lock:
                active -= 1
            return {"render_artifact_ref": vehicle.contract_id}

        fanout = VehicleFanOut(store, concurrency=2, sleep=lambda s: None)
        fanout.run(bundle, store.query_vehicles("b-1"), RENDER_STAGE, tracked)
        assert 1 <= peak <= 2

    def test_reentry_skips_settled_vehicles(self, fanout, store, bundle):
        store.update_vehicle_status(
            "b-1", "C-1", [VehicleStatus.READY], VehicleStatus.RENDERED,
            {"render_artifact_ref": "mem://earlier", "attempt_count": 1},
        )
        called: list[str] = []

        def operation(bundle, vehicle):
            called.append(vehicle.contract_id)
            return {"render_artifact_ref": f"mem://{vehicle.contract_id}"}

        outcome = fanout.run(bundle, store.query_vehicles("b-1"), RENDER_STAGE, operation)
        assert sorted(called) == ["C-2", "C-3", "C-4"]
        assert outcome.dispatched == 3
        assert outcome.succeeded_ids == ("C-1", "C-2", "C-3", "C-4")
        assert store.get_vehicle("b-1", "C-1").render_artifact_ref == "mem://earlier"

    def test_logs_stage_context(self, fanout, store, bundle, captured_logs):
        fanout.run(
            bundle, store.query_vehicles("b-1"), RENDER_STAGE,
            _render_with({"C-2": [PermanentError("nope")]}),
        )
        failures = [r for r in captured_logs() if r["message"] == "vehicle_render_failed"]
        assert len(failures) == 1
        assert failures[0]["contract_id"] == "C-2"
        assert failures[0]["bundle_id"] == "b-1"
        assert failures[0]["stage"] == "render"

    def test_concurrency_must_be_positive(self, store):
        with pytest.raises(ValueError):
            VehicleFanOut(store, concurrency=0)
