"""
Tests for BundleStateStore -- create-if-absent, start-once lock,
compare-and-set transitions, the audit trail and the sweeper queries.

Uses a file-backed SQLite database with real ORM models.
"""

import pytest

from bundle_kernel.domain.types import (
    BundleStatus,
    CreateResult,
    LockResult,
    TransitionResult,
    VehicleStatus,
)
from bundle_kernel.exceptions import (
    BundleAlreadyStartedError,
    BundleNotFoundError,
    ConflictError,
    DuplicateSequenceError,
    InvalidTransitionError,
)


def _advance_to(store, bundle_id: str, target: BundleStatus) -> None:
    """Walk a seeded bundle along the happy path up to ``target``."""
    path = [
        (BundleStatus.NEW, BundleStatus.READY, {"vehicle_count": 1}),
        (BundleStatus.READY, BundleStatus.ASSEMBLING, {}),
        (BundleStatus.ASSEMBLING, BundleStatus.SIGNING, {"unsigned_artifact_ref": "mem://u"}),
        (BundleStatus.SIGNING, BundleStatus.SIGNED, {"signed_artifact_ref": "mem://s"}),
        (BundleStatus.SIGNED, BundleStatus.DELIVERING, {}),
    ]
    for from_status, to_status, fields in path:
        if store.require_bundle(bundle_id).status == target:
            return
        store.update_bundle_status(bundle_id, from_status, to_status, fields)


# =============================================================================
# Create-if-absent
# =============================================================================


class TestCreateHeader:
    def test_first_insert_then_already_exists(self, store):
        assert store.create_header_if_absent("b-1") is CreateResult.INSERTED
        assert store.create_header_if_absent("b-1") is CreateResult.ALREADY_EXISTS

        bundle = store.require_bundle("b-1")
        assert bundle.status is BundleStatus.NEW
        assert bundle.vehicle_count == 0
        assert bundle.started_at is None

    def test_timestamps_from_clock(self, store, clock):
        store.create_header_if_absent("b-1")
        bundle = store.require_bundle("b-1")
        assert bundle.created_at == clock.now()
        assert bundle.updated_at == clock.now()

    def test_logs_creation(self, store, captured_logs):
        store.create_header_if_absent("b-1")
        messages = [r["message"] for r in captured_logs()]
        assert "bundle_header_created" in messages


class TestCreateVehicle:
    def test_insert_returns_stored_vehicle(self, store):
        store.create_header_if_absent("b-1")
        result, vehicle = store.create_vehicle_if_absent("b-1", "C-1", 10)
        assert result is CreateResult.INSERTED
        assert vehicle.status is VehicleStatus.READY
        assert vehicle.sequence_no == 10
        assert vehicle.attempt_count == 0

    def test_replay_never_rewrites(self, store):
        store.create_header_if_absent("b-1")
        store.create_vehicle_if_absent("b-1", "C-1", 10)
        result, vehicle = store.create_vehicle_if_absent("b-1", "C-1", 99)
        assert result is CreateResult.ALREADY_EXISTS
        assert vehicle.sequence_no == 10
        assert store.get_vehicle("b-1", "C-1").sequence_no == 10

    def test_same_contract_in_two_bundles(self, store):
        store.create_header_if_absent("b-1")
        store.create_header_if_absent("b-2")
        assert store.create_vehicle_if_absent("b-1", "C-1", 1)[0] is CreateResult.INSERTED
        assert store.create_vehicle_if_absent("b-2", "C-1", 1)[0] is CreateResult.INSERTED

    def test_no_new_vehicle_after_start(self, store):
        store.create_header_if_absent("b-1")
        store.create_vehicle_if_absent("b-1", "C-1", 1)
        store.try_lock_start("b-1")

        with pytest.raises(BundleAlreadyStartedError) as exc_info:
            store.create_vehicle_if_absent("b-1", "C-2", 2)
        assert exc_info.value.code == "BUNDLE_ALREADY_STARTED"
        assert exc_info.value.contract_id == "C-2"
        assert [v.contract_id for v in store.list_vehicles("b-1")] == ["C-1"]

    def test_existing_vehicle_after_start_is_already_exists(self, store):
        store.create_header_if_absent("b-1")
        store.create_vehicle_if_absent("b-1", "C-1", 1)
        store.try_lock_start("b-1")

        result, vehicle = store.create_vehicle_if_absent("b-1", "C-1", 1)
        assert result is CreateResult.ALREADY_EXISTS
        assert vehicle.contract_id == "C-1"

    def test_vehicle_without_header(self, store):
        with pytest.raises(BundleNotFoundError):
            store.create_vehicle_if_absent("missing", "C-1", 1)

    def test_duplicate_sequence_is_stored_but_rejected_on_query(self, store):
        store.create_header_if_absent("b-1")
        store.create_vehicle_if_absent("b-1", "C-1", 5)
        store.create_vehicle_if_absent("b-1", "C-2", 5)

        assert len(store.list_vehicles("b-1")) == 2
        with pytest.raises(DuplicateSequenceError):
            store.query_vehicles("b-1")


# =============================================================================
# Start-once lock
# =============================================================================


class TestStartLock:
    def test_only_first_caller_acquires(self, store, clock):
        store.create_header_if_absent("b-1")
        assert store.try_lock_start("b-1") is LockResult.ACQUIRED
        assert store.try_lock_start("b-1") is LockResult.ALREADY_STARTED
        assert store.require_bundle("b-1").started_at == clock.now()

    def test_missing_bundle(self, store):
        with pytest.raises(BundleNotFoundError):
            store.try_lock_start("nope")


# =============================================================================
# Compare-and-set
# =============================================================================


class TestUpdateBundleStatus:
    def test_applied_writes_fields_and_audit_row(self, store, seed_bundle):
        seed_bundle("b-1", [("C-1", 1)])
        result = store.update_bundle_status(
            "b-1", BundleStatus.NEW, BundleStatus.READY, {"vehicle_count": 1}, detail="1 vehicle(s)",
        )
        assert result is TransitionResult.APPLIED

        bundle = store.require_bundle("b-1")
        assert bundle.status is BundleStatus.READY
        assert bundle.vehicle_count == 1

        transitions = store.list_transitions("b-1")
        assert len(transitions) == 1
        assert transitions[0].transition_no == 1
        assert transitions[0].from_status is BundleStatus.NEW
        assert transitions[0].to_status is BundleStatus.READY
        assert transitions[0].detail == "1 vehicle(s)"

    def test_reapplying_same_transition_is_idempotent(self, store, seed_bundle):
        seed_bundle("b-1", [("C-1", 1)])
        store.update_bundle_status("b-1", BundleStatus.NEW, BundleStatus.READY)
        result = store.update_bundle_status("b-1", BundleStatus.NEW, BundleStatus.READY)
        assert result is TransitionResult.ALREADY_APPLIED
        assert len(store.list_transitions("b-1")) == 1

    def test_stale_from_status_conflicts(self, store, seed_bundle):
        seed_bundle("b-1", [("C-1", 1)])
        _advance_to(store, "b-1", BundleStatus.ASSEMBLING)

        with pytest.raises(ConflictError) as exc_info:
            store.update_bundle_status("b-1", BundleStatus.NEW, BundleStatus.FAILED)
        assert exc_info.value.actual_status == BundleStatus.ASSEMBLING.value
        assert store.require_bundle("b-1").status is BundleStatus.ASSEMBLING

    def test_invalid_edge(self, store, seed_bundle):
        seed_bundle("b-1", [("C-1", 1)])
        with pytest.raises(InvalidTransitionError):
            store.update_bundle_status("b-1", BundleStatus.NEW, BundleStatus.SIGNED)

    def test_unknown_field(self, store, seed_bundle):
        seed_bundle("b-1", [("C-1", 1)])
        with pytest.raises(ValueError, match="not writable"):
            store.update_bundle_status(
                "b-1", BundleStatus.NEW, BundleStatus.READY, {"status": "DELIVERED"},
            )

    def test_vehicle_count_fixed_after_new(self, store, seed_bundle):
        seed_bundle("b-1", [("C-1", 1)])
        _advance_to(store, "b-1", BundleStatus.READY)
        with pytest.raises(ValueError, match="vehicle_count"):
            store.update_bundle_status(
                "b-1", BundleStatus.READY, BundleStatus.ASSEMBLING, {"vehicle_count": 7},
            )

    def test_expected_guard(self, store, seed_bundle):
        seed_bundle("b-1", [("C-1", 1)])
        _advance_to(store, "b-1", BundleStatus.SIGNING)
        store.update_bundle_status(
            "b-1", BundleStatus.SIGNING, BundleStatus.SIGNING, {"resume_token": "aaa"},
        )

        with pytest.raises(ConflictError):
            store.update_bundle_status(
                "b-1", BundleStatus.SIGNING, BundleStatus.SIGNED,
                {"signed_artifact_ref": "x"}, expected={"resume_token": "bbb"},
            )
        result = store.update_bundle_status(
            "b-1", BundleStatus.SIGNING, BundleStatus.SIGNED,
            {"signed_artifact_ref": "x"}, expected={"resume_token": "aaa"},
        )
        assert result is TransitionResult.APPLIED

    def test_same_status_update_has_no_audit_row(self, store, seed_bundle):
        seed_bundle("b-1", [("C-1", 1)])
        _advance_to(store, "b-1", BundleStatus.SIGNING)
        before = len(store.list_transitions("b-1"))
        store.update_bundle_status(
            "b-1", BundleStatus.SIGNING, BundleStatus.SIGNING, {"sign_request_id": "sr-1"},
        )
        assert len(store.list_transitions("b-1")) == before

    def test_missing_bundle(self, store):
        with pytest.raises(BundleNotFoundError):
            store.update_bundle_status("nope", BundleStatus.NEW, BundleStatus.READY)

    def test_audit_numbers_are_sequential(self, store, seed_bundle):
        seed_bundle("b-1", [("C-1", 1)])
        _advance_to(store, "b-1", BundleStatus.DELIVERING)
        numbers = [t.transition_no for t in store.list_transitions("b-1")]
        assert numbers == [1, 2, 3, 4, 5]


class TestUpdateVehicleStatus:
    def test_cas_moves_once(self, store, seed_bundle):
        seed_bundle("b-1", [("C-1", 1)])
        moved = store.update_vehicle_status(
            "b-1", "C-1", [VehicleStatus.READY], VehicleStatus.RENDERED,
            {"render_artifact_ref": "mem://r", "attempt_count": 1},
        )
        assert moved is True
        again = store.update_vehicle_status(
            "b-1", "C-1", [VehicleStatus.READY], VehicleStatus.RENDER_FAILED,
        )
        assert again is False

        vehicle = store.get_vehicle("b-1", "C-1")
        assert vehicle.status is VehicleStatus.RENDERED
        assert vehicle.render_artifact_ref == "mem://r"

    def test_invalid_vehicle_edge(self, store, seed_bundle):
        seed_bundle("b-1", [("C-1", 1)])
        with pytest.raises(InvalidTransitionError):
            store.update_vehicle_status(
                "b-1", "C-1", [VehicleStatus.READY], VehicleStatus.DELIVERED,
            )


# =============================================================================
# Sweeper queries
# =============================================================================


class TestSweeperQueries:
    def test_expired_waits(self, store, seed_bundle, clock):
        seed_bundle("b-1", [("C-1", 1)])
        _advance_to(store, "b-1", BundleStatus.SIGNING)
        deadline = clock.now()
        store.update_bundle_status(
            "b-1", BundleStatus.SIGNING, BundleStatus.SIGNING,
            {"resume_token": "d", "resume_expires_at": deadline, "sign_request_id": "sr"},
        )

        clock.advance(-1)
        assert store.list_expired_waits(clock.now()) == ()
        clock.advance(1)
        assert store.list_expired_waits(clock.now()) == ("b-1",)

    def test_stalled_bundles(self, store, seed_bundle, clock):
        seed_bundle("b-started", [("C-1", 1)])
        seed_bundle("b-unstarted", [("C-1", 1)], start=False)

        cutoff = clock.now()
        clock.advance(600)
        assert store.list_stalled_bundles(cutoff) == ("b-started",)
        assert store.list_stalled_bundles(cutoff.replace(year=2025)) == ()

    def test_parked_bundle_is_not_stalled(self, store, seed_bundle, clock):
        seed_bundle("b-parked", [("C-1", 1)])
        seed_bundle("b-unsent", [("C-1", 1)])
        for bundle_id in ("b-parked", "b-unsent"):
            _advance_to(store, bundle_id, BundleStatus.SIGNING)
        store.update_bundle_status(
            "b-parked", BundleStatus.SIGNING, BundleStatus.SIGNING, {"sign_request_id": "sr"},
        )

        assert store.list_stalled_bundles(clock.now()) == ("b-unsent",)

    def test_terminal_bundle_is_not_stalled(self, store, seed_bundle, clock):
        seed_bundle("b-1", [("C-1", 1)])
        store.update_bundle_status("b-1", BundleStatus.NEW, BundleStatus.FAILED)
        assert store.list_stalled_bundles(clock.now()) == ()
