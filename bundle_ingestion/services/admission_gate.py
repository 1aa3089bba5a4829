"""
AdmissionGate -- idempotent admission of raw contract rows.

Responsibility:
    Turns a raw batch into bundle headers and vehicles exactly once, then
    starts orchestration for each bundle exactly once.

Architecture position:
    Ingestion > Services.  Uses BundleStateStore primitives only; the start
    callable is injected (normally OrchestrationDispatcher.submit).

Invariants enforced:
    - A bad row is rejected and recorded; it never blocks its siblings.
    - Header and vehicle writes are create-if-absent, so replaying a batch
      (after an ingestion crash and retry) creates nothing new and raises
      nothing.
    - Write-then-lock: try_lock_start runs only after every row of the
      batch was written; only the lock winner starts orchestration.  A crash
      before the lock leaves the bundle safely re-ingestible.
    - A replayed row whose (bundle_id, contract_id) is stored with a
      different sequence_no is rejected as CONFLICTING_REPLAY; stored
      records are never rewritten.
    - A new contract for a bundle that has already started is rejected as
      BUNDLE_ALREADY_STARTED; a started bundle's vehicle set is closed.

Failure modes:
    - Store errors (database unavailable) propagate; a re-run of the same
      batch is safe.
    - A start callable that raises is logged and reported in
      ``start_failures``; the start lock is already held, so the sweeper's
      stalled-bundle recovery picks the bundle up.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable, Mapping
from uuid import uuid4

from bundle_kernel.domain.types import CreateResult, LockResult
from bundle_kernel.exceptions import BundleAlreadyStartedError
from bundle_kernel.logging_config import LogContext, get_logger
from bundle_kernel.services.state_store import BundleStateStore

from bundle_ingestion.adapters import read_rows
from bundle_ingestion.domain.types import AdmissionReport, FieldError, RejectedRow
from bundle_ingestion.domain.validators import validate_admission_row

logger = get_logger("ingestion.admission_gate")

CONFLICTING_REPLAY = "CONFLICTING_REPLAY"
BUNDLE_ALREADY_STARTED = BundleAlreadyStartedError.code


class AdmissionGate:
    """
    Exactly-once admission of contract rows into bundles.

    Contract:
        ``admit`` can be called any number of times with the same rows;
        the persisted state and the number of orchestration starts are the
        same as after the first call.
    """

    def __init__(
        self,
        store: BundleStateStore,
        start_orchestration: Callable[[str], Any],
    ):
        self._store = store
        self._start = start_orchestration

    def admit_file(
        self,
        source_path: Path | str,
        fmt: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> AdmissionReport:
        """Read a CSV / JSON / JSON Lines file and admit its rows."""
        path = Path(source_path)
        return self.admit(read_rows(path, fmt, options), batch_label=path.name)

    def admit(
        self,
        rows: Iterable[Mapping[str, Any]],
        batch_label: str | None = None,
    ) -> AdmissionReport:
        correlation_id = batch_label or uuid4().hex
        with LogContext.bind(correlation_id=correlation_id, stage="admission"):
            return self._admit(rows)

    def _admit(self, rows: Iterable[Mapping[str, Any]]) -> AdmissionReport:
        rows_read = 0
        admitted = 0
        duplicates = 0
        rejected: list[RejectedRow] = []
        bundle_ids: list[str] = []
        seen: set[str] = set()

        for source_row, raw in enumerate(rows, start=1):
            rows_read += 1
            parsed, errors = validate_admission_row(raw, source_row)
            if parsed is None:
                rejected.append(RejectedRow(source_row, dict(raw), errors))
                logger.warning(
                    "admission_row_rejected",
                    extra={
                        "source_row": source_row,
                        "error_codes": [e.code for e in errors],
                    },
                )
                continue

            self._store.create_header_if_absent(parsed.bundle_id)
            try:
                result, stored = self._store.create_vehicle_if_absent(
                    parsed.bundle_id, parsed.contract_id, parsed.sequence_no,
                )
            except BundleAlreadyStartedError as exc:
                error = FieldError(BUNDLE_ALREADY_STARTED, str(exc), "bundle_id")
                rejected.append(RejectedRow(source_row, dict(raw), (error,)))
                logger.warning(
                    "admission_bundle_already_started",
                    extra={
                        "source_row": source_row,
                        "bundle_id": parsed.bundle_id,
                        "contract_id": parsed.contract_id,
                    },
                )
                continue

            if result is CreateResult.ALREADY_EXISTS and stored.sequence_no != parsed.sequence_no:
                error = FieldError(
                    CONFLICTING_REPLAY,
                    f"contract {parsed.contract_id} is already admitted to bundle "
                    f"{parsed.bundle_id} with sequence_no {stored.sequence_no}",
                    "sequence_no",
                )
                rejected.append(RejectedRow(source_row, dict(raw), (error,)))
                logger.warning(
                    "admission_conflicting_replay",
                    extra={
                        "source_row": source_row,
                        "bundle_id": parsed.bundle_id,
                        "contract_id": parsed.contract_id,
                        "stored_sequence_no": stored.sequence_no,
                        "replayed_sequence_no": parsed.sequence_no,
                    },
                )
            elif result is CreateResult.ALREADY_EXISTS:
                duplicates += 1
            else:
                admitted += 1

            if parsed.bundle_id not in seen:
                seen.add(parsed.bundle_id)
                bundle_ids.append(parsed.bundle_id)

        started, already_started, start_failures = self._start_bundles(bundle_ids)

        report = AdmissionReport(
            rows_read=rows_read,
            admitted=admitted,
            duplicates=duplicates,
            rejected=tuple(rejected),
            bundle_ids=tuple(bundle_ids),
            started=tuple(started),
            already_started=tuple(already_started),
            start_failures=tuple(start_failures),
        )
        logger.info(
            "admission_completed",
            extra={
                "rows_read": rows_read,
                "admitted": admitted,
                "duplicates": duplicates,
                "rejected": len(rejected),
                "bundles": len(bundle_ids),
                "started": len(started),
            },
        )
        return report

    def _start_bundles(
        self,
        bundle_ids: list[str],
    ) -> tuple[list[str], list[str], list[str]]:
        started: list[str] = []
        already_started: list[str] = []
        start_failures: list[str] = []

        for bundle_id in bundle_ids:
            if self._store.try_lock_start(bundle_id) is not LockResult.ACQUIRED:
                already_started.append(bundle_id)
                continue
            try:
                self._start(bundle_id)
            except Exception:
                logger.exception("orchestration_start_failed", extra={"bundle_id": bundle_id})
                start_failures.append(bundle_id)
                continue
            started.append(bundle_id)

        return started, already_started, start_failures
