"""
bundle_ingestion.domain.types -- Pure frozen dataclasses for admission.

ZERO I/O.  Rows are validated into ``AdmissionRow`` or rejected with one or
more ``FieldError``; the gate summarises a batch in an ``AdmissionReport``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class FieldError:
    """One validation problem with one row."""

    code: str
    message: str
    field: str | None = None


@dataclass(frozen=True)
class AdmissionRow:
    """A validated input row."""

    source_row: int  # 1-indexed position in the batch
    bundle_id: str
    contract_id: str
    sequence_no: int


@dataclass(frozen=True)
class RejectedRow:
    """A row that was not admitted, with the reasons."""

    source_row: int
    raw: dict[str, Any]
    errors: tuple[FieldError, ...]

    @property
    def error_codes(self) -> tuple[str, ...]:
        return tuple(e.code for e in self.errors)


@dataclass(frozen=True)
class AdmissionReport:
    """Summary of one admission call.

    ``started`` lists the bundles this call won the start lock for;
    ``already_started`` lists bundles someone else (or an earlier replay)
    had already started.
    """

    rows_read: int
    admitted: int
    duplicates: int
    rejected: tuple[RejectedRow, ...] = ()
    bundle_ids: tuple[str, ...] = ()
    started: tuple[str, ...] = ()
    already_started: tuple[str, ...] = ()
    start_failures: tuple[str, ...] = ()

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)
