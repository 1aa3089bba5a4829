"""Ingestion services."""

from bundle_ingestion.services.admission_gate import AdmissionGate

__all__ = ["AdmissionGate"]
