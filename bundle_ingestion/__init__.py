"""
Bundle Ingestion

Reads nightly contract batches (CSV / JSON / JSON Lines), validates each row
and admits it exactly once through the Admission Gate.
"""
