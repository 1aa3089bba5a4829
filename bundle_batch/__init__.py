"""
Bundle Batch

Drives admitted bundles through render, assembly, signing and delivery:
the orchestrator state machine, the per-vehicle fan-out, the dispatcher,
the expiry/recovery sweeper and the signing callback handler.
"""
