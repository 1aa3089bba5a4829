"""
Bundle identity utilities.

A bundle is one dealer's contracts from one source batch, so its id is
derived from exactly those two values.  Re-ingesting the same batch always
lands on the same bundle.
"""


def derive_bundle_id(source_batch: str, dealer_id: str) -> str:
    """
    Derive a bundle id from its source batch and dealer.

    Format: source_batch:dealer_id

    Example:
        >>> derive_bundle_id("2026-02-01", "D-104")
        "2026-02-01:D-104"
    """
    if not source_batch or not dealer_id:
        raise ValueError("source_batch and dealer_id are both required")
    if ":" in dealer_id:
        raise ValueError(f"dealer_id must not contain ':': {dealer_id}")
    return f"{source_batch}:{dealer_id}"
