"""
Bundle Kernel

Durable core of the dealer contract-bundle pipeline:
- Compare-and-set lifecycle store (bundles and vehicles)
- Token-addressed continuations for the asynchronous signing wait
- Typed exception hierarchy and structured logging
"""

__version__ = "0.1.0"
