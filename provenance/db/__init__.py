"""
Storage Layer for the Provenance Ledger

Provides:
- ProvenanceStore abstraction with per-product atomic append
- InMemoryProvenanceStore for development, tests and single-process use
"""

from .store import (
    ProvenanceStore,
    InMemoryProvenanceStore,
    AppendContext,
    ProductHead,
    StoreError,
    ChainIntegrityError,
    LockTimeoutError,
)

__all__ = [
    "ProvenanceStore",
    "InMemoryProvenanceStore",
    "AppendContext",
    "ProductHead",
    "StoreError",
    "ChainIntegrityError",
    "LockTimeoutError",
]
