"""
Provenance Ledger

Wallet-authenticated, append-only ownership history for physical products.
"""

__version__ = "0.1.0"
