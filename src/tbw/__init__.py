# src/tbw/__init__.py
"""
True Block Weight: voter reward calculation for a forging delegate.

Packages:
  - ledger: monetary constants, decimal helpers, typed ledger entities
  - runtime: configuration, errors, logging and the replay/allocation engines
  - storage: data-store contract + SQLite implementation
  - net: remote node API client
  - crypto: address format validation

Typical use:

    from tbw.runtime.config import load_tbw_config
    from tbw.runtime.engine import TrueBlockWeightEngine

    cfg = load_tbw_config()
    payouts = TrueBlockWeightEngine.from_config(cfg).generate_payouts()
"""

from __future__ import annotations

__version__ = "0.4.0"

__all__ = [
    "ledger",
    "runtime",
    "storage",
    "net",
    "crypto",
]
