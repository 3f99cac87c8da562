# src/tbw/storage/__init__.py
"""
Ledger data store collaborators.

The engines only read from the store:
- store: the read contract (LedgerStore protocol)
- sqlite_store: a SQLite-backed implementation that validates every row into
  the typed ledger entities before handing it out
"""
