# src/tbw/net/__init__.py
"""
Remote node API access.

  - node_client: JSON-over-HTTP client for the current voter set, wallets,
    delegate lookup and network configuration

Calls are synchronous and never retried here; an unavailable node surfaces as
CollaboratorError and fails the run.
"""
