# src/tbw/ledger/constants.py
from __future__ import annotations

"""Monetary and chain constants.

- 1 coin = 1e8 smallest units (arktoshi)
- Amounts inside the engine are Decimal values expressed in smallest units
- Accrued shares keep 8 fractional places of a smallest unit
"""

from decimal import Decimal

COIN_DECIMALS: int = 8
COIN: int = 10**COIN_DECIMALS
ARKTOSHI: Decimal = Decimal(COIN)

# Quantum for per-block share accruals (fraction of a smallest unit).
SHARE_QUANTUM: Decimal = Decimal("0.00000001")

# Quantum for amounts that end up in a transaction.
UNIT_QUANTUM: Decimal = Decimal(1)

ZERO: Decimal = Decimal(0)
ONE: Decimal = Decimal(1)

# Transaction types (type_group 1).
TX_TYPE_TRANSFER: int = 0
TX_TYPE_VOTE: int = 3
TX_TYPE_MULTI_PAYMENT: int = 6

# Payout records carry "<delegate> - <message>" in their vendor field.
PAYOUT_SIGNATURE_SEPARATOR: str = " - "

DEFAULT_HISTORY_AMOUNT_BLOCKS: int = 6400
DEFAULT_TRANSFERS_PER_MULTI_PAYMENT: int = 64
DEFAULT_DONATION_SHARE: Decimal = Decimal("0.005")
