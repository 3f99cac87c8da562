# src/tbw/runtime/payout_history.py
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from tbw.ledger.types import DelegateTransaction, LatestPayouts
from tbw.runtime.config import TbwConfig
from tbw.runtime.structured_logging import log_event

log = logging.getLogger("tbw.payout_history")


def is_payout_record(tx: DelegateTransaction, signature: str, *, no_signature: bool = False) -> bool:
    """A delegate transaction counts as a payout when its vendor field carries the signature."""
    if no_signature:
        return True
    return bool(tx.vendor_field) and str(tx.vendor_field).startswith(signature)


def find_latest_payouts(
    transactions: Iterable[DelegateTransaction],
    config: TbwConfig,
) -> LatestPayouts:
    """Most recent payout height and timestamp per recipient address.

    Multi-payment legs are recipients in their own right. When two records share
    the highest height for an address the first one seen wins.
    """
    heights: Dict[str, int] = {}
    timestamps: Dict[str, int] = {}
    signature = config.payout_signature
    records = 0

    for tx in transactions:
        if not is_payout_record(tx, signature, no_signature=config.no_signature):
            continue
        records += 1
        for recipient in tx.recipients():
            last = heights.get(recipient)
            if last is None or last < tx.height:
                heights[recipient] = tx.height
                timestamps[recipient] = tx.timestamp

    log_event(log, "payout_history_loaded", records=records, recipients=len(heights))
    return LatestPayouts(heights=heights, timestamps=timestamps)


def latest_admin_payout_timestamp(latest: LatestPayouts, admin_wallets: List[str]) -> Optional[int]:
    """Newest payout timestamp to any admin wallet, or None when no admin was ever paid."""
    seen = [latest.timestamps[w] for w in admin_wallets if w in latest.timestamps]
    return max(seen) if seen else None
