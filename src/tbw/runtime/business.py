# src/tbw/runtime/business.py
from __future__ import annotations

"""Business revenue per forged block.

Revenue received by the configured business wallet between a forged block and
the next newer one is distributed to that block's voters like the block reward.
"""

import logging
from decimal import Decimal, localcontext
from typing import Dict, Optional, Sequence

from tbw.ledger.amounts import AMOUNT_CONTEXT, fmt_coins
from tbw.ledger.constants import ZERO
from tbw.ledger.types import ForgedBlock, Transaction
from tbw.runtime.config import TbwConfig
from tbw.runtime.structured_logging import log_event

log = logging.getLogger("tbw.business")


def _received(tx: Transaction, wallet: str, *, include_multi_payment: bool) -> Decimal:
    if tx.multi_payment is None:
        return tx.amount if tx.recipient_id == wallet else ZERO
    if not include_multi_payment:
        return ZERO
    out = ZERO
    with localcontext(AMOUNT_CONTEXT):
        for leg in tx.multi_payment:
            if leg.recipient_id == wallet:
                out += leg.amount
    return out


def business_income_per_block(
    forged_blocks: Sequence[ForgedBlock],
    transactions: Sequence[Transaction],
    config: TbwConfig,
) -> Dict[int, Decimal]:
    """height -> revenue received in [block.height, previous_height); empty when unconfigured."""
    wallet = config.business_wallet
    if not wallet or not forged_blocks or not transactions:
        return {}

    income: Dict[int, Decimal] = {}
    previous_height: Optional[int] = None
    for block in forged_blocks:
        amount = ZERO
        for tx in transactions:
            if tx.height < block.height or (previous_height is not None and tx.height >= previous_height):
                continue
            amount += _received(tx, wallet, include_multi_payment=config.business_share_multi_payment_income)
        income[block.height] = amount
        if amount > ZERO:
            log.warning("Business revenue for forged block %s is %s", block.height, fmt_coins(amount))
        previous_height = block.height

    log_event(
        log,
        "business_income_computed",
        blocks=len(income),
        total=sum(income.values(), ZERO),
    )
    return income
