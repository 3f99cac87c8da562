# src/tbw/runtime/revenue.py
from __future__ import annotations

"""Revenue distribution.

For every forged block, the block reward, the collected fees and the business
revenue of that block are split across the block's voters pro rata to their
replayed balance. Shares are booked under the voter's payout address and
accumulated over the whole block range.
"""

import logging
from decimal import Decimal, localcontext
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from tbw.crypto.address import is_valid_address
from tbw.ledger.amounts import AMOUNT_CONTEXT, pro_rata, total
from tbw.ledger.constants import ZERO
from tbw.ledger.types import ForgedBlock, PayoutBalances
from tbw.runtime.config import TbwConfig
from tbw.runtime.errors import DataIntegrityError
from tbw.runtime.structured_logging import log_event

log = logging.getLogger("tbw.revenue")


def _accrue(target: Dict[str, Decimal], address: str, amount: Decimal) -> None:
    with localcontext(AMOUNT_CONTEXT):
        target[address] = target.get(address, ZERO) + amount


class RevenueDistributor:
    def __init__(self, config: TbwConfig) -> None:
        self._config = config
        self._checked_redirects: Dict[str, str] = {}

    def payout_address(self, address: str) -> str:
        """Redirect target for an address, validated against the network address format."""
        target = self._config.wallet_redirections.get(address)
        if target is None:
            return address
        cached = self._checked_redirects.get(address)
        if cached is not None:
            return cached
        if not is_valid_address(target, self._config.network_version):
            raise DataIntegrityError(
                "data_integrity",
                "invalid_redirect_address",
                {"address": address, "redirect": target, "network_version": self._config.network_version},
            )
        self._checked_redirects[address] = target
        return target

    def redirect_small_wallets(self, small_wallets: Mapping[str, bool]) -> Dict[str, bool]:
        """Small wallet flags keyed by payout address; a shared target is small only if all its sources are."""
        grouped: Dict[str, List[bool]] = {}
        for address, flag in small_wallets.items():
            grouped.setdefault(self.payout_address(address), []).append(bool(flag))
        return {address: all(flags) for address, flags in grouped.items()}

    def eligible_voters(self, voters: Iterable[str], balances: Mapping[str, Decimal]) -> List[str]:
        """Block voters with a replayed balance at or above the minimum balance."""
        min_balance = self._config.min_balance
        return [a for a in voters if a in balances and balances[a] >= min_balance]

    def distribute(
        self,
        forged_blocks: Sequence[ForgedBlock],
        voters_per_forged_block: Mapping[int, Sequence[str]],
        voters_balance_per_forged_block: Mapping[int, Mapping[str, Decimal]],
        latest_payout_timestamps: Mapping[str, int],
        *,
        business_income: Optional[Mapping[int, Decimal]] = None,
        current_voters: Optional[Sequence[str]] = None,
        admin_payout_timestamp: Optional[int] = None,
    ) -> PayoutBalances:
        rewards: Dict[str, Decimal] = {}
        fees: Dict[str, Decimal] = {}
        business: Dict[str, Decimal] = {}

        cfg = self._config
        current = frozenset(current_voters or ())
        admin_gate = admin_payout_timestamp if cfg.voter_share == ZERO else None
        skipped = 0

        for block in forged_blocks:
            if block.timestamp is None:
                raise DataIntegrityError("data_integrity", "forged_block_missing_timestamp", {"height": block.height})

            if admin_gate is not None and block.timestamp <= admin_gate:
                skipped += 1
                continue

            balances = voters_balance_per_forged_block.get(block.height, {})
            eligible = self.eligible_voters(voters_per_forged_block.get(block.height, ()), balances)
            block_total = total(balances[a] for a in eligible)
            if block_total <= ZERO:
                skipped += 1
                continue

            if cfg.pool_hopping_protection:
                eligible = [a for a in eligible if a in current]

            block_business = (business_income or {}).get(block.height, ZERO)

            for address in eligible:
                payout_address = self.payout_address(address)
                last_paid = latest_payout_timestamps.get(payout_address)
                if last_paid is not None and last_paid >= block.timestamp:
                    continue

                balance = balances[address]
                _accrue(rewards, payout_address, pro_rata(block.reward, balance, block_total))
                if block.fees > ZERO:
                    _accrue(fees, payout_address, pro_rata(block.fees, balance, block_total))
                if block_business > ZERO:
                    _accrue(business, payout_address, pro_rata(block_business, balance, block_total))

        log_event(
            log,
            "revenue_distributed",
            blocks=len(forged_blocks),
            skipped_blocks=skipped,
            addresses=len(rewards),
            rewards=total(rewards.values()),
            fees=total(fees.values()),
            business=total(business.values()),
        )
        return PayoutBalances(rewards=rewards, fees=fees, business=business)
