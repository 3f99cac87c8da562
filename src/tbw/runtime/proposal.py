# src/tbw/runtime/proposal.py
from __future__ import annotations

"""Payout proposal.

Turns accrued shares into the final payout instruction set:

  1. frequency gate (custom per-address payout interval in blocks)
  2. share percentage (custom override, small wallet bonus, default share)
  3. reward and business splits into donation, voter and delegate portions
  4. fee split by the voter fee share
  5. minimum payout check (under-minimum payouts are withheld as pending)
  6. fair fees: the outgoing transaction costs are deducted from the payouts
     in proportion to their size
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Dict, Mapping, Optional, Tuple

from tbw.ledger.amounts import (
    AMOUNT_CONTEXT,
    ceil_units,
    clamp_non_negative,
    floor_units,
    fmt_coins,
    mul,
    pro_rata,
    total,
)
from tbw.ledger.constants import ONE, ZERO
from tbw.ledger.types import PayoutBalances, Payouts
from tbw.runtime.config import TbwConfig
from tbw.runtime.structured_logging import log_event

log = logging.getLogger("tbw.proposal")


@dataclass(frozen=True)
class Split:
    donation: Decimal
    voter: Decimal
    delegate: Decimal


class ProposalAllocator:
    def __init__(self, config: TbwConfig) -> None:
        self._config = config

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def is_frequency_reached(self, address: str, current_height: int, latest_payout_heights: Mapping[str, int]) -> bool:
        frequency = self._config.custom_frequencies.get(address)
        last_height = latest_payout_heights.get(address)
        if not last_height or not frequency:
            return True
        due = last_height + int(frequency)
        if due < current_height:
            return True
        log.warning(
            "Payout to %s pending (delay of %s blocks not yet reached) [%s/%s]",
            address,
            frequency,
            due,
            current_height,
        )
        return False

    def share_percentage(self, address: str, small_wallets: Mapping[str, bool]) -> Decimal:
        cfg = self._config
        custom = cfg.custom_shares.get(address)
        if custom is not None:
            if custom + cfg.donation_share > ONE:
                log.warning("Custom share percentage for %s is larger than 100%%: capped", address)
                return clamp_non_negative(custom - cfg.donation_share)
            if custom < ZERO:
                log.warning("Custom share percentage for %s is smaller than 0%%: capped at 0%%", address)
                return ZERO
            return custom

        if cfg.small_wallet_bonus is not None and small_wallets.get(address) is True:
            return cfg.small_wallet_bonus.percentage
        return cfg.voter_share

    def split(self, amount: Decimal, percentage: Decimal) -> Split:
        """Donation rounds up, the voter portion rounds down, the delegate keeps the rest."""
        if amount <= ZERO:
            return Split(ZERO, ZERO, ZERO)
        donation = min(ceil_units(mul(amount, self._config.donation_share)), floor_units(amount))
        with localcontext(AMOUNT_CONTEXT):
            voter = min(floor_units(mul(amount, percentage)), floor_units(amount - donation))
            voter = clamp_non_negative(voter)
            return Split(donation=donation, voter=voter, delegate=amount - donation - voter)

    def split_fee(self, fee: Decimal) -> Tuple[Decimal, Decimal]:
        if fee <= ZERO:
            return ZERO, ZERO
        voter = floor_units(mul(fee, self._config.voter_fee_share))
        with localcontext(AMOUNT_CONTEXT):
            return voter, fee - voter

    def fair_fee_total(self, payout_count: int) -> Decimal:
        cfg = self._config
        per_multi = int(cfg.transfers_per_multi_payment)
        multi_payments = -(-payout_count // per_multi) if payout_count > 0 else 0
        fixed_recipients = len(cfg.admins) + (1 if cfg.donation_share > ZERO else 0)
        with localcontext(AMOUNT_CONTEXT):
            return Decimal(multi_payments) * cfg.multi_transfer_fee + Decimal(fixed_recipients) * cfg.transfer_fee

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(
        self,
        balances: PayoutBalances,
        *,
        current_height: int,
        latest_payout_heights: Mapping[str, int],
        small_wallets: Optional[Mapping[str, bool]] = None,
        timestamp: int = 0,
    ) -> Payouts:
        cfg = self._config
        flags = small_wallets or {}

        payouts: Dict[str, Decimal] = {}
        pending: Dict[str, Decimal] = {}
        delegate_profit = ZERO
        acf_donation = ZERO

        with localcontext(AMOUNT_CONTEXT):
            for address in balances.addresses():
                if not self.is_frequency_reached(address, current_height, latest_payout_heights):
                    continue

                percentage = self.share_percentage(address, flags)

                reward = self.split(balances.rewards.get(address, ZERO), percentage)
                business_pct = cfg.voter_business_share if cfg.voter_business_share is not None else percentage
                business = self.split(balances.business.get(address, ZERO), business_pct)
                voter_fee, delegate_fee = self.split_fee(balances.fees.get(address, ZERO))

                acf_donation += reward.donation + business.donation
                delegate_profit += reward.delegate + business.delegate + delegate_fee

                payout = reward.voter + business.voter + voter_fee
                if payout <= ZERO or payout < cfg.min_payout_value:
                    if payout > ZERO:
                        pending[address] = payout
                        log.warning(
                            "Payout to %s pending (min. value %s): %s",
                            address,
                            fmt_coins(cfg.min_payout_value),
                            fmt_coins(payout),
                        )
                    continue
                payouts[address] = payout

        total_payout = total(payouts.values())
        total_fees = self.fair_fee_total(len(payouts))
        final = self.apply_fair_fees(payouts, total_payout, total_fees)

        log_event(
            log,
            "proposal_ready",
            payouts=len(final),
            total_payout=total_payout,
            total_fees=total_fees,
            delegate_profit=delegate_profit,
            acf_donation=acf_donation,
            pending=len(pending),
        )
        return Payouts(
            payouts=final,
            delegate_profit=delegate_profit,
            acf_donation=acf_donation,
            timestamp=int(timestamp),
            pending=pending,
            total_fees=total_fees,
        )

    @staticmethod
    def apply_fair_fees(payouts: Mapping[str, Decimal], total_payout: Decimal, total_fees: Decimal) -> Dict[str, Decimal]:
        if total_payout <= ZERO:
            return dict(payouts)
        out: Dict[str, Decimal] = {}
        with localcontext(AMOUNT_CONTEXT):
            for address, amount in payouts.items():
                deduction = pro_rata(total_fees, amount, total_payout)
                out[address] = floor_units(clamp_non_negative(amount - deduction))
        return out
