# src/tbw/runtime/balance_replay.py
from __future__ import annotations

"""Voter balance replay.

Rebuilds, for every forged block, the balance each tracked voter held right
before the block was forged. Current balances are walked backward one block
window at a time:

  - transactions in [block.height, previous_height) are undone
  - stake power-ups / redemptions in [block.timestamp, previous_timestamp) are undone
  - voter-forged gains in (block.height, previous_height] are removed

Height windows of the newest block are open-ended. Its time window runs up to
`now`, the chain time the current balances were read at: stake events between
the newest block and `now` are undone, `redeemable` times still in the future
are not. Balances never go below zero.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Dict, List, Mapping, Optional, Sequence

from tbw.ledger.amounts import AMOUNT_CONTEXT, clamp_non_negative, fmt_coins
from tbw.ledger.constants import ZERO
from tbw.ledger.types import ForgedBlock, Stake, Transaction, Voter, VoterBlock
from tbw.runtime.config import TbwConfig
from tbw.runtime.errors import DataIntegrityError
from tbw.runtime.structured_logging import log_event

log = logging.getLogger("tbw.balance_replay")

Balances = Dict[str, Decimal]


@dataclass(frozen=True)
class BalanceReplayResult:
    # height -> (address -> balance before the block), one independent dict per block
    voters_balance_per_forged_block: Dict[int, Balances]
    # address -> never exceeded the small wallet limit during the window
    small_wallets: Dict[str, bool]


def _in_range(value: int, low: int, high: Optional[int]) -> bool:
    return value >= low and (high is None or value < high)


def _debit(balances: Balances, address: Optional[str], amount: Decimal) -> None:
    if address is None or address not in balances:
        return
    with localcontext(AMOUNT_CONTEXT):
        balances[address] = clamp_non_negative(balances[address] - amount)


def _credit(balances: Balances, address: Optional[str], amount: Decimal) -> None:
    if address is None or address not in balances:
        return
    with localcontext(AMOUNT_CONTEXT):
        balances[address] = clamp_non_negative(balances[address] + amount)


class BalanceReplay:
    def __init__(self, config: TbwConfig) -> None:
        bonus = config.small_wallet_bonus
        self._small_wallet_limit: Optional[Decimal] = bonus.wallet_limit if bonus is not None else None

    def replay(
        self,
        forged_blocks: Sequence[ForgedBlock],
        voters: Sequence[Voter],
        transactions: Sequence[Transaction],
        voter_blocks: Sequence[VoterBlock] = (),
        *,
        now: int,
    ) -> BalanceReplayResult:
        """`now` is the chain timestamp (seconds since the network epoch) the voter wallets were read at."""
        wallets: Dict[str, Voter] = {v.address: v for v in voters}
        balances: Balances = {v.address: v.voting_weight for v in voters}
        small_wallets: Dict[str, bool] = {a: self._small_wallet_limit is not None for a in balances}

        per_block: Dict[int, Balances] = {}
        previous_height: Optional[int] = None
        previous_timestamp: Optional[int] = None

        for block in forged_blocks:
            if block.timestamp is None:
                raise DataIntegrityError("data_integrity", "forged_block_missing_timestamp", {"height": block.height})

            balances = self.replay_window(
                balances,
                wallets,
                block,
                previous_height,
                previous_timestamp if previous_timestamp is not None else max(int(now), block.timestamp + 1),
                transactions,
                voter_blocks,
            )
            per_block[block.height] = dict(balances)
            self._update_small_wallets(small_wallets, balances, block.height)

            previous_height = block.height
            previous_timestamp = block.timestamp

        log_event(
            log,
            "balance_replay_done",
            blocks=len(per_block),
            wallets=len(balances),
            transactions=len(transactions),
            voter_blocks=len(voter_blocks),
            small_wallets=sum(1 for v in small_wallets.values() if v),
        )
        return BalanceReplayResult(voters_balance_per_forged_block=per_block, small_wallets=small_wallets)

    def replay_window(
        self,
        balances: Mapping[str, Decimal],
        wallets: Mapping[str, Voter],
        block: ForgedBlock,
        previous_height: Optional[int],
        previous_timestamp: Optional[int],
        transactions: Sequence[Transaction],
        voter_blocks: Sequence[VoterBlock],
    ) -> Balances:
        """Fold one block window into a new balance map; the input map is not modified."""
        out: Balances = dict(balances)

        for tx in transactions:
            if _in_range(tx.height, block.height, previous_height):
                self._undo_transaction(out, wallets, tx)

        for address, wallet in wallets.items():
            for stake in wallet.processed_stakes:
                self._undo_stake(out, address, stake, block.timestamp, previous_timestamp)

        for vb in voter_blocks:
            if vb.height > block.height and (previous_height is None or vb.height <= previous_height):
                _debit(out, vb.address, vb.gains)

        return out

    def _undo_transaction(self, balances: Balances, wallets: Mapping[str, Voter], tx: Transaction) -> None:
        sent = tx.amount
        if tx.multi_payment is not None:
            for leg in tx.multi_payment:
                sent += leg.amount
                _debit(balances, leg.recipient_id, leg.amount)
        else:
            _debit(balances, tx.recipient_id, tx.amount)

        if tx.sender_id is None or tx.sender_id not in balances:
            return

        if tx.stake_redeem is not None:
            stake = self._redeemed_stake(wallets, tx)
            _credit(balances, tx.sender_id, stake.redeemable_value)
            return

        _credit(balances, tx.sender_id, sent + tx.fee)

    @staticmethod
    def _redeemed_stake(wallets: Mapping[str, Voter], tx: Transaction) -> Stake:
        wallet = wallets.get(tx.sender_id or "")
        stake = wallet.stake_by_id(tx.stake_redeem or "") if wallet is not None else None
        if stake is None:
            raise DataIntegrityError(
                "data_integrity",
                "unknown_stake_redeem",
                {"sender": tx.sender_id, "stake_id": tx.stake_redeem, "height": tx.height},
            )
        return stake

    @staticmethod
    def _undo_stake(
        balances: Balances,
        address: str,
        stake: Stake,
        timestamp: int,
        previous_timestamp: Optional[int],
    ) -> None:
        if _in_range(stake.timestamps.power_up, timestamp, previous_timestamp):
            _debit(balances, address, stake.power - stake.amount)
        if _in_range(stake.timestamps.redeemable, timestamp, previous_timestamp):
            _credit(balances, address, stake.redeemable_value)

    def _update_small_wallets(self, small_wallets: Dict[str, bool], balances: Mapping[str, Decimal], height: int) -> None:
        limit = self._small_wallet_limit
        if limit is None:
            return
        cleared: List[str] = []
        for address, balance in balances.items():
            if small_wallets.get(address) and balance > limit:
                small_wallets[address] = False
                cleared.append(address)
        for address in cleared:
            log.warning("%s removed from small voters (%s)", address, fmt_coins(balances[address]))
        if cleared:
            log_event(log, "small_wallets_cleared", height=height, count=len(cleared))
