# src/tbw/runtime/engine.py
from __future__ import annotations

"""True Block Weight payout run.

Wires the collaborators (ledger store, node API) to the four engines:

    voter replay  ─┐
                   ├─> revenue distributor ─> proposal allocator ─> Payouts
    balance replay ┘

A run either returns a complete Payouts artifact or raises; nothing partial is
produced. The only optional input is business income.
"""

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Protocol, Sequence

from tbw.ledger.types import ForgedBlock, NetworkConfig, Payouts, Voter, VoterMutation
from tbw.runtime.balance_replay import BalanceReplay
from tbw.runtime.business import business_income_per_block
from tbw.runtime.config import TbwConfig
from tbw.runtime.errors import CollaboratorError, ConfigError, DataIntegrityError
from tbw.runtime.payout_history import find_latest_payouts, latest_admin_payout_timestamp
from tbw.runtime.proposal import ProposalAllocator
from tbw.runtime.revenue import RevenueDistributor
from tbw.runtime.structured_logging import configure_structured_logging, log_event
from tbw.runtime.voter_replay import VoterReplay
from tbw.storage.store import LedgerStore

log = logging.getLogger("tbw.engine")


def chain_time(epoch: str, unix_now: float) -> int:
    """Seconds elapsed since the network epoch (an ISO-8601 instant) at `unix_now`."""
    if not epoch:
        return int(unix_now)
    try:
        start = datetime.fromisoformat(epoch.replace("Z", "+00:00"))
    except ValueError as e:
        raise CollaboratorError("node_bad_response", "network_epoch_invalid", {"epoch": epoch}) from e
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return int(unix_now - start.timestamp())


class NodeApi(Protocol):
    def get_delegate_public_key(self, delegate: str) -> str: ...

    def get_voters(self, delegate: str) -> List[Voter]: ...

    def get_wallet(self, address: str) -> Voter: ...

    def get_network_config(self) -> NetworkConfig: ...


class TrueBlockWeightEngine:
    def __init__(
        self,
        config: TbwConfig,
        *,
        store: LedgerStore,
        node: NodeApi,
        check_network: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.node = node
        self.check_network = bool(check_network)
        self.clock = clock

    @classmethod
    def from_config(cls, config: TbwConfig) -> "TrueBlockWeightEngine":
        from tbw.net.node_client import NodeClient
        from tbw.storage.sqlite_store import SqliteLedgerStore

        configure_structured_logging(config.log_level)
        return cls(
            config,
            store=SqliteLedgerStore(path=config.db_path),
            node=NodeClient.from_config(config),
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def generate_payouts(self) -> Payouts:
        cfg = self.config
        network = self.node.get_network_config()
        if self.check_network:
            self._check_network(network)

        delegate_public_key = self.node.get_delegate_public_key(cfg.delegate)

        forged_blocks = self.store.get_forged_blocks(
            delegate_public_key,
            cfg.start_block_height,
            cfg.end_block_height,
            cfg.history_amount_blocks,
        )
        if not forged_blocks:
            raise DataIntegrityError(
                "data_integrity",
                "no_forged_blocks",
                {"delegate": cfg.delegate, "start_block_height": cfg.start_block_height},
            )
        newest = forged_blocks[0]
        if newest.timestamp is None:
            raise DataIntegrityError("data_integrity", "forged_block_missing_timestamp", {"height": newest.height})
        current_height = newest.height
        run_timestamp = newest.timestamp + 1
        start_height = max(0, forged_blocks[-1].height - 1)
        end_height = cfg.end_block_height

        delegate_txs = self.store.get_delegate_transactions(delegate_public_key, start_height, end_height)
        latest = find_latest_payouts(delegate_txs, cfg)

        current_wallets = self.node.get_voters(cfg.delegate)
        now = max(chain_time(network.epoch, self.clock()), newest.timestamp + 1)
        current_voters = [w.address for w in current_wallets]
        mutations = self.store.get_voter_mutations(delegate_public_key, start_height, end_height)
        voter_result = VoterReplay(cfg).replay(current_voters, mutations, forged_blocks)

        eligible = set(voter_result.voters)
        tracked = self.voter_wallets(current_wallets, mutations, eligible)
        if not tracked:
            raise DataIntegrityError(
                "data_integrity",
                "no_voters",
                {"hint": "check the blacklist and whitelist configuration"},
            )

        voter_blocks = self.store.get_voting_delegate_blocks(
            {w.public_key: w.address for w in tracked if w.public_key},
            start_height,
            end_height,
        )
        transactions = self.store.get_transactions(
            [w.address for w in tracked],
            [w.public_key for w in tracked if w.public_key],
            start_height,
            end_height,
        )
        balance_result = BalanceReplay(cfg).replay(forged_blocks, tracked, transactions, voter_blocks, now=now)

        distributor = RevenueDistributor(cfg)
        shares = distributor.distribute(
            forged_blocks,
            voter_result.voters_per_forged_block,
            balance_result.voters_balance_per_forged_block,
            latest.timestamps,
            business_income=self.business_income(forged_blocks, start_height),
            current_voters=current_voters,
            admin_payout_timestamp=latest_admin_payout_timestamp(latest, [a.wallet for a in cfg.admins]),
        )

        payouts = ProposalAllocator(cfg).allocate(
            shares,
            current_height=current_height,
            latest_payout_heights=latest.heights,
            small_wallets=distributor.redirect_small_wallets(balance_result.small_wallets),
            timestamp=run_timestamp,
        )
        log_event(
            log,
            "payout_run_done",
            delegate=cfg.delegate,
            blocks=len(forged_blocks),
            oldest=forged_blocks[-1].height,
            newest=current_height,
            voters=len(tracked),
            payouts=len(payouts.payouts),
            total_payout=payouts.total_payout,
            delegate_profit=payouts.delegate_profit,
            acf_donation=payouts.acf_donation,
        )
        return payouts

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _check_network(self, network: NetworkConfig) -> None:
        if network.version != self.config.network_version:
            raise ConfigError(
                "invalid_config",
                "network_version_mismatch",
                {"configured": self.config.network_version, "node": network.version},
            )

    def voter_wallets(
        self,
        current_wallets: Sequence[Voter],
        mutations: Sequence[VoterMutation],
        eligible: Iterable[str],
    ) -> List[Voter]:
        """Wallets of eligible voters; former voters are fetched from the node, filtered ones never are."""
        allowed = set(eligible)
        wallets: Dict[str, Voter] = {w.address: w for w in current_wallets if w.address in allowed}
        for m in mutations:
            if m.address in allowed and m.address not in wallets:
                wallets[m.address] = self.node.get_wallet(m.address)
                log.info("Added wallet of former voter %s", m.address)
        return list(wallets.values())

    def business_income(self, forged_blocks: Sequence[ForgedBlock], start_height: int) -> Dict[int, Decimal]:
        cfg = self.config
        if not cfg.business_wallet:
            return {}
        try:
            transactions = self.store.get_transactions([cfg.business_wallet], [], start_height, cfg.end_block_height)
        except CollaboratorError as e:
            log_event(log, "business_income_unavailable", level=logging.WARNING, error=str(e))
            return {}
        return business_income_per_block(forged_blocks, transactions, cfg)

