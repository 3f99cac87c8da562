# src/tbw/storage/store.py
from __future__ import annotations

from typing import List, Mapping, Optional, Protocol, Sequence

from tbw.ledger.types import DelegateTransaction, ForgedBlock, Transaction, VoterBlock, VoterMutation


class LedgerStore(Protocol):
    """Read operations the payout engine needs from the chain database.

    Every method returns typed rows in a defined order and raises
    CollaboratorError when the store cannot answer.
    """

    def get_forged_blocks(
        self,
        delegate_public_key: str,
        start_height: int,
        end_height: Optional[int],
        limit: int,
    ) -> List[ForgedBlock]:
        """Blocks forged by the delegate, newest first."""
        ...

    def get_voter_mutations(
        self,
        delegate_public_key: str,
        start_height: int,
        end_height: Optional[int] = None,
    ) -> List[VoterMutation]:
        """Votes and unvotes for the delegate, ascending (height, sequence)."""
        ...

    def get_transactions(
        self,
        addresses: Sequence[str],
        public_keys: Sequence[str],
        start_height: int,
        end_height: Optional[int] = None,
    ) -> List[Transaction]:
        """Value-moving transactions sent or received by the given wallets, newest first."""
        ...

    def get_voting_delegate_blocks(
        self,
        wallets: Mapping[str, str],
        start_height: int,
        end_height: Optional[int] = None,
    ) -> List[VoterBlock]:
        """Blocks forged by voters; `wallets` maps public key -> address."""
        ...

    def get_delegate_transactions(
        self,
        delegate_public_key: str,
        start_height: int,
        end_height: Optional[int] = None,
    ) -> List[DelegateTransaction]:
        """Transfers and multi-payments sent by the delegate, newest first."""
        ...
