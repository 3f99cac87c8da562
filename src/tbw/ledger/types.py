# src/tbw/ledger/types.py
"""tbw.ledger.types

Typed ledger entities shared by the engines.

Every row coming from the data store or the node API is validated into one of
these models at the collaborator boundary; the engines never see raw dicts.

Conventions:
  - frozen models (rows are immutable once fetched)
  - unknown keys rejected
  - snake_case attributes, camelCase aliases (node API payload shape)
  - amounts are Decimal smallest units
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from tbw.ledger.amounts import AMOUNT_CONTEXT
from tbw.ledger.constants import ZERO


class _RowModel(BaseModel):
    """Strict, immutable row: reject unknown keys."""

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------


class ForgedBlock(_RowModel):
    """A block forged by the delegate."""

    height: int = Field(ge=1)
    # Optional at the schema level; the replay refuses blocks without one.
    timestamp: Optional[int] = Field(default=None, ge=0)
    fees: Decimal = Field(default=ZERO, ge=0)
    reward: Decimal = Field(default=ZERO, ge=0)


class VoterBlock(_RowModel):
    """A block forged by a voter that is itself a delegate."""

    address: str
    height: int = Field(ge=1)
    fees: Decimal = Field(default=ZERO, ge=0)
    reward: Decimal = Field(default=ZERO, ge=0)

    @property
    def gains(self) -> Decimal:
        return self.fees + self.reward


# ---------------------------------------------------------------------------
# Votes
# ---------------------------------------------------------------------------


class VoterMutation(_RowModel):
    """A vote ("+<pubkey>") or unvote ("-<pubkey>") targeting the delegate."""

    height: int = Field(ge=1)
    address: str
    vote: str
    # Position of the transaction inside its block; orders same-height mutations.
    sequence: Optional[int] = None

    @field_validator("vote")
    @classmethod
    def _direction_tag(cls, v: str) -> str:
        if not v or v[0] not in "+-":
            raise ValueError(f"vote must start with '+' or '-' (got {v!r})")
        return v

    @property
    def is_vote(self) -> bool:
        return self.vote.startswith("+")

    @property
    def is_unvote(self) -> bool:
        return self.vote.startswith("-")


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------


class StakeTimestamps(_RowModel):
    power_up: int
    redeemable: int


class Stake(_RowModel):
    id: str
    amount: Decimal = Field(ge=0)
    power: Decimal = Field(ge=0)
    timestamps: StakeTimestamps

    @model_validator(mode="after")
    def _power_covers_amount(self) -> "Stake":
        if self.power < self.amount:
            raise ValueError(f"stake {self.id}: power must be >= amount")
        return self

    @property
    def redeemable_value(self) -> Decimal:
        """Value realized when the stake converts: (power - amount) / 2."""
        return AMOUNT_CONTEXT.divide(self.power - self.amount, Decimal(2))


class Voter(_RowModel):
    address: str
    public_key: str = ""
    balance: Decimal = ZERO
    power: Decimal = ZERO
    processed_stakes: List[Stake] = Field(default_factory=list)

    @property
    def voting_weight(self) -> Decimal:
        """Locked power counts even when it exceeds the liquid balance."""
        return max(self.power, self.balance)

    def stake_by_id(self, stake_id: str) -> Optional[Stake]:
        for stake in self.processed_stakes:
            if stake.id == stake_id:
                return stake
        return None


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class MultiPaymentItem(_RowModel):
    recipient_id: str
    amount: Decimal = Field(ge=0)


class Transaction(_RowModel):
    """A value-moving transaction touching at least one tracked wallet."""

    height: int = Field(ge=1)
    amount: Decimal = Field(default=ZERO, ge=0)
    fee: Decimal = Field(default=ZERO, ge=0)
    sender_id: Optional[str] = None
    sender_public_key: str = ""
    recipient_id: Optional[str] = None
    multi_payment: Optional[List[MultiPaymentItem]] = None
    stake_redeem: Optional[str] = None
    timestamp: Optional[int] = None

    @model_validator(mode="after")
    def _single_or_multi(self) -> "Transaction":
        if self.multi_payment is not None and self.recipient_id is not None:
            raise ValueError("multi_payment and recipient_id are mutually exclusive")
        return self


class DelegateTransaction(_RowModel):
    """A transaction previously sent by this delegate."""

    height: int = Field(ge=1)
    timestamp: int = Field(ge=0)
    recipient_id: Optional[str] = None
    multi_payment: Optional[List[MultiPaymentItem]] = None
    vendor_field: Optional[str] = None

    def recipients(self) -> List[str]:
        if self.recipient_id is not None:
            return [self.recipient_id]
        return [p.recipient_id for p in self.multi_payment or []]


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


class NetworkConfig(_RowModel):
    epoch: str = ""
    version: int = Field(ge=0, le=255)
    reward: Decimal = Field(default=ZERO, ge=0)


# ---------------------------------------------------------------------------
# Engine outputs
# ---------------------------------------------------------------------------


class LatestPayouts(_RowModel):
    heights: Dict[str, int] = Field(default_factory=dict)
    timestamps: Dict[str, int] = Field(default_factory=dict)


class PayoutBalances(_RowModel):
    """Accrued shares over the whole block range, keyed by payout address."""

    rewards: Dict[str, Decimal] = Field(default_factory=dict)
    fees: Dict[str, Decimal] = Field(default_factory=dict)
    business: Dict[str, Decimal] = Field(default_factory=dict)

    def addresses(self) -> List[str]:
        seen: Dict[str, None] = {}
        for m in (self.rewards, self.fees, self.business):
            for a in m:
                seen.setdefault(a, None)
        return list(seen)


class Payouts(_RowModel):
    """Final artifact handed to the payment executor."""

    payouts: Dict[str, Decimal] = Field(default_factory=dict)
    delegate_profit: Decimal = ZERO
    acf_donation: Decimal = ZERO
    timestamp: int = 0
    pending: Dict[str, Decimal] = Field(default_factory=dict)
    total_fees: Decimal = ZERO

    @property
    def total_payout(self) -> Decimal:
        return sum(self.payouts.values(), ZERO)
