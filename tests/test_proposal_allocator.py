from __future__ import annotations

from decimal import Decimal

from tbw.ledger.types import PayoutBalances
from tbw.runtime.config import AdminShare, SmallWalletBonus, default_tbw_config, with_overrides
from tbw.runtime.proposal import ProposalAllocator


def _cfg(**kw):
    base = dict(
        voter_share=Decimal("0.9"),
        voter_fee_share=Decimal("0.5"),
        donation_share=Decimal("0.01"),
        min_payout_value=Decimal(0),
    )
    base.update(kw)
    return with_overrides(default_tbw_config(), **base)


def _allocate(cfg, rewards, fees=None, business=None, heights=None, small=None, current_height=1_000):
    balances = PayoutBalances(
        rewards={k: Decimal(v) for k, v in rewards.items()},
        fees={k: Decimal(v) for k, v in (fees or {}).items()},
        business={k: Decimal(v) for k, v in (business or {}).items()},
    )
    return ProposalAllocator(cfg).allocate(
        balances,
        current_height=current_height,
        latest_payout_heights=heights or {},
        small_wallets=small or {},
        timestamp=4242,
    )


def test_custom_share_split_donation_voter_and_delegate() -> None:
    cfg = _cfg(custom_shares={"D": Decimal("0.5")}, transfer_fee=Decimal(1), multi_transfer_fee=Decimal(1))
    alloc = ProposalAllocator(cfg)
    split = alloc.split(Decimal(1_000_000_000), alloc.share_percentage("D", {}))
    assert split.donation == Decimal(10_000_000)
    assert split.voter == Decimal(500_000_000)
    assert split.delegate == Decimal(490_000_000)


def test_donation_rounds_up_and_voter_rounds_down() -> None:
    alloc = ProposalAllocator(_cfg())
    split = alloc.split(Decimal("1050.5"), Decimal("0.9"))
    assert split.donation == Decimal(11)  # ceil(10.505)
    assert split.voter == Decimal(945)  # floor(945.45)
    assert split.donation + split.voter + split.delegate == Decimal("1050.5")


def test_below_minimum_payout_is_dropped_and_kept_pending() -> None:
    cfg = _cfg(min_payout_value=Decimal(250_000), donation_share=Decimal(0), voter_share=Decimal(1))
    out = _allocate(cfg, {"E": 100_000, "F": 10_000_000})
    assert "E" not in out.payouts
    assert out.pending == {"E": Decimal(100_000)}
    assert "F" in out.payouts
    # Withheld value is not credited to the delegate.
    assert out.delegate_profit == Decimal(0)


def test_zero_payout_is_dropped_without_pending_entry() -> None:
    out = _allocate(_cfg(voter_share=Decimal(0)), {"A": 500})
    assert out.payouts == {}
    assert out.pending == {}


def test_frequency_gate() -> None:
    cfg = _cfg(custom_frequencies={"A": 100, "B": 100})
    out = _allocate(cfg, {"A": 10_000, "B": 10_000, "C": 10_000}, heights={"A": 950, "B": 800, "C": 990}, current_height=1_000)
    # A: 950 + 100 >= 1000 -> not yet; B: 800 + 100 < 1000 -> due; C has no custom frequency.
    assert "A" not in out.payouts and "A" not in out.pending
    assert "B" in out.payouts
    assert "C" in out.payouts


def test_custom_share_is_clamped() -> None:
    cfg = _cfg(custom_shares={"hi": Decimal("1"), "neg": Decimal("-0.2")})
    alloc = ProposalAllocator(cfg)
    assert alloc.share_percentage("hi", {}) == Decimal("0.99")
    assert alloc.share_percentage("neg", {}) == Decimal(0)


def test_small_wallet_bonus_percentage() -> None:
    cfg = _cfg(small_wallet_bonus=SmallWalletBonus(wallet_limit=Decimal(100), percentage=Decimal("0.95")))
    alloc = ProposalAllocator(cfg)
    assert alloc.share_percentage("S", {"S": True}) == Decimal("0.95")
    assert alloc.share_percentage("L", {"L": False}) == Decimal("0.9")
    # Flags are ignored when no bonus is configured.
    assert ProposalAllocator(_cfg()).share_percentage("S", {"S": True}) == Decimal("0.9")


def test_fee_split_goes_to_payout_and_delegate() -> None:
    cfg = _cfg(donation_share=Decimal(0), voter_share=Decimal(0), transfer_fee=Decimal(1), multi_transfer_fee=Decimal(1))
    out = _allocate(cfg, {"A": 0}, fees={"A": 1_001})
    # floor(1001 * 0.5) to the voter; the delegate keeps the rest.
    assert out.delegate_profit == Decimal(501)
    assert out.total_fees == Decimal(1)
    assert out.payouts == {"A": Decimal(499)}


def test_business_income_uses_business_share_when_set() -> None:
    cfg = _cfg(donation_share=Decimal(0), voter_business_share=Decimal("0.5"), transfer_fee=Decimal(1), multi_transfer_fee=Decimal(1))
    out = _allocate(cfg, {"A": 1_000}, business={"A": 1_000})
    # 900 reward share + 500 business share, minus the single multi-payment fee.
    assert out.payouts == {"A": Decimal(1_399)}
    assert out.delegate_profit == Decimal(600)


def test_fair_fee_total_counts_multi_payments_and_fixed_recipients() -> None:
    cfg = _cfg(
        transfers_per_multi_payment=2,
        multi_transfer_fee=Decimal(50),
        transfer_fee=Decimal(10),
        admins=(AdminShare(wallet="adm1", percentage=Decimal("0.5")),),
    )
    alloc = ProposalAllocator(cfg)
    # ceil(5 / 2) * 50 + (1 admin + 1 donation) * 10
    assert alloc.fair_fee_total(5) == Decimal(170)
    assert alloc.fair_fee_total(0) == Decimal(20)


def test_fair_fee_deductions_conserve_total_fees() -> None:
    cfg = _cfg(transfer_fee=Decimal(10_000_000), multi_transfer_fee=Decimal(50_000_000))
    rewards = {f"V{i}": 123_456_789 * (i + 1) for i in range(7)}
    out = _allocate(cfg, rewards)

    before = {}
    for address, reward in rewards.items():
        split = ProposalAllocator(cfg).split(Decimal(reward), Decimal("0.9"))
        before[address] = split.voter

    deducted = sum(before[a] - out.payouts[a] for a in out.payouts)
    assert out.total_fees == Decimal(60_000_000)
    assert out.total_fees <= deducted <= out.total_fees + len(out.payouts)
    assert all(v >= 0 for v in out.payouts.values())
    assert all(v == v.to_integral_value() for v in out.payouts.values())


def test_value_is_accounted_for() -> None:
    cfg = _cfg(transfer_fee=Decimal(1), multi_transfer_fee=Decimal(1))
    rewards = {"A": 10_000, "B": 33_333}
    fees = {"A": 777}
    out = _allocate(cfg, rewards, fees=fees)
    accrued = Decimal(sum(rewards.values()) + sum(fees.values()))
    paid_before_fees = sum(out.payouts.values()) + out.total_fees
    # Fair fee flooring can shave at most one unit per payout.
    assert accrued - len(out.payouts) <= paid_before_fees + out.delegate_profit + out.acf_donation <= accrued


def test_timestamp_is_carried_through() -> None:
    out = _allocate(_cfg(), {"A": 10_000})
    assert out.timestamp == 4242


def test_fee_only_and_business_only_addresses_are_paid() -> None:
    cfg = _cfg(
        donation_share=Decimal(0),
        voter_business_share=Decimal("0.5"),
        transfer_fee=Decimal(1),
        multi_transfer_fee=Decimal(1),
    )
    out = _allocate(cfg, {"R": 1_000}, fees={"F": 1_000}, business={"B": 1_000})

    assert set(out.payouts) == {"R", "F", "B"}
    # Each payout carries its part of the single multi-payment fee.
    assert 499 <= out.payouts["F"] <= 500
    assert 499 <= out.payouts["B"] <= 500
    assert out.delegate_profit == Decimal(1_100)
