from __future__ import annotations

from decimal import Decimal

from tbw.ledger.types import ForgedBlock, MultiPaymentItem, Transaction
from tbw.runtime.business import business_income_per_block
from tbw.runtime.config import default_tbw_config, with_overrides

BLOCKS = [
    ForgedBlock(height=300, timestamp=3000),
    ForgedBlock(height=200, timestamp=2000),
    ForgedBlock(height=100, timestamp=1000),
]


def _txs():
    return [
        Transaction(height=350, amount=7, sender_id="X", recipient_id="BIZ"),
        Transaction(height=250, amount=40, sender_id="X", recipient_id="BIZ"),
        Transaction(height=200, amount=2, sender_id="X", recipient_id="BIZ"),
        Transaction(height=150, amount=99, sender_id="X", recipient_id="OTHER"),
        Transaction(
            height=120,
            sender_id="X",
            multi_payment=[MultiPaymentItem(recipient_id="BIZ", amount=5), MultiPaymentItem(recipient_id="Q", amount=1)],
        ),
    ]


def test_income_per_block_window() -> None:
    cfg = with_overrides(default_tbw_config(), business_wallet="BIZ")
    income = business_income_per_block(BLOCKS, _txs(), cfg)
    assert income == {300: Decimal(7), 200: Decimal(42), 100: Decimal(0)}


def test_multi_payment_income_only_when_enabled() -> None:
    cfg = with_overrides(default_tbw_config(), business_wallet="BIZ", business_share_multi_payment_income=True)
    income = business_income_per_block(BLOCKS, _txs(), cfg)
    assert income[100] == Decimal(5)


def test_unconfigured_wallet_or_no_blocks_is_empty() -> None:
    assert business_income_per_block(BLOCKS, _txs(), default_tbw_config()) == {}
    cfg = with_overrides(default_tbw_config(), business_wallet="BIZ")
    assert business_income_per_block([], _txs(), cfg) == {}
