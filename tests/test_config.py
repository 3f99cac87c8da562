from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

import pytest

from tbw.env import load_dotenv_if_present, reset_dotenv_state
from tbw.runtime.config import (
    default_tbw_config,
    load_tbw_config,
    read_tbw_config_file,
    tbw_config_from_env,
    tbw_config_from_mapping,
    with_overrides,
)
from tbw.runtime.errors import ConfigError


def test_defaults_are_valid() -> None:
    cfg = default_tbw_config()
    assert cfg.min_payout_value == Decimal(250_000)
    assert cfg.donation_share == Decimal("0.005")
    assert cfg.payout_signature == "delegate - "


def test_mapping_converts_coin_amounts_and_normalizes() -> None:
    cfg = tbw_config_from_mapping(
        {
            "delegate": "MyDelegate",
            "voter_share": "0.8",
            "min_payout_value": "0.5",
            "min_balance": 10,
            "transfer_fee": 0.1,
            "small_wallet_bonus": {"walletLimit": 100, "percentage": "0.95"},
            "custom_shares": {"A": "0.5"},
            "custom_frequencies": {"A": 50},
            "whitelist": "A, B,,C",
            "node_url": "http://node:4003/",
        }
    )
    assert cfg.delegate == "mydelegate"
    assert cfg.voter_fee_share == Decimal("0.8")
    assert cfg.min_payout_value == Decimal(50_000_000)
    assert cfg.min_balance == Decimal(1_000_000_000)
    assert cfg.transfer_fee == Decimal(10_000_000)
    assert cfg.small_wallet_bonus is not None
    assert cfg.small_wallet_bonus.wallet_limit == Decimal(10_000_000_000)
    assert cfg.custom_shares == {"A": Decimal("0.5")}
    assert cfg.custom_frequencies == {"A": 50}
    assert cfg.whitelist == ("A", "B", "C")
    assert cfg.node_url == "http://node:4003"


@pytest.mark.parametrize(
    "raw, reason",
    [
        ({"voter_share": "1.5"}, "voter_share_out_of_range"),
        ({"voter_fee_share": "-0.1"}, "voter_fee_share_out_of_range"),
        ({"donation_share": "abc"}, "donation_share_not_a_number"),
        ({"custom_frequencies": {"A": 0}}, "custom_frequency_must_be_positive"),
        ({"start_block_height": 10, "end_block_height": 5}, "end_block_height_must_exceed_start"),
        ({"small_wallet_bonus": {"percentage": "0.5"}}, "small_wallet_bonus_incomplete"),
        ({"custom_shares": "{not json"}, "custom_shares_invalid_json"),
    ],
)
def test_invalid_values_raise_config_error(raw, reason) -> None:
    with pytest.raises(ConfigError) as ei:
        tbw_config_from_mapping(raw)
    assert ei.value.reason == reason


def test_admin_percentages_above_100_are_rejected() -> None:
    with pytest.raises(ConfigError) as ei:
        tbw_config_from_mapping({"admins": {"adm1": {"percentage": "0.7"}, "adm2": {"percentage": "0.4"}}})
    assert ei.value.reason == "admin_percentage_exceeds_100"


def test_admins_keep_order_and_default_percentage() -> None:
    cfg = tbw_config_from_mapping({"admins": {"adm2": {"percentage": "0.4"}, "adm1": {"percentage": "0.6"}}})
    assert [(a.wallet, a.percentage) for a in cfg.admins] == [
        ("adm2", Decimal("0.4")),
        ("adm1", Decimal("0.6")),
    ]

    (solo,) = tbw_config_from_mapping({"admins": {"adm1": {}}}).admins
    assert solo.percentage == Decimal(1)


def test_from_env_uses_legacy_names() -> None:
    env = {
        "DELEGATE": "alice",
        "PAYOUT": "0.9",
        "PAYOUT_FEES": "0.5",
        "MIN_PAYOUT_VALUE": "0.1",
        "CUSTOM_PAYOUT_LIST": json.dumps({"A": 0.95}),
        "CUSTOM_REDIRECTIONS": json.dumps({"A": "B"}),
        "BLOCKLIST": "X,Y",
        "POOL_HOPPING_PROTECTION": "true",
        "NO_VENDORFIELD": "1",
        "NODE": "10.0.0.1",
        "PORT": "4003",
    }
    cfg = tbw_config_from_env(env)
    assert cfg.delegate == "alice"
    assert cfg.voter_share == Decimal("0.9")
    assert cfg.voter_fee_share == Decimal("0.5")
    assert cfg.min_payout_value == Decimal(10_000_000)
    assert cfg.custom_shares == {"A": Decimal("0.95")}
    assert cfg.wallet_redirections == {"A": "B"}
    assert cfg.blacklist == ("X", "Y")
    assert cfg.pool_hopping_protection is True
    assert cfg.no_signature is True
    assert cfg.node_url == "http://10.0.0.1:4003"


def test_yaml_and_json_files(tmp_path: Path) -> None:
    y = tmp_path / "tbw.yaml"
    y.write_text("delegate: bob\nvoter_share: 0.75\nblacklist:\n  - X\n", encoding="utf-8")
    cfg = read_tbw_config_file(str(y))
    assert cfg.delegate == "bob"
    assert cfg.voter_share == Decimal("0.75")
    assert cfg.blacklist == ("X",)

    j = tmp_path / "tbw.json"
    j.write_text(json.dumps({"delegate": "carol", "history_amount_blocks": 100}), encoding="utf-8")
    assert read_tbw_config_file(str(j)).history_amount_blocks == 100

    bad = tmp_path / "bad.yaml"
    bad.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        read_tbw_config_file(str(bad))


def test_load_prefers_explicit_path_then_env_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    p = tmp_path / "cfg.json"
    p.write_text(json.dumps({"delegate": "dave"}), encoding="utf-8")
    monkeypatch.setenv("TBW_CONFIG_PATH", str(p))
    assert load_tbw_config().delegate == "dave"

    q = tmp_path / "other.json"
    q.write_text(json.dumps({"delegate": "erin"}), encoding="utf-8")
    assert load_tbw_config(config_path=str(q)).delegate == "erin"


def test_dotenv_is_loaded_once_without_overriding(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("DELEGATE=frank\nPAYOUT=0.6\n", encoding="utf-8")
    monkeypatch.setenv("PAYOUT", "0.7")
    monkeypatch.delenv("DELEGATE", raising=False)
    monkeypatch.delenv("TBW_CONFIG_PATH", raising=False)

    reset_dotenv_state()
    try:
        assert load_dotenv_if_present(str(env_file)) is True
        assert load_dotenv_if_present(str(env_file)) is False
        cfg = tbw_config_from_env()
        assert cfg.delegate == "frank"
        assert cfg.voter_share == Decimal("0.7")
    finally:
        reset_dotenv_state()
        monkeypatch.delenv("DELEGATE", raising=False)


def test_with_overrides_revalidates() -> None:
    with pytest.raises(ConfigError):
        with_overrides(default_tbw_config(), donation_share=Decimal(2))
