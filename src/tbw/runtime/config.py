# src/tbw/runtime/config.py
from __future__ import annotations

"""Operator configuration for a payout run.

A single frozen TbwConfig is built once (file, environment or code), validated
fail-fast, and then passed explicitly to every component. No engine reads the
process environment.

Amount settings are written in coins by operators and stored in smallest units.
"""

import json
import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from tbw.env import load_dotenv_if_present
from tbw.ledger.amounts import coins_to_units, to_decimal
from tbw.ledger.constants import (
    DEFAULT_DONATION_SHARE,
    DEFAULT_HISTORY_AMOUNT_BLOCKS,
    DEFAULT_TRANSFERS_PER_MULTI_PAYMENT,
    ONE,
    PAYOUT_SIGNATURE_SEPARATOR,
    ZERO,
)
from tbw.runtime.errors import ConfigError

Json = Dict[str, Any]


@dataclass(frozen=True)
class SmallWalletBonus:
    wallet_limit: Decimal  # smallest units
    percentage: Decimal


@dataclass(frozen=True)
class AdminShare:
    wallet: str
    percentage: Decimal


@dataclass(frozen=True)
class TbwConfig:
    delegate: str
    network_version: int

    # Block window
    start_block_height: int
    end_block_height: Optional[int]
    history_amount_blocks: int

    # Shares (fractions in [0, 1])
    voter_share: Decimal
    voter_fee_share: Decimal
    voter_business_share: Optional[Decimal]
    donation_share: Decimal

    # Thresholds (smallest units)
    min_payout_value: Decimal
    min_balance: Decimal
    small_wallet_bonus: Optional[SmallWalletBonus]

    # Per-address policy
    custom_shares: Mapping[str, Decimal] = field(default_factory=dict)
    custom_frequencies: Mapping[str, int] = field(default_factory=dict)
    wallet_redirections: Mapping[str, str] = field(default_factory=dict)
    whitelist: Tuple[str, ...] = ()
    blacklist: Tuple[str, ...] = ()
    admins: Tuple[AdminShare, ...] = ()
    pool_hopping_protection: bool = False

    # Outgoing transaction costs (smallest units)
    transfer_fee: Decimal = Decimal(10_000_000)
    multi_transfer_fee: Decimal = Decimal(50_000_000)
    transfers_per_multi_payment: int = DEFAULT_TRANSFERS_PER_MULTI_PAYMENT

    # Business revenue
    business_wallet: str = ""
    business_share_multi_payment_income: bool = False

    # Payout records
    no_signature: bool = False

    # Collaborators
    db_path: str = "./data/ledger.db"
    node_url: str = "http://127.0.0.1:4003"
    api_timeout_s: float = 10.0
    log_level: str = "INFO"

    @property
    def payout_signature(self) -> str:
        return f"{self.delegate}{PAYOUT_SIGNATURE_SEPARATOR}"


def _check_fraction(name: str, v: Decimal) -> None:
    if not v.is_finite() or v < ZERO or v > ONE:
        raise ConfigError("invalid_config", f"{name}_out_of_range", {"value": str(v), "allowed": "[0, 1]"})


def validate_tbw_config(cfg: TbwConfig) -> None:
    """Fail-fast validation. Nothing is partially applied: a bad value stops the run."""

    if not isinstance(cfg.delegate, str) or not cfg.delegate.strip():
        raise ConfigError("invalid_config", "delegate_required")

    if not 0 <= int(cfg.network_version) <= 255:
        raise ConfigError("invalid_config", "network_version_out_of_range", {"value": cfg.network_version})

    if int(cfg.start_block_height) < 1:
        raise ConfigError("invalid_config", "start_block_height_must_be_positive", {"value": cfg.start_block_height})

    if cfg.end_block_height is not None and int(cfg.end_block_height) <= int(cfg.start_block_height):
        raise ConfigError(
            "invalid_config",
            "end_block_height_must_exceed_start",
            {"start": cfg.start_block_height, "end": cfg.end_block_height},
        )

    if int(cfg.history_amount_blocks) <= 0:
        raise ConfigError("invalid_config", "history_amount_blocks_must_be_positive", {"value": cfg.history_amount_blocks})

    _check_fraction("voter_share", cfg.voter_share)
    _check_fraction("voter_fee_share", cfg.voter_fee_share)
    _check_fraction("donation_share", cfg.donation_share)
    if cfg.voter_business_share is not None:
        _check_fraction("voter_business_share", cfg.voter_business_share)

    if cfg.min_payout_value < ZERO:
        raise ConfigError("invalid_config", "min_payout_value_negative", {"value": str(cfg.min_payout_value)})
    if cfg.min_balance < ZERO:
        raise ConfigError("invalid_config", "min_balance_negative", {"value": str(cfg.min_balance)})

    if cfg.small_wallet_bonus is not None:
        if cfg.small_wallet_bonus.wallet_limit < ZERO:
            raise ConfigError("invalid_config", "small_wallet_limit_negative")
        _check_fraction("small_wallet_bonus_percentage", cfg.small_wallet_bonus.percentage)

    for address, freq in cfg.custom_frequencies.items():
        if int(freq) <= 0:
            raise ConfigError("invalid_config", "custom_frequency_must_be_positive", {"address": address, "value": freq})

    for address, target in cfg.wallet_redirections.items():
        if not str(target or "").strip():
            raise ConfigError("invalid_config", "empty_redirection", {"address": address})

    cumulative = ZERO
    for admin in cfg.admins:
        if not admin.wallet.strip():
            raise ConfigError("invalid_config", "admin_wallet_required")
        if admin.percentage < ZERO:
            raise ConfigError("invalid_config", "admin_percentage_negative", {"wallet": admin.wallet})
        cumulative += admin.percentage
        if cumulative > ONE:
            raise ConfigError("invalid_config", "admin_percentage_exceeds_100", {"total": str(cumulative)})

    if cfg.transfer_fee <= ZERO:
        raise ConfigError("invalid_config", "transfer_fee_must_be_positive", {"value": str(cfg.transfer_fee)})
    if cfg.multi_transfer_fee <= ZERO:
        raise ConfigError("invalid_config", "multi_transfer_fee_must_be_positive", {"value": str(cfg.multi_transfer_fee)})
    if int(cfg.transfers_per_multi_payment) <= 0:
        raise ConfigError("invalid_config", "transfers_per_multi_payment_must_be_positive")

    if float(cfg.api_timeout_s) <= 0:
        raise ConfigError("invalid_config", "api_timeout_must_be_positive", {"value": cfg.api_timeout_s})


def default_tbw_config() -> TbwConfig:
    return TbwConfig(
        delegate="delegate",
        network_version=23,
        start_block_height=1,
        end_block_height=None,
        history_amount_blocks=DEFAULT_HISTORY_AMOUNT_BLOCKS,
        voter_share=ZERO,
        voter_fee_share=ZERO,
        voter_business_share=None,
        donation_share=DEFAULT_DONATION_SHARE,
        min_payout_value=coins_to_units("0.0025"),
        min_balance=Decimal(1),
        small_wallet_bonus=None,
    )


# ---------------------------------------------------------------------------
# Raw value coercion
# ---------------------------------------------------------------------------


def _dec(v: Any, *, name: str) -> Decimal:
    try:
        d = to_decimal(v)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ConfigError("invalid_config", f"{name}_not_a_number", {"value": repr(v)}) from e
    if not d.is_finite():
        raise ConfigError("invalid_config", f"{name}_not_a_number", {"value": repr(v)})
    return d


def _int(v: Any, *, name: str) -> int:
    try:
        if isinstance(v, bool):
            raise ValueError("bool is not a valid int")
        return int(v)
    except (TypeError, ValueError) as e:
        raise ConfigError("invalid_config", f"{name}_not_an_integer", {"value": repr(v)}) from e


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off", ""}:
        return False
    # Legacy numeric flags: any positive integer is on.
    try:
        return int(s) > 0
    except ValueError:
        return bool(default)


def _str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v).strip()
    return s if s else str(default)


def _str_list(v: Any) -> Tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, str):
        items: List[Any] = v.split(",")
    elif isinstance(v, (list, tuple)):
        items = list(v)
    else:
        raise ConfigError("invalid_config", "address_list_must_be_list_or_csv", {"value": repr(v)})
    return tuple(s for s in (str(x).strip() for x in items) if s)


def _mapping(v: Any, *, name: str) -> Mapping[str, Any]:
    if v is None:
        return {}
    if isinstance(v, str):
        try:
            v = json.loads(v) if v.strip() else {}
        except json.JSONDecodeError as e:
            raise ConfigError("invalid_config", f"{name}_invalid_json", {"error": str(e)}) from e
    if not isinstance(v, Mapping):
        raise ConfigError("invalid_config", f"{name}_must_be_object", {"type": type(v).__name__})
    return v


def _small_wallet_bonus(v: Any) -> Optional[SmallWalletBonus]:
    raw = _mapping(v, name="small_wallet_bonus")
    if not raw:
        return None
    if ("walletLimit" not in raw and "wallet_limit" not in raw) or "percentage" not in raw:
        raise ConfigError("invalid_config", "small_wallet_bonus_incomplete", {"keys": sorted(raw)})
    limit = raw.get("wallet_limit", raw.get("walletLimit"))
    return SmallWalletBonus(
        wallet_limit=coins_to_units(_dec(limit, name="small_wallet_limit")),
        percentage=_dec(raw["percentage"], name="small_wallet_bonus_percentage"),
    )


def _admins(v: Any) -> Tuple[AdminShare, ...]:
    raw = _mapping(v, name="admins")
    out: List[AdminShare] = []
    for wallet, entry in raw.items():
        entry_d = entry if isinstance(entry, Mapping) else {}
        pct = entry_d.get("percentage", 1)
        out.append(
            AdminShare(
                wallet=str(wallet).strip(),
                percentage=_dec(pct, name="admin_percentage"),
            )
        )
    return tuple(out)


def tbw_config_from_mapping(raw: Mapping[str, Any]) -> TbwConfig:
    """Build and validate a config from snake_case keys (amounts in coins)."""
    d = default_tbw_config()

    voter_share = _dec(raw["voter_share"], name="voter_share") if raw.get("voter_share") is not None else d.voter_share
    fee_raw = raw.get("voter_fee_share")
    biz_raw = raw.get("voter_business_share")
    end_raw = raw.get("end_block_height")

    def _coins(key: str, default_units: Decimal) -> Decimal:
        v = raw.get(key)
        return coins_to_units(_dec(v, name=key)) if v is not None else default_units

    cfg = TbwConfig(
        delegate=_str(raw.get("delegate"), d.delegate).lower(),
        network_version=_int(raw.get("network_version", d.network_version), name="network_version"),
        start_block_height=_int(raw.get("start_block_height", d.start_block_height), name="start_block_height"),
        end_block_height=_int(end_raw, name="end_block_height") if end_raw not in (None, "") else None,
        history_amount_blocks=_int(raw.get("history_amount_blocks", d.history_amount_blocks), name="history_amount_blocks"),
        voter_share=voter_share,
        voter_fee_share=_dec(fee_raw, name="voter_fee_share") if fee_raw is not None else voter_share,
        voter_business_share=_dec(biz_raw, name="voter_business_share") if biz_raw is not None else None,
        donation_share=_dec(raw.get("donation_share", d.donation_share), name="donation_share"),
        min_payout_value=_coins("min_payout_value", d.min_payout_value),
        min_balance=_coins("min_balance", d.min_balance),
        small_wallet_bonus=_small_wallet_bonus(raw.get("small_wallet_bonus")),
        custom_shares={
            str(k): _dec(v, name="custom_share") for k, v in _mapping(raw.get("custom_shares"), name="custom_shares").items()
        },
        custom_frequencies={
            str(k): _int(v, name="custom_frequency")
            for k, v in _mapping(raw.get("custom_frequencies"), name="custom_frequencies").items()
        },
        wallet_redirections={
            str(k): str(v).strip()
            for k, v in _mapping(raw.get("wallet_redirections"), name="wallet_redirections").items()
        },
        whitelist=_str_list(raw.get("whitelist")),
        blacklist=_str_list(raw.get("blacklist")),
        admins=_admins(raw.get("admins")),
        pool_hopping_protection=_bool(raw.get("pool_hopping_protection"), d.pool_hopping_protection),
        transfer_fee=_coins("transfer_fee", d.transfer_fee),
        multi_transfer_fee=_coins("multi_transfer_fee", d.multi_transfer_fee),
        transfers_per_multi_payment=_int(
            raw.get("transfers_per_multi_payment", d.transfers_per_multi_payment), name="transfers_per_multi_payment"
        ),
        business_wallet=_str(raw.get("business_wallet"), d.business_wallet),
        business_share_multi_payment_income=_bool(
            raw.get("business_share_multi_payment_income"), d.business_share_multi_payment_income
        ),
        no_signature=_bool(raw.get("no_signature"), d.no_signature),
        db_path=_str(raw.get("db_path"), d.db_path),
        node_url=_str(raw.get("node_url"), d.node_url).rstrip("/"),
        api_timeout_s=float(_dec(raw.get("api_timeout_s", d.api_timeout_s), name="api_timeout_s")),
        log_level=_str(raw.get("log_level"), d.log_level).upper(),
    )

    validate_tbw_config(cfg)
    return cfg


def read_tbw_config_file(path: str) -> TbwConfig:
    p = Path(path)
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = yaml.safe_load(text)
    else:
        raw = json.loads(text)
    if not isinstance(raw, dict):
        raise ConfigError("invalid_config", "config_file_must_be_object", {"path": str(p)})
    return tbw_config_from_mapping(raw)


# Legacy environment variable names -> config keys.
_ENV_KEYS: Tuple[Tuple[str, str], ...] = (
    ("DELEGATE", "delegate"),
    ("NETWORK_VERSION", "network_version"),
    ("START_BLOCK_HEIGHT", "start_block_height"),
    ("END_BLOCK_HEIGHT", "end_block_height"),
    ("MAX_HISTORY", "history_amount_blocks"),
    ("PAYOUT", "voter_share"),
    ("PAYOUT_FEES", "voter_fee_share"),
    ("PAYOUT_BUSINESS", "voter_business_share"),
    ("DONATION_SHARE", "donation_share"),
    ("MIN_PAYOUT_VALUE", "min_payout_value"),
    ("MIN_BALANCE", "min_balance"),
    ("SMALL_WALLET_BONUS", "small_wallet_bonus"),
    ("CUSTOM_PAYOUT_LIST", "custom_shares"),
    ("CUSTOM_FREQUENCY", "custom_frequencies"),
    ("CUSTOM_REDIRECTIONS", "wallet_redirections"),
    ("WHITELIST", "whitelist"),
    ("BLOCKLIST", "blacklist"),
    ("ADMIN_PAYOUT_LIST", "admins"),
    ("POOL_HOPPING_PROTECTION", "pool_hopping_protection"),
    ("FEE", "transfer_fee"),
    ("MULTI_TRANSFER_FEE", "multi_transfer_fee"),
    ("MAX_TRANSFERS_PER_MULTI", "transfers_per_multi_payment"),
    ("BUSINESS_WALLET", "business_wallet"),
    ("BUSINESS_SHARE_MULTITX_INCOME", "business_share_multi_payment_income"),
    ("NO_VENDORFIELD", "no_signature"),
    ("DB_PATH", "db_path"),
    ("NODE_URL", "node_url"),
    ("API_TIMEOUT_S", "api_timeout_s"),
    ("TBW_LOG_LEVEL", "log_level"),
)


def tbw_config_from_env(environ: Optional[Mapping[str, str]] = None) -> TbwConfig:
    if environ is None:
        load_dotenv_if_present()
        environ = os.environ

    raw: Json = {}
    for env_name, key in _ENV_KEYS:
        v = environ.get(env_name)
        if v is not None and str(v).strip() != "":
            raw[key] = v

    # NODE + PORT is the legacy way of pointing at the API.
    if "node_url" not in raw and environ.get("NODE"):
        port = str(environ.get("PORT") or "").strip()
        raw["node_url"] = f"http://{environ['NODE'].strip()}" + (f":{port}" if port else "")

    return tbw_config_from_mapping(raw)


def load_tbw_config(*, config_path: Optional[str] = None) -> TbwConfig:
    p = config_path or os.environ.get("TBW_CONFIG_PATH")
    if p:
        return read_tbw_config_file(p)
    return tbw_config_from_env()


def with_overrides(cfg: TbwConfig, **changes: Any) -> TbwConfig:
    """Copy with changed fields, re-validated."""
    out = replace(cfg, **changes)
    validate_tbw_config(out)
    return out
