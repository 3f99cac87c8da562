# src/tbw/storage/sqlite_store.py
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from tbw.ledger.amounts import to_decimal
from tbw.ledger.constants import TX_TYPE_MULTI_PAYMENT, TX_TYPE_TRANSFER, TX_TYPE_VOTE
from tbw.ledger.types import (
    DelegateTransaction,
    ForgedBlock,
    MultiPaymentItem,
    Transaction,
    VoterBlock,
    VoterMutation,
)
from tbw.runtime.errors import CollaboratorError
from tbw.runtime.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("tbw.storage")

TYPE_GROUP_CORE = 1


def _canon_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _asset(row: sqlite3.Row) -> Json:
    raw = row["asset_json"]
    if raw is None or str(raw).strip() == "":
        return {}
    asset = json.loads(str(raw))
    if not isinstance(asset, dict):
        raise ValueError("transaction asset is not a JSON object")
    return asset


def _payments(asset: Json) -> Optional[List[MultiPaymentItem]]:
    payments = asset.get("payments")
    if payments is None:
        return None
    return [MultiPaymentItem.model_validate(p) for p in payments]


def _height_filter(end_height: Optional[int]) -> str:
    return " AND b.height <= :end_height" if end_height is not None else ""


class SqliteLedgerStore:
    """Chain data store backed by a single SQLite file.

    Design goals:
      - a connection per call, never shared across threads
      - every row validated into a typed entity before leaving the store
      - read queries run with query_only set; writes exist for fixtures and imports

    Amounts are stored as TEXT so they round-trip as exact Decimals.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str, busy_timeout_ms: int = 30_000) -> None:
        self.path = str(path)
        self.busy_timeout_ms = max(0, int(busy_timeout_ms))

    def ensure_parent_dir(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(
            self.path,
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys=ON;")
        con.execute("PRAGMA temp_store=MEMORY;")
        con.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms};")
        return con

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @contextmanager
    def _reading(self, what: str) -> Iterator[sqlite3.Connection]:
        """Read-only connection; store and row failures become CollaboratorError."""
        if not Path(self.path).exists():
            raise CollaboratorError("store_unavailable", what, {"path": self.path, "error": "database file not found"})
        try:
            with self.connection() as con:
                con.execute("PRAGMA query_only=ON;")
                yield con
        except sqlite3.Error as e:
            raise CollaboratorError("store_unavailable", what, {"path": self.path, "error": str(e)}) from e
        except (ValueError, KeyError, TypeError) as e:
            raise CollaboratorError("store_bad_row", what, {"path": self.path, "error": str(e)}) from e

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        with self.connection() as con:
            con.execute("BEGIN IMMEDIATE;")
            try:
                yield con
                con.execute("COMMIT;")
            except BaseException:
                con.execute("ROLLBACK;")
                raise

    # ------------------------------------------------------------------
    # Schema and fixtures
    # ------------------------------------------------------------------

    def init_schema(self) -> None:
        self.ensure_parent_dir()
        with self.connection() as con:
            row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
            if row is not None and str(row[0]).strip().lower() not in {"wal", "memory"}:
                raise RuntimeError(f"sqlite journal_mode is '{row[0]}', expected 'wal'")

        with self.write_tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS blocks (
                  id TEXT PRIMARY KEY,
                  height INTEGER NOT NULL UNIQUE,
                  timestamp INTEGER,
                  generator_public_key TEXT NOT NULL,
                  reward TEXT NOT NULL DEFAULT '0',
                  total_fee TEXT NOT NULL DEFAULT '0'
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_blocks_generator ON blocks(generator_public_key, height);")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                  id TEXT PRIMARY KEY,
                  block_id TEXT NOT NULL REFERENCES blocks(id),
                  sequence INTEGER NOT NULL DEFAULT 0,
                  type INTEGER NOT NULL,
                  type_group INTEGER NOT NULL DEFAULT 1,
                  sender_public_key TEXT NOT NULL,
                  sender_id TEXT,
                  recipient_id TEXT,
                  amount TEXT NOT NULL DEFAULT '0',
                  fee TEXT NOT NULL DEFAULT '0',
                  timestamp INTEGER,
                  vendor_field TEXT,
                  asset_json TEXT
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_tx_block ON transactions(block_id);")
            con.execute("CREATE INDEX IF NOT EXISTS idx_tx_sender ON transactions(sender_public_key);")
            con.execute("CREATE INDEX IF NOT EXISTS idx_tx_recipient ON transactions(recipient_id);")

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            elif str(row["value"]) != str(self.SCHEMA_VERSION):
                raise RuntimeError(
                    f"sqlite schema_version mismatch: have={row['value']} want={self.SCHEMA_VERSION}. "
                    "Refuse to open a store with a different layout."
                )

    def add_block(
        self,
        *,
        height: int,
        generator_public_key: str,
        timestamp: Optional[int],
        reward: Any = 0,
        total_fee: Any = 0,
        block_id: Optional[str] = None,
    ) -> str:
        bid = block_id or f"block-{int(height)}"
        with self.write_tx() as con:
            con.execute(
                """
                INSERT INTO blocks(id, height, timestamp, generator_public_key, reward, total_fee)
                VALUES(?, ?, ?, ?, ?, ?);
                """,
                (bid, int(height), timestamp, generator_public_key, str(to_decimal(reward)), str(to_decimal(total_fee))),
            )
        return bid

    def add_transaction(
        self,
        *,
        height: int,
        tx_type: int,
        sender_public_key: str,
        sender_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
        amount: Any = 0,
        fee: Any = 0,
        timestamp: Optional[int] = None,
        vendor_field: Optional[str] = None,
        asset: Optional[Json] = None,
        sequence: int = 0,
        type_group: int = TYPE_GROUP_CORE,
        tx_id: Optional[str] = None,
    ) -> str:
        with self.write_tx() as con:
            row = con.execute("SELECT id FROM blocks WHERE height=?;", (int(height),)).fetchone()
            if row is None:
                raise ValueError(f"no block at height {height}")
            tid = tx_id or f"tx-{int(height)}-{int(sequence)}"
            con.execute(
                """
                INSERT INTO transactions(
                  id, block_id, sequence, type, type_group, sender_public_key, sender_id,
                  recipient_id, amount, fee, timestamp, vendor_field, asset_json
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    tid,
                    str(row["id"]),
                    int(sequence),
                    int(tx_type),
                    int(type_group),
                    sender_public_key,
                    sender_id,
                    recipient_id,
                    str(to_decimal(amount)),
                    str(to_decimal(fee)),
                    timestamp,
                    vendor_field,
                    _canon_json(asset) if asset is not None else None,
                ),
            )
        return tid

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_forged_blocks(
        self,
        delegate_public_key: str,
        start_height: int,
        end_height: Optional[int],
        limit: int,
    ) -> List[ForgedBlock]:
        params: Json = {"pk": delegate_public_key, "start_height": int(start_height), "limit": int(limit)}
        if end_height is not None:
            params["end_height"] = int(end_height)
        with self._reading("get_forged_blocks") as con:
            rows = con.execute(
                f"""
                SELECT b.height, b.timestamp, b.reward, b.total_fee
                FROM blocks b
                WHERE b.generator_public_key = :pk AND b.height >= :start_height{_height_filter(end_height)}
                ORDER BY b.height DESC
                LIMIT :limit;
                """,
                params,
            ).fetchall()
            blocks = [
                ForgedBlock(
                    height=int(r["height"]),
                    timestamp=r["timestamp"],
                    fees=Decimal(str(r["total_fee"])),
                    reward=Decimal(str(r["reward"])),
                )
                for r in rows
            ]

        if blocks:
            log_event(log, "forged_blocks_loaded", count=len(blocks), oldest=blocks[-1].height, newest=blocks[0].height)
        else:
            log_event(log, "forged_blocks_loaded", level=logging.WARNING, count=0, start_height=start_height)
        return blocks

    def get_voter_mutations(
        self,
        delegate_public_key: str,
        start_height: int,
        end_height: Optional[int] = None,
    ) -> List[VoterMutation]:
        params: Json = {
            "pattern": f"%{delegate_public_key}%",
            "start_height": int(start_height),
            "vote_type": TX_TYPE_VOTE,
            "type_group": TYPE_GROUP_CORE,
        }
        if end_height is not None:
            params["end_height"] = int(end_height)
        mutations: List[VoterMutation] = []
        with self._reading("get_voter_mutations") as con:
            rows = con.execute(
                f"""
                SELECT t.sender_id, t.sequence, t.asset_json, b.height
                FROM transactions t INNER JOIN blocks b ON b.id = t.block_id
                WHERE t.type = :vote_type AND t.type_group = :type_group
                  AND t.asset_json LIKE :pattern
                  AND b.height >= :start_height{_height_filter(end_height)}
                ORDER BY b.height ASC, t.sequence ASC;
                """,
                params,
            ).fetchall()
            for r in rows:
                votes = _asset(r).get("votes") or []
                vote = next((v for v in votes if isinstance(v, str) and delegate_public_key in v), None)
                if vote is None:
                    continue
                if not r["sender_id"]:
                    raise ValueError(f"vote at height {r['height']} has no sender address")
                mutations.append(
                    VoterMutation(height=int(r["height"]), address=str(r["sender_id"]), vote=vote, sequence=int(r["sequence"]))
                )

        for m in mutations:
            log.info("Vote: %s %s at blockHeight %s", m.address, "voted" if m.is_vote else "unvoted", m.height)
        log_event(log, "voter_mutations_loaded", count=len(mutations))
        return mutations

    def get_transactions(
        self,
        addresses: Sequence[str],
        public_keys: Sequence[str],
        start_height: int,
        end_height: Optional[int] = None,
    ) -> List[Transaction]:
        params: Json = {
            "addresses": json.dumps(list(addresses)),
            "public_keys": json.dumps(list(public_keys)),
            "start_height": int(start_height),
            "multi_type": TX_TYPE_MULTI_PAYMENT,
        }
        if end_height is not None:
            params["end_height"] = int(end_height)
        out: List[Transaction] = []
        with self._reading("get_transactions") as con:
            rows = con.execute(
                f"""
                SELECT t.type, t.sender_id, t.sender_public_key, t.recipient_id, t.amount, t.fee,
                       t.timestamp, t.asset_json, b.height
                FROM transactions t INNER JOIN blocks b ON b.id = t.block_id
                WHERE b.height >= :start_height{_height_filter(end_height)}
                  AND (
                    t.sender_public_key IN (SELECT value FROM json_each(:public_keys))
                    OR t.recipient_id IN (SELECT value FROM json_each(:addresses))
                    OR t.type = :multi_type
                  )
                ORDER BY b.height DESC, t.sequence DESC;
                """,
                params,
            ).fetchall()
            for r in rows:
                out.append(self._transaction_from_row(r))

        log_event(log, "transactions_loaded", count=len(out), wallets=len(addresses))
        return out

    @staticmethod
    def _transaction_from_row(r: sqlite3.Row) -> Transaction:
        asset = _asset(r)
        multi = _payments(asset) if int(r["type"]) == TX_TYPE_MULTI_PAYMENT else None
        recipient = None if multi is not None else r["recipient_id"]
        amount = Decimal(str(r["amount"]))

        stake_create = asset.get("stakeCreate")
        if isinstance(stake_create, dict) and r["sender_id"] != recipient:
            # A stake created for another wallet arrives there as its staked amount.
            amount = to_decimal(stake_create.get("amount", amount))

        stake_redeem = asset.get("stakeRedeem")
        return Transaction(
            height=int(r["height"]),
            amount=amount,
            fee=Decimal(str(r["fee"])),
            sender_id=r["sender_id"],
            sender_public_key=str(r["sender_public_key"]),
            recipient_id=recipient,
            multi_payment=multi,
            stake_redeem=str(stake_redeem["id"]) if isinstance(stake_redeem, dict) and "id" in stake_redeem else None,
            timestamp=r["timestamp"],
        )

    def get_voting_delegate_blocks(
        self,
        wallets: Mapping[str, str],
        start_height: int,
        end_height: Optional[int] = None,
    ) -> List[VoterBlock]:
        if not wallets:
            return []
        params: Json = {"public_keys": json.dumps(sorted(wallets)), "start_height": int(start_height)}
        if end_height is not None:
            params["end_height"] = int(end_height)
        with self._reading("get_voting_delegate_blocks") as con:
            rows = con.execute(
                f"""
                SELECT b.generator_public_key, b.height, b.total_fee, b.reward
                FROM blocks b
                WHERE b.height >= :start_height{_height_filter(end_height)}
                  AND b.generator_public_key IN (SELECT value FROM json_each(:public_keys))
                ORDER BY b.height ASC;
                """,
                params,
            ).fetchall()
            blocks = [
                VoterBlock(
                    address=wallets[str(r["generator_public_key"])],
                    height=int(r["height"]),
                    fees=Decimal(str(r["total_fee"])),
                    reward=Decimal(str(r["reward"])),
                )
                for r in rows
            ]
        log_event(log, "voting_delegate_blocks_loaded", count=len(blocks))
        return blocks

    def get_delegate_transactions(
        self,
        delegate_public_key: str,
        start_height: int,
        end_height: Optional[int] = None,
    ) -> List[DelegateTransaction]:
        params: Json = {
            "pk": delegate_public_key,
            "start_height": int(start_height),
            "transfer": TX_TYPE_TRANSFER,
            "multi": TX_TYPE_MULTI_PAYMENT,
            "type_group": TYPE_GROUP_CORE,
        }
        if end_height is not None:
            params["end_height"] = int(end_height)
        out: List[DelegateTransaction] = []
        with self._reading("get_delegate_transactions") as con:
            rows = con.execute(
                f"""
                SELECT t.type, t.recipient_id, t.timestamp, t.vendor_field, t.asset_json, b.height
                FROM transactions t INNER JOIN blocks b ON b.id = t.block_id
                WHERE b.height >= :start_height{_height_filter(end_height)}
                  AND t.type_group = :type_group
                  AND t.type IN (:transfer, :multi)
                  AND t.sender_public_key = :pk
                ORDER BY b.height DESC, t.sequence DESC;
                """,
                params,
            ).fetchall()
            for r in rows:
                is_transfer = int(r["type"]) == TX_TYPE_TRANSFER
                out.append(
                    DelegateTransaction(
                        height=int(r["height"]),
                        timestamp=int(r["timestamp"] or 0),
                        recipient_id=r["recipient_id"] if is_transfer else None,
                        multi_payment=None if is_transfer else _payments(_asset(r)),
                        vendor_field=r["vendor_field"],
                    )
                )
        log_event(log, "delegate_transactions_loaded", count=len(out))
        return out
