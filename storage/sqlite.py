"""
storage.sqlite
--------------
SQLite Store. One connection shared across threads (check_same_thread=False)
and serialized by an RLock; WAL journal; natural-key upserts via ON CONFLICT.

Autocommit mode: every call is its own transaction unless it runs inside
atomic(), which issues BEGIN IMMEDIATE / COMMIT (ROLLBACK on error).
"""
from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Mapping, Optional

from models.combination import ParameterCombination
from models.position import CLOSED, LimitKey, PositionLimit, PseudoPosition, PositionExit
from models.result import CoordinationResult
from storage.base import Store, check_update_fields, valid_sort_key
from utils.errors import PersistenceError
from utils.logger import get_logger

log = get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS coordination_results (
        configuration_set_id TEXT NOT NULL,
        symbol               TEXT NOT NULL,
        combination_hash     TEXT NOT NULL,
        indicator_type       TEXT NOT NULL,
        combination          TEXT NOT NULL,
        profit_factor        REAL, win_rate REAL,
        total_trades         INTEGER, winning_trades INTEGER, losing_trades INTEGER,
        avg_profit REAL, avg_loss REAL, max_drawdown REAL, drawdown_time_hours REAL,
        profit_factor_last_25 REAL, profit_factor_last_50 REAL,
        positions_per_24h REAL, sharpe_ratio REAL,
        is_valid             INTEGER NOT NULL DEFAULT 0,
        validation_reason    TEXT,
        last_validated_at    TEXT,
        PRIMARY KEY (configuration_set_id, symbol, combination_hash)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_results_valid
        ON coordination_results (is_valid, profit_factor_last_25 DESC, profit_factor_last_50 DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS position_limits (
        configuration_set_id TEXT NOT NULL,
        symbol               TEXT NOT NULL,
        combination_hash     TEXT NOT NULL,
        direction            TEXT NOT NULL,
        max_positions        INTEGER NOT NULL,
        current_positions    INTEGER NOT NULL DEFAULT 0,
        target_max_positions INTEGER,
        cooldown_until       TEXT,
        last_position_opened_at TEXT,
        audit_flagged        INTEGER NOT NULL DEFAULT 0,
        updated_at           TEXT,
        PRIMARY KEY (configuration_set_id, symbol, combination_hash, direction)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pseudo_positions (
        id                   TEXT PRIMARY KEY,
        configuration_set_id TEXT NOT NULL,
        symbol               TEXT NOT NULL,
        direction            TEXT NOT NULL,
        indicator_type       TEXT NOT NULL,
        combination          TEXT NOT NULL,
        entry_price          REAL NOT NULL,
        quantity             REAL NOT NULL,
        leverage             REAL NOT NULL,
        status               TEXT NOT NULL,
        current_price        REAL,
        unrealized_pnl       REAL,
        unrealized_pnl_pct   REAL,
        best_price           REAL,
        exit_price           REAL,
        exit_reason          TEXT,
        realized_pnl         REAL,
        opened_at            TEXT,
        closed_at            TEXT,
        meta                 TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_positions_status ON pseudo_positions (status)",
)

_RESULT_METRICS = (
    "profit_factor", "win_rate", "total_trades", "winning_trades", "losing_trades",
    "avg_profit", "avg_loss", "max_drawdown", "drawdown_time_hours",
    "profit_factor_last_25", "profit_factor_last_50", "positions_per_24h", "sharpe_ratio",
)


def _ts(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if v is not None else None


def _dt(v: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(v) if v else None


class SqliteStore(Store):
    def __init__(self, path: str | Path = "data/preset.db"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._depth = 0
        try:
            self._con = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
            self._con.row_factory = sqlite3.Row
            self._con.execute("PRAGMA journal_mode=WAL")
            self._con.execute("PRAGMA foreign_keys=ON")
            for stmt in _SCHEMA:
                self._con.execute(stmt)
            self._migrate()
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open {self.path}: {e}") from e

    def _migrate(self) -> None:
        cols = {r["name"] for r in self._con.execute("PRAGMA table_info(position_limits)")}
        if "target_max_positions" not in cols:
            self._con.execute("ALTER TABLE position_limits ADD COLUMN target_max_positions INTEGER")

    def close(self) -> None:
        with self._lock:
            self._con.close()

    # ---- plumbing ----
    def _exec(self, sql: str, params=(), key: Optional[str] = None) -> int:
        """Run a statement; returns the affected row count."""
        with self._lock:
            try:
                return self._con.execute(sql, params).rowcount
            except sqlite3.Error as e:
                raise PersistenceError(f"{e}", key=key) from e

    def _query(self, sql: str, params=(), key: Optional[str] = None) -> list[sqlite3.Row]:
        # rows are fetched under the lock so no other thread's transaction interleaves
        with self._lock:
            try:
                return self._con.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"{e}", key=key) from e

    @contextmanager
    def atomic(self):
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return
            self._exec("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._depth = 0
                if self._con.in_transaction:
                    self._con.execute("ROLLBACK")
                raise
            self._depth = 0
            try:
                self._exec("COMMIT")
            except PersistenceError:
                if self._con.in_transaction:
                    self._con.execute("ROLLBACK")
                raise

    # ---- coordination results ----
    def upsert_coordination_result(self, result: CoordinationResult) -> None:
        cols = ["configuration_set_id", "symbol", "combination_hash", "indicator_type", "combination",
                *_RESULT_METRICS, "is_valid", "validation_reason", "last_validated_at"]
        values = [result.configuration_set_id, result.symbol, result.combination_hash,
                  result.indicator_type, result.combination.canonical_json(),
                  *[getattr(result, m) for m in _RESULT_METRICS],
                  int(result.is_valid), result.validation_reason, _ts(result.last_validated_at)]
        updates = ", ".join(f"{c}=excluded.{c}" for c in cols[3:])
        sql = (f"INSERT INTO coordination_results ({', '.join(cols)}) "
               f"VALUES ({', '.join('?' for _ in cols)}) "
               f"ON CONFLICT (configuration_set_id, symbol, combination_hash) DO UPDATE SET {updates}")
        self._exec(sql, values, key="/".join(result.natural_key))

    def _result(self, row: sqlite3.Row) -> CoordinationResult:
        return CoordinationResult(
            configuration_set_id=row["configuration_set_id"],
            symbol=row["symbol"],
            indicator_type=row["indicator_type"],
            combination=ParameterCombination.from_dict(json.loads(row["combination"])),
            is_valid=bool(row["is_valid"]),
            validation_reason=row["validation_reason"] or "",
            last_validated_at=_dt(row["last_validated_at"]),
            **{m: row[m] for m in _RESULT_METRICS},
        )

    def get_coordination_result(self, configuration_set_id, symbol, combination_hash):
        rows = self._query(
            "SELECT * FROM coordination_results WHERE configuration_set_id=? AND symbol=? AND combination_hash=?",
            (configuration_set_id, symbol, combination_hash),
        )
        return self._result(rows[0]) if rows else None

    def list_valid_results(self, configuration_set_id: Optional[str] = None):
        sql = "SELECT * FROM coordination_results WHERE is_valid=1"
        params: tuple = ()
        if configuration_set_id is not None:
            sql += " AND configuration_set_id=?"
            params = (configuration_set_id,)
        sql += " ORDER BY profit_factor_last_25 DESC, profit_factor_last_50 DESC"
        rows = [self._result(r) for r in self._query(sql, params)]
        return sorted(rows, key=valid_sort_key)

    # ---- position limits ----
    def _limit(self, row: sqlite3.Row) -> PositionLimit:
        return PositionLimit(
            key=LimitKey(row["configuration_set_id"], row["symbol"], row["combination_hash"], row["direction"]),
            max_positions=row["max_positions"],
            current_positions=row["current_positions"],
            target_max_positions=row["target_max_positions"],
            cooldown_until=_dt(row["cooldown_until"]),
            last_position_opened_at=_dt(row["last_position_opened_at"]),
            audit_flagged=bool(row["audit_flagged"]),
            updated_at=_dt(row["updated_at"]),
        )

    def load_position_limit(self, key: LimitKey) -> Optional[PositionLimit]:
        rows = self._query(
            "SELECT * FROM position_limits WHERE configuration_set_id=? AND symbol=? "
            "AND combination_hash=? AND direction=?",
            (key.configuration_set_id, key.symbol, key.combination_hash, key.direction),
        )
        return self._limit(rows[0]) if rows else None

    def save_position_limit(self, limit: PositionLimit) -> None:
        k = limit.key
        self._exec(
            """
            INSERT INTO position_limits (configuration_set_id, symbol, combination_hash, direction,
                max_positions, current_positions, target_max_positions, cooldown_until,
                last_position_opened_at, audit_flagged, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (configuration_set_id, symbol, combination_hash, direction) DO UPDATE SET
                max_positions=excluded.max_positions,
                current_positions=excluded.current_positions,
                target_max_positions=excluded.target_max_positions,
                cooldown_until=excluded.cooldown_until,
                last_position_opened_at=excluded.last_position_opened_at,
                audit_flagged=excluded.audit_flagged,
                updated_at=excluded.updated_at
            """,
            (k.configuration_set_id, k.symbol, k.combination_hash, k.direction,
             limit.max_positions, limit.current_positions, limit.target_max_positions, _ts(limit.cooldown_until),
             _ts(limit.last_position_opened_at), int(limit.audit_flagged), _ts(limit.updated_at)),
            key=str(k),
        )

    def list_position_limits(self):
        return [self._limit(r) for r in self._query("SELECT * FROM position_limits")]

    # ---- pseudo positions ----
    def _position(self, row: sqlite3.Row) -> PseudoPosition:
        return PseudoPosition(
            id=row["id"],
            configuration_set_id=row["configuration_set_id"],
            symbol=row["symbol"],
            direction=row["direction"],
            indicator_type=row["indicator_type"],
            combination=ParameterCombination.from_dict(json.loads(row["combination"])),
            entry_price=row["entry_price"],
            quantity=row["quantity"],
            leverage=row["leverage"],
            status=row["status"],
            current_price=row["current_price"] or 0.0,
            unrealized_pnl=row["unrealized_pnl"] or 0.0,
            unrealized_pnl_pct=row["unrealized_pnl_pct"] or 0.0,
            best_price=row["best_price"],
            exit_price=row["exit_price"],
            exit_reason=row["exit_reason"],
            realized_pnl=row["realized_pnl"],
            opened_at=_dt(row["opened_at"]),
            closed_at=_dt(row["closed_at"]),
            meta=json.loads(row["meta"]) if row["meta"] else {},
        )

    def insert_pseudo_position(self, p: PseudoPosition) -> None:
        self._exec(
            """
            INSERT INTO pseudo_positions (id, configuration_set_id, symbol, direction, indicator_type,
                combination, entry_price, quantity, leverage, status, current_price, unrealized_pnl,
                unrealized_pnl_pct, best_price, exit_price, exit_reason, realized_pnl, opened_at,
                closed_at, meta)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (p.id, p.configuration_set_id, p.symbol, p.direction, p.indicator_type,
             p.combination.canonical_json(), p.entry_price, p.quantity, p.leverage, p.status,
             p.current_price, p.unrealized_pnl, p.unrealized_pnl_pct, p.best_price, p.exit_price,
             p.exit_reason, p.realized_pnl, _ts(p.opened_at), _ts(p.closed_at),
             json.dumps(p.meta, default=str)),
            key=p.id,
        )

    def update_pseudo_position(self, position_id: str, fields: Mapping[str, object]) -> None:
        check_update_fields(fields)
        if not fields:
            return
        values = [json.dumps(v, default=str) if k == "meta" else v for k, v in fields.items()]
        assignments = ", ".join(f"{k}=?" for k in fields)
        changed = self._exec(f"UPDATE pseudo_positions SET {assignments} WHERE id=?", (*values, position_id),
                             key=position_id)
        if changed == 0:
            raise PersistenceError(f"unknown position {position_id}", key=position_id)

    def close_pseudo_position(self, position_id: str, exit: PositionExit) -> None:
        changed = self._exec(
            """
            UPDATE pseudo_positions
               SET status=?, current_price=?, exit_price=?, exit_reason=?, realized_pnl=?, closed_at=?
             WHERE id=? AND status='open'
            """,
            (CLOSED, exit.exit_price, exit.exit_price, exit.exit_reason, exit.realized_pnl,
             _ts(exit.closed_at), position_id),
            key=position_id,
        )
        if changed == 0:
            raise PersistenceError(f"position {position_id} is not open", key=position_id)

    def get_pseudo_position(self, position_id: str) -> Optional[PseudoPosition]:
        rows = self._query("SELECT * FROM pseudo_positions WHERE id=?", (position_id,))
        return self._position(rows[0]) if rows else None

    def list_open_pseudo_positions(self):
        rows = self._query("SELECT * FROM pseudo_positions WHERE status='open' ORDER BY opened_at")
        return [self._position(r) for r in rows]
