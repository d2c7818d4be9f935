"""In-memory Store: dicts behind one RLock, snapshot rollback for atomic()."""
from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Mapping, Optional

from models.position import CLOSED, LimitKey, PositionLimit, PseudoPosition, PositionExit
from models.result import CoordinationResult
from storage.base import Store, check_update_fields, valid_sort_key
from utils.errors import PersistenceError


class MemoryStore(Store):
    def __init__(self):
        self._lock = threading.RLock()
        self._results: dict[tuple[str, str, str], CoordinationResult] = {}
        self._limits: dict[LimitKey, PositionLimit] = {}
        self._positions: dict[str, PseudoPosition] = {}
        self._depth = 0

    # ---- coordination results ----
    def upsert_coordination_result(self, result: CoordinationResult) -> None:
        with self._lock:
            self._results[result.natural_key] = replace(result)

    def get_coordination_result(self, configuration_set_id, symbol, combination_hash):
        with self._lock:
            r = self._results.get((configuration_set_id, symbol, combination_hash))
            return replace(r) if r else None

    def list_valid_results(self, configuration_set_id: Optional[str] = None):
        with self._lock:
            rows = [replace(r) for r in self._results.values()
                    if r.is_valid and (configuration_set_id is None or r.configuration_set_id == configuration_set_id)]
        return sorted(rows, key=valid_sort_key)

    # ---- position limits ----
    def load_position_limit(self, key: LimitKey) -> Optional[PositionLimit]:
        with self._lock:
            lim = self._limits.get(key)
            return lim.copy() if lim else None

    def save_position_limit(self, limit: PositionLimit) -> None:
        with self._lock:
            self._limits[limit.key] = limit.copy()

    def list_position_limits(self):
        with self._lock:
            return [lim.copy() for lim in self._limits.values()]

    # ---- pseudo positions ----
    def insert_pseudo_position(self, position: PseudoPosition) -> None:
        with self._lock:
            if position.id in self._positions:
                raise PersistenceError(f"duplicate position id {position.id}", key=position.id)
            self._positions[position.id] = position.copy()

    def update_pseudo_position(self, position_id: str, fields: Mapping[str, object]) -> None:
        check_update_fields(fields)
        with self._lock:
            pos = self._positions.get(position_id)
            if pos is None:
                raise PersistenceError(f"unknown position {position_id}", key=position_id)
            for k, v in fields.items():
                setattr(pos, k, v)

    def close_pseudo_position(self, position_id: str, exit: PositionExit) -> None:
        with self._lock:
            pos = self._positions.get(position_id)
            if pos is None or not pos.is_open:
                raise PersistenceError(f"position {position_id} is not open", key=position_id)
            pos.status = CLOSED
            pos.current_price = exit.exit_price
            pos.exit_price = exit.exit_price
            pos.exit_reason = exit.exit_reason
            pos.realized_pnl = exit.realized_pnl
            pos.closed_at = exit.closed_at

    def get_pseudo_position(self, position_id: str) -> Optional[PseudoPosition]:
        with self._lock:
            pos = self._positions.get(position_id)
            return pos.copy() if pos else None

    def list_open_pseudo_positions(self):
        with self._lock:
            return [p.copy() for p in self._positions.values() if p.is_open]

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
            snapshot = (copy.deepcopy(self._results), copy.deepcopy(self._limits), copy.deepcopy(self._positions))
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._results, self._limits, self._positions = snapshot
                raise
            finally:
                self._depth = 0
