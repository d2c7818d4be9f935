"""
storage.base
------------
Storage interface shared by the engine, the tracker and the lifecycle manager.

Backends must make every method safe to call from several threads and raise
utils.errors.PersistenceError (never a driver exception) when a write fails.
`atomic()` groups several calls into one unit: either all of them land or
none do.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Iterable, Mapping, Optional

from models.position import LimitKey, PositionLimit, PseudoPosition, PositionExit
from models.result import CoordinationResult

# fields update_pseudo_position() accepts
UPDATABLE_FIELDS = frozenset({
    "current_price", "unrealized_pnl", "unrealized_pnl_pct", "best_price", "meta",
})


class Store(ABC):
    # ---- coordination results ----
    @abstractmethod
    def upsert_coordination_result(self, result: CoordinationResult) -> None: ...

    @abstractmethod
    def get_coordination_result(self, configuration_set_id: str, symbol: str,
                                combination_hash: str) -> Optional[CoordinationResult]: ...

    @abstractmethod
    def list_valid_results(self, configuration_set_id: Optional[str] = None) -> list[CoordinationResult]:
        """Valid results ordered by profit_factor_last_25 DESC, profit_factor_last_50 DESC."""

    # ---- position limits ----
    @abstractmethod
    def load_position_limit(self, key: LimitKey) -> Optional[PositionLimit]: ...

    @abstractmethod
    def save_position_limit(self, limit: PositionLimit) -> None: ...

    @abstractmethod
    def list_position_limits(self) -> list[PositionLimit]: ...

    # ---- pseudo positions ----
    @abstractmethod
    def insert_pseudo_position(self, position: PseudoPosition) -> None: ...

    @abstractmethod
    def update_pseudo_position(self, position_id: str, fields: Mapping[str, object]) -> None: ...

    @abstractmethod
    def close_pseudo_position(self, position_id: str, exit: PositionExit) -> None: ...

    @abstractmethod
    def get_pseudo_position(self, position_id: str) -> Optional[PseudoPosition]: ...

    @abstractmethod
    def list_open_pseudo_positions(self) -> list[PseudoPosition]: ...

    @abstractmethod
    def atomic(self) -> AbstractContextManager:
        """Context manager; nested use joins the outer unit."""

    def close(self) -> None:
        pass


def check_update_fields(fields: Iterable[str]) -> None:
    bad = sorted(set(fields) - UPDATABLE_FIELDS)
    if bad:
        raise ValueError(f"fields not updatable: {', '.join(bad)}")


def valid_sort_key(r: CoordinationResult) -> tuple[float, float]:
    return (-r.profit_factor_last_25, -r.profit_factor_last_50)
