"""
models.position
---------------
Pseudo positions and the per-combination position-limit ledger.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from models.combination import ParameterCombination

OPEN = "open"
CLOSED = "closed"

TAKEPROFIT = "takeprofit"
STOPLOSS = "stoploss"
TRAILING_STOP = "trailing_stop"
TIMEOUT = "timeout"
EXIT_REASONS = (TAKEPROFIT, STOPLOSS, TRAILING_STOP, TIMEOUT)


@dataclass(frozen=True)
class LimitKey:
    """Composite ledger key: (configuration set, symbol, combination hash, direction)."""
    configuration_set_id: str
    symbol: str
    combination_hash: str
    direction: str  # "long" | "short"

    def __str__(self) -> str:
        return f"{self.configuration_set_id}/{self.symbol}/{self.combination_hash[:12]}/{self.direction}"


@dataclass
class PositionLimit:
    key: LimitKey
    max_positions: int
    current_positions: int = 0
    cooldown_until: Optional[datetime] = None
    last_position_opened_at: Optional[datetime] = None
    audit_flagged: bool = False
    updated_at: Optional[datetime] = None
    # a lowered cap waiting for enough closes; max_positions never drops below current_positions
    target_max_positions: Optional[int] = None

    def copy(self) -> "PositionLimit":
        return replace(self)


@dataclass
class PseudoPosition:
    id: str
    configuration_set_id: str
    symbol: str
    direction: str
    indicator_type: str
    combination: ParameterCombination
    entry_price: float
    quantity: float = 100.0   # ratio-based unit, not exchange volume
    leverage: float = 1.0
    status: str = OPEN
    current_price: float = 0.0
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    best_price: Optional[float] = None   # trailing anchor; None until the trail arms
    exit_price: Optional[float] = None
    exit_reason: Optional[str] = None
    realized_pnl: Optional[float] = None
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    meta: dict = field(default_factory=dict)

    @property
    def is_long(self) -> bool:
        return self.direction == "long"

    @property
    def is_open(self) -> bool:
        return self.status == OPEN

    @property
    def limit_key(self) -> LimitKey:
        return LimitKey(
            configuration_set_id=self.configuration_set_id,
            symbol=self.symbol,
            combination_hash=self.combination.combination_hash,
            direction=self.direction,
        )

    def copy(self) -> "PseudoPosition":
        return replace(self, meta=dict(self.meta))


@dataclass(frozen=True)
class PositionExit:
    exit_price: float
    exit_reason: str
    realized_pnl: float
    realized_pnl_pct: float
    closed_at: datetime
