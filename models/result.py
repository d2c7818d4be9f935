from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional

from models.combination import ParameterCombination


@dataclass
class CoordinationResult:
    """Scored outcome of one combination for one (configuration set, symbol)."""
    configuration_set_id: str
    symbol: str
    indicator_type: str
    combination: ParameterCombination

    profit_factor: float = 0.0
    win_rate: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    avg_profit: float = 0.0
    avg_loss: float = 0.0
    max_drawdown: float = 0.0          # percent of peak equity
    drawdown_time_hours: float = 0.0
    profit_factor_last_25: float = 0.0
    profit_factor_last_50: float = 0.0
    positions_per_24h: float = 0.0
    sharpe_ratio: float = 0.0

    is_valid: bool = False
    validation_reason: str = ""
    last_validated_at: Optional[datetime] = None

    @property
    def combination_hash(self) -> str:
        return self.combination.combination_hash

    @property
    def natural_key(self) -> tuple[str, str, str]:
        return (self.configuration_set_id, self.symbol, self.combination_hash)

    @property
    def recently_profitable(self) -> bool:
        return self.profit_factor_last_25 > 0 or self.profit_factor_last_50 > 0

    def to_row(self) -> dict:
        """Flat dict for CSV export / tabular display."""
        row = asdict(self)
        row.pop("combination")
        row["combination_hash"] = self.combination_hash
        row.update({
            "indicator_params": self.combination.params,
            "take_profit_factor": self.combination.take_profit_factor,
            "stop_loss_ratio": self.combination.stop_loss_ratio,
            "trailing_enabled": self.combination.trailing_enabled,
            "trail_start": self.combination.trail_start,
            "trail_stop": self.combination.trail_stop,
        })
        return row
