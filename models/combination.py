"""
models.combination
------------------
ParameterCombination: one concrete assignment of indicator parameters,
take-profit / stop-loss and trailing settings.

The combination hash is the natural key used by the result store and for
position-limit bucketing, so it must be stable across processes: it is a
sha256 over canonical JSON (sorted keys, ints collapsed from integral floats).
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


def _norm_number(v: Any) -> Any:
    # 14 and 14.0 must hash identically
    if isinstance(v, bool):
        return v
    if isinstance(v, float) and v.is_integer():
        return int(v)
    if isinstance(v, float):
        return round(v, 10)
    return v


def _freeze_params(params: Mapping[str, Any]) -> tuple[tuple[str, Any], ...]:
    return tuple(sorted((str(k), _norm_number(v)) for k, v in (params or {}).items()))


@dataclass(frozen=True)
class ParameterCombination:
    indicator_params: tuple[tuple[str, Any], ...] = field(default_factory=tuple)
    take_profit_factor: float = 0.0      # percent, 5 -> +5 %
    stop_loss_ratio: float = 0.0         # percent
    trailing_enabled: bool = False
    trail_start: Optional[float] = None  # percent of favourable move that arms the trail
    trail_stop: Optional[float] = None   # percent retrace from the best price

    @classmethod
    def create(
        cls,
        indicator_params: Mapping[str, Any],
        take_profit_factor: float,
        stop_loss_ratio: float,
        trailing_enabled: bool = False,
        trail_start: Optional[float] = None,
        trail_stop: Optional[float] = None,
    ) -> "ParameterCombination":
        if not trailing_enabled:
            trail_start = trail_stop = None
        return cls(
            indicator_params=_freeze_params(indicator_params),
            take_profit_factor=float(take_profit_factor),
            stop_loss_ratio=float(stop_loss_ratio),
            trailing_enabled=bool(trailing_enabled),
            trail_start=None if trail_start is None else float(trail_start),
            trail_stop=None if trail_stop is None else float(trail_stop),
        )

    @property
    def params(self) -> dict[str, Any]:
        return dict(self.indicator_params)

    def to_dict(self) -> dict[str, Any]:
        return {
            "indicator_params": self.params,
            "take_profit_factor": self.take_profit_factor,
            "stop_loss_ratio": self.stop_loss_ratio,
            "trailing_enabled": self.trailing_enabled,
            "trail_start": self.trail_start,
            "trail_stop": self.trail_stop,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ParameterCombination":
        return cls.create(
            indicator_params=d.get("indicator_params") or {},
            take_profit_factor=d["take_profit_factor"],
            stop_loss_ratio=d["stop_loss_ratio"],
            trailing_enabled=bool(d.get("trailing_enabled", False)),
            trail_start=d.get("trail_start"),
            trail_stop=d.get("trail_stop"),
        )

    def canonical_json(self) -> str:
        payload = {k: _norm_number(v) for k, v in self.to_dict().items() if k != "indicator_params"}
        payload["indicator_params"] = dict(self.indicator_params)
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))

    @property
    def combination_hash(self) -> str:
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()

    def label(self) -> str:
        p = ",".join(f"{k}={v}" for k, v in self.indicator_params)
        trail = f" trail={self.trail_start}/{self.trail_stop}" if self.trailing_enabled else ""
        return f"[{p}] tp={self.take_profit_factor} sl={self.stop_loss_ratio}{trail}"
