# backtest/generator.py
"""
Combination generator.

Expands a configuration set into every ParameterCombination:

    indicator sweep  x  TP/SL grid  x  trailing variants

The generator itself is unbounded; callers cap the total (the engine default
is 500) before handing combinations to the simulator.
"""

from __future__ import annotations

import itertools
import math
from typing import Any, Iterator, Mapping, Optional, Sequence

from models.combination import ParameterCombination
from utils.errors import ConfigError


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def _inclusive_range(lo: float, hi: float, step: float) -> list[float]:
    """lo, lo+step, ... <= hi; index based so float steps don't drift."""
    if step <= 0:
        raise ConfigError(f"step must be > 0 (got {step})")
    if hi < lo:
        raise ConfigError(f"range max {hi} is below min {lo}")
    n = int(math.floor((hi - lo) / step + 1e-9)) + 1
    return [round(lo + k * step, 10) for k in range(n)]


def sweep_values(base: float) -> list[float]:
    """[0.5*base .. 1.5*base] inclusive with step max(1, floor((max-min)/10)).

    Integral bases stay integral (floor/ceil of the bounds) so periods remain
    usable as window lengths. Fractional bases are swept as floats; since a
    step of 1 overshoots a small span (0.02 -> [0.01]), the base value itself
    is always put back on the axis so the configured default is simulated.
    """
    if isinstance(base, int) or float(base).is_integer():
        lo = int(math.floor(base * 0.5))
        hi = int(math.ceil(base * 1.5))
        if hi < lo:
            lo, hi = hi, lo
        step = max(1, (hi - lo) // 10)
        values = list(range(lo, hi + 1, step))
        centre = int(base)
    else:
        lo, hi = base * 0.5, base * 1.5
        if hi < lo:
            lo, hi = hi, lo
        step = max(1, math.floor((hi - lo) / 10))
        values = _inclusive_range(lo, hi, step)
        centre = round(float(base), 10)
    if centre not in values:
        values = sorted(values + [centre])
    return values


def indicator_sweep(base_params: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Cross product of every numeric field's sweep; base unchanged when nothing is numeric."""
    base = dict(base_params or {})
    numeric = [k for k in sorted(base) if _is_number(base[k])]
    if not numeric:
        return [base]
    axes = [sweep_values(base[k]) for k in numeric]
    out = []
    for values in itertools.product(*axes):
        variant = dict(base)
        variant.update(zip(numeric, values))
        out.append(variant)
    return out


def position_sweep(tp_min: float, tp_max: float, tp_step: float,
                   sl_min: float, sl_max: float, sl_step: float) -> list[tuple[float, float]]:
    tps = _inclusive_range(tp_min, tp_max, tp_step)
    sls = _inclusive_range(sl_min, sl_max, sl_step)
    return [(tp, sl) for tp in tps for sl in sls]


def trailing_sweep(trailing_enabled: bool,
                   trail_starts: Sequence[float] = (),
                   trail_stops: Sequence[float] = ()) -> list[tuple[bool, Optional[float], Optional[float]]]:
    out: list[tuple[bool, Optional[float], Optional[float]]] = [(False, None, None)]
    if trailing_enabled:
        for start in trail_starts:
            for stop in trail_stops:
                out.append((True, float(start), float(stop)))
    return out


def iter_combinations(config_set) -> Iterator[ParameterCombination]:
    """Lazily yield the full cross product for a ConfigurationSet."""
    indicators = indicator_sweep(config_set.indicator_params)
    positions = position_sweep(
        config_set.takeprofit_min, config_set.takeprofit_max, config_set.takeprofit_step,
        config_set.stoploss_min, config_set.stoploss_max, config_set.stoploss_step,
    )
    trailing = trailing_sweep(config_set.trailing_enabled, config_set.trail_starts, config_set.trail_stops)
    for params in indicators:
        for tp, sl in positions:
            for enabled, start, stop in trailing:
                yield ParameterCombination.create(params, tp, sl, enabled, start, stop)


def count_combinations(config_set) -> int:
    n_ind = len(indicator_sweep(config_set.indicator_params))
    n_pos = len(position_sweep(
        config_set.takeprofit_min, config_set.takeprofit_max, config_set.takeprofit_step,
        config_set.stoploss_min, config_set.stoploss_max, config_set.stoploss_step,
    ))
    n_trail = len(trailing_sweep(config_set.trailing_enabled, config_set.trail_starts, config_set.trail_stops))
    return n_ind * n_pos * n_trail


def generate_combinations(config_set, limit: Optional[int] = None) -> list[ParameterCombination]:
    it = iter_combinations(config_set)
    if limit is not None and limit > 0:
        it = itertools.islice(it, limit)
    return list(it)
