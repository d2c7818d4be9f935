"""
utils.config
------------
config.yaml loading plus typed settings.

load_config() returns the raw dict (PyYAML safe_load). build_settings()
validates it into EngineSettings / ConfigurationSet; any bad value raises
ConfigError naming the offending key. Paths that depend on the machine come
from .env (python-dotenv): BYBIT_BASE, PRESET_DB_PATH, PRESET_CACHE_DIR.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from utils.errors import ConfigError

SYMBOL_MODES = ("main", "manual", "forced", "exchange")
DEFAULT_MAIN_SYMBOLS = ("BTCUSDT", "ETHUSDT", "BNBUSDT")


def load_config(path: str = "config.yaml") -> dict:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {p.resolve()}")
    with p.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


# ---- typed settings --------------------------------------------------
@dataclass
class SimulationConfig:
    lookback_bars: int = 20
    horizon_bars: int = 50
    initial_balance: float = 10_000.0
    position_cost: float = 0.1


@dataclass
class ConfigurationSet:
    id: str
    indicator_type: str
    indicator_params: dict = field(default_factory=dict)
    name: str = ""
    active: bool = True
    symbol_mode: str = "main"
    symbols: list[str] = field(default_factory=list)
    top_n: int = 10
    order_by: str = "turnover24h"
    range_days: int = 7
    interval: str = "60"             # kline interval, Bybit notation (minutes or D/W/M)
    takeprofit_min: float = 2.0
    takeprofit_max: float = 10.0
    takeprofit_step: float = 2.0
    stoploss_min: float = 1.0
    stoploss_max: float = 5.0
    stoploss_step: float = 1.0
    trailing_enabled: bool = False
    trail_starts: list[float] = field(default_factory=list)
    trail_stops: list[float] = field(default_factory=list)
    min_profit_factor: float = 1.2
    min_trades: int = 10
    max_positions: Optional[int] = None   # falls back to engine.max_positions_per_range


@dataclass
class EngineSettings:
    evaluation_interval_hours: float = 1.0
    tick_interval_seconds: float = 1.0
    batch_size: int = 10
    max_workers: int = 10
    batch_delay_seconds: float = 0.1
    max_combinations: int = 500
    min_history_bars: int = 100
    min_signal_strength: float = 0.5
    cooldown_after_open_seconds: float = 0.0
    cooldown_after_close_seconds: float = 0.0
    max_positions_per_range: int = 250
    position_batch_size: int = 50
    position_timeout_hours: Optional[float] = None
    signal_history_bars: int = 200
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    configuration_sets: list[ConfigurationSet] = field(default_factory=list)

    # ambient
    storage_backend: str = "sqlite"
    db_path: str = "data/preset.db"
    bybit_base: str = "https://api.bybit.com"
    bybit_category: str = "linear"
    cache_dir: str = "data/cache"
    cache_ttl_days: int = 1
    requests_per_minute: int = 600
    log_level: str = "INFO"
    progress: bool = False
    results_csv: bool = False
    export_dir: str = "logs"


# ---- coercion helpers -------------------------------------------------
def _section(cfg: dict, name: str) -> dict:
    v = cfg.get(name) or {}
    if not isinstance(v, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return v


def _num(d: dict, key: str, default, kind=float, minimum=None, where: str = ""):
    v = d.get(key, default)
    if v is None:
        return None
    try:
        v = kind(v)
    except (TypeError, ValueError):
        raise ConfigError(f"{where}{key}: expected {kind.__name__}, got {v!r}") from None
    if minimum is not None and v < minimum:
        raise ConfigError(f"{where}{key}: must be >= {minimum} (got {v})")
    return v


def _bool(d: dict, key: str, default: bool) -> bool:
    v = d.get(key, default)
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


def _num_list(d: dict, key: str, where: str) -> list[float]:
    v = d.get(key) or []
    if not isinstance(v, (list, tuple)):
        raise ConfigError(f"{where}{key}: expected a list")
    try:
        return [float(x) for x in v]
    except (TypeError, ValueError):
        raise ConfigError(f"{where}{key}: expected numbers, got {v!r}") from None


def build_configuration_set(raw: dict, index: int = 0) -> ConfigurationSet:
    if not isinstance(raw, dict):
        raise ConfigError(f"configuration_sets[{index}] must be a mapping")
    where = f"configuration_sets[{index}]."
    for req in ("id", "indicator_type"):
        if not raw.get(req):
            raise ConfigError(f"{where}{req} is required")
    mode = str(raw.get("symbol_mode", "main")).lower()
    if mode not in SYMBOL_MODES:
        raise ConfigError(f"{where}symbol_mode: one of {', '.join(SYMBOL_MODES)} (got {mode!r})")
    symbols = [str(s).upper() for s in (raw.get("symbols") or [])]
    if mode in ("manual", "forced") and not symbols:
        raise ConfigError(f"{where}symbols: required for symbol_mode={mode}")
    params = raw.get("indicator_params") or {}
    if not isinstance(params, dict):
        raise ConfigError(f"{where}indicator_params must be a mapping")

    cs = ConfigurationSet(
        id=str(raw["id"]),
        name=str(raw.get("name") or raw["id"]),
        indicator_type=str(raw["indicator_type"]).lower(),
        indicator_params=dict(params),
        active=_bool(raw, "active", True),
        symbol_mode=mode,
        symbols=symbols,
        top_n=_num(raw, "top_n", 10, int, 1, where),
        order_by=str(raw.get("order_by", "turnover24h")),
        range_days=_num(raw, "range_days", 7, int, 1, where),
        interval=str(raw.get("interval", "60")),
        takeprofit_min=_num(raw, "takeprofit_min", 2.0, float, 0, where),
        takeprofit_max=_num(raw, "takeprofit_max", 10.0, float, 0, where),
        takeprofit_step=_num(raw, "takeprofit_step", 2.0, float, None, where),
        stoploss_min=_num(raw, "stoploss_min", 1.0, float, 0, where),
        stoploss_max=_num(raw, "stoploss_max", 5.0, float, 0, where),
        stoploss_step=_num(raw, "stoploss_step", 1.0, float, None, where),
        trailing_enabled=_bool(raw, "trailing_enabled", False),
        trail_starts=_num_list(raw, "trail_starts", where),
        trail_stops=_num_list(raw, "trail_stops", where),
        min_profit_factor=_num(raw, "min_profit_factor", 1.2, float, 0, where),
        min_trades=_num(raw, "min_trades", 10, int, 0, where),
        max_positions=_num(raw, "max_positions", None, int, 0, where),
    )
    for lo, hi, step in (("takeprofit_min", "takeprofit_max", "takeprofit_step"),
                         ("stoploss_min", "stoploss_max", "stoploss_step")):
        if getattr(cs, step) <= 0:
            raise ConfigError(f"{where}{step}: must be > 0")
        if getattr(cs, hi) < getattr(cs, lo):
            raise ConfigError(f"{where}{hi}: below {lo}")
    if cs.trailing_enabled and not (cs.trail_starts and cs.trail_stops):
        raise ConfigError(f"{where}trail_starts/trail_stops: required when trailing_enabled")
    return cs


def build_settings(cfg: Optional[dict] = None) -> EngineSettings:
    """Typed settings from the raw config dict; .env overrides the machine-specific paths."""
    load_dotenv()
    cfg = cfg or {}
    eng = _section(cfg, "engine")
    sim = _section(cfg, "simulation")
    sto = _section(cfg, "storage")
    mkt = _section(cfg, "market")
    lg = _section(cfg, "logging")
    exp = _section(cfg, "export")
    w = "engine."

    sets_raw = cfg.get("configuration_sets") or []
    if not isinstance(sets_raw, list):
        raise ConfigError("configuration_sets must be a list")
    sets = [build_configuration_set(r, i) for i, r in enumerate(sets_raw)]
    ids = [s.id for s in sets]
    if len(ids) != len(set(ids)):
        raise ConfigError("configuration_sets: duplicate id")

    backend = str(sto.get("backend", "sqlite")).lower()
    if backend not in ("sqlite", "memory"):
        raise ConfigError(f"storage.backend: 'sqlite' or 'memory' (got {backend!r})")

    return EngineSettings(
        evaluation_interval_hours=_num(eng, "evaluation_interval_hours", 1.0, float, 0.001, w),
        tick_interval_seconds=_num(eng, "tick_interval_seconds", 1.0, float, 0.01, w),
        batch_size=_num(eng, "batch_size", 10, int, 1, w),
        max_workers=_num(eng, "max_workers", 10, int, 1, w),
        batch_delay_seconds=_num(eng, "batch_delay_seconds", 0.1, float, 0, w),
        max_combinations=_num(eng, "max_combinations", 500, int, 1, w),
        min_history_bars=_num(eng, "min_history_bars", 100, int, 1, w),
        min_signal_strength=_num(eng, "min_signal_strength", 0.5, float, 0, w),
        cooldown_after_open_seconds=_num(eng, "cooldown_after_open_seconds", 0.0, float, 0, w),
        cooldown_after_close_seconds=_num(eng, "cooldown_after_close_seconds", 0.0, float, 0, w),
        max_positions_per_range=_num(eng, "max_positions_per_range", 250, int, 0, w),
        position_batch_size=_num(eng, "position_batch_size", 50, int, 1, w),
        position_timeout_hours=_num(eng, "position_timeout_hours", None, float, 0, w),
        signal_history_bars=_num(eng, "signal_history_bars", 200, int, 2, w),
        simulation=SimulationConfig(
            lookback_bars=_num(sim, "lookback_bars", 20, int, 1, "simulation."),
            horizon_bars=_num(sim, "horizon_bars", 50, int, 1, "simulation."),
            initial_balance=_num(sim, "initial_balance", 10_000.0, float, 0, "simulation."),
            position_cost=_num(sim, "position_cost", 0.1, float, 0, "simulation."),
        ),
        configuration_sets=sets,
        storage_backend=backend,
        db_path=os.getenv("PRESET_DB_PATH") or str(sto.get("path", "data/preset.db")),
        bybit_base=os.getenv("BYBIT_BASE") or str(mkt.get("base_url", "https://api.bybit.com")),
        bybit_category=str(mkt.get("category", "linear")),
        cache_dir=os.getenv("PRESET_CACHE_DIR") or str(mkt.get("cache_dir", "data/cache")),
        cache_ttl_days=_num(mkt, "cache_ttl_days", 1, int, 0, "market."),
        requests_per_minute=_num(mkt, "requests_per_minute", 600, int, 1, "market."),
        log_level=str(lg.get("level", "INFO")).upper(),
        progress=_bool(lg, "progress", False),
        results_csv=_bool(exp, "results_csv", False),
        export_dir=str(exp.get("dir", "logs")),
    )
