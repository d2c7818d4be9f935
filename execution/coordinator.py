"""
execution.coordinator
---------------------
CoordinationEngine: owns the two periodic activities.

  re-evaluation cycle (hours) : history -> combinations -> simulate + score in
                                batches -> upsert results -> ensure ledgers ->
                                opening pass
  live tick (seconds)         : PseudoPositionManager.tick()

Both run as SingleFlightTask loops; main.py builds the engine, calls start(),
and stop() on shutdown.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import numpy as np
import pandas as pd
from tqdm import tqdm

from backtest.engine import SimulationSettings, simulate_combination
from backtest.generator import count_combinations, generate_combinations
from backtest.metrics import build_result, score_trades
from execution.engine import PseudoPositionManager
from execution.scheduler import SingleFlightTask
from models.combination import ParameterCombination
from models.position import LimitKey
from models.result import CoordinationResult
from models.signal import LONG, SHORT
from risk.limits import PositionLimitTracker
from storage.base import Store
from strategies.signals import IndicatorConfig, generate_signal
from utils.config import DEFAULT_MAIN_SYMBOLS, ConfigurationSet, EngineSettings
from utils.errors import DataInsufficient, DataSourceError, PersistenceError
from utils.logger import get_logger, log_dataframe, today_filename

log = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CycleReport:
    started_at: datetime = field(default_factory=_now)
    symbols_evaluated: int = 0
    symbols_skipped: List[str] = field(default_factory=list)
    symbols_failed: int = 0
    combinations_scored: int = 0
    combinations_failed: int = 0
    valid_results: int = 0
    persistence_failures: int = 0
    positions_opened: int = 0
    aborted: bool = False
    abort_reason: str = ""
    duration_seconds: float = 0.0


@dataclass
class OpeningReport:
    candidates: int = 0
    opened: int = 0
    neutral: int = 0
    not_recent: int = 0
    no_price: int = 0
    at_capacity: int = 0
    failed: int = 0


class CoordinationEngine:
    def __init__(self, settings: EngineSettings, store: Store, market):
        self.settings = settings
        self.store = store
        self.market = market
        self.tracker = PositionLimitTracker(store, settings.max_positions_per_range)
        self.positions = PseudoPositionManager(
            store,
            self.tracker,
            market,
            batch_size=settings.position_batch_size,
            max_workers=settings.max_workers,
            timeout_hours=settings.position_timeout_hours,
            cooldown_after_open_seconds=settings.cooldown_after_open_seconds,
            cooldown_after_close_seconds=settings.cooldown_after_close_seconds,
        )
        sim = settings.simulation
        self.sim_settings = SimulationSettings(
            lookback_bars=sim.lookback_bars,
            horizon_bars=sim.horizon_bars,
            min_signal_strength=settings.min_signal_strength,
            initial_balance=sim.initial_balance,
            position_cost=sim.position_cost,
        )
        self._eval_task = SingleFlightTask(
            "evaluation", settings.evaluation_interval_hours * 3600.0, self.run_evaluation_cycle)
        self._tick_task = SingleFlightTask("tick", settings.tick_interval_seconds, self.positions.tick)
        self._started = False
        self._halt = threading.Event()
        self.last_report: Optional[CycleReport] = None

    # ---- lifecycle ----
    def start(self) -> None:
        if self._started:
            return
        self.positions.load_open_positions()
        self._halt.clear()
        self._started = True
        self._tick_task.start()
        self._eval_task.start()
        log.info("engine started: %d configuration set(s), tick every %.1fs, re-evaluate every %.2fh",
                 len(self.settings.configuration_sets), self.settings.tick_interval_seconds,
                 self.settings.evaluation_interval_hours)

    def stop(self, timeout: Optional[float] = None) -> None:
        if not self._started:
            return
        self._started = False
        self._halt.set()
        self._eval_task.stop(timeout)
        self._tick_task.stop(timeout)
        log.info("engine stopped")

    @property
    def running(self) -> bool:
        return self._started

    # ---- symbols ----
    def symbols_for(self, cs: ConfigurationSet) -> List[str]:
        if cs.symbol_mode == "main":
            return list(cs.symbols or DEFAULT_MAIN_SYMBOLS)
        if cs.symbol_mode in ("manual", "forced"):
            return list(cs.symbols)
        if cs.symbol_mode == "exchange":
            return self.market.top_symbols(limit=cs.top_n, order_by=cs.order_by)
        return []

    # ---- re-evaluation ----
    def run_evaluation_cycle(self) -> CycleReport:
        report = CycleReport()
        t0 = time.monotonic()
        attempted = 0
        source_errors: List[str] = []
        try:
            for cs in self.settings.configuration_sets:
                if not cs.active:
                    continue
                for symbol in self.symbols_for(cs):
                    if self._halt.is_set():
                        break
                    attempted += 1
                    try:
                        self._evaluate_symbol(cs, symbol, report)
                    except DataSourceError as e:
                        log.error("skip %s/%s: %s", cs.id, symbol, e)
                        source_errors.append(str(e))
                        report.symbols_failed += 1
                        report.symbols_skipped.append(symbol)
                    except Exception:
                        log.exception("skip %s/%s: evaluation failed", cs.id, symbol)
                        report.symbols_failed += 1
                        report.symbols_skipped.append(symbol)
            # every symbol hit the data source and lost: treat it as an outage
            if attempted and len(source_errors) == attempted:
                raise DataSourceError(f"all {attempted} symbol(s) failed, last: {source_errors[-1]}")
            report.positions_opened = self.run_opening_pass().opened
        except DataSourceError as e:
            report.aborted = True
            report.abort_reason = str(e)
            log.error("evaluation cycle aborted: %s (retrying at next schedule)", e)
        report.duration_seconds = time.monotonic() - t0
        self.last_report = report
        log.info("cycle: %d symbols, %d combinations, %d valid, %d opened, %d skipped%s",
                 report.symbols_evaluated, report.combinations_scored, report.valid_results,
                 report.positions_opened, len(report.symbols_skipped),
                 " [aborted]" if report.aborted else "")
        return report

    def load_history(self, cs: ConfigurationSet, symbol: str) -> pd.DataFrame:
        frame = self.market.get_historical_prices(symbol, cs.range_days, interval=cs.interval)
        have = 0 if frame is None else len(frame)
        if have < self.settings.min_history_bars:
            raise DataInsufficient(f"{symbol}: {have} bars < {self.settings.min_history_bars}")
        return frame

    def _evaluate_symbol(self, cs: ConfigurationSet, symbol: str, report: CycleReport) -> List[CoordinationResult]:
        try:
            frame = self.load_history(cs, symbol)
        except DataInsufficient as e:
            log.warning("skip %s/%s: %s", cs.id, symbol, e)
            report.symbols_skipped.append(symbol)
            return []

        total = count_combinations(cs)
        combos = generate_combinations(cs, limit=self.settings.max_combinations)
        if total > len(combos):
            log.info("%s/%s: %d combinations, capped at %d", cs.id, symbol, total, len(combos))

        results = self.score_combinations(cs, symbol, frame, combos, report)
        report.symbols_evaluated += 1
        if self.settings.results_csv and results:
            rows = pd.DataFrame([r.to_row() for r in results])
            log_dataframe(rows, today_filename(f"results_{cs.id}_{symbol}", root=self.settings.export_dir),
                          overwrite=True)
        return results

    def _score_one(self, cs: ConfigurationSet, symbol: str, frame: pd.DataFrame,
                   combo: ParameterCombination) -> CoordinationResult:
        trades = simulate_combination(cs.indicator_type, combo, frame, self.sim_settings)
        metrics = score_trades(trades, self.sim_settings.initial_balance)
        return build_result(cs.id, symbol, cs.indicator_type, combo, metrics,
                            cs.min_profit_factor, cs.min_trades)

    def score_combinations(self, cs: ConfigurationSet, symbol: str, frame: pd.DataFrame,
                           combos: List[ParameterCombination], report: CycleReport) -> List[CoordinationResult]:
        """Simulate + score in batches; each finished result is upserted and, if valid, gets ledgers."""
        s = self.settings
        out: List[CoordinationResult] = []
        batches = [combos[i: i + s.batch_size] for i in range(0, len(combos), s.batch_size)]
        progress = tqdm(total=len(combos), desc=f"{cs.id}/{symbol}", leave=False, disable=not s.progress)
        with ThreadPoolExecutor(max_workers=s.max_workers, thread_name_prefix="sim") as pool:
            for n, batch in enumerate(batches):
                futs = [(c, pool.submit(self._score_one, cs, symbol, frame, c)) for c in batch]
                for combo, fut in futs:
                    try:
                        result = fut.result()
                    except Exception:
                        # no upsert: the last good row stays
                        log.exception("%s/%s: simulation failed for %s", cs.id, symbol, combo.label())
                        report.combinations_failed += 1
                        continue
                    report.combinations_scored += 1
                    if self._persist(cs, result, report):
                        out.append(result)
                progress.update(len(batch))
                if s.batch_delay_seconds > 0 and n < len(batches) - 1:
                    time.sleep(s.batch_delay_seconds)
        progress.close()
        return out

    def _persist(self, cs: ConfigurationSet, result: CoordinationResult, report: CycleReport) -> bool:
        try:
            self.store.upsert_coordination_result(result)
            if result.is_valid:
                report.valid_results += 1
                cap = cs.max_positions if cs.max_positions is not None else self.settings.max_positions_per_range
                for direction in (LONG, SHORT):
                    key = LimitKey(result.configuration_set_id, result.symbol, result.combination_hash, direction)
                    self.tracker.ensure(key, cap)
            return True
        except PersistenceError as e:
            log.error("persist %s failed (%s); recomputed next cycle", e.key or "/".join(result.natural_key), e)
            report.persistence_failures += 1
            return False

    # ---- opening pass ----
    def live_signal(self, result: CoordinationResult, history: pd.DataFrame, price: float):
        """Signal on recent closes with the live price appended as the forming bar."""
        tail = history.tail(self.settings.signal_history_bars)
        closes = np.append(tail["Close"].to_numpy(dtype="float64"), price)
        highs = np.append(tail["High"].to_numpy(dtype="float64"), price) if "High" in tail.columns else None
        lows = np.append(tail["Low"].to_numpy(dtype="float64"), price) if "Low" in tail.columns else None
        cfg = IndicatorConfig(type=result.indicator_type, params=result.combination.params)
        return generate_signal(cfg, closes, highs, lows)

    def run_opening_pass(self, now: Optional[datetime] = None) -> OpeningReport:
        rep = OpeningReport()
        sets = {cs.id: cs for cs in self.settings.configuration_sets if cs.active}
        valid = [r for r in self.store.list_valid_results() if r.configuration_set_id in sets]
        rep.candidates = len(valid)
        if not valid:
            return rep
        prices = self.market.get_current_prices(sorted({r.symbol for r in valid}))
        history: dict = {}
        for r in valid:
            if not r.recently_profitable:
                rep.not_recent += 1
                continue
            price = prices.get(r.symbol)
            if not price:
                rep.no_price += 1
                continue
            cs = sets[r.configuration_set_id]
            hkey = (r.symbol, cs.interval, cs.range_days)
            try:
                if hkey not in history:
                    # a failed fetch is cached as None so the symbol is not retried this pass
                    history[hkey] = None
                    history[hkey] = self.market.get_historical_prices(r.symbol, cs.range_days, interval=cs.interval)
                frame = history[hkey]
                if frame is None or frame.empty:
                    rep.no_price += 1
                    continue
                sig = self.live_signal(r, frame, price)
            except Exception:
                log.exception("opening pass: %s/%s signal failed", r.configuration_set_id, r.symbol)
                rep.failed += 1
                continue
            if sig.is_neutral or sig.strength < self.settings.min_signal_strength:
                rep.neutral += 1
                continue
            try:
                pos = self.positions.open_position(r, sig.direction, price, now)
            except PersistenceError as e:
                log.error("open %s/%s failed: %s", r.configuration_set_id, r.symbol, e)
                continue
            if pos is None:
                rep.at_capacity += 1
            else:
                rep.opened += 1
        return rep
