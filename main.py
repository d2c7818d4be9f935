# main.py
import sys
import time

from broker.bybit import BybitClient
from data.fetcher import MarketData
from execution.coordinator import CoordinationEngine
from storage.memory import MemoryStore
from storage.sqlite import SqliteStore
from utils.config import load_config, build_settings
from utils.errors import ConfigError
from utils.file_cache import FileCache
from utils.logger import get_logger, set_level

log = get_logger("main")


def build_engine(settings) -> CoordinationEngine:
    if settings.storage_backend == "memory":
        store = MemoryStore()
    else:
        store = SqliteStore(settings.db_path)
    client = BybitClient(settings.bybit_base, settings.bybit_category, settings.requests_per_minute)
    cache = FileCache(settings.cache_dir, settings.cache_ttl_days) if settings.cache_ttl_days > 0 else None
    return CoordinationEngine(settings, store, MarketData(client, cache))


def main(config_path: str = "config.yaml") -> int:
    # ---- config ---------------------------------------------------------
    try:
        settings = build_settings(load_config(config_path))
    except (FileNotFoundError, ConfigError) as e:
        print(f"Config error: {e}")
        return 1
    set_level(settings.log_level)

    active = [cs for cs in settings.configuration_sets if cs.active]
    if not active:
        print("No active configuration sets in config.yaml.")
        return 0

    # ---- run until Ctrl-C -----------------------------------------------
    engine = build_engine(settings)
    engine.start()
    try:
        while engine.running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        log.info("interrupt received, stopping…")
    finally:
        engine.stop()
        engine.store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main(*sys.argv[1:2]))
