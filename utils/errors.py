"""
utils.errors
------------
Error taxonomy shared by the engine layers.

- DataInsufficient    : too little price history; callers degrade to a no-op
- ComputationError    : NaN / divide-by-zero; guarded inside formulas, kept for completeness
- PersistenceError    : a storage write/read failed; the record is retried next cycle
- ConcurrencyViolation: a ledger invariant was breached (clamped + flagged, never fatal)
- DataSourceError     : the market data source could not be reached at all
- ConfigError         : invalid configuration value
"""


class EngineError(Exception):
    """Base class for every error raised by the coordination engine."""


class DataInsufficient(EngineError):
    pass


class ComputationError(EngineError):
    pass


class PersistenceError(EngineError):
    def __init__(self, message: str, key: object = None):
        super().__init__(message)
        self.key = key


class ConcurrencyViolation(EngineError):
    def __init__(self, message: str, key: object = None):
        super().__init__(message)
        self.key = key


class DataSourceError(EngineError):
    pass


class ConfigError(EngineError, ValueError):
    pass
