"""Engine error taxonomy.

Control-plane operations (start/stop/pause/resume) raise these to the caller.
Data-plane processing never lets them escape `distribute_candle`; they are
logged and isolated to the offending strategy instead.
"""


class StrategyEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(StrategyEngineError):
    """Malformed StrategyConfig; rejected before any state mutation."""


class NotFoundError(StrategyEngineError):
    """Control operation on an unknown strategy id."""


class AlreadyExistsError(StrategyEngineError):
    """Strategy id is already registered."""


class ProcessingError(StrategyEngineError):
    """Failure while updating indicators or evaluating signals."""

    def __init__(self, strategy_id: str, stage: str, message: str) -> None:
        super().__init__(f"{strategy_id}: {stage} failed: {message}")
        self.strategy_id = strategy_id
        self.stage = stage
