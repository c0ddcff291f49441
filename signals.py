"""
Outbound signals (low stock, dose due).

The core only emits them; whoever integrates it subscribes a callback that
turns them into push notifications.
"""
import logging
from typing import Callable, List, Union

from schemas import DoseDueSignal, LowStockSignal

logger = logging.getLogger(__name__)

Signal = Union[LowStockSignal, DoseDueSignal]


class SignalBus:
    def __init__(self):
        self._subscribers: List[Callable[[Signal], None]] = []

    def subscribe(self, callback: Callable[[Signal], None]) -> None:
        self._subscribers.append(callback)

    def emit(self, signal: Signal) -> None:
        logger.info("Signal %s for senior %s", signal.kind, signal.senior_id)
        for callback in self._subscribers:
            try:
                callback(signal)
            except Exception:
                # subscriber failures are logged, never raised to the writer
                logger.exception("Signal subscriber %r failed", callback)


class SignalRecorder:
    """Subscriber that keeps every signal it sees; handy in tests and scripts."""

    def __init__(self):
        self.signals: List[Signal] = []

    def __call__(self, signal: Signal) -> None:
        self.signals.append(signal)
