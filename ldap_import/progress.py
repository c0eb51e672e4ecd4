"""
Progress reporting for analysis and execution runs.

A ``ProgressChannel`` delivers progress updates to whatever is watching the
session (a UI, a log). Delivery is best-effort: ``ProgressReporter`` logs any
channel failure and never lets it reach the engine.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)

STATUS_ANALYZING = 'analyzing'
STATUS_EXECUTING = 'executing'
STATUS_CLEANUP = 'cleanup'
STATUS_COMPLETED = 'completed'
STATUS_CANCELLED = 'cancelled'


class ProgressChannel(ABC):
    """Destination for progress updates of one session."""

    @abstractmethod
    def push(self, session_id: str, percent: int, status: str, message: str) -> None:
        pass


class LoggingProgressChannel(ProgressChannel):
    """Writes progress updates to the ``progress`` logger."""

    def __init__(self, level: int = logging.INFO):
        self.level = level
        self.logger = logging.getLogger('progress')

    def push(self, session_id: str, percent: int, status: str, message: str) -> None:
        self.logger.log(self.level, f"[{session_id}] {percent:3d}% {status}: {message}")


class ProgressReporter:
    """
    Session-bound, failure-tolerant wrapper around a ``ProgressChannel``.

    Args:
        channel: Destination channel, or None to disable reporting
        session_id: Identifier of the import session
    """

    def __init__(self, channel: Optional[ProgressChannel] = None, session_id: str = ''):
        self.channel = channel
        self.session_id = session_id

    def report(self, percent: float, status: str, message: str = '') -> None:
        if self.channel is None:
            return
        percent = max(0, min(100, int(percent)))
        try:
            self.channel.push(self.session_id, percent, status, message)
        except Exception as e:
            logger.warning(f"Progress update for session {self.session_id} failed: {e}")

    def report_fraction(self, done: int, total: int, status: str, message: str = '',
                        start: float = 0, end: float = 100) -> None:
        """Report ``done/total`` scaled into the ``start``..``end`` percent window."""
        fraction = (done / total) if total else 1.0
        self.report(start + (end - start) * fraction, status, message)
