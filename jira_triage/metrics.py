"""
Classification metrics tracking.

Counts LLM successes and failures, fallback usage by reason and the
confidence the model reported. Counters live for the life of the process
(or until ``reset``) and are never persisted.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .models import MetricsSnapshot


logger = logging.getLogger(__name__)


DEFAULT_LOG_INTERVAL = 3600.0


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_valid_confidence(value) -> bool:
    # bool is an int subclass but never a confidence
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return 0 <= value <= 100


class MetricsTracker:
    """
    Thread-safe counters for the classification fallback chain.

    Create one per process and pass it to the components that record
    into it. Tests construct a fresh instance each.

    Example:
        >>> tracker = MetricsTracker()
        >>> tracker.track_success(90)
        >>> tracker.track_failure()
        >>> tracker.track_fallback("timeout")
        >>> tracker.get_success_rate()
        50.0
    """

    def __init__(
        self,
        log_interval: float = DEFAULT_LOG_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the tracker.

        Args:
            log_interval: Seconds between opportunistic summary logs.
            clock: Monotonic time source, injectable for tests.
        """
        self._log_interval = log_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._metrics = MetricsSnapshot(last_reset=_utc_now_iso())
        self._last_log_time = clock()

    def track_success(self, confidence: Optional[float] = None) -> None:
        """Record a successful LLM classification and its confidence."""
        with self._lock:
            self._metrics.llm_calls.total += 1
            self._metrics.llm_calls.successful += 1

            if _is_valid_confidence(confidence):
                self._metrics.confidence_scores.sum += confidence
                self._metrics.confidence_scores.count += 1

        self._check_and_log()

    def track_failure(self) -> None:
        """Record a failed LLM classification."""
        with self._lock:
            self._metrics.llm_calls.total += 1
            self._metrics.llm_calls.failed += 1

        self._check_and_log()

    def track_fallback(self, reason: str) -> None:
        """Record that a weaker classifier was used, and why."""
        with self._lock:
            usage = self._metrics.fallback_usage
            usage.total += 1
            usage.reasons[reason] = usage.reasons.get(reason, 0) + 1

        self._check_and_log()

    def get_metrics(self) -> MetricsSnapshot:
        """Return a copy of the current counters."""
        with self._lock:
            return self._metrics.model_copy(deep=True)

    def get_success_rate(self) -> float:
        """Successful calls as a percentage of all calls (0 when none)."""
        with self._lock:
            calls = self._metrics.llm_calls
            if calls.total == 0:
                return 0.0
            return calls.successful / calls.total * 100

    def get_fallback_rate(self) -> float:
        """Fallback uses as a percentage of all LLM calls (0 when none)."""
        with self._lock:
            total_calls = self._metrics.llm_calls.total
            if total_calls == 0:
                return 0.0
            return self._metrics.fallback_usage.total / total_calls * 100

    def get_average_confidence(self) -> float:
        with self._lock:
            scores = self._metrics.confidence_scores
            if scores.count == 0:
                return 0.0
            return scores.sum / scores.count

    def reset(self) -> None:
        """Zero all counters. The only way counters ever decrease."""
        with self._lock:
            self._metrics = MetricsSnapshot(last_reset=_utc_now_iso())
            self._last_log_time = self._clock()
        logger.info(f"Metrics reset at {self._metrics.last_reset}")

    def _check_and_log(self) -> None:
        """Log a summary if the interval has elapsed since the last one."""
        now = self._clock()
        with self._lock:
            if now - self._last_log_time < self._log_interval:
                return
            self._last_log_time = now
        self.log_metrics()

    def log_metrics(self) -> None:
        """Log a usage summary for the period since the last reset."""
        snapshot = self.get_metrics()
        success_rate = self.get_success_rate()
        fallback_rate = self.get_fallback_rate()
        average_confidence = self.get_average_confidence()

        logger.info(
            f"Classification metrics since {snapshot.last_reset}: "
            f"llm_calls={snapshot.llm_calls.total} "
            f"(successful={snapshot.llm_calls.successful}, "
            f"failed={snapshot.llm_calls.failed}, "
            f"success_rate={success_rate:.2f}%), "
            f"fallbacks={snapshot.fallback_usage.total} "
            f"(rate={fallback_rate:.2f}%, reasons={snapshot.fallback_usage.reasons}), "
            f"avg_confidence={average_confidence:.2f} "
            f"over {snapshot.confidence_scores.count} samples"
        )
