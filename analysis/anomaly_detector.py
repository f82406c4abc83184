"""Rolling per-pair price statistics used to reject abnormal quotes."""
from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional

from constants import (
    ANOMALY_CRITICAL_DEVIATION,
    ANOMALY_MAX_DEVIATION,
    ANOMALY_MAX_Z_SCORE,
    ANOMALY_MIN_HISTORY,
    ANOMALY_SHORT_WINDOW,
    PRICE_HISTORY_MAX_AGE_SECONDS,
    PRICE_HISTORY_MAX_ENTRIES,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceHistoryEntry:
    timestamp: float
    price: float


@dataclass(frozen=True)
class AnomalyCheck:
    is_valid: bool
    severity: str = "low"
    reason: Optional[str] = None


class PriceAnomalyDetector:
    """Keeps a bounded price window per pair and flags outliers.

    Checks run in a fixed order and the first failure decides the result:
    critical deviation, short-window deviation, general deviation, z-score.
    A critical deviation therefore always wins over the lower severities.
    """

    def __init__(
        self,
        *,
        max_entries: int = PRICE_HISTORY_MAX_ENTRIES,
        max_age_seconds: float = PRICE_HISTORY_MAX_AGE_SECONDS,
        min_history: int = ANOMALY_MIN_HISTORY,
        max_deviation: float = ANOMALY_MAX_DEVIATION,
        critical_deviation: float = ANOMALY_CRITICAL_DEVIATION,
        max_z_score: float = ANOMALY_MAX_Z_SCORE,
    ) -> None:
        self._history: Dict[str, Deque[PriceHistoryEntry]] = {}
        self._max_entries = max_entries
        self._max_age_seconds = max_age_seconds
        self._min_history = min_history
        self._max_deviation = max_deviation
        self._critical_deviation = critical_deviation
        self._max_z_score = max_z_score

    def add_price(self, pair_key: str, price: float, timestamp: Optional[float] = None) -> None:
        history = self._history.get(pair_key)
        if history is None:
            history = deque(maxlen=self._max_entries)
            self._history[pair_key] = history
        history.append(PriceHistoryEntry(timestamp=timestamp if timestamp is not None else time.time(), price=price))

    def check_price(self, pair_key: str, price: float) -> AnomalyCheck:
        history = self._history.get(pair_key)
        if not history or len(history) < self._min_history:
            return AnomalyCheck(is_valid=True, severity="low", reason="insufficient history")

        prices = [entry.price for entry in history]
        mean = sum(prices) / len(prices)
        if mean <= 0:
            return AnomalyCheck(is_valid=True, severity="low", reason="non-positive mean")
        variance = sum((value - mean) ** 2 for value in prices) / len(prices)
        std_dev = math.sqrt(variance)
        deviation = abs(price - mean) / mean

        if deviation > self._critical_deviation:
            return AnomalyCheck(
                is_valid=False,
                severity="critical",
                reason=f"critical deviation {deviation * 100:.2f}% from mean {mean:.6f}",
            )

        recent = prices[-ANOMALY_SHORT_WINDOW:]
        recent_mean = sum(recent) / len(recent)
        if recent_mean > 0:
            recent_deviation = abs(price - recent_mean) / recent_mean
            if recent_deviation > self._max_deviation:
                return AnomalyCheck(
                    is_valid=False,
                    severity="medium",
                    reason=f"sudden move {recent_deviation * 100:.2f}% from last {len(recent)} prices",
                )

        if deviation > self._max_deviation:
            return AnomalyCheck(
                is_valid=False,
                severity="high",
                reason=f"deviation {deviation * 100:.2f}% from mean {mean:.6f}",
            )

        if std_dev > 0:
            z_score = abs(price - mean) / std_dev
            if z_score > self._max_z_score:
                return AnomalyCheck(
                    is_valid=False,
                    severity="high",
                    reason=f"z-score {z_score:.2f} exceeds {self._max_z_score}",
                )

        return AnomalyCheck(is_valid=True, severity="low")

    def get_stats(self, pair_key: str) -> Optional[dict]:
        history = self._history.get(pair_key)
        if not history:
            return None
        prices = [entry.price for entry in history]
        return {
            "avg": sum(prices) / len(prices),
            "min": min(prices),
            "max": max(prices),
            "count": len(prices),
        }

    def clean_old_history(self, now: Optional[float] = None) -> int:
        """Drops entries older than the horizon. Returns how many were removed."""
        cutoff = (now if now is not None else time.time()) - self._max_age_seconds
        removed = 0
        for pair_key in list(self._history):
            history = self._history[pair_key]
            while history and history[0].timestamp < cutoff:
                history.popleft()
                removed += 1
            if not history:
                del self._history[pair_key]
        if removed:
            logger.debug("Purged %d stale price entries", removed)
        return removed

    def __contains__(self, pair_key: str) -> bool:
        return pair_key in self._history
