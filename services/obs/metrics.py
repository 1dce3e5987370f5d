"""
Observability Metrics
Tier fallbacks, fulfillment stage counters and stage timings (P50/P95).
"""
from typing import Dict, List, Any, Optional
import logging
import time
from datetime import datetime
from collections import defaultdict, deque
from dataclasses import dataclass, field
import statistics
import threading
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


@dataclass
class StageMetric:
    """Timing for a single fulfillment stage"""
    stage_name: str
    start_time: float
    end_time: float = 0
    duration_ms: float = 0
    success: bool = False
    error_message: Optional[str] = None


@dataclass
class TierFallbackEvent:
    product_id: str
    quantity: int
    recorded_at: float = field(default_factory=time.time)


class MetricsCollector:
    """Collects and aggregates pipeline metrics"""

    def __init__(self):
        self.tier_fallbacks: Dict[str, int] = defaultdict(int)
        self.recent_tier_fallbacks = deque(maxlen=100)
        self.stage_timings = defaultdict(list)  # stage_name -> [duration_ms]

        self.fulfillment_counters = {
            "received": 0,
            "processed": 0,
            "duplicates": 0,
            "deferred": 0,
            "ignored": 0,
            "gifts_finalized": 0,
            "decrement_failures": 0,
            "ledger_failures": 0,
        }
        self.checkout_counters = {
            "sessions_created": 0,
            "rejected": 0,
            "gift_offered": 0,
        }
        self.last_fulfillment: Optional[Dict[str, Any]] = None

        self._lock = threading.Lock()

        self.performance_thresholds = {
            "max_stage_duration_ms": {
                "verify": 200,
                "gift": 1000,
                "inventory": 3000,
                "ledger": 5000,
            },
        }

    def record_tier_fallback(self, product_id: str, quantity: int) -> None:
        """Count a price lookup that fell into a gap of the tier table."""
        with self._lock:
            self.tier_fallbacks[product_id] += 1
            self.recent_tier_fallbacks.append(TierFallbackEvent(product_id, quantity))

    def record_checkout(self, outcome: str) -> None:
        with self._lock:
            if outcome in self.checkout_counters:
                self.checkout_counters[outcome] += 1

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            if counter not in self.fulfillment_counters:
                logger.warning(f"Unknown fulfillment counter: {counter}")
                return
            self.fulfillment_counters[counter] += amount

    def record_fulfillment(self, summary: Dict[str, Any]) -> None:
        """Track a finished webhook run."""
        if not summary:
            return
        with self._lock:
            self.fulfillment_counters["decrement_failures"] += len(summary.get("decrement_failures", []) or [])
            if summary.get("ledger_error"):
                self.fulfillment_counters["ledger_failures"] += 1
            if summary.get("gift_finalized"):
                self.fulfillment_counters["gifts_finalized"] += 1
            self.last_fulfillment = summary.copy()

    @asynccontextmanager
    async def stage_timer(self, session_id: str, stage_name: str):
        """Context manager for timing fulfillment stages"""
        metric = StageMetric(stage_name=stage_name, start_time=time.time())
        try:
            yield metric
            metric.success = True
        except Exception as e:
            metric.error_message = str(e)
            logger.error(f"Stage {stage_name} failed for session {session_id}: {e}")
            raise
        finally:
            metric.end_time = time.time()
            metric.duration_ms = (metric.end_time - metric.start_time) * 1000
            with self._lock:
                self.stage_timings[stage_name].append(metric.duration_ms)
                self._check_stage_performance(stage_name, metric.duration_ms)

    def get_stage_diagnostics(self, stage_name: Optional[str] = None) -> Dict[str, Any]:
        diagnostics = {}
        with self._lock:
            stages = [stage_name] if stage_name else list(self.stage_timings)
            for stage in stages:
                timings = self.stage_timings.get(stage, [])
                if timings:
                    diagnostics[stage] = self._calculate_stage_stats(timings)
        return diagnostics

    def get_summary(self) -> Dict[str, Any]:
        """Snapshot for the admin dashboard"""
        with self._lock:
            return {
                "timestamp": datetime.now().isoformat(),
                "tier_fallbacks": dict(self.tier_fallbacks),
                "fulfillment": dict(self.fulfillment_counters),
                "checkout": dict(self.checkout_counters),
                "last_fulfillment": self.last_fulfillment,
            }

    def reset(self) -> None:
        with self._lock:
            self.tier_fallbacks.clear()
            self.recent_tier_fallbacks.clear()
            self.stage_timings.clear()
            for counters in (self.fulfillment_counters, self.checkout_counters):
                for key in counters:
                    counters[key] = 0
            self.last_fulfillment = None

    # Private helper methods

    def _calculate_stage_stats(self, timings: List[float]) -> Dict[str, Any]:
        return {
            "count": len(timings),
            "avg_ms": round(statistics.mean(timings), 2),
            "median_ms": round(statistics.median(timings), 2),
            "p95_ms": round(self._percentile(timings, 95), 2),
            "max_ms": round(max(timings), 2),
        }

    def _percentile(self, data: List[float], percentile: float) -> float:
        """Calculate percentile of data"""
        if not data:
            return 0
        sorted_data = sorted(data)
        index = (percentile / 100) * (len(sorted_data) - 1)
        if index.is_integer():
            return sorted_data[int(index)]
        lower = sorted_data[int(index)]
        upper = sorted_data[int(index) + 1]
        return lower + (upper - lower) * (index - int(index))

    def _check_stage_performance(self, stage_name: str, duration_ms: float):
        threshold = self.performance_thresholds["max_stage_duration_ms"].get(stage_name, 5000)
        if duration_ms > threshold:
            logger.warning(f"Stage {stage_name} exceeded threshold: {duration_ms:.2f}ms > {threshold}ms")


# Global metrics collector instance
metrics_collector = MetricsCollector()
