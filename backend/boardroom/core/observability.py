"""
可观测性组件
Observability Components

HTTP request counters keyed by route template, plus discussion engine
counters fed by the orchestrator. Served as JSON on ``GET /metrics``.
"""

from __future__ import annotations

import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from boardroom.config import settings

logger = structlog.get_logger()

# 保留最近的推进耗时样本
LATENCY_SAMPLE_LIMIT = 5000


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MetricsStore:
    def __init__(self):
        self.request_total = 0
        self.rejected_total = 0
        self.error_total = 0
        self.route_counts: Dict[str, int] = defaultdict(int)
        self.route_latency_ms: Dict[str, float] = defaultdict(float)

        self.advance_total = 0
        self.turns_generated_total = 0
        self.fallback_total = 0
        self.summary_total = 0
        self.completed_total = 0
        self.busy_total = 0
        self.timeout_total = 0
        self._advance_latencies_ms: List[int] = []
        self.updated_at = _now()

    # ==================== HTTP ====================

    def record(self, route: str, latency_ms: float, status_code: int) -> None:
        self.request_total += 1
        self.route_counts[route] += 1
        self.route_latency_ms[route] += latency_ms
        if status_code >= 500:
            self.error_total += 1
        elif status_code >= 400:
            self.rejected_total += 1
        self.updated_at = _now()

    @property
    def error_rate(self) -> float:
        return self.error_total / self.request_total if self.request_total else 0.0

    # ==================== 讨论引擎 ====================

    def record_turn(self, *, is_fallback: bool, summary: bool = False) -> None:
        if summary:
            self.summary_total += 1
        else:
            self.turns_generated_total += 1
        if is_fallback:
            self.fallback_total += 1
        self.updated_at = _now()

    def record_busy(self) -> None:
        self.busy_total += 1
        self.updated_at = _now()

    def record_advance(self, *, latency_ms: int, completed: bool, timeout: bool) -> None:
        self.advance_total += 1
        self.completed_total += int(completed)
        self.timeout_total += int(timeout)
        self._advance_latencies_ms.append(max(0, int(latency_ms or 0)))
        del self._advance_latencies_ms[:-LATENCY_SAMPLE_LIMIT]
        self.updated_at = _now()

    @property
    def fallback_rate(self) -> float:
        produced = self.turns_generated_total + self.summary_total
        return self.fallback_total / produced if produced else 0.0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "request_total": self.request_total,
            "rejected_total": self.rejected_total,
            "error_total": self.error_total,
            "error_rate": self.error_rate,
            "avg_latency_ms": {
                route: self.route_latency_ms[route] / count
                for route, count in self.route_counts.items()
                if count
            },
            "discussions": {
                "advance_total": self.advance_total,
                "p95_advance_latency_ms": self._p95(self._advance_latencies_ms),
                "turns_generated_total": self.turns_generated_total,
                "fallback_total": self.fallback_total,
                "fallback_rate": self.fallback_rate,
                "summary_total": self.summary_total,
                "completed_total": self.completed_total,
                "busy_total": self.busy_total,
                "timeout_total": self.timeout_total,
                "timeout_rate": (
                    self.timeout_total / self.advance_total if self.advance_total else 0.0
                ),
            },
            "updated_at": self.updated_at,
        }

    @staticmethod
    def _p95(values: List[int]) -> float:
        """Nearest-rank 95th percentile."""
        if not values:
            return 0.0
        ordered = sorted(values)
        rank = max(1, -(-95 * len(ordered) // 100))
        return float(ordered[rank - 1])


metrics_store = MetricsStore()


def _route_label(request: Request) -> str:
    # 使用路由模板，避免按讨论ID拆分统计
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - start) * 1000
        metrics_store.record(_route_label(request), elapsed, response.status_code)
        alert_manager.check_and_alert()
        return response


class AlertManager:
    """Warns when server errors or fallback turns cross their thresholds."""

    def check_and_alert(self) -> None:
        store = metrics_store
        if (
            store.request_total >= settings.ALERT_MIN_SAMPLES
            and store.error_rate >= settings.ALERT_ERROR_RATE_THRESHOLD
        ):
            logger.warning(
                "high_error_rate_detected",
                error_rate=store.error_rate,
                threshold=settings.ALERT_ERROR_RATE_THRESHOLD,
                request_total=store.request_total,
            )
        if (
            store.turns_generated_total >= settings.ALERT_MIN_SAMPLES
            and store.fallback_rate >= settings.ALERT_FALLBACK_RATE_THRESHOLD
        ):
            logger.warning(
                "high_fallback_rate_detected",
                fallback_rate=store.fallback_rate,
                threshold=settings.ALERT_FALLBACK_RATE_THRESHOLD,
                turns_generated_total=store.turns_generated_total,
            )


alert_manager = AlertManager()
