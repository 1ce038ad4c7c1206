"""Prometheus-compatible metrics endpoint and request tracking middleware."""
from __future__ import annotations

import time
from collections import defaultdict
from threading import Lock

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response


class _Metrics:
    """Thread-safe in-memory metrics collector."""

    def __init__(self):
        self._lock = Lock()
        self.request_count: dict[tuple[str, str, int], int] = defaultdict(int)
        self.request_duration_sum: dict[tuple[str, str], float] = defaultdict(float)
        self.request_duration_count: dict[tuple[str, str], int] = defaultdict(int)
        # (source, outcome); source: webhook | verify; outcome: activated | changed | skipped | not_found | error
        self.reconcile_count: dict[tuple[str, str], int] = defaultdict(int)
        self.payment_attempts: dict[tuple[str, str], int] = defaultdict(int)
        self.active_requests = 0
        self.startup_time = time.time()

    def record(self, method: str, path: str, status: int, duration: float):
        with self._lock:
            self.request_count[(method, path, status)] += 1
            self.request_duration_sum[(method, path)] += duration
            self.request_duration_count[(method, path)] += 1

    def record_reconcile(self, source: str, outcome: str):
        with self._lock:
            self.reconcile_count[(source, outcome)] += 1

    def record_payment_attempt(self, method: str, outcome: str):
        with self._lock:
            self.payment_attempts[(method, outcome)] += 1

    def inc_active(self):
        with self._lock:
            self.active_requests += 1

    def dec_active(self):
        with self._lock:
            self.active_requests -= 1

    def reset(self):
        with self._lock:
            self.request_count.clear()
            self.request_duration_sum.clear()
            self.request_duration_count.clear()
            self.reconcile_count.clear()
            self.payment_attempts.clear()
            self.active_requests = 0

    def render(self) -> str:
        lines: list[str] = []
        lines.append("# HELP kontrivibe_http_requests_total Total HTTP requests")
        lines.append("# TYPE kontrivibe_http_requests_total counter")
        with self._lock:
            for (method, path, status), count in sorted(self.request_count.items()):
                lines.append(
                    f'kontrivibe_http_requests_total{{method="{method}",path="{path}",status="{status}"}} {count}'
                )

            lines.append("")
            lines.append("# HELP kontrivibe_http_request_duration_seconds HTTP request duration")
            lines.append("# TYPE kontrivibe_http_request_duration_seconds summary")
            for (method, path), total in sorted(self.request_duration_sum.items()):
                count = self.request_duration_count[(method, path)]
                lines.append(
                    f'kontrivibe_http_request_duration_seconds_sum{{method="{method}",path="{path}"}} {total:.6f}'
                )
                lines.append(
                    f'kontrivibe_http_request_duration_seconds_count{{method="{method}",path="{path}"}} {count}'
                )

            lines.append("")
            lines.append("# HELP kontrivibe_payment_reconciliations_total Payment status reconciliations")
            lines.append("# TYPE kontrivibe_payment_reconciliations_total counter")
            for (source, outcome), count in sorted(self.reconcile_count.items()):
                lines.append(
                    f'kontrivibe_payment_reconciliations_total{{source="{source}",outcome="{outcome}"}} {count}'
                )

            lines.append("")
            lines.append("# HELP kontrivibe_payment_attempts_total Payment initiation attempts")
            lines.append("# TYPE kontrivibe_payment_attempts_total counter")
            for (method, outcome), count in sorted(self.payment_attempts.items()):
                lines.append(
                    f'kontrivibe_payment_attempts_total{{method="{method}",outcome="{outcome}"}} {count}'
                )

            lines.append("")
            lines.append("# HELP kontrivibe_active_requests Current in-flight requests")
            lines.append("# TYPE kontrivibe_active_requests gauge")
            lines.append(f"kontrivibe_active_requests {self.active_requests}")

            lines.append("")
            lines.append("# HELP kontrivibe_uptime_seconds Seconds since process start")
            lines.append("# TYPE kontrivibe_uptime_seconds gauge")
            lines.append(f"kontrivibe_uptime_seconds {time.time() - self.startup_time:.1f}")

        return "\n".join(lines) + "\n"


metrics = _Metrics()


def _normalize_path(path: str) -> str:
    """Collapse IDs in paths to reduce cardinality. /notifications/<uuid> -> /notifications/:id"""
    parts = path.rstrip("/").split("/")
    normalized = []
    for part in parts:
        if part.isdigit() or (len(part) > 20 and part.replace("-", "").isalnum()):
            normalized.append(":id")
        else:
            normalized.append(part)
    return "/".join(normalized) or "/"


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return PlainTextResponse(metrics.render(), media_type="text/plain; version=0.0.4")

        metrics.inc_active()
        start = time.perf_counter()
        try:
            response = await call_next(request)
            duration = time.perf_counter() - start
            metrics.record(
                request.method,
                _normalize_path(request.url.path),
                response.status_code,
                duration,
            )
            return response
        except Exception:
            duration = time.perf_counter() - start
            metrics.record(request.method, _normalize_path(request.url.path), 500, duration)
            raise
        finally:
            metrics.dec_active()
