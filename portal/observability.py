from __future__ import annotations

import contextvars
import json
import logging
import threading
import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


_REQUEST_ID: contextvars.ContextVar[str] = contextvars.ContextVar("portal_request_id", default="")

# Attributes every LogRecord carries; anything else on a record came in through `extra=`.
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def _bind_request_id(request_id: str | None) -> str:
    bound = str(request_id or "").strip() or "n/a"
    _REQUEST_ID.set(bound)
    return bound


def current_request_id(default: str = "n/a") -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return str(_REQUEST_ID.get() or "").strip() or default


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line with the request id and any structured `extra=` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id()
            payload["path"] = request.path
            payload["method"] = request.method
        else:
            payload["request_id"] = str(getattr(record, "request_id", "") or "").strip() or current_request_id()

        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_") or key in payload or callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).strip().upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if not request_id:
        request_id = str(request.headers.get("X-Request-Id") or "").strip() or str(uuid.uuid4())
        g.request_id = request_id
    return _bind_request_id(request_id)


class MetricsRegistry:
    """In-process counters surfaced by /health."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests = Counter()
        self._errors = Counter()
        self._latency_sum_ms: Dict[str, float] = {}
        self._latency_max_ms: Dict[str, float] = {}
        self._domain_events = Counter()
        self._store_conflicts = Counter()

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        key = f"{(method or 'GET').upper()} {route or 'unknown'}"
        duration = max(0.0, float(duration_ms))
        with self._lock:
            self._requests[key] += 1
            if int(status_code) >= 400:
                self._errors[key] += 1
            self._latency_sum_ms[key] = self._latency_sum_ms.get(key, 0.0) + duration
            self._latency_max_ms[key] = max(self._latency_max_ms.get(key, 0.0), duration)

    def observe_domain_event(self, event_type: str) -> None:
        with self._lock:
            self._domain_events[event_type or "unknown"] += 1

    def observe_store_conflict(self, store: str) -> None:
        with self._lock:
            self._store_conflicts[store or "unknown"] += 1

    def snapshot(self) -> dict:
        with self._lock:
            routes = {
                key: {
                    "requests": count,
                    "errors": self._errors[key],
                    "latency_avg_ms": round(self._latency_sum_ms.get(key, 0.0) / count, 2),
                    "latency_max_ms": round(self._latency_max_ms.get(key, 0.0), 2),
                }
                for key, count in self._requests.items()
            }
            return {
                "requests_total": sum(self._requests.values()),
                "errors_total": sum(self._errors.values()),
                "routes": routes,
                "domain_events_emitted": dict(self._domain_events),
                "store_write_conflicts": dict(self._store_conflicts),
            }

    def reset(self) -> None:
        with self._lock:
            for counter in (self._requests, self._errors, self._domain_events, self._store_conflicts):
                counter.clear()
            self._latency_sum_ms.clear()
            self._latency_max_ms.clear()


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = (time.perf_counter() - started) * 1000.0 if started > 0.0 else 0.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.observe_domain_event(event_type)


def observe_store_conflict(store: str) -> None:
    _METRICS.observe_store_conflict(store)


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
