from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_JOB_PROCESSING_BUCKETS_MS = (10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0, 30000.0)
_JOB_BACKOFF_BUCKETS_SECONDS = (1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id:
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset_state()

    def _reset_state(self) -> None:
        self._http_request_total: Dict[tuple[str, str, str], int] = {}
        self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}
        self._job_outcome_total: Dict[tuple[str, str], int] = {}
        self._job_enqueued_total: Dict[tuple[str, str], int] = {}
        self._job_dead_letter_total = 0
        self._job_processing_time = self._new_histogram_state(_JOB_PROCESSING_BUCKETS_MS)
        self._job_retry_backoff_seconds = self._new_histogram_state(_JOB_BACKOFF_BUCKETS_SECONDS)
        self._sync_outcome_total: Dict[tuple[str, str], int] = {}
        self._shipping_resolution_total: Dict[str, int] = {}
        self._batch_items_total: Dict[tuple[str, str], int] = {}
        self._domain_event_emitted_total: Dict[str, int] = {}

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        observed = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += observed
        for limit in limits:
            if observed <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _increment(counter: dict, key, amount: int = 1) -> None:
        counter[key] = int(counter.get(key, 0)) + int(amount)

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        with self._lock:
            self._increment(self._http_request_total, (method_key, route_key, str(int(status_code))))
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_job_enqueued(self, queue_name: str, deduplicated: bool) -> None:
        with self._lock:
            self._increment(self._job_enqueued_total, (queue_name, "deduplicated" if deduplicated else "created"))

    def observe_job_outcome(self, queue_name: str, outcome: str, duration_ms: float | None = None) -> None:
        with self._lock:
            self._increment(self._job_outcome_total, (queue_name, outcome))
            if outcome == "failed":
                self._job_dead_letter_total += 1
            if duration_ms is not None:
                self._observe_histogram(self._job_processing_time, duration_ms, _JOB_PROCESSING_BUCKETS_MS)

    def observe_job_retry_backoff(self, backoff_seconds: float) -> None:
        with self._lock:
            self._observe_histogram(self._job_retry_backoff_seconds, backoff_seconds, _JOB_BACKOFF_BUCKETS_SECONDS)

    def observe_sync_outcome(self, entity_type: str, outcome: str) -> None:
        with self._lock:
            self._increment(self._sync_outcome_total, (entity_type, outcome))

    def observe_shipping_resolution(self, outcome: str) -> None:
        with self._lock:
            self._increment(self._shipping_resolution_total, outcome)

    def observe_batch_items(self, entity_type: str, result: str, count: int) -> None:
        if int(count or 0) <= 0:
            return
        with self._lock:
            self._increment(self._batch_items_total, (entity_type, result), count)

    def observe_domain_event_emitted(self, event_type: str) -> None:
        with self._lock:
            self._increment(self._domain_event_emitted_total, str(event_type or "unknown"))

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": dict(self._http_request_total),
                "http_request_duration_ms": {key: dict(value) for key, value in self._http_request_duration_ms.items()},
                "job_enqueued_total": dict(self._job_enqueued_total),
                "job_outcome_total": dict(self._job_outcome_total),
                "job_dead_letter_total": int(self._job_dead_letter_total),
                "job_processing_time_ms": _copy_histogram(self._job_processing_time),
                "job_retry_backoff_seconds": _copy_histogram(self._job_retry_backoff_seconds),
                "sync_outcome_total": dict(self._sync_outcome_total),
                "shipping_resolution_total": dict(self._shipping_resolution_total),
                "batch_items_total": dict(self._batch_items_total),
                "domain_event_emitted_total": dict(self._domain_event_emitted_total),
            }

    def reset(self) -> None:
        with self._lock:
            self._reset_state()


def _copy_histogram(state: dict) -> dict:
    return {
        "count": int(state["count"]),
        "sum": float(state["sum"]),
        "buckets": {label: int(count) for label, count in state["buckets"].items()},
    }


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_job_enqueued(queue_name: str, deduplicated: bool) -> None:
    _METRICS.observe_job_enqueued(queue_name, deduplicated)


def observe_job_outcome(queue_name: str, outcome: str, duration_ms: float | None = None) -> None:
    _METRICS.observe_job_outcome(queue_name, outcome, duration_ms)


def observe_job_retry_backoff(backoff_seconds: float) -> None:
    _METRICS.observe_job_retry_backoff(backoff_seconds)


def observe_sync_outcome(entity_type: str, outcome: str) -> None:
    _METRICS.observe_sync_outcome(entity_type, outcome)


def observe_shipping_resolution(outcome: str) -> None:
    _METRICS.observe_shipping_resolution(outcome)


def observe_batch_items(entity_type: str, result: str, count: int) -> None:
    _METRICS.observe_batch_items(entity_type, result, count)


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.observe_domain_event_emitted(event_type)


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, help_text: str, state: dict) -> None:
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} histogram")
    for le_label, bucket_value in state["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(bucket_value), labels={"le": le_label}))
    lines.append(_prom_line(f"{name}_sum", float(state["sum"])))
    lines.append(_prom_line(f"{name}_count", int(state["count"])))


def prometheus_metrics_text(*, queue_state: dict | None = None, circuit_state: dict | None = None) -> str:
    snapshot = _METRICS.snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for (method, route, status), total in sorted(snapshot["http_request_total"].items()):
        lines.append(_prom_line("http_request_total", int(total), labels={"method": method, "route": route, "status": status}))

    lines.append("# HELP http_request_duration_ms HTTP request latency in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for (method, route), state in sorted(snapshot["http_request_duration_ms"].items()):
        labels = {"method": method, "route": route}
        for le_label, bucket_value in state["buckets"].items():
            lines.append(_prom_line("http_request_duration_ms_bucket", int(bucket_value), labels={**labels, "le": le_label}))
        lines.append(_prom_line("http_request_duration_ms_sum", float(state["sum"]), labels=labels))
        lines.append(_prom_line("http_request_duration_ms_count", int(state["count"]), labels=labels))

    lines.append("# HELP domain_event_emitted_total Domain events published, by type.")
    lines.append("# TYPE domain_event_emitted_total counter")
    for event_type, total in sorted(snapshot["domain_event_emitted_total"].items()):
        lines.append(_prom_line("domain_event_emitted_total", int(total), labels={"event_type": event_type}))

    lines.append("# HELP sync_job_enqueued_total Jobs offered to the queue, by queue and result.")
    lines.append("# TYPE sync_job_enqueued_total counter")
    for (queue_name, result), total in sorted(snapshot["job_enqueued_total"].items()):
        lines.append(_prom_line("sync_job_enqueued_total", int(total), labels={"queue": queue_name, "result": result}))

    lines.append("# HELP sync_job_outcome_total Job executions by queue and outcome.")
    lines.append("# TYPE sync_job_outcome_total counter")
    for (queue_name, outcome), total in sorted(snapshot["job_outcome_total"].items()):
        lines.append(_prom_line("sync_job_outcome_total", int(total), labels={"queue": queue_name, "outcome": outcome}))

    lines.append("# HELP sync_job_dead_letter_total Jobs moved to the failed state.")
    lines.append("# TYPE sync_job_dead_letter_total counter")
    lines.append(_prom_line("sync_job_dead_letter_total", int(snapshot["job_dead_letter_total"])))

    _prom_histogram(lines, "sync_job_processing_ms", "Handler execution time in milliseconds.", snapshot["job_processing_time_ms"])
    _prom_histogram(lines, "sync_job_retry_backoff_seconds", "Scheduled retry delay in seconds.", snapshot["job_retry_backoff_seconds"])

    lines.append("# HELP sync_event_outcome_total Orchestrator results by entity type and outcome.")
    lines.append("# TYPE sync_event_outcome_total counter")
    for (entity_type, outcome), total in sorted(snapshot["sync_outcome_total"].items()):
        lines.append(_prom_line("sync_event_outcome_total", int(total), labels={"entity": entity_type, "outcome": outcome}))

    lines.append("# HELP shipping_resolution_total Shipping method resolutions by outcome.")
    lines.append("# TYPE shipping_resolution_total counter")
    for outcome, total in sorted(snapshot["shipping_resolution_total"].items()):
        lines.append(_prom_line("shipping_resolution_total", int(total), labels={"outcome": outcome}))

    lines.append("# HELP batch_upsert_items_total Bulk upsert items by entity type and result.")
    lines.append("# TYPE batch_upsert_items_total counter")
    for (entity_type, result), total in sorted(snapshot["batch_items_total"].items()):
        lines.append(_prom_line("batch_upsert_items_total", int(total), labels={"entity": entity_type, "result": result}))

    if queue_state is not None:
        lines.append("# HELP sync_job_queue_size Jobs currently stored, by state.")
        lines.append("# TYPE sync_job_queue_size gauge")
        for state, total in sorted(queue_state.items()):
            lines.append(_prom_line("sync_job_queue_size", int(total), labels={"state": state}))

    if circuit_state is not None:
        current = str(circuit_state.get("state") or "closed")
        lines.append("# HELP ffn_circuit_state Fulfillment network circuit breaker state.")
        lines.append("# TYPE ffn_circuit_state gauge")
        for state in ("closed", "open", "half_open"):
            lines.append(_prom_line("ffn_circuit_state", 1 if state == current else 0, labels={"state": state}))

    return "\n".join(lines) + "\n"
