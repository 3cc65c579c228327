import os

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from fulfillsync.batch_cli import register_batch_cli
from fulfillsync.config import Config
from fulfillsync.db import close_db, get_db, init_db
from fulfillsync.db_migrations import register_db_cli
from fulfillsync.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_health(app)
    register_db_cli(app)
    register_batch_cli(app)
    _maybe_init_schema(app)

    _register_engine(app)
    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        # Tests build their own schema without running migrations.
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignored outside development.")
        return

    with app.app_context():
        init_db()


def _register_engine(app: Flask) -> None:
    from fulfillsync.engine import EXTENSION_KEY, SyncEngine
    from fulfillsync.scheduler import should_start_background

    engine = SyncEngine(app)
    app.extensions[EXTENSION_KEY] = engine
    engine.start(
        workers=should_start_background(app, "WORKER_POOL_ENABLED"),
        poller=should_start_background(app, "FFN_POLL_ENABLED"),
    )


def _register_error_handlers(app: Flask) -> None:
    from fulfillsync.contexts.fulfillment.domain.gateway import FulfillmentGatewayError
    from fulfillsync.errors import AppError, IntegrationError, SystemError, classify_gateway_failure

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(FulfillmentGatewayError)
    def _handle_gateway_error(exc: FulfillmentGatewayError):
        request_id = ensure_request_id()
        message_key, definitive = classify_gateway_failure(str(exc))
        mapped = IntegrationError(
            code=exc.code or message_key,
            message_key=message_key,
            http_status=422 if definitive else 503,
            critical=False,
            details=str(exc),
        )
        _log_error(mapped, request_id)
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _register_health(app: Flask) -> None:
    def _engine_state() -> tuple[dict | None, dict | None]:
        from fulfillsync.engine import EXTENSION_KEY

        engine = app.extensions.get(EXTENSION_KEY)
        if engine is None:
            return None, None
        return engine.job_queue.counts(get_db()), engine.circuit_breaker.snapshot()

    @app.route("/health")
    def health():
        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        payload = {
            "status": "ok",
            "db": backend,
            "env": app.config.get("ENV", "unknown"),
            "metrics": {"http": metrics_snapshot()},
        }
        try:
            queue_state, circuit_state = _engine_state()
            payload["queue"] = queue_state
            payload["circuit"] = circuit_state
            if circuit_state and circuit_state.get("state") == "open":
                payload["status"] = "degraded"
        except Exception:  # noqa: BLE001
            app.logger.exception("health_check_failed")
            payload["status"] = "degraded"
            payload["queue"] = None
        return payload, 200

    @app.route("/metrics")
    def metrics():
        try:
            queue_state, circuit_state = _engine_state()
        except Exception:  # noqa: BLE001
            app.logger.exception("metrics_state_failed")
            queue_state, circuit_state = None, None
        text = prometheus_metrics_text(queue_state=queue_state, circuit_state=circuit_state)
        return Response(text, mimetype="text/plain; version=0.0.4")
