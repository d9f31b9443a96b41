import logging
import os

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from portal.config import Config
from portal.core import DomainEvent, EventBus
from portal.db import close_db, get_db, init_db, schema_ready
from portal.db_migrations import register_db_cli
from portal.errors import AppError, SystemError
from portal.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    if _store_backend(app) == "sql" and app.config.get("DATABASE_DIR"):
        os.makedirs(app.config["DATABASE_DIR"], exist_ok=True)

    _register_request_hooks(app)
    _register_error_handlers(app)
    _register_services(app)
    _register_routes(app)
    register_db_cli(app)
    _maybe_init_schema(app)

    app.teardown_appcontext(close_db)
    return app


def _store_backend(app: Flask) -> str:
    return str(app.config.get("STORE_BACKEND") or "sql").strip().lower()


def _maybe_init_schema(app: Flask) -> None:
    if _store_backend(app) != "sql":
        return
    if not (app.testing or app.config.get("DB_AUTO_INIT", False)):
        return

    flask_env = (os.environ.get("FLASK_ENV") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignorado fuera de development.", extra={"flask_env": flask_env})
        return

    with app.app_context():
        init_db()


def _register_services(app: Flask) -> None:
    from portal.contexts.procurement.application.wiring import build_services
    from portal.contexts.procurement.infrastructure.notifications import EventBusNotificationEmitter

    event_bus = EventBus()
    event_logger = logging.getLogger("portal.events")

    def _log_domain_event(event: DomainEvent) -> None:
        event_logger.info(
            "domain_event",
            extra={
                "event_type": type(event).__name__,
                "event_id": event.event_id,
                "order_id": getattr(event, "order_id", None),
            },
        )

    event_bus.subscribe(DomainEvent, _log_domain_event)
    app.extensions["event_bus"] = event_bus
    app.extensions["procurement"] = build_services(
        app.config,
        db_provider=get_db,
        notifier=EventBusNotificationEmitter(event_bus),
    )


def _register_request_hooks(app: Flask) -> None:
    @app.before_request
    def _start_request() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _finish_request(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)


def _register_error_handlers(app: Flask) -> None:
    def _request_fields(request_id: str) -> dict:
        return {"request_id": request_id, "request_path": request.path, "http_method": request.method}

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        level = logging.ERROR if exc.critical else logging.WARNING
        app.logger.log(
            level,
            "application_error",
            extra={
                **_request_fields(request_id),
                "error_code": exc.code,
                "http_status": exc.http_status,
                "message_key": exc.message_key,
                "details": exc.details,
            },
            exc_info=exc.critical,
        )
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(code="unexpected_error", details=str(exc))
        app.logger.exception("unexpected_exception", extra={**_request_fields(request_id), "error_code": mapped.code})
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _register_routes(app: Flask) -> None:
    from portal.contexts.procurement.interfaces.http import procurement_bp

    app.register_blueprint(procurement_bp)

    @app.route("/health")
    def health():
        backend = _store_backend(app)
        db_path = str(app.config.get("DB_PATH") or "")
        payload = {
            "status": "ok",
            "store": backend,
            "db": "postgres" if db_path.startswith("postgres") else "sqlite",
            "metrics": metrics_snapshot(),
        }
        if backend == "sql":
            try:
                payload["schema_ready"] = schema_ready(get_db())
            except Exception:  # noqa: BLE001
                app.logger.exception("health_db_check_failed")
                payload["schema_ready"] = False
            if not payload["schema_ready"]:
                payload["status"] = "degraded"
        return payload, 200
