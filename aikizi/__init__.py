# aikizi/__init__.py
from __future__ import annotations

import logging
import uuid
from typing import Optional

import click
from flask import Flask, g, has_request_context, jsonify, request

from aikizi.config import Config, ensure_sqlite_dir
from aikizi.database import db, init_db
from aikizi.errors import ServiceError

LOG_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"


class RequestIdFilter(logging.Filter):
    """Añade request_id a cada registro ("-" fuera de una petición)."""

    def filter(self, record: logging.LogRecord) -> bool:
        rid = "-"
        if has_request_context():
            rid = getattr(g, "request_id", None) or "-"
        record.request_id = rid
        return True


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    root = logging.getLogger()
    if not any(getattr(h, "_aikizi", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(RequestIdFilter())
        handler._aikizi = True
        root.addHandler(handler)
    root.setLevel(level)
    app.logger.setLevel(level)


def create_app(overrides: Optional[dict] = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)

    # -----------------------------------------------------------
    # CONFIG GENERAL
    # -----------------------------------------------------------
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)
        uri = app.config["SQLALCHEMY_DATABASE_URI"]
        if "SQLALCHEMY_ENGINE_OPTIONS" not in overrides:
            app.config["SQLALCHEMY_ENGINE_OPTIONS"] = (
                {"connect_args": {"timeout": 30}} if uri.startswith("sqlite") else {"pool_pre_ping": True}
            )
    app.config["MAX_CONTENT_LENGTH"] = int(app.config.get("MAX_UPLOAD_MB", 25)) * 2 * 1024 * 1024

    ensure_sqlite_dir(app.config["SQLALCHEMY_DATABASE_URI"])
    _configure_logging(app)

    # -----------------------------------------------------------
    # INICIALIZACIÓN DE EXTENSIONES
    # -----------------------------------------------------------
    init_db(app)

    # Importar modelos
    from aikizi import models  # noqa: F401

    # -----------------------------------------------------------
    # CORRELACIÓN DE PETICIONES
    # -----------------------------------------------------------
    @app.before_request
    def _assign_request_id():
        incoming = (request.headers.get("X-Request-Id") or "").strip()
        g.request_id = incoming[:64] or uuid.uuid4().hex

    @app.after_request
    def _echo_request_id(resp):
        resp.headers["X-Request-Id"] = getattr(g, "request_id", "-")
        return resp

    # -----------------------------------------------------------
    # ERRORES -> {"ok": false, "error", "code"}
    # -----------------------------------------------------------
    @app.errorhandler(ServiceError)
    def _service_error(err: ServiceError):
        if err.status >= 500:
            app.logger.error("%s %s -> %s %s", request.method, request.path, err.code, err.message)
        else:
            app.logger.info("%s %s -> %s", request.method, request.path, err.code)
        return jsonify(err.to_dict()), err.status

    @app.errorhandler(413)
    def _too_large(_err):
        return jsonify({"ok": False, "error": "Request body too large.", "code": "PAYLOAD_TOO_LARGE"}), 413

    # -----------------------------------------------------------
    # BLUEPRINTS
    # -----------------------------------------------------------
    from aikizi.routes.account import bp as account_bp
    app.register_blueprint(account_bp)

    from aikizi.routes.wallet import bp as wallet_bp
    app.register_blueprint(wallet_bp)

    from aikizi.routes.decode import bp as decode_bp
    app.register_blueprint(decode_bp)

    from aikizi.routes.cron import bp as cron_bp
    app.register_blueprint(cron_bp)

    # -----------------------------------------------------------
    # HEALTHCHECK
    # -----------------------------------------------------------
    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    # -----------------------------------------------------------
    # SERVICIOS / CELERY
    # -----------------------------------------------------------
    from aikizi.celery_app import init_celery
    from aikizi.services import get_services, init_services
    from aikizi.services.ledger import seed_plans

    init_services(app)
    init_celery(app)

    # Crear tablas y planes si no existen
    with app.app_context():
        db.create_all()
        seed_plans(app.config["WELCOME_TOKENS"], app.config["PRO_MONTHLY_TOKENS"])

    # -----------------------------------------------------------
    # CLI
    # -----------------------------------------------------------
    @app.cli.command("refresh-tokens")
    def refresh_tokens_cmd():
        """Concede los tokens mensuales vencidos."""
        n = get_services().ledger.refresh_monthly_grants()
        click.echo(f"granted={n}")

    @app.cli.command("recover-jobs")
    def recover_jobs_cmd():
        """Falla y reembolsa jobs de decode colgados."""
        out = get_services().coordinator.recover_stale_jobs()
        click.echo(f"failed={out['failed']} refunded={out['refunded']}")

    return app
