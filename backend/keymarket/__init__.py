import os
from datetime import datetime

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from keymarket.config import load_config
from keymarket.errors import EscrowError
from keymarket.extensions import cors, db, migrate
from keymarket.integrations.payments.factory import payment_health
from keymarket.segments.segment_admin import admin_bp
from keymarket.segments.segment_disputes import disputes_bp
from keymarket.segments.segment_orders_api import orders_bp
from keymarket.segments.segment_payment_webhooks import webhooks_bp
from keymarket.segments.segment_payouts import payouts_bp
from keymarket.services.engine import build_engine
from keymarket.utils.observability import init_sentry, install_request_observers


def _resolve_database_url(config) -> str:
    if config.database_url:
        return config.database_url
    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)
    return f"sqlite:///{os.path.join(instance_dir, 'keymarket.db').replace(os.sep, '/')}"


def _engine_options(database_url: str) -> dict:
    options = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite://"):
        options.update(
            {
                "pool_recycle": int(os.getenv("DB_POOL_RECYCLE_SECONDS", "1800") or 1800),
                "pool_size": int(os.getenv("DB_POOL_SIZE", "10") or 10),
                "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "20") or 20),
            }
        )
    return options


def _error_payload(body: dict) -> dict:
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        body["trace_id"] = rid
    return body


def _parse_now(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise click.BadParameter("--now must be an ISO-8601 timestamp")


def create_app(config=None, *, gateway=None, catalog=None, notifier=None, clock=None):
    """Build the Flask app.

    Tests pass a config and in-memory integrations; everything else reads the
    environment through ``load_config``.
    """
    config = config or load_config()
    config.validate()

    app = Flask(__name__)
    init_sentry(app)

    database_url = _resolve_database_url(config)
    app.config["SECRET_KEY"] = config.secret_key
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = _engine_options(database_url)

    if config.env in ("prod", "production"):
        origins = list(config.cors_origins)
    else:
        origins = list(config.cors_origins) or ["*"]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    app.extensions["keymarket"] = build_engine(
        config,
        gateway=gateway,
        catalog=catalog,
        notification_provider=notifier,
        clock=clock,
    )

    @app.errorhandler(EscrowError)
    def _escrow_error(error: EscrowError):
        db.session.rollback()
        if error.status >= 500:
            app.logger.warning("escrow_error path=%s code=%s msg=%s", request.path, error.code, error.message)
        return jsonify(_error_payload(error.to_payload())), int(error.status)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        return jsonify(_error_payload(payload)), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        db.session.rollback()
        app.logger.exception("unhandled_exception path=%s", request.path)
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        return jsonify(_error_payload(payload)), 500

    @app.teardown_appcontext
    def _cleanup_session(exc):
        if exc is not None:
            db.session.rollback()
        db.session.remove()

    app.register_blueprint(orders_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(payouts_bp)
    app.register_blueprint(admin_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "keymarket-backend",
            "env": config.env,
            "payment_mode": config.payment_mode,
            "db": db_state,
            "payments": payment_health(config),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.cli.command("run-auto-confirm")
    @click.option("--now", "now", required=False, help="Sweep as of this ISO timestamp")
    @click.option("--limit", "limit", type=int, required=False)
    def run_auto_confirm(now: str | None, limit: int | None):
        result = app.extensions["keymarket"].run_auto_confirm_sweep(now=_parse_now(now), limit=limit)
        click.echo(f"auto_confirm_ok candidates={result['candidates']} completed={result['completed']}")

    @app.cli.command("run-payout-sweep")
    def run_payout_sweep_command():
        result = app.extensions["keymarket"].run_payout_sweep()
        click.echo(
            f"payout_sweep_ok processed={result['processed']} completed={result['completed']} "
            f"failed={result['failed']} manual={result['manual']}"
        )

    @app.cli.command("reconcile-payouts")
    @click.option("--min-age-seconds", "min_age_seconds", type=int, default=60, show_default=True)
    def reconcile_payouts_command(min_age_seconds: int):
        result = app.extensions["keymarket"].reconcile_payouts(min_age_seconds=min_age_seconds)
        click.echo(
            f"payout_reconcile checked={result['checked']} completed={result['completed']} "
            f"unresolved={result['unresolved']}"
        )
        if result["unresolved"]:
            raise click.ClickException("Some payouts are still unresolved; see the review queue.")

    return app
