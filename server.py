import logging
import os

import click
from flask import Flask, request, jsonify
from sqlalchemy.exc import SQLAlchemyError

import directory
from app_config import config
from errors import PipelineError
from extensions import cors, limiter, socketio
from models import db
from routes import envelopes_bp, conversations_bp, engagements_bp, earnings_bp, webhook_bp, sync_bp
from sanitize import sanitize_dict
from services.presence import PresenceTracker, build_store
import socket_events

_startup_logger = logging.getLogger("gigline.startup")
logger = logging.getLogger(__name__)

_CRITICAL_ENV_VARS = [
    "JWT_SECRET",
    "SECRET_KEY",
    "DATABASE_URL",
]

_RECOMMENDED_ENV_VARS = [
    "STRIPE_WEBHOOK_SECRET",
    "CORS_ORIGINS",
    "REDIS_URL",
]

# Paths that must NOT have their bodies sanitized (webhook signatures cover the raw body).
_SANITIZE_SKIP_PREFIXES = ("/api/webhooks/",)


def _init_sentry(app):
    dsn = app.config.get("SENTRY_DSN")
    if not dsn:
        if not app.debug and not app.testing:
            _startup_logger.warning("SENTRY_DSN is not set -- error monitoring is disabled.")
        return
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
    )


def _startup_checks(config_name):
    if config_name in ("development", "testing"):
        return
    missing_critical = [v for v in _CRITICAL_ENV_VARS if not os.environ.get(v)]
    missing_recommended = [v for v in _RECOMMENDED_ENV_VARS if not os.environ.get(v)]
    if missing_critical:
        _startup_logger.critical(
            "MISSING CRITICAL ENV VARS (app may not work correctly): %s",
            ", ".join(missing_critical),
        )
    if missing_recommended:
        _startup_logger.warning("Missing recommended env vars: %s", ", ".join(missing_recommended))


def _allowed_origins(app):
    raw = app.config.get("CORS_ORIGINS") or "*"
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    if "*" in origins:
        if not app.debug and not app.testing:
            _startup_logger.critical("CORS_ORIGINS is '*' in a non-development environment!")
        return "*"
    return origins


def _register_error_handlers(app):
    @app.errorhandler(PipelineError)
    def pipeline_error(e):
        if e.status_code >= 500:
            logger.warning("%s on %s %s: %s", e.code, request.method, request.path, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(429)
    def ratelimit_handler(e):
        # Retry-After header is set by Flask-Limiter; read it back.
        retry_after = e.get_headers().get("Retry-After") if hasattr(e, "get_headers") else None
        retry_after_seconds = int(retry_after) if retry_after else 60
        return jsonify({
            "error": "Too many requests. Please try again later.",
            "code": "rate_limited",
            "retry_after": retry_after_seconds,
        }), 429

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found", "code": "not_found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "code": "method_not_allowed"}), 405

    @app.errorhandler(SQLAlchemyError)
    def database_error(e):
        db.session.rollback()
        logger.exception("Database error on %s %s", request.method, request.path)
        return jsonify({"error": "Database unavailable", "code": "external_dependency_error"}), 502


def _register_middleware(app):
    @app.before_request
    def sanitize_json_input():
        """Sanitize all string values in incoming JSON bodies (webhooks excluded)."""
        if request.path.startswith(_SANITIZE_SKIP_PREFIXES):
            return
        if request.is_json:
            raw = request.get_json(silent=True)
            if raw is not None:
                # Replace the parsed JSON cache so downstream get_json() calls
                # return the sanitized values.
                sanitized = sanitize_dict(raw)
                request._cached_json = (sanitized, sanitized)

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'"
        if not app.debug and not app.testing:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


def _init_presence(app):
    tracker = PresenceTracker(
        build_store(app.config),
        emit=socket_events.broadcast_presence,
        grace_seconds=app.config["PRESENCE_GRACE_SECONDS"],
        on_last_seen=directory.touch_last_seen,
    )
    app.extensions["presence"] = tracker
    return tracker


def create_app(config_name=None):
    """Application factory"""
    config_name = config_name or os.environ.get("FLASK_ENV", "development")
    app = Flask(__name__)
    app.config.from_object(config.get(config_name, config["default"]))

    logging.basicConfig(
        level=getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _startup_checks(config_name)
    _init_sentry(app)

    # Initialize extensions
    origins = _allowed_origins(app)
    db.init_app(app)
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})
    limiter.init_app(app)
    socketio.init_app(
        app,
        cors_allowed_origins=origins,
        async_mode=app.config["SOCKETIO_ASYNC_MODE"],
    )
    _init_presence(app)

    # Register blueprints
    app.register_blueprint(envelopes_bp)
    app.register_blueprint(conversations_bp)
    app.register_blueprint(engagements_bp)
    app.register_blueprint(earnings_bp)
    app.register_blueprint(webhook_bp)
    app.register_blueprint(sync_bp)

    _register_error_handlers(app)
    _register_middleware(app)

    @app.route("/health", methods=["GET"])
    @limiter.exempt
    def health_check():
        """Health check endpoint (exempt from rate limiting)"""
        return jsonify({"status": "healthy", "service": "Gigline API"}), 200

    @app.cli.command("init-db")
    def init_db_command():
        """Create all pipeline tables."""
        db.create_all()
        click.echo("Initialized the Gigline database.")

    with app.app_context():
        db.create_all()

    return app
