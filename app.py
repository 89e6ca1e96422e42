import logging
import time
import uuid

from flask import Flask, g, jsonify, request
from flask.logging import default_handler
from flask_limiter.errors import RateLimitExceeded
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from config import Config
from extensions import db, limiter, mail, migrate
from routes.continuation_routes import continuation_bp
from routes.respond_routes import respond_bp


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _configure_logging(app):
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    default_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    app.logger.setLevel(level)


def create_app(config_object=None):
    app = Flask(__name__)

    # Load configuration from Config, then apply per-instance overrides (tests, scripts)
    app.config.from_object(Config)
    if isinstance(config_object, dict):
        app.config.update(config_object)
    elif config_object is not None:
        app.config.from_object(config_object)

    if app.config.get("TRUST_PROXY", True):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

    _configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    mail.init_app(app)
    limiter.init_app(app)

    # Assign a per-request correlation id for tracing
    @app.before_request
    def _assign_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]

    # Set security headers on every response
    @app.after_request
    def _set_security_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if app.config.get("SESSION_COOKIE_SECURE", False):
            resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        request_id = getattr(g, "request_id", None)
        if request_id:
            resp.headers["X-Request-ID"] = request_id
        return resp

    @app.errorhandler(RateLimitExceeded)
    def _rate_limited(exc):
        current = limiter.current_limit
        retry_after = max(int(current.reset_at - time.time()), 1) if current else None
        app.logger.info("Rate limit hit on %s (%s)", request.path, exc.description)
        resp = jsonify({"error": "Too many requests", "retry_after": retry_after})
        resp.status_code = 429
        return resp

    @app.errorhandler(HTTPException)
    def _http_error(exc):
        return jsonify({"error": exc.description or exc.name}), exc.code

    @app.errorhandler(Exception)
    def _unhandled(exc):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s (request %s)", request.method, request.path, getattr(g, "request_id", "-"))
        return jsonify({"error": "Internal error"}), 500

    app.register_blueprint(continuation_bp)
    app.register_blueprint(respond_bp)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    if app.config.get("CONTINUATION_SCHEDULER_ENABLED") and not app.testing:
        from scheduler import start_scheduler

        try:
            app.extensions["continuation_scheduler"] = start_scheduler(app)
        except Exception as exc:
            print("[scheduler] not started:", exc)

    return app


if __name__ == "__main__":
    create_app().run(debug=True)
