import json
import logging
import os
from datetime import timedelta

import click
from flask import Flask, request
from flask_caching import Cache
from flask_limiter import Limiter
from flask_limiter.errors import RateLimitExceeded
from flask_limiter.util import get_remote_address
from flask_login import LoginManager, current_user
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from werkzeug.exceptions import HTTPException

# Global extensions
db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()


def _rate_key():
    # Authenticated callers are limited per account, everyone else per address
    if current_user.is_authenticated:
        return f"user:{current_user.get_id()}|{request.path}"
    ip = request.headers.get("X-Forwarded-For") or get_remote_address() or "local"
    return f"{ip}|{request.path}"


limiter = Limiter(key_func=_rate_key)
cache = Cache()


def _json_env(name):
    raw = os.environ.get(name)
    if not raw:
        return None
    return json.loads(raw)


def create_app(test_config=None):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key")
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(
        minutes=int(os.environ.get("SESSION_LIFETIME_MINUTES", "60"))
    )
    app.config["IDENTITY_TOKEN_MAX_AGE"] = int(os.environ.get("IDENTITY_TOKEN_MAX_AGE", "3600"))
    app.config["IDENTITY_SECRET_KEY"] = os.environ.get("IDENTITY_SECRET_KEY")

    REDIS_URL = os.environ.get("REDIS_URL")
    if REDIS_URL:
        app.config["CACHE_TYPE"] = "RedisCache"
        app.config["CACHE_REDIS_URL"] = REDIS_URL
        app.config["RATELIMIT_STORAGE_URI"] = REDIS_URL
    else:
        app.config["CACHE_TYPE"] = "SimpleCache"
    app.config["CACHE_DEFAULT_TIMEOUT"] = int(os.environ.get("CACHE_DEFAULT_TIMEOUT", "300"))
    app.config.setdefault("RATELIMIT_STORAGE_URI", "memory://")
    app.config["RATELIMIT_ENABLED"] = (os.environ.get("RATELIMIT_ENABLED", "true").lower() == "true")

    # Mail configuration (task notifications)
    app.config["MAIL_HOST"] = os.environ.get("MAIL_HOST")
    app.config["MAIL_PORT"] = int(os.environ.get("MAIL_PORT", "587"))
    app.config["MAIL_USER"] = os.environ.get("MAIL_USER")
    app.config["MAIL_PASSWORD"] = os.environ.get("MAIL_PASSWORD")
    app.config["MAIL_FROM"] = os.environ.get("MAIL_FROM", os.environ.get("MAIL_USER", "noreply@example.com"))
    app.config["MAIL_USE_TLS"] = (os.environ.get("MAIL_USE_TLS", "true").lower() == "true")
    app.config["MAIL_USE_SSL"] = (os.environ.get("MAIL_USE_SSL", "false").lower() == "true")
    app.config["PUBLIC_BASE_URL"] = os.environ.get("PUBLIC_BASE_URL", "")

    # Database configuration: use DATABASE_URL if provided, else sqlite file
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        db_path = os.path.join(os.path.dirname(__file__), "..", "mentor.db")
        database_url = f"sqlite:///{os.path.abspath(db_path)}"
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO").upper()
    app.config["DEFAULT_PAGE_SIZE"] = int(os.environ.get("DEFAULT_PAGE_SIZE", "50"))
    app.config["MAX_PAGE_SIZE"] = int(os.environ.get("MAX_PAGE_SIZE", "500"))
    # {"form_admin": ["root", "admin", "manager"], ...}
    app.config["ROLE_ALLOW_LISTS"] = _json_env("ROLE_ALLOW_LISTS") or {}
    # {"submitted": ["rejected"]} adds a rejection outcome to reviews
    app.config["EXTRA_REVIEW_TRANSITIONS"] = _json_env("EXTRA_REVIEW_TRANSITIONS") or {}

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, app.config["LOG_LEVEL"], logging.INFO))

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cache.init_app(app)

    # Auth: Flask-Login (session from /auth/login, or a bearer identity token)
    login_manager.init_app(app)

    # Import models so they are registered with SQLAlchemy
    from . import models  # noqa: F401
    from .api_utils import api_error
    from .errors import ApiError
    from .identity import load_user_from_request

    @login_manager.user_loader
    def load_user(user_id: str):
        user = db.session.get(models.User, user_id)
        if user is None or not user.is_active:
            return None
        return user

    @login_manager.request_loader
    def load_user_from_header(req):
        return load_user_from_request(req)

    @login_manager.unauthorized_handler
    def handle_unauthorized():
        return api_error("unauthorized", "Authentication required", 401)

    # Blueprints
    from .auth import auth_bp
    app.register_blueprint(auth_bp, url_prefix="/auth")

    from .forms import forms_bp
    app.register_blueprint(forms_bp, url_prefix="/forms")

    from .responses import responses_bp
    app.register_blueprint(responses_bp, url_prefix="/form-responses")

    from .tasks import tasks_bp
    app.register_blueprint(tasks_bp, url_prefix="/tasks")

    from .students import students_bp
    app.register_blueprint(students_bp, url_prefix="/students")

    from .permissions import permissions_bp
    app.register_blueprint(permissions_bp, url_prefix="/permissions")

    from .users import users_bp
    app.register_blueprint(users_bp)

    @app.errorhandler(ApiError)
    def handle_api_error(e):
        if e.status >= 500:
            app.logger.error("API error %s: %s", e.code, e.message)
        return api_error(e.code, e.message, e.status, e.details)

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(e):
        return api_error("rate_limited", "Too many requests", 429)

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        code = (e.name or "error").lower().replace(" ", "_")
        return api_error(code, e.description or "", e.code)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return api_error("internal_error", "Internal server error", 500)

    @app.cli.command("seed-roles")
    def seed_roles_command():
        """Insert any missing reference roles."""
        from .roles import ensure_roles
        click.echo(f"Created {ensure_roles()} role(s)")

    @app.cli.command("issue-token")
    @click.argument("email")
    @click.option("--name", default=None)
    def issue_token_command(email, name):
        """Print an identity token for EMAIL (local development)."""
        from .identity import issue_token
        click.echo(issue_token(email, name=name))

    # Create tables on first run (dev convenience)
    with app.app_context():
        db.create_all()
        from .roles import ensure_roles
        ensure_roles()

    return app
