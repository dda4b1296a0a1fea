import os
import secrets
import time
from flask import Flask, session, request, url_for, flash, redirect, current_app
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy
from functools import wraps
from flask_migrate import Migrate
from datetime import timedelta
from flask_limiter import Limiter
from flask_caching import Cache
from werkzeug.exceptions import HTTPException
from flask_limiter.errors import RateLimitExceeded

# Global extensions
db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()
def _rate_key():
    try:
        ip = (request.headers.get("X-Forwarded-For") or request.remote_addr or "local")
        token = (session.get("rlid") or "")
        path = (getattr(request, "path", "/") or "/")
        return f"{ip}|{token}|{path}"
    except Exception:
        return "local"

limiter = Limiter(key_func=_rate_key)
cache = Cache()


def _env_flag(name, default):
    return (os.environ.get(name, default).lower() == "true")


def create_app():
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key")

    # Session Timeout: 30 minutes
    app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(minutes=30)

    REDIS_URL = os.environ.get("REDIS_URL")
    if REDIS_URL:
        app.config["CACHE_TYPE"] = "RedisCache"
        app.config["CACHE_REDIS_URL"] = REDIS_URL
        app.config["RATELIMIT_STORAGE_URI"] = REDIS_URL
    else:
        app.config["CACHE_TYPE"] = "SimpleCache"
    app.config["RATELIMIT_ENABLED"] = _env_flag("RATELIMIT_ENABLED", "true")
    # CSRF token TTL (seconds)
    app.config["CSRF_TOKEN_TTL"] = int(os.environ.get("CSRF_TOKEN_TTL", "7200"))

    # Scheduling
    app.config["SCHEDULE_CONFLICT_LOOKAHEAD_DAYS"] = int(os.environ.get("SCHEDULE_CONFLICT_LOOKAHEAD_DAYS", "365"))
    app.config["SCHEDULE_MAX_WINDOW_DAYS"] = int(os.environ.get("SCHEDULE_MAX_WINDOW_DAYS", "62"))
    # Days shown in the week view, counted from Monday
    app.config["SCHEDULE_WEEK_LENGTH"] = int(os.environ.get("SCHEDULE_WEEK_LENGTH", "5"))

    # Database configuration: use DATABASE_URL if provided, else sqlite file
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        db_path = os.path.join(os.path.dirname(__file__), "..", "school.db")
        database_url = f"sqlite:///{os.path.abspath(db_path)}"

    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    app.config.setdefault("RATELIMIT_STORAGE_URI", "memory://")
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cache.init_app(app)
    # Auth: Flask-Login
    login_manager.init_app(app)
    login_manager.login_view = "main.login"

    # Import models so they are registered with SQLAlchemy
    from . import models  # noqa: F401

    @app.context_processor
    def inject_csrf_token():
        return {"csrf_token": issue_csrf_token}

    @app.before_request
    def ensure_rate_key():
        if not session.get("rlid"):
            session["rlid"] = secrets.token_urlsafe(16)

    @login_manager.user_loader
    def load_user(user_id: str):
        from .models import User
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    # Blueprints
    from .main.routes import main_bp
    app.register_blueprint(main_bp)

    from .academics import academics_bp
    app.register_blueprint(academics_bp, url_prefix="/academics")

    from .schedules import schedules_bp
    app.register_blueprint(schedules_bp, url_prefix="/schedules")

    from .students import students_bp
    app.register_blueprint(students_bp, url_prefix="/students")

    from .super_admin import super_admin_bp
    app.register_blueprint(super_admin_bp, url_prefix="/super-admin")

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(e):
        from .api_utils import api_error
        return api_error("rate_limited", "Too many requests", 429)

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        from .api_utils import api_error
        return api_error(str(e.code), e.description or "", e.code)

    # Create tables on first run (dev convenience)
    with app.app_context():
        db.create_all()

    return app


def issue_csrf_token():
    """Return the session CSRF token, regenerating it when missing or expired."""
    token = session.get("csrf_token")
    issued_at = session.get("csrf_token_issued_at")
    ttl = current_app.config.get("CSRF_TOKEN_TTL", 7200)
    now = int(time.time())
    if (not token) or (not issued_at) or (ttl > 0 and (now - int(issued_at)) > ttl):
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
        session["csrf_token_issued_at"] = now
    return token


def _wants_json():
    return "/api/" in (request.path or "") or request.is_json


def _csrf_rejected():
    if _wants_json():
        from .api_utils import api_error
        return api_error("csrf_failed", "Refresh the Page or login again", 400)
    flash("Refresh the Page or login again", "warning")
    return redirect(request.referrer or url_for("main.index"))


def csrf_required(view_func):
    @wraps(view_func)
    def _wrapped(*args, **kwargs):
        method = (request.method or "GET").upper()
        if method in ("POST", "PUT", "DELETE"):
            token = (request.headers.get("X-CSRF-Token") or request.form.get("csrf_token") or "").strip()
            sess_token = (session.get("csrf_token") or "")
            issued_at = session.get("csrf_token_issued_at")
            ttl = current_app.config.get("CSRF_TOKEN_TTL", 7200)
            now = int(time.time())
            # Expired token
            if not issued_at or (ttl > 0 and (now - int(issued_at)) > ttl):
                return _csrf_rejected()
            # Missing token in request
            if not token:
                return _csrf_rejected()
            # Mismatch
            if not secrets.compare_digest(token, sess_token):
                return _csrf_rejected()
        return view_func(*args, **kwargs)
    return _wrapped
