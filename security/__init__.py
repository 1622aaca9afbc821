import os
import datetime as dt
from dataclasses import dataclass
from typing import Any

from flask import current_app, g, request
from flask_login import LoginManager
from flask_wtf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_mail import Mail

# Globals initialized on init_app
login_manager = LoginManager()
csrf = CSRFProtect()
limiter = Limiter(get_remote_address, default_limits=[])
mail = Mail()

# SQLAlchemy (vanilla)
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()


@dataclass
class SecurityState:
    """Everything init_app wires for one Flask app."""
    engine: Any
    db: Any
    credentials: Any
    sessions: Any
    audit: Any
    machine: Any


def get_security() -> SecurityState:
    state = current_app.extensions.get("security")
    if state is None:
        raise RuntimeError("Security not initialized. Call security.init_app(app) first.")
    return state


def get_db():
    return get_security().db()


def init_db(app):
    uri = app.config.get("SECURITY_DATABASE_URI")
    if not uri:
        # default to a local sqlite file inside instance folder
        instance_path = app.instance_path if app.instance_path else os.path.dirname(app.root_path)
        os.makedirs(instance_path, exist_ok=True)
        uri = "sqlite:///" + os.path.join(instance_path, "soporte.sqlite3")
        app.config["SECURITY_DATABASE_URI"] = uri

    connect_args = {}
    if uri.startswith("sqlite:///"):
        connect_args["check_same_thread"] = False

    engine = create_engine(uri, connect_args=connect_args, pool_pre_ping=True)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    from . import models  # noqa: F401  ensure models are imported so tables are known
    Base.metadata.create_all(engine)
    return engine, factory


def _session_store(app, factory):
    from .sessions import MemorySessionStore, SqlSessionStore

    ttl = app.config["PERMANENT_SESSION_LIFETIME"]
    if isinstance(ttl, dt.timedelta):
        ttl = ttl.total_seconds()
    backend = app.config["SECURITY_SESSION_BACKEND"]
    if backend == "memory":
        return MemorySessionStore(ttl_seconds=ttl)
    if backend == "sql":
        return SqlSessionStore(factory, ttl_seconds=ttl)
    raise RuntimeError(f"SECURITY_SESSION_BACKEND desconocido: {backend!r}")


def init_app(app):
    # Secrets / defaults
    app.config.setdefault("SECRET_KEY", os.environ.get("SECRET_KEY", "change-this-in-prod"))
    app.config.setdefault("SECURITY_ISSUER", os.environ.get("SECURITY_ISSUER", "Soporte TI"))
    app.config.setdefault("SECURITY_SESSION_BACKEND", os.environ.get("SECURITY_SESSION_BACKEND", "sql"))
    app.config.setdefault("SECURITY_SESSION_COOKIE", "soporte_sid")
    app.config.setdefault("SECURITY_TOTP_SKEW", 1)
    app.config.setdefault("SECURITY_ENROLLMENT_MAX_AGE", 600)
    app.config.setdefault("SECURITY_AUDIT_ASYNC", True)
    app.config.setdefault("SECURITY_AUDIT_QUEUE_SIZE", 1000)
    app.config.setdefault("SECURITY_LOGIN_RATE_LIMIT", os.environ.get("SECURITY_LOGIN_RATE_LIMIT", "10 per minute"))
    app.config.setdefault("SECURITY_DESTINATIONS", {
        "login": "security.login",
        "verify_second_factor": "security.verify_2fa",
        "enroll": "security.enroll_2fa",
        "admin_area": "main.admin_panel",
        "technician_area": "main.technician_panel",
        "user_area": "main.user_panel",
    })
    app.config.setdefault("PERMANENT_SESSION_LIFETIME", dt.timedelta(minutes=30))  # inactivity
    app.config.setdefault("SESSION_COOKIE_HTTPONLY", True)
    app.config.setdefault("SESSION_COOKIE_SAMESITE", "Lax")
    # If you run behind HTTPS, set this to True
    app.config.setdefault("SESSION_COOKIE_SECURE", False)

    # Rate limiting
    limiter.init_app(app)

    # CSRF
    csrf.init_app(app)

    # Mail
    mail.init_app(app)

    # DB
    engine, factory = init_db(app)

    from .audit import AuditRecorder
    from .credentials import SqlCredentialStore
    from .email import FlaskMailer
    from .machine import AuthMachine

    credentials = SqlCredentialStore(factory)
    audit = AuditRecorder(
        factory,
        asynchronous=app.config["SECURITY_AUDIT_ASYNC"],
        maxsize=app.config["SECURITY_AUDIT_QUEUE_SIZE"],
    )
    machine = AuthMachine(
        credentials,
        audit=audit,
        mailer=FlaskMailer(app),
        issuer=app.config["SECURITY_ISSUER"],
        skew_window=app.config["SECURITY_TOTP_SKEW"],
    )
    app.extensions["security"] = SecurityState(
        engine=engine,
        db=factory,
        credentials=credentials,
        sessions=_session_store(app, factory),
        audit=audit,
        machine=machine,
    )

    # Server-side auth session, threaded explicitly through views as g.auth
    from .sessions import ClientInfo, SessionContext
    from .tokens import load_session_token, dump_session_token

    @app.before_request
    def open_auth_session():
        cookie = request.cookies.get(app.config["SECURITY_SESSION_COOKIE"])
        client = ClientInfo.from_request(request)
        g.auth = SessionContext.open(get_security().sessions, load_session_token(cookie), client)

    @app.after_request
    def save_auth_session(response):
        ctx = g.get("auth")
        if ctx is not None and ctx.token_changed:
            response.set_cookie(
                app.config["SECURITY_SESSION_COOKIE"],
                dump_session_token(ctx.token),
                httponly=app.config["SESSION_COOKIE_HTTPONLY"],
                samesite=app.config["SESSION_COOKIE_SAMESITE"],
                secure=app.config["SESSION_COOKIE_SECURE"],
            )
        return response

    # Login
    login_manager.init_app(app)
    login_manager.login_view = "security.login"
    login_manager.session_protection = None

    from .utils import SessionUser

    @login_manager.request_loader
    def load_user_from_session(req):
        ctx = g.get("auth")
        if ctx is None:
            return None
        return SessionUser.from_state(ctx.state)

    # Register blueprint
    from .routes import bp as security_bp
    app.register_blueprint(security_bp)
