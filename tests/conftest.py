import re
import sys
from pathlib import Path

import pyotp
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from security import Base, passwords  # noqa: E402
from security import models  # noqa: E402,F401
from security.credentials import Role, SqlCredentialStore  # noqa: E402
from soporte import create_app  # noqa: E402

PASSWORD = "secreto123"


@pytest.fixture
def factory(tmp_path):
    """Session factory over a throwaway sqlite file with every table created."""
    engine = create_engine("sqlite:///" + str(tmp_path / "core.sqlite3"),
                           connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def credentials(factory):
    return SqlCredentialStore(factory)


def add_user(credentials, name, email, password=PASSWORD, role=Role.USER, totp_secret=None):
    principal = credentials.create(name, email, passwords.hash_password(password), role)
    if totp_secret:
        credentials.update_totp(principal.id, totp_secret, True)
        principal = credentials.find_by_id(principal.id)
    return principal


@pytest.fixture(params=["memory", "sql"])
def app(request, tmp_path):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "clave-de-pruebas",
        "SECURITY_DATABASE_URI": "sqlite:///" + str(tmp_path / "app.sqlite3"),
        "SECURITY_SESSION_BACKEND": request.param,
        "SECURITY_AUDIT_ASYNC": False,
        "WTF_CSRF_ENABLED": False,
        "RATELIMIT_ENABLED": False,
        "MAIL_SUPPRESS_SEND": True,
        "MAIL_DEFAULT_SENDER": "no-reply@soporte.com",
    })
    yield app
    state = app.extensions["security"]
    state.audit.close()
    state.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def app_credentials(app):
    return app.extensions["security"].credentials


SECRET_RE = re.compile(r'data-secret="([A-Z2-7]+)"')
TOKEN_RE = re.compile(r'name="secret_token" value="([^"]+)"')


def enrollment_page(client):
    page = client.get("/activar-2fa")
    assert page.status_code == 200
    html = page.get_data(as_text=True)
    return SECRET_RE.search(html).group(1), TOKEN_RE.search(html).group(1)


def enroll(client, email, password=PASSWORD, headers=None):
    """Log in a user without TOTP and finish the mandatory enrollment."""
    resp = client.post("/login", data={"email": email, "password": password}, headers=headers)
    assert resp.headers["Location"].endswith("/activar-2fa")
    secret, token = enrollment_page(client)
    resp = client.post("/activar-2fa", data={"secret_token": token, "code": pyotp.TOTP(secret).now()},
                       headers=headers)
    return secret, resp


def sign_in(client, email, secret, password=PASSWORD):
    resp = client.post("/login", data={"email": email, "password": password})
    assert resp.headers["Location"].endswith("/login/verificar-2fa")
    return client.post("/login/verificar-2fa", data={"code": pyotp.TOTP(secret).now()})
