from typing import Optional

from itsdangerous import URLSafeSerializer, URLSafeTimedSerializer, BadSignature
from flask import current_app

SESSION_SALT = "soporte-sesion"
ENROLLMENT_SALT = "soporte-activar-2fa"


def _serializer(salt):
    secret = current_app.config["SECRET_KEY"]
    return URLSafeSerializer(secret_key=secret, salt=salt)


def _timed_serializer(salt):
    secret = current_app.config["SECRET_KEY"]
    return URLSafeTimedSerializer(secret_key=secret, salt=salt)


def dump_session_token(token: str) -> str:
    return _serializer(SESSION_SALT).dumps(token)


def load_session_token(cookie: Optional[str]) -> Optional[str]:
    """Opaque session token from a signed cookie; None when absent or forged."""
    if not cookie:
        return None
    try:
        token = _serializer(SESSION_SALT).loads(cookie)
    except BadSignature:
        return None
    return token if isinstance(token, str) else None


def sign_enrollment_secret(secret: str) -> str:
    return _timed_serializer(ENROLLMENT_SALT).dumps(secret)


def read_enrollment_secret(token: str, max_age=None) -> str:
    """Raises BadSignature (or its SignatureExpired subclass) when invalid."""
    if max_age is None:
        max_age = current_app.config.get("SECURITY_ENROLLMENT_MAX_AGE", 600)
    return _timed_serializer(ENROLLMENT_SALT).loads(token, max_age=max_age)
