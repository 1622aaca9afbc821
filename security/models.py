import datetime as dt
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text
from sqlalchemy.orm import validates

from . import Base


def _utcnow():
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "usuarios"
    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    # Legacy rows may lack a hash; login reports it as a configuration error
    password_hash = Column(String(255), nullable=True)
    role = Column(String(32), nullable=False, default="Usuario")  # Administrador / Tecnico / Usuario

    # 2FA
    totp_secret = Column(String(64), nullable=True)
    is_2fa_enabled = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=_utcnow)
    last_login_at = Column(DateTime, nullable=True)

    @validates("email")
    def validate_email(self, key, value):
        return (value or "").strip().lower()


class AuditLog(Base):
    __tablename__ = "auditoria"
    id = Column(Integer, primary_key=True)
    # NULL actor means an unauthenticated caller (public forms, CLI provisioning)
    actor_id = Column(Integer, nullable=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(Integer, nullable=True)
    before_json = Column(Text, nullable=True)
    after_json = Column(Text, nullable=True)
    source_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow, index=True)


class AuthSession(Base):
    __tablename__ = "sesiones"
    token = Column(String(128), primary_key=True)
    data = Column(Text, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    expires_at = Column(DateTime, nullable=False, index=True)
