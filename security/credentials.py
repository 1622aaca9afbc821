"""Credential store: principals persisted in ``usuarios``.

Raw role strings in the table are inconsistent ("admin", "Administrador",
"tecnico", "Técnico"...). They are folded into :class:`Role` here and nowhere
else.
"""
import datetime as dt
import logging
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import PersistenceError
from .models import User

logger = logging.getLogger(__name__)


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value or "")
    return "".join(c for c in decomposed if not unicodedata.combining(c)).strip().lower()


class Role(str, Enum):
    ADMIN = "Administrador"
    TECHNICIAN = "Tecnico"
    USER = "Usuario"

    @classmethod
    def parse(cls, raw) -> "Role":
        if isinstance(raw, Role):
            return raw
        key = _fold(raw)
        if key in ("admin", "administrador", "administrator"):
            return cls.ADMIN
        if key in ("tecnico", "technician"):
            return cls.TECHNICIAN
        return cls.USER


@dataclass(frozen=True)
class Principal:
    id: int
    name: str
    email: str
    password_hash: Optional[str]
    role: Role
    totp_secret: Optional[str]
    totp_enabled: bool
    last_access_at: Optional[dt.datetime] = None

    @property
    def has_second_factor(self) -> bool:
        return bool(self.totp_enabled and self.totp_secret)

    def audit_snapshot(self) -> dict:
        # Never includes the hash or the TOTP secret
        return {
            "id": self.id,
            "nombre": self.name,
            "correo": self.email,
            "rol": self.role.value,
            "twofa_enabled": self.totp_enabled,
        }


def _to_principal(user: User) -> Principal:
    return Principal(
        id=user.id,
        name=user.name,
        email=user.email,
        password_hash=user.password_hash,
        role=Role.parse(user.role),
        totp_secret=user.totp_secret,
        totp_enabled=bool(user.is_2fa_enabled),
        last_access_at=user.last_login_at,
    )


class CredentialStore(ABC):
    @abstractmethod
    def find_by_email(self, email: str) -> Optional[Principal]: ...

    @abstractmethod
    def find_by_id(self, principal_id: int) -> Optional[Principal]: ...

    @abstractmethod
    def update_totp(self, principal_id: int, secret: str, enabled: bool) -> None: ...

    @abstractmethod
    def clear_totp(self, principal_id: int) -> None: ...

    @abstractmethod
    def touch_last_access(self, principal_id: int) -> None: ...


class SqlCredentialStore(CredentialStore):
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _run(self, operation, fn):
        try:
            with self._session_factory() as db:
                return fn(db)
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.exception("Credential store %s failed", operation)
            raise PersistenceError(operation) from exc

    def find_by_email(self, email):
        email = (email or "").strip().lower()
        if not email:
            return None

        def _find(db):
            user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
            return _to_principal(user) if user else None
        return self._run("find_by_email", _find)

    def find_by_id(self, principal_id):
        def _find(db):
            user = db.get(User, int(principal_id))
            return _to_principal(user) if user else None
        return self._run("find_by_id", _find)

    def _update(self, operation, principal_id, **fields):
        def _apply(db):
            user = db.get(User, int(principal_id))
            if user is None:
                raise LookupError(principal_id)
            for name, value in fields.items():
                setattr(user, name, value)
            db.commit()
        self._run(operation, _apply)

    def update_totp(self, principal_id, secret, enabled):
        self._update("update_totp", principal_id, totp_secret=secret, is_2fa_enabled=bool(enabled))

    def clear_totp(self, principal_id):
        self._update("clear_totp", principal_id, totp_secret=None, is_2fa_enabled=False)

    def touch_last_access(self, principal_id):
        self._update("touch_last_access", principal_id,
                     last_login_at=dt.datetime.now(dt.timezone.utc).replace(tzinfo=None))

    def set_password_hash(self, principal_id, password_hash):
        self._update("set_password_hash", principal_id, password_hash=password_hash)

    def create(self, name, email, password_hash, role=Role.USER) -> Principal:
        """Insert a principal; raises IntegrityError when the email exists."""
        def _create(db):
            user = User(name=name.strip(), email=email, password_hash=password_hash,
                        role=Role.parse(role).value, is_2fa_enabled=False)
            db.add(user)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise
            return _to_principal(user)
        return self._run("create", _create)

    def delete(self, principal_id) -> bool:
        def _delete(db):
            result = db.execute(delete(User).where(User.id == int(principal_id)))
            db.commit()
            return result.rowcount == 1
        return self._run("delete", _delete)

    def list_all(self) -> List[Principal]:
        def _list(db):
            users = db.execute(select(User).order_by(User.name)).scalars().all()
            return [_to_principal(u) for u in users]
        return self._run("list_all", _list)

    def count_with_role(self, role: Role) -> int:
        # Stored spellings vary, so count after normalization
        def _count(db):
            raw_roles = db.execute(select(User.role)).scalars().all()
            return sum(1 for raw in raw_roles if Role.parse(raw) is role)
        return self._run("count_with_role", _count)
