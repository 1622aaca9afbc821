"""Server-held authentication sessions.

A session is one of five immutable states. Only the three legacy fields
(authenticated principal, pending principal, second factor satisfied) are
persisted; :func:`decode_state` derives the state back from them and
:func:`encode_state` is its inverse, so a record with both principals set can
never be produced by this module and is discarded when read.
"""
import datetime as dt
import json
import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Callable, Optional, Tuple, TypeVar, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .credentials import Principal, Role
from .errors import PersistenceError
from .models import AuthSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ------------- Snapshots -------------

@dataclass(frozen=True)
class SessionPrincipal:
    id: int
    name: str
    role: Role
    totp_enabled: bool

    @classmethod
    def from_principal(cls, principal: Principal, totp_enabled: Optional[bool] = None):
        enabled = principal.has_second_factor if totp_enabled is None else totp_enabled
        return cls(id=principal.id, name=principal.name, role=principal.role, totp_enabled=enabled)


@dataclass(frozen=True)
class PendingPrincipal:
    id: int
    name: str
    role: Role
    totp_secret: str

    @classmethod
    def from_principal(cls, principal: Principal):
        return cls(id=principal.id, name=principal.name, role=principal.role,
                   totp_secret=principal.totp_secret)


# ------------- States -------------

@dataclass(frozen=True)
class Anonymous:
    pass


@dataclass(frozen=True)
class PasswordVerifiedNoSecondFactor:
    """Password proven, no TOTP enrolled yet: only enrollment is reachable."""
    principal: SessionPrincipal


@dataclass(frozen=True)
class PasswordVerifiedPendingSecondFactor:
    pending: PendingPrincipal


@dataclass(frozen=True)
class AuthenticatedNoSecondFactor:
    """Principal has TOTP enabled but this session has not presented a code."""
    principal: SessionPrincipal


@dataclass(frozen=True)
class AuthenticatedWithSecondFactor:
    principal: SessionPrincipal


AuthState = Union[
    Anonymous,
    PasswordVerifiedNoSecondFactor,
    PasswordVerifiedPendingSecondFactor,
    AuthenticatedNoSecondFactor,
    AuthenticatedWithSecondFactor,
]

ANONYMOUS = Anonymous()


def authenticated_principal(state: AuthState) -> Optional[SessionPrincipal]:
    return getattr(state, "principal", None)


def encode_state(state: AuthState) -> dict:
    authenticated = authenticated_principal(state)
    pending = state.pending if isinstance(state, PasswordVerifiedPendingSecondFactor) else None

    def _dump(snapshot):
        if snapshot is None:
            return None
        data = asdict(snapshot)
        data["role"] = snapshot.role.value
        return data

    return {
        "authenticated": _dump(authenticated),
        "pending": _dump(pending),
        "second_factor_ok": isinstance(state, AuthenticatedWithSecondFactor),
    }


def decode_state(data: Optional[dict]) -> AuthState:
    if not data:
        return ANONYMOUS
    try:
        authenticated = data.get("authenticated")
        pending = data.get("pending")
        if authenticated and pending:
            logger.warning("Sesión con usuario autenticado y pendiente a la vez; se descarta")
            return ANONYMOUS
        if pending:
            return PasswordVerifiedPendingSecondFactor(PendingPrincipal(
                id=int(pending["id"]), name=pending["name"], role=Role.parse(pending["role"]),
                totp_secret=pending["totp_secret"]))
        if authenticated:
            principal = SessionPrincipal(
                id=int(authenticated["id"]), name=authenticated["name"],
                role=Role.parse(authenticated["role"]),
                totp_enabled=bool(authenticated["totp_enabled"]))
            if not principal.totp_enabled:
                return PasswordVerifiedNoSecondFactor(principal)
            if data.get("second_factor_ok") is True:
                return AuthenticatedWithSecondFactor(principal)
            return AuthenticatedNoSecondFactor(principal)
    except (KeyError, TypeError, ValueError):
        logger.warning("Sesión con formato inválido; se descarta")
    return ANONYMOUS


def new_token() -> str:
    return secrets.token_urlsafe(32)


# ------------- Stores -------------

class SessionStore(ABC):
    """get/set/destroy plus one atomic read-modify-write per token."""

    @abstractmethod
    def get(self, token: str) -> AuthState: ...

    @abstractmethod
    def set(self, token: str, state: AuthState) -> None: ...

    @abstractmethod
    def destroy(self, token: str) -> None: ...

    @abstractmethod
    def update(self, token: str, fn: Callable[[AuthState], Tuple[AuthState, T]]) -> T:
        """Apply ``fn`` to the current state and store its result atomically."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Drop expired sessions and return how many were removed."""


class MemorySessionStore(SessionStore):
    def __init__(self, ttl_seconds: float = 1800, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._items = {}
        self._lock = threading.RLock()

    def _read(self, token):
        item = self._items.get(token)
        if item is None:
            return ANONYMOUS
        data, expires_at = item
        if expires_at <= self._clock():
            del self._items[token]
            return ANONYMOUS
        return decode_state(data)

    def _write(self, token, state):
        self._items[token] = (encode_state(state), self._clock() + self.ttl_seconds)

    def get(self, token):
        with self._lock:
            return self._read(token)

    def set(self, token, state):
        with self._lock:
            self._write(token, state)

    def destroy(self, token):
        with self._lock:
            self._items.pop(token, None)

    def update(self, token, fn):
        with self._lock:
            new_state, result = fn(self._read(token))
            if token in self._items or not isinstance(new_state, Anonymous):
                self._write(token, new_state)
            return result

    def purge_expired(self):
        with self._lock:
            now = self._clock()
            expired = [token for token, (_, expires_at) in self._items.items() if expires_at <= now]
            for token in expired:
                del self._items[token]
            return len(expired)


class SqlSessionStore(SessionStore):
    max_attempts = 5

    def __init__(self, session_factory, ttl_seconds: float = 1800):
        self._session_factory = session_factory
        self.ttl_seconds = ttl_seconds

    def _now(self):
        return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)

    def _expiry(self):
        return self._now() + dt.timedelta(seconds=self.ttl_seconds)

    def _decode_row(self, row):
        if row is None or row.expires_at <= self._now():
            return ANONYMOUS
        try:
            return decode_state(json.loads(row.data))
        except ValueError:
            logger.warning("Sesión con JSON inválido; se descarta")
            return ANONYMOUS

    def get(self, token):
        try:
            with self._session_factory() as db:
                return self._decode_row(db.get(AuthSession, token))
        except SQLAlchemyError as exc:
            logger.exception("No se pudo leer la sesión")
            raise PersistenceError("session_get") from exc

    def set(self, token, state):
        try:
            with self._session_factory() as db:
                row = db.get(AuthSession, token)
                if row is None:
                    row = AuthSession(token=token, version=0)
                    db.add(row)
                row.data = json.dumps(encode_state(state))
                row.version = (row.version or 0) + 1
                row.expires_at = self._expiry()
                db.commit()
        except SQLAlchemyError as exc:
            logger.exception("No se pudo guardar la sesión")
            raise PersistenceError("session_set") from exc

    def destroy(self, token):
        try:
            with self._session_factory() as db:
                row = db.get(AuthSession, token)
                if row is not None:
                    db.delete(row)
                    db.commit()
        except SQLAlchemyError as exc:
            logger.exception("No se pudo destruir la sesión")
            raise PersistenceError("session_destroy") from exc

    def update(self, token, fn):
        # Optimistic compare-and-swap on the version column; a lost race
        # re-reads the winner's state and re-applies fn to it.
        try:
            for _ in range(self.max_attempts):
                with self._session_factory() as db:
                    row = db.get(AuthSession, token)
                    current = self._decode_row(row)
                    new_state, result = fn(current)
                    payload = json.dumps(encode_state(new_state))
                    if row is None:
                        if isinstance(new_state, Anonymous):
                            return result
                        db.add(AuthSession(token=token, data=payload, version=1, expires_at=self._expiry()))
                        try:
                            db.commit()
                        except IntegrityError:
                            db.rollback()
                            continue
                        return result
                    swapped = db.execute(
                        update(AuthSession)
                        .where(AuthSession.token == token, AuthSession.version == row.version)
                        .values(data=payload, version=row.version + 1, expires_at=self._expiry())
                    )
                    if swapped.rowcount == 1:
                        db.commit()
                        return result
                    db.rollback()
        except SQLAlchemyError as exc:
            logger.exception("No se pudo actualizar la sesión")
            raise PersistenceError("session_update") from exc
        raise PersistenceError("session_update_contended")

    def purge_expired(self) -> int:
        with self._session_factory() as db:
            rows = db.query(AuthSession).filter(AuthSession.expires_at <= self._now()).delete()
            db.commit()
            return rows


# ------------- Per-request context -------------

@dataclass(frozen=True)
class ClientInfo:
    address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, request):
        # Behind a proxy the first X-Forwarded-For hop is the client
        xff = request.headers.get("X-Forwarded-For")
        if xff:
            address = xff.split(",")[0].strip()
        else:
            address = request.remote_addr
        return cls(address=address, user_agent=request.headers.get("User-Agent"))


class SessionContext:
    """The session of one request, passed explicitly to the state machine."""

    def __init__(self, store: SessionStore, token: str, client: ClientInfo = ClientInfo(),
                 token_changed: bool = False):
        self.store = store
        self.token = token
        self.client = client
        self.token_changed = token_changed
        self._state = None

    @classmethod
    def open(cls, store, token, client=ClientInfo()):
        if not token:
            return cls(store, new_token(), client, token_changed=True)
        return cls(store, token, client)

    @property
    def state(self) -> AuthState:
        if self._state is None:
            self._state = self.store.get(self.token)
        return self._state

    def transition(self, fn: Callable[[AuthState], Tuple[AuthState, T]]) -> T:
        captured = {}

        def _apply(current):
            new_state, result = fn(current)
            captured["state"] = new_state
            return new_state, result

        result = self.store.update(self.token, _apply)
        self._state = captured["state"]
        return result

    def rotate(self, state: AuthState) -> None:
        """Store ``state`` under a fresh token and drop the old one."""
        old = self.token
        self.token = new_token()
        self.store.set(self.token, state)
        self.store.destroy(old)
        self.token_changed = True
        self._state = state

    def destroy(self) -> None:
        self.store.destroy(self.token)
        self.token = new_token()
        self.token_changed = True
        self._state = ANONYMOUS
