"""Append-only audit trail of privileged changes.

``AuditRecorder.record`` never raises and never waits on the database when
running asynchronously: entries go to a bounded queue drained by a single
worker thread, each entry gets one write attempt, and failures are reported
only through the log.
"""
import datetime as dt
import json
import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import aliased

from .models import AuditLog, User

logger = logging.getLogger(__name__)

UNKNOWN_ACTOR = "desconocido"
ANONYMOUS_ACTOR = "anónimo"


class AuditAction(str, Enum):
    ENABLE_2FA = "ACTIVAR_2FA"
    ROTATE_2FA = "ROTAR_2FA"
    RESET_2FA = "REINICIAR_2FA"
    CHANGE_PASSWORD = "CAMBIAR_PASSWORD"
    DELETE_USER = "ELIMINAR_USUARIO"
    CREATE_USER = "CREAR_USUARIO"


@dataclass(frozen=True)
class AuditEntry:
    actor_id: Optional[int]
    action: str
    entity_type: str
    entity_id: Optional[int]
    before_json: Optional[str]
    after_json: Optional[str]
    source_address: Optional[str]
    user_agent: Optional[str]
    created_at: dt.datetime


def _dump(snapshot: Any) -> Optional[str]:
    if snapshot is None:
        return None
    return json.dumps(snapshot, default=str, ensure_ascii=False, sort_keys=True)


_STOP = object()


class AuditRecorder:
    def __init__(self, session_factory, asynchronous: bool = True, maxsize: int = 1000):
        self._session_factory = session_factory
        self.asynchronous = asynchronous
        self._queue = queue.Queue(maxsize=maxsize)
        self._worker = None
        self._lock = threading.Lock()

    def record(self, actor_id, action, entity_type, entity_id, before=None, after=None,
               source_address=None, user_agent=None) -> None:
        try:
            entry = AuditEntry(
                actor_id=actor_id,
                action=action.value if isinstance(action, AuditAction) else str(action),
                entity_type=entity_type,
                entity_id=entity_id,
                before_json=_dump(before),
                after_json=_dump(after),
                source_address=source_address,
                user_agent=(user_agent or "")[:512] or None,
                created_at=dt.datetime.now(dt.timezone.utc).replace(tzinfo=None),
            )
        except (TypeError, ValueError):
            logger.exception("Auditoría descartada: snapshot no serializable (%s %s)", action, entity_type)
            return

        if not self.asynchronous:
            self._write(entry)
            return

        self._ensure_worker()
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            logger.error("Cola de auditoría llena; se descarta %s %s#%s",
                         entry.action, entry.entity_type, entry.entity_id)

    def record_for(self, client, actor_id, action, entity_type, entity_id, before=None, after=None):
        self.record(actor_id, action, entity_type, entity_id, before=before, after=after,
                    source_address=client.address, user_agent=client.user_agent)

    def _ensure_worker(self):
        with self._lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._run, name="audit-recorder", daemon=True)
                self._worker.start()

    def _run(self):
        while True:
            entry = self._queue.get()
            try:
                if entry is _STOP:
                    return
                self._write(entry)
            finally:
                self._queue.task_done()

    def _write(self, entry: AuditEntry) -> None:
        # Single attempt; the audited action has already committed
        try:
            with self._session_factory() as db:
                db.add(AuditLog(
                    actor_id=entry.actor_id,
                    action=entry.action,
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    before_json=entry.before_json,
                    after_json=entry.after_json,
                    source_address=entry.source_address,
                    user_agent=entry.user_agent,
                    created_at=entry.created_at,
                ))
                db.commit()
        except Exception:
            logger.exception("No se pudo registrar la auditoría %s %s#%s",
                             entry.action, entry.entity_type, entry.entity_id)

    def flush(self) -> None:
        """Block until every queued entry has been attempted."""
        if self.asynchronous and self._worker is not None:
            self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            worker = self._worker
            self._worker = None
        if worker is not None and worker.is_alive():
            self._queue.put(_STOP)
            worker.join(timeout)


def list_entries(session_factory, limit: int = 100, action: Optional[str] = None) -> List[dict]:
    """Most recent audit records with actor and affected user names resolved."""
    actor = aliased(User)
    affected = aliased(User)
    stmt = (
        select(AuditLog, actor.name, affected.name)
        .outerjoin(actor, actor.id == AuditLog.actor_id)
        .outerjoin(affected, (affected.id == AuditLog.entity_id) & (AuditLog.entity_type == "usuarios"))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
    )
    if action:
        stmt = stmt.where(AuditLog.action == action)

    with session_factory() as db:
        rows = db.execute(stmt).all()

    entries = []
    for log, actor_name, affected_name in rows:
        if log.actor_id is None:
            actor_label = ANONYMOUS_ACTOR
        else:
            actor_label = actor_name or UNKNOWN_ACTOR
        entries.append({
            "id": log.id,
            "fecha": log.created_at,
            "actor": actor_label,
            "accion": log.action,
            "entidad": log.entity_type,
            "entidad_id": log.entity_id,
            "afectado": affected_name or (UNKNOWN_ACTOR if log.entity_type == "usuarios" else None),
            "antes": json.loads(log.before_json) if log.before_json else None,
            "despues": json.loads(log.after_json) if log.after_json else None,
            "ip": log.source_address,
        })
    return entries


def known_actions(session_factory) -> List[str]:
    with session_factory() as db:
        return sorted(db.execute(select(AuditLog.action).distinct()).scalars().all())
