"""
Sesiones de staff con token opaco y expiración deslizante.

La tabla `sessions` es la fuente de verdad; SessionCache solo evita lecturas.
Cualquier diferencia entre ambos se resuelve a favor de la base.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Dict, Optional

from fastapi import Depends
from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from pillatuvisa.config import settings
from pillatuvisa.database import get_session
from pillatuvisa.models import AuthSession, utcnow

logger = logging.getLogger("pillatuvisa.sessions")

# 32 bytes = 256 bits de aleatoriedad
TOKEN_BYTES = 32


@dataclass(frozen=True)
class SessionInfo:
    token: str
    user_id: int
    role: str
    username: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


def _from_row(row: AuthSession) -> SessionInfo:
    return SessionInfo(
        token=row.token,
        user_id=row.user_id,
        role=row.role,
        username=row.username,
        expires_at=row.expires_at,
    )


class SessionCache:
    """Mapa token -> SessionInfo compartido por el proceso. Cada escritura reemplaza el registro completo."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._store: Dict[str, SessionInfo] = {}

    def get(self, token: str) -> Optional[SessionInfo]:
        with self._lock:
            return self._store.get(token)

    def put(self, info: SessionInfo) -> None:
        with self._lock:
            self._store[info.token] = info

    def pop(self, token: str) -> None:
        with self._lock:
            self._store.pop(token, None)

    def drop_user(self, user_id: int) -> None:
        with self._lock:
            for token in [t for t, s in self._store.items() if s.user_id == user_id]:
                self._store.pop(token, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._store

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


session_cache = SessionCache()


class SessionManager:
    def __init__(
        self,
        db: Session,
        cache: SessionCache,
        ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.cache = cache
        self.ttl = ttl
        self.clock = clock

    def create_session(self, user_id: int, role: str, username: str) -> str:
        token = secrets.token_urlsafe(TOKEN_BYTES)
        row = AuthSession(
            token=token,
            user_id=user_id,
            role=role,
            username=username,
            expires_at=self.clock() + self.ttl,
        )
        # add + commit: una colisión de PK termina en IntegrityError, nunca en sobrescritura
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        self.cache.put(_from_row(row))
        logger.info("Session created for user_id=%s role=%s", user_id, role)
        return token

    def validate_and_refresh(self, token: str) -> Optional[SessionInfo]:
        if not token:
            return None
        now = self.clock()
        try:
            cached = self.cache.get(token)
            if cached is not None and not cached.is_expired(now):
                return self._refresh_cached(cached, now)
            return self._refresh_from_storage(token, now)
        except SQLAlchemyError:
            # sin base no hay sesión válida, aunque la caché diga lo contrario
            logger.exception("Session storage unavailable during validation")
            self._rollback()
            return None

    def _refresh_cached(self, cached: SessionInfo, now: datetime) -> Optional[SessionInfo]:
        new_expiry = now + self.ttl
        result = self.db.exec(
            update(AuthSession)
            .where(AuthSession.token == cached.token)
            .values(expires_at=new_expiry)
        )
        self.db.commit()
        if not result.rowcount:
            # revocada en la base (logout en otro proceso, reset de contraseña...)
            self.cache.pop(cached.token)
            return None
        refreshed = replace(cached, expires_at=new_expiry)
        self.cache.put(refreshed)
        return refreshed

    def _refresh_from_storage(self, token: str, now: datetime) -> Optional[SessionInfo]:
        row = self.db.get(AuthSession, token)
        if row is None:
            self.cache.pop(token)
            return None
        if now > row.expires_at:
            logger.info("Session expired for user_id=%s, revoking", row.user_id)
            self.db.delete(row)
            self.db.commit()
            self.cache.pop(token)
            return None
        row.expires_at = now + self.ttl
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        info = _from_row(row)
        self.cache.put(info)
        return info

    def delete_session(self, token: str) -> None:
        self.cache.pop(token)
        self.db.exec(delete(AuthSession).where(AuthSession.token == token))
        self.db.commit()

    def revoke_user_sessions(self, user_id: int) -> int:
        self.cache.drop_user(user_id)
        result = self.db.exec(delete(AuthSession).where(AuthSession.user_id == user_id))
        self.db.commit()
        return result.rowcount or 0

    def purge_expired(self) -> int:
        result = self.db.exec(delete(AuthSession).where(AuthSession.expires_at < self.clock()))
        self.db.commit()
        return result.rowcount or 0

    def _rollback(self) -> None:
        try:
            self.db.rollback()
        except SQLAlchemyError:
            logger.debug("rollback failed after storage error", exc_info=True)


def get_session_manager(db: Session = Depends(get_session)) -> SessionManager:
    return SessionManager(db, session_cache, timedelta(hours=settings.session_ttl_hours))
