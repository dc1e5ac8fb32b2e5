from datetime import timedelta
import logging
import secrets
from typing import Dict

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlmodel import Session

from pillatuvisa import credentials
from pillatuvisa.config import settings
from pillatuvisa.database import get_session
from pillatuvisa.mailer import Notifier, get_notifier
from pillatuvisa.models import utcnow
from pillatuvisa.security import (
    check_password,
    dummy_verify,
    get_current_session,
    get_password_hash,
    hash_reset_token,
)
from pillatuvisa.sessions import SessionInfo, SessionManager, get_session_manager

logger = logging.getLogger("pillatuvisa.auth")

router = APIRouter(prefix="/api", tags=["auth"])

INVALID_CREDENTIALS = "Usuario o contraseña incorrectos"
INVALID_RESET_TOKEN = "Token inválido o expirado"
RECOVER_GENERIC = "Si el email está registrado, te enviaremos un enlace para restablecer la contraseña."


class LoginIn(BaseModel):
    username: str = Field(..., min_length=1, max_length=160)
    password: str = Field(..., min_length=1, max_length=256)


class LoginOut(BaseModel):
    ok: bool = True
    token: str
    role: str
    username: str


class RecoverIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=160)


class ResetPasswordIn(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str = Field(..., max_length=256)


def _login_impl(payload: LoginIn, db: Session, sessions: SessionManager) -> Dict:
    user = credentials.find_by_identifier(db, payload.username)
    if user is None:
        dummy_verify()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS)

    ok, new_hash = check_password(payload.password, user.password_hash)
    if not ok or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS)
    if new_hash:
        credentials.upgrade_hash(db, user.id, new_hash)

    token = sessions.create_session(user.id, user.role, user.username)
    return {"ok": True, "token": token, "role": user.role, "username": user.username}


def _request_reset_impl(payload: RecoverIn, db: Session):
    """Devuelve (email, token) si hay usuario activo con ese email; None en otro caso."""
    user = credentials.find_by_email(db, payload.email)
    if user is None or not user.is_active:
        return None
    token = secrets.token_urlsafe(32)
    expiry = utcnow() + timedelta(minutes=settings.reset_token_ttl_minutes)
    credentials.set_reset_token(db, user.id, hash_reset_token(token), expiry)
    logger.info("Password reset requested for user_id=%s", user.id)
    return user.email, token


def _reset_password_impl(payload: ResetPasswordIn, db: Session, sessions: SessionManager) -> Dict:
    if len(payload.password) < settings.min_password_length:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"La contraseña debe tener al menos {settings.min_password_length} caracteres",
        )
    token_hash = hash_reset_token(payload.token)
    user = credentials.find_by_reset_token(db, token_hash)
    if user is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_RESET_TOKEN)
    now = utcnow()
    if not user.reset_expires or user.reset_expires < now:
        credentials.clear_reset_token(db, user.id)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_RESET_TOKEN)

    # otra petición con el mismo token puede haber llegado antes: solo gana un UPDATE
    if not credentials.complete_reset(db, token_hash, get_password_hash(payload.password), now):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_RESET_TOKEN)
    revoked = sessions.revoke_user_sessions(user.id)
    logger.info("Password reset completed for user_id=%s (%s sessions revoked)", user.id, revoked)
    return {"ok": True, "mensaje": "Contraseña actualizada correctamente"}


@router.post("/login", response_model=LoginOut)
def login(
    payload: LoginIn,
    db: Session = Depends(get_session),
    sessions: SessionManager = Depends(get_session_manager),
):
    return _login_impl(payload, db, sessions)


@router.post("/logout")
def logout(
    current: SessionInfo = Depends(get_current_session),
    sessions: SessionManager = Depends(get_session_manager),
):
    sessions.delete_session(current.token)
    return {"ok": True, "mensaje": "Sesión cerrada"}


@router.get("/me")
def me(current: SessionInfo = Depends(get_current_session)):
    return {
        "ok": True,
        "id": current.user_id,
        "username": current.username,
        "role": current.role,
        "expiresAt": current.expires_at.isoformat(),
    }


@router.post("/recover")
def recover(
    payload: RecoverIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    # misma respuesta exista o no el email, para no revelar cuentas
    match = _request_reset_impl(payload, db)
    if match is not None:
        email, token = match
        background_tasks.add_task(notifier.send_password_reset, email, token)
    return {"ok": True, "mensaje": RECOVER_GENERIC}


@router.post("/reset-password")
def reset_password(
    payload: ResetPasswordIn,
    db: Session = Depends(get_session),
    sessions: SessionManager = Depends(get_session_manager),
):
    return _reset_password_impl(payload, db, sessions)
