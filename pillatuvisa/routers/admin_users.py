from __future__ import annotations

from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import func
from sqlmodel import Session, select
import secrets

from pillatuvisa import credentials
from pillatuvisa.config import settings
from pillatuvisa.database import get_session
from pillatuvisa.models import Role, User
from pillatuvisa.security import ADMIN_ROLES, require_role
from pillatuvisa.sessions import SessionInfo, SessionManager, get_session_manager

require_admin = require_role(ADMIN_ROLES)

router = APIRouter(
    prefix="/api/admin/users",
    tags=["admin-users"],
    dependencies=[Depends(require_admin)],
)


class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=80)
    password: Optional[str] = Field(None, max_length=256)
    role: Role = Role.viewer
    email: Optional[EmailStr] = None


class UserUpdate(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=80)
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    email: Optional[EmailStr] = None


class UserOut(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    role: str
    is_active: bool = True


class UserCreatedOut(UserOut):
    temp_password: Optional[str] = None


def _to_out(u: User) -> UserOut:
    return UserOut(id=u.id, username=u.username, email=u.email, role=u.role, is_active=u.is_active)


def _username_taken(db: Session, username: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(User).where(func.lower(User.username) == username.strip().lower())
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return db.exec(stmt).first() is not None


def _email_taken(db: Session, email: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(User).where(func.lower(User.email) == email.strip().lower())
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return db.exec(stmt).first() is not None


@router.get("", response_model=List[UserOut])
def list_users(db: Session = Depends(get_session)):
    users = db.exec(select(User).order_by(User.id)).all()
    return [_to_out(u) for u in users]


@router.get("/{user_id}", response_model=UserOut)
def get_user(user_id: int, db: Session = Depends(get_session)):
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="Usuario no encontrado")
    return _to_out(user)


@router.post("", response_model=UserCreatedOut, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, db: Session = Depends(get_session)):
    if _username_taken(db, payload.username):
        raise HTTPException(status_code=400, detail="El usuario ya existe")
    if payload.email and _email_taken(db, str(payload.email)):
        raise HTTPException(status_code=400, detail="El email ya está en uso")
    # password provista o temporal segura
    if payload.password:
        if len(payload.password) < settings.min_password_length:
            raise HTTPException(
                status_code=400,
                detail=f"La contraseña debe tener al menos {settings.min_password_length} caracteres",
            )
        pwd, temp = payload.password, None
    else:
        pwd = secrets.token_urlsafe(10)
        temp = pwd
    user = credentials.create_user(
        db,
        payload.username,
        pwd,
        role=payload.role.value,
        email=str(payload.email) if payload.email else None,
    )
    return UserCreatedOut(**_to_out(user).model_dump(), temp_password=temp)


@router.put("/{user_id}", response_model=UserOut)
def update_user(
    user_id: int,
    payload: UserUpdate,
    db: Session = Depends(get_session),
    current: SessionInfo = Depends(require_admin),
    sessions: SessionManager = Depends(get_session_manager),
):
    """
    Actualiza un usuario. Un admin no puede desactivarse a sí mismo.
    Cambiar rol o desactivar revoca las sesiones abiertas (guardan una copia del rol).
    """
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="Usuario no encontrado")

    if payload.is_active is False and user_id == current.user_id:
        raise HTTPException(status_code=400, detail="No puedes desactivar tu propia cuenta")

    revoke = False
    if payload.username:
        if _username_taken(db, payload.username, exclude_id=user_id):
            raise HTTPException(status_code=400, detail="El usuario ya está en uso")
        user.username = payload.username.strip()
        revoke = True
    if payload.email is not None:
        if _email_taken(db, str(payload.email), exclude_id=user_id):
            raise HTTPException(status_code=400, detail="El email ya está en uso")
        user.email = str(payload.email)
    if payload.role is not None and payload.role.value != user.role:
        user.role = payload.role.value
        revoke = True
    if payload.is_active is not None:
        revoke = revoke or (user.is_active and not payload.is_active)
        user.is_active = payload.is_active

    db.add(user)
    db.commit()
    db.refresh(user)
    if revoke:
        sessions.revoke_user_sessions(user.id)
    return _to_out(user)


@router.delete("/{user_id}", response_model=UserOut)
def deactivate_user(
    user_id: int,
    db: Session = Depends(get_session),
    current: SessionInfo = Depends(require_admin),
    sessions: SessionManager = Depends(get_session_manager),
):
    """
    Baja de usuario: siempre es desactivación, el registro se conserva.
    Un admin no puede darse de baja a sí mismo.
    """
    if user_id == current.user_id:
        raise HTTPException(status_code=400, detail="No puedes desactivar tu propia cuenta")

    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="Usuario no encontrado")

    user.is_active = False
    db.add(user)
    db.commit()
    db.refresh(user)
    sessions.revoke_user_sessions(user.id)
    return _to_out(user)
