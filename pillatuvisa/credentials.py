"""
Credential Store: acceso a la tabla `users`.

Los usuarios nunca se borran; desactivar es la única baja posible.
"""
import logging
import sys
from datetime import datetime
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from pillatuvisa.config import Settings
from pillatuvisa.models import Role, User
from pillatuvisa.security import get_password_hash

logger = logging.getLogger("pillatuvisa.credentials")


def find_by_identifier(db: Session, identifier: str) -> Optional[User]:
    """Busca por username y, si no hay coincidencia, por email. Ambos sin distinguir mayúsculas."""
    ident = (identifier or "").strip().lower()
    if not ident:
        return None
    user = db.exec(select(User).where(func.lower(User.username) == ident)).first()
    if user is None:
        user = db.exec(select(User).where(func.lower(User.email) == ident)).first()
    return user


def find_by_email(db: Session, email: str) -> Optional[User]:
    value = (email or "").strip().lower()
    if not value:
        return None
    return db.exec(select(User).where(func.lower(User.email) == value)).first()


def find_by_reset_token(db: Session, token_hash: str) -> Optional[User]:
    return db.exec(select(User).where(User.reset_token_hash == token_hash)).first()


def upgrade_hash(db: Session, user_id: int, new_hash: str) -> None:
    user = db.get(User, user_id)
    if user is None:
        return
    user.password_hash = new_hash
    db.add(user)
    db.commit()
    logger.info("Password hash upgraded for user_id=%s", user_id)


def set_reset_token(db: Session, user_id: int, token_hash: str, expiry: datetime) -> None:
    # pisa cualquier token anterior: solo vale el último pedido
    user = db.get(User, user_id)
    if user is None:
        return
    user.reset_token_hash = token_hash
    user.reset_expires = expiry
    db.add(user)
    db.commit()


def clear_reset_token(db: Session, user_id: int) -> None:
    user = db.get(User, user_id)
    if user is None:
        return
    user.reset_token_hash = None
    user.reset_expires = None
    db.add(user)
    db.commit()


def complete_reset(db: Session, token_hash: str, new_hash: str, now: datetime) -> bool:
    """
    Consume el token y cambia el hash en un único UPDATE condicional.

    Devuelve False si el token ya no está vigente (usado por otra petición o caducado).
    """
    result = db.exec(
        update(User)
        .where(User.reset_token_hash == token_hash, User.reset_expires >= now)
        .values(password_hash=new_hash, reset_token_hash=None, reset_expires=None)
    )
    db.commit()
    return bool(result.rowcount)


def create_user(
    db: Session,
    username: str,
    password: str,
    role: str = Role.viewer.value,
    email: Optional[str] = None,
) -> User:
    user = User(
        username=username.strip(),
        email=(email.strip() or None) if email else None,
        password_hash=get_password_hash(password),
        role=role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def ensure_admin(db: Session, settings: Settings) -> bool:
    """
    Crea el admin inicial si no existe. Devuelve True si lo insertó.

    Varios procesos pueden arrancar a la vez: si otro gana la carrera el
    IntegrityError del índice único se trata como "ya existe".
    """
    if find_by_identifier(db, settings.admin_username) is not None:
        return False
    password, generated = settings.bootstrap_admin_password()
    try:
        create_user(db, settings.admin_username, password, role=Role.admin.value, email=settings.admin_email)
    except IntegrityError:
        db.rollback()
        logger.info("Bootstrap admin %r already created by another process", settings.admin_username)
        return False
    if generated:
        # la contraseña va a la consola una sola vez, nunca al log
        logger.warning("ADMIN_PASSWORD not set; bootstrap admin %r created with a temporary password", settings.admin_username)
        print(f"Contraseña temporal para {settings.admin_username}: {password}", file=sys.stderr, flush=True)
    else:
        logger.info("Bootstrap admin %r created", settings.admin_username)
    return True
