import hashlib
import hmac
import logging
from typing import Iterable, Optional, Tuple

from passlib.context import CryptContext
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from pillatuvisa.config import settings
from pillatuvisa.models import Role
from pillatuvisa.sessions import SessionInfo, SessionManager, get_session_manager

logger = logging.getLogger("pillatuvisa.security")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds)
# auto_error=False: la cabecera ausente o mal formada se responde con nuestro propio 401
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/login", auto_error=False)

# Mapeo simple para aceptar etiquetas visuales (es) como alias de las claves internas
ROLE_ALIAS_MAP = {
    "administrador": Role.admin.value,
    "editor": Role.editor.value,
    "lector": Role.viewer.value,
    "consulta": Role.viewer.value,
    # mantener mapeo directo por si el valor ya es la key
    "admin": Role.admin.value,
    "viewer": Role.viewer.value,
}

STAFF_ROLES = [Role.admin.value, Role.editor.value, Role.viewer.value]
WRITER_ROLES = [Role.admin.value, Role.editor.value]
ADMIN_ROLES = [Role.admin.value]


def canonical_role(raw: Optional[str]) -> str:
    value = str(raw or "").strip().lower()
    return ROLE_ALIAS_MAP.get(value, value)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def check_password(plain: str, stored: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Compara la contraseña con lo guardado. Devuelve (ok, nuevo_hash).

    nuevo_hash viene informado cuando hay que reemplazar lo guardado: texto plano
    heredado de la versión anterior o un hash bcrypt con coste obsoleto.
    """
    if not stored:
        pwd_context.dummy_verify()
        return False, None
    if pwd_context.identify(stored, required=False) is None:
        # credencial heredada en texto plano
        ok = hmac.compare_digest(plain.encode("utf-8"), stored.encode("utf-8"))
        return ok, (get_password_hash(plain) if ok else None)
    return pwd_context.verify_and_update(plain, stored)


def dummy_verify() -> None:
    """Igualar el tiempo de respuesta cuando el usuario no existe."""
    pwd_context.dummy_verify()


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _raise_unauthorized(detail: str = "No autenticado"):
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def get_current_session(
    token: Optional[str] = Depends(oauth2_scheme),
    sessions: SessionManager = Depends(get_session_manager),
) -> SessionInfo:
    if not token:
        _raise_unauthorized()
    info = sessions.validate_and_refresh(token)
    if info is None:
        _raise_unauthorized("Sesión inválida o expirada")
    return info


def require_role(allowed: Iterable[str]):
    """
    Dependency: use as Depends(require_role(["admin","editor"]))
    Compara case-insensitive y acepta alias (Administrador -> admin).
    """
    allowed_norm = {canonical_role(r) for r in (allowed or [])}

    def _require(current: SessionInfo = Depends(get_current_session)) -> SessionInfo:
        role = canonical_role(current.role)
        if role not in allowed_norm:
            logger.debug(
                "require_role denied: role=%r allowed=%r user_id=%s username=%s",
                role,
                sorted(allowed_norm),
                current.user_id,
                current.username,
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No tienes permisos para esta acción")
        return current

    return _require
