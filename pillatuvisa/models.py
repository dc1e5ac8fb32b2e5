from typing import Optional
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, TypeDecorator
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Columna sin zona en la base (MySQL DATETIME / SQLite); en Python siempre UTC con tzinfo."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Role(str, Enum):
    admin = "admin"
    editor = "editor"
    viewer = "viewer"


class LeadStatus(str, Enum):
    nuevo = "nuevo"
    contactado = "contactado"
    descartado = "descartado"


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True, nullable=False, max_length=80)
    email: Optional[str] = Field(default=None, index=True, unique=True, nullable=True, max_length=120)
    password_hash: str
    role: str = Field(default=Role.viewer.value, max_length=20)
    is_active: bool = Field(default=True)
    created_at: Optional[datetime] = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=True)

    # solo mientras hay una recuperación de contraseña pendiente; se guarda el hash, nunca el token
    reset_token_hash: Optional[str] = Field(default=None, index=True, nullable=True, max_length=64)
    reset_expires: Optional[datetime] = Field(default=None, sa_type=UTCDateTime, nullable=True)


class AuthSession(SQLModel, table=True):
    """
    Sesión de staff. user_id/role/username son una copia tomada al emitir el token
    para poder validar sin join.
    """
    __tablename__ = "sessions"

    token: str = Field(primary_key=True, max_length=128)
    user_id: int = Field(index=True)
    role: str = Field(max_length=20)
    username: str = Field(max_length=80)
    expires_at: datetime = Field(sa_type=UTCDateTime, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Receipt(SQLModel, table=True):
    __tablename__ = "recibos"

    id: Optional[int] = Field(default=None, primary_key=True)
    nombre: str = Field(max_length=160)
    email: str = Field(max_length=160)
    concepto: str = Field(max_length=255)
    monto: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    metodo: str = Field(max_length=60)
    creado_en: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)


class Lead(SQLModel, table=True):
    __tablename__ = "potenciales"

    id: Optional[int] = Field(default=None, primary_key=True)
    nombre: str = Field(max_length=160)
    email: str = Field(max_length=160)
    telefono: Optional[str] = Field(default=None, nullable=True, max_length=40)
    mensaje: Optional[str] = Field(default=None, nullable=True)
    ip: Optional[str] = Field(default=None, nullable=True, max_length=64)
    user_agent: Optional[str] = Field(default=None, nullable=True, max_length=255)
    estado: str = Field(default=LeadStatus.nuevo.value, index=True, max_length=20)
    creado_en: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
    actualizado_en: Optional[datetime] = Field(default=None, sa_type=UTCDateTime, nullable=True)


class SchemaMigration(SQLModel, table=True):
    __tablename__ = "schema_migrations"

    version: int = Field(primary_key=True)
    description: str = Field(max_length=120)
    applied_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
