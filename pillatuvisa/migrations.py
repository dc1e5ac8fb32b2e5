"""
Migraciones versionadas. Se ejecutan una vez al arrancar (lifespan) o desde scripts/.

Cada versión aplicada queda en `schema_migrations`; si dos procesos arrancan a la
vez, el que pierde la inserción de la versión la da por aplicada.
"""
import logging
from typing import Callable, List, Set, Tuple

from sqlalchemy import func, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, select

from pillatuvisa.config import Settings
from pillatuvisa import models  # noqa: F401  registra las tablas en SQLModel.metadata
from pillatuvisa.models import SchemaMigration, User

logger = logging.getLogger("pillatuvisa.migrations")


def _initial_schema(engine: Engine, settings: Settings) -> None:
    SQLModel.metadata.create_all(engine)


def _backfill_admin_email(engine: Engine, settings: Settings) -> None:
    email = (settings.admin_email or "").strip()
    if not email:
        logger.warning("ADMIN_EMAIL/MAIL_FROM empty, admin email not backfilled")
        return
    with Session(engine) as session:
        admin = session.exec(
            select(User).where(func.lower(User.username) == settings.admin_username.lower())
        ).first()
        if admin is None or admin.email:
            return
        taken = session.exec(select(User).where(func.lower(User.email) == email.lower())).first()
        if taken is not None:
            logger.warning("Email %s already used by user_id=%s, admin email not backfilled", email, taken.id)
            return
        admin.email = email
        session.add(admin)
        session.commit()
        logger.info("Admin email backfilled")


MIGRATIONS: List[Tuple[int, str, Callable[[Engine, Settings], None]]] = [
    (1, "initial schema", _initial_schema),
    (2, "backfill admin email", _backfill_admin_email),
]


def applied_versions(engine: Engine) -> Set[int]:
    if not inspect(engine).has_table(SchemaMigration.__tablename__):
        return set()
    with Session(engine) as session:
        return set(session.exec(select(SchemaMigration.version)).all())


def run_migrations(engine: Engine, settings: Settings) -> List[int]:
    SQLModel.metadata.create_all(engine, tables=[SchemaMigration.__table__])
    done = applied_versions(engine)
    ran: List[int] = []
    for version, description, apply in MIGRATIONS:
        if version in done:
            continue
        logger.info("Applying migration %s: %s", version, description)
        apply(engine, settings)
        with Session(engine) as session:
            session.add(SchemaMigration(version=version, description=description))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("Migration %s recorded by another process", version)
                continue
        ran.append(version)
    return ran
