"""
Crea un usuario desde la consola (no hace nada si ya existe).

Uso:
  python scripts/create_admin.py <username> <password> [rol] [email]
"""
import os
import sys

HERE = os.path.abspath(os.path.dirname(__file__))
ROOT = os.path.abspath(os.path.join(HERE, ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from sqlmodel import Session  # noqa: E402

from pillatuvisa import credentials  # noqa: E402
from pillatuvisa.config import settings  # noqa: E402
from pillatuvisa.database import engine  # noqa: E402
from pillatuvisa.migrations import run_migrations  # noqa: E402
from pillatuvisa.models import Role  # noqa: E402


def create_admin(username: str, password: str, role: str = Role.admin.value, email: str = None) -> int:
    if role not in {r.value for r in Role}:
        print(f"Rol inválido: {role}. Usa uno de: {', '.join(r.value for r in Role)}")
        return 2
    if len(password) < settings.min_password_length:
        print(f"La contraseña debe tener al menos {settings.min_password_length} caracteres")
        return 2
    run_migrations(engine, settings)
    with Session(engine) as session:
        if credentials.find_by_identifier(session, username) is not None:
            print("User already exists")
            return 0
        user = credentials.create_user(session, username, password, role=role, email=email)
        print(f"Created {user.username} (id={user.id}, role={user.role})")
    return 0


if __name__ == "__main__":
    if len(sys.argv) < 3:
        print(__doc__)
        sys.exit(1)
    args = sys.argv[1:]
    sys.exit(create_admin(*args[:4]))
