"""
Shared pytest fixtures: in-memory SQLite, FastAPI TestClient and a fake mail provider.
"""
import os

# antes de importar la app: la configuración se lee una sola vez al importar
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin-pass-123"
os.environ["ADMIN_EMAIL"] = "admin@pillatuvisa.test"
os.environ["LEADS_NOTIFY_EMAIL"] = "leads@pillatuvisa.test"
os.environ["BASE_URL"] = "http://testserver"
os.environ["FRONTEND_URL"] = "http://frontend.test"
os.environ["MAIL_PROVIDER"] = "disabled"
for _name in ("MAIL_FROM", "MAIL_USERNAME", "MAIL_PASSWORD", "MAIL_SERVER", "RESEND_API_KEY", "OPENAI_API_KEY"):
    os.environ[_name] = ""

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

from pillatuvisa import credentials  # noqa: E402
from pillatuvisa.config import settings  # noqa: E402
from pillatuvisa.database import engine  # noqa: E402
from pillatuvisa.mailer import MailProvider, Notifier, get_notifier  # noqa: E402
from pillatuvisa.main import app  # noqa: E402
from pillatuvisa.migrations import run_migrations  # noqa: E402
from pillatuvisa.sessions import session_cache  # noqa: E402

ADMIN_PASSWORD = "admin-pass-123"
STAFF_PASSWORD = "staff-pass-123"


class FakeMailProvider(MailProvider):
    name = "fake"

    def __init__(self):
        self.sent = []
        self.fail_with = None

    async def send(self, to, subject, html_body, text_body=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"to": to, "subject": subject, "html": html_body, "text": text_body})


@pytest.fixture(autouse=True)
def _reset_state(tmp_path, monkeypatch):
    SQLModel.metadata.drop_all(engine)
    run_migrations(engine, settings)
    with Session(engine) as session:
        credentials.ensure_admin(session, settings)
    session_cache.clear()
    monkeypatch.setattr(settings, "receipts_dir", str(tmp_path / "recibos"))
    yield
    session_cache.clear()
    app.dependency_overrides.clear()


@pytest.fixture()
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture()
def mailbox():
    return FakeMailProvider()


@pytest.fixture()
def client(mailbox):
    app.dependency_overrides[get_notifier] = lambda: Notifier(mailbox, settings)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def login(client, username, password):
    resp = client.post("/api/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def make_user(username, role, password=STAFF_PASSWORD, email=None):
    with Session(engine) as session:
        return credentials.create_user(session, username, password, role=role, email=email)


@pytest.fixture()
def admin_headers(client):
    return login(client, "admin", ADMIN_PASSWORD)


@pytest.fixture()
def editor_headers(client):
    make_user("editora", "editor", email="editora@pillatuvisa.test")
    return login(client, "editora", STAFF_PASSWORD)


@pytest.fixture()
def viewer_headers(client):
    make_user("lector", "viewer")
    return login(client, "lector", STAFF_PASSWORD)


@pytest.fixture()
def login_as(client):
    def _login(username, password=STAFF_PASSWORD):
        return login(client, username, password)

    return _login


@pytest.fixture()
def user_factory():
    return make_user
