"""
Envío de tips y resultados al cliente, y borradores con IA.
"""
import asyncio

import pytest

from pillatuvisa.ai import AIServiceError
from pillatuvisa.config import settings
from pillatuvisa.mailer import DisabledMailProvider, MailDeliveryError, Notifier, get_notifier
from pillatuvisa.main import app
from pillatuvisa.receipts import ReceiptStore
from pillatuvisa.routers.ai import get_drafting_client


@pytest.fixture()
def client_id(client, editor_headers):
    resp = client.post(
        "/register",
        json={"nombre": "Carlos", "email": "carlos@example.com", "concepto": "Asesoría", "monto": 50, "metodo": "Zelle"},
        headers=editor_headers,
    )
    return resp.json()["reciboId"]


class TestTips:
    def test_send_tips(self, client, editor_headers, client_id, mailbox):
        mailbox.sent.clear()
        resp = client.post(
            "/tips",
            json={"clienteId": client_id, "fechaCita": "2026-05-04", "mensaje": "Lleva tu pasaporte.\nLlega temprano."},
            headers=editor_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["mensaje"] == "Tips enviados correctamente"
        sent = mailbox.sent[0]
        assert sent["to"] == "carlos@example.com"
        assert "2026-05-04" in sent["html"]
        assert "Lleva tu pasaporte.<br>Llega temprano." in sent["html"]

    def test_unknown_client(self, client, editor_headers):
        resp = client.post(
            "/tips", json={"clienteId": 999, "fechaCita": "2026-05-04", "mensaje": "hola"}, headers=editor_headers
        )
        assert resp.status_code == 404

    def test_missing_fields(self, client, editor_headers, client_id):
        resp = client.post("/tips", json={"clienteId": client_id, "mensaje": "hola"}, headers=editor_headers)
        assert resp.status_code == 400

    def test_mail_not_configured(self, client, editor_headers, client_id):
        app.dependency_overrides[get_notifier] = lambda: Notifier(DisabledMailProvider(), settings)
        resp = client.post(
            "/tips", json={"clienteId": client_id, "fechaCita": "2026-05-04", "mensaje": "hola"}, headers=editor_headers
        )
        assert resp.status_code == 501

    def test_viewer_cannot_send(self, client, viewer_headers, client_id):
        resp = client.post(
            "/tips", json={"clienteId": client_id, "fechaCita": "2026-05-04", "mensaje": "hola"}, headers=viewer_headers
        )
        assert resp.status_code == 403


class TestResultado:
    def test_send_result(self, client, editor_headers, client_id, mailbox):
        mailbox.sent.clear()
        resp = client.post(
            "/resultado",
            json={"clienteId": client_id, "estado": "Aprobada", "mensaje": "¡Felicidades!"},
            headers=editor_headers,
        )
        assert resp.status_code == 200
        assert "Aprobada" in mailbox.sent[0]["html"]

    def test_delivery_failure(self, client, editor_headers, client_id, mailbox):
        mailbox.fail_with = MailDeliveryError("timeout")
        resp = client.post(
            "/resultado",
            json={"clienteId": client_id, "estado": "Negada", "mensaje": "Lo sentimos"},
            headers=editor_headers,
        )
        assert resp.status_code == 502
        assert resp.json()["error"] is True

    def test_client_lookup_runs_off_the_event_loop(self, client, editor_headers, client_id, monkeypatch):
        real_get = ReceiptStore.get_record
        seen = []

        def spy(self, receipt_id):
            try:
                asyncio.get_running_loop()
                seen.append(True)
            except RuntimeError:
                seen.append(False)
            return real_get(self, receipt_id)

        monkeypatch.setattr(ReceiptStore, "get_record", spy)
        client.post("/tips", json={"clienteId": client_id, "fechaCita": "2026-05-04", "mensaje": "hola"}, headers=editor_headers)
        client.post("/resultado", json={"clienteId": client_id, "estado": "Aprobada", "mensaje": "hola"}, headers=editor_headers)
        assert seen == [False, False]


class FakeDraftingClient:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def draft_tips(self, perfil, fecha_cita):
        self.calls.append(("tips", perfil, fecha_cita))
        if self.fail:
            raise AIServiceError("timeout")
        return "1. ¿Por qué viaja?"

    async def draft_result(self, estado, detalle):
        self.calls.append(("resultado", estado, detalle))
        return f"Su visa fue {estado.lower()}."


class TestAI:
    def test_not_configured(self, client, editor_headers):
        resp = client.post("/ai/tips", json={"perfil": "Estudiante"}, headers=editor_headers)
        assert resp.status_code == 501
        assert "OPENAI_API_KEY" in resp.json()["mensaje"]

    def test_draft_tips(self, client, editor_headers):
        fake = FakeDraftingClient()
        app.dependency_overrides[get_drafting_client] = lambda: fake
        resp = client.post("/ai/tips", json={"perfil": "Estudiante", "fechaCita": "2026-05-04"}, headers=editor_headers)
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "text": "1. ¿Por qué viaja?"}
        assert fake.calls == [("tips", "Estudiante", "2026-05-04")]

    def test_draft_result_requires_estado(self, client, editor_headers):
        app.dependency_overrides[get_drafting_client] = lambda: FakeDraftingClient()
        assert client.post("/ai/resultado", json={"detalle": "x"}, headers=editor_headers).status_code == 400
        resp = client.post("/ai/resultado", json={"estado": "Aprobada"}, headers=editor_headers)
        assert resp.json()["text"] == "Su visa fue aprobada."

    def test_upstream_failure(self, client, editor_headers):
        app.dependency_overrides[get_drafting_client] = lambda: FakeDraftingClient(fail=True)
        assert client.post("/ai/tips", json={}, headers=editor_headers).status_code == 502

    def test_viewer_forbidden(self, client, viewer_headers):
        assert client.post("/ai/tips", json={}, headers=viewer_headers).status_code == 403
