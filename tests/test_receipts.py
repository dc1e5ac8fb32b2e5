"""
Receipt store and /register, /recibo, /recibos endpoints.
"""
import asyncio
import json
from datetime import date
from decimal import Decimal
from pathlib import Path

from sqlmodel import Session

from pillatuvisa.config import settings
from pillatuvisa.database import engine
from pillatuvisa.mailer import MailDeliveryError
from pillatuvisa.models import Receipt
from pillatuvisa.receipts import ReceiptStore, escape_html, format_amount, format_issue_date, render_receipt

CARLOS = {
    "nombre": "Carlos",
    "email": "carlos@example.com",
    "concepto": "Asesoría visa",
    "monto": 50,
    "metodo": "Zelle",
}


def _register(client, headers, **overrides):
    payload = dict(CARLOS, **overrides)
    resp = client.post("/register", json=payload, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _on_event_loop():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class TestFormatting:
    def test_escape_html(self):
        assert escape_html("Trámite <visa>") == "Trámite &lt;visa&gt;"
        assert escape_html('"a" & \'b\'') == "&quot;a&quot; &amp; &#x27;b&#x27;"
        assert escape_html(None) == ""

    def test_format_amount(self):
        assert format_amount(125.5) == "125.50"
        assert format_amount(Decimal("50")) == "50.00"
        assert format_amount("10.005") == "10.01"
        assert format_amount("no es número") == "no es número"

    def test_issue_date(self):
        assert format_issue_date(date(2026, 2, 3)) == "03/02/2026"

    def test_render_escapes_every_field(self):
        receipt = Receipt(
            id=7,
            nombre="Ana <b>",
            email="ana@example.com",
            concepto="Trámite <visa>",
            monto=Decimal("125.5"),
            metodo="Efectivo",
        )
        html = render_receipt(receipt, "01/02/2026")
        assert "Trámite &lt;visa&gt;" in html
        assert "Ana &lt;b&gt;" in html
        assert "$125.50" in html
        assert "01/02/2026" in html
        assert "{{" not in html


class TestRegister:
    def test_register_stores_and_emails(self, client, editor_headers, mailbox):
        body = _register(client, editor_headers)
        assert body["ok"] is True
        assert body["receiptSaved"] is True
        assert body["receiptError"] is None
        assert body["emailSent"] is True
        rid = body["reciboId"]
        assert mailbox.sent[0]["to"] == "carlos@example.com"
        assert f"http://testserver/recibo/{rid}" in mailbox.sent[0]["html"]

        page = client.get(f"/recibo/{rid}")
        assert page.status_code == 200
        assert page.headers["content-type"].startswith("text/html")
        assert "Carlos" in page.text
        assert "50.00" in page.text

    def test_snapshot_and_sidecar_written(self, client, editor_headers):
        rid = _register(client, editor_headers, notas="Pagó en dos partes")["reciboId"]
        folder = Path(settings.receipts_dir)
        assert (folder / f"{rid}.html").exists()
        meta = json.loads((folder / f"{rid}.json").read_text(encoding="utf-8"))
        assert meta["id"] == rid
        assert meta["fechaEmision"] == format_issue_date(date.today())
        assert meta["notas"] == "Pagó en dos partes"

    def test_snapshot_wins_over_database(self, client, editor_headers):
        rid = _register(client, editor_headers)["reciboId"]
        with Session(engine) as s:
            row = s.get(Receipt, rid)
            row.nombre = "Otro Nombre"
            s.add(row)
            s.commit()
        page = client.get(f"/recibo/{rid}")
        assert "Carlos" in page.text
        assert "Otro Nombre" not in page.text

    def test_missing_snapshot_renders_on_demand(self, client, db):
        issued = ReceiptStore(db, settings.receipts_dir, today=lambda: date(2025, 1, 15))
        rid = issued.create(CARLOS).id
        kept = client.get(f"/recibo/{rid}")
        assert "15/01/2025" in kept.text

        (Path(settings.receipts_dir) / f"{rid}.html").unlink()
        rendered = ReceiptStore(db, settings.receipts_dir).get(rid)
        assert rendered.from_snapshot is False
        page = client.get(f"/recibo/{rid}")
        assert page.status_code == 200
        assert "Carlos" in page.text
        assert format_issue_date(date.today()) in page.text
        assert "15/01/2025" not in page.text

    def test_sidecar_failure_leaves_no_snapshot(self, client, editor_headers, monkeypatch):
        real_write = ReceiptStore._atomic_write

        def failing_sidecar(path, content):
            if path.suffix == ".json":
                raise OSError("disco lleno")
            real_write(path, content)

        monkeypatch.setattr(ReceiptStore, "_atomic_write", staticmethod(failing_sidecar))
        body = _register(client, editor_headers)
        assert body["receiptSaved"] is False
        assert "disco lleno" in body["receiptError"]
        folder = Path(settings.receipts_dir)
        assert not (folder / f"{body['reciboId']}.html").exists()
        assert not (folder / f"{body['reciboId']}.json").exists()
        page = client.get(f"/recibo/{body['reciboId']}")
        assert page.status_code == 200
        assert "Carlos" in page.text

    def test_store_work_runs_off_the_event_loop(self, client, editor_headers, monkeypatch):
        real_create = ReceiptStore.create
        seen = []

        def spy(self, *args, **kwargs):
            seen.append(_on_event_loop())
            return real_create(self, *args, **kwargs)

        monkeypatch.setattr(ReceiptStore, "create", spy)
        _register(client, editor_headers)
        assert seen == [False]

    def test_snapshot_failure_keeps_record(self, client, editor_headers, tmp_path, monkeypatch):
        blocked = tmp_path / "no-es-carpeta"
        blocked.write_text("x", encoding="utf-8")
        monkeypatch.setattr(settings, "receipts_dir", str(blocked))
        body = _register(client, editor_headers)
        assert body["receiptSaved"] is False
        assert body["receiptError"]
        page = client.get(f"/recibo/{body['reciboId']}")
        assert page.status_code == 200
        assert "Carlos" in page.text

    def test_email_failure_is_reported_separately(self, client, editor_headers, mailbox):
        mailbox.fail_with = MailDeliveryError("smtp caído")
        body = _register(client, editor_headers)
        assert body["ok"] is True
        assert body["receiptSaved"] is True
        assert body["emailSent"] is False
        assert body["emailStatus"] == "failed"
        assert "smtp caído" in body["emailError"]

    def test_html_in_fields_is_escaped(self, client, editor_headers):
        rid = _register(client, editor_headers, concepto="Trámite <visa>", monto=125.5)["reciboId"]
        page = client.get(f"/recibo/{rid}")
        assert "Trámite &lt;visa&gt;" in page.text
        assert "<visa>" not in page.text
        assert "125.50" in page.text

    def test_invalid_payload(self, client, editor_headers):
        resp = client.post("/register", json={"nombre": "Carlos"}, headers=editor_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] is True
        bad_email = client.post("/register", json=dict(CARLOS, email="no-es-email"), headers=editor_headers)
        assert bad_email.status_code == 400
        negative = client.post("/register", json=dict(CARLOS, monto=-1), headers=editor_headers)
        assert negative.status_code == 400

    def test_register_requires_writer(self, client, viewer_headers):
        assert client.post("/register", json=CARLOS).status_code == 401
        assert client.post("/register", json=CARLOS, headers=viewer_headers).status_code == 403


class TestFetch:
    def test_invalid_and_unknown_ids(self, client):
        assert client.get("/recibo/abc").status_code == 400
        assert client.get("/recibo/0").status_code == 400
        resp = client.get("/recibo/999")
        assert resp.status_code == 404
        assert resp.json()["mensaje"] == "Recibo no encontrado"

    def test_pdf(self, client, editor_headers):
        rid = _register(client, editor_headers)["reciboId"]
        resp = client.get(f"/recibo/{rid}/pdf")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/pdf"
        assert resp.content.startswith(b"%PDF")
        assert client.get("/recibo/999/pdf").status_code == 404

    def test_list_newest_first(self, client, editor_headers, viewer_headers):
        first = _register(client, editor_headers, nombre="Primero", notas="nota 1")["reciboId"]
        second = _register(client, editor_headers, nombre="Segundo")["reciboId"]
        resp = client.get("/recibos", headers=viewer_headers)
        assert resp.status_code == 200
        rows = resp.json()["recibos"]
        assert [r["id"] for r in rows] == [second, first]
        assert rows[0]["monto"] == "50.00"
        assert rows[1]["notas"] == "nota 1"
        assert rows[0]["notas"] is None

    def test_list_limit(self, client, editor_headers, viewer_headers):
        for i in range(3):
            _register(client, editor_headers, nombre=f"Cliente {i}")
        resp = client.get("/recibos?limit=2", headers=viewer_headers)
        assert len(resp.json()["recibos"]) == 2
        assert client.get("/recibos?limit=0", headers=viewer_headers).status_code == 400

    def test_list_requires_login(self, client):
        assert client.get("/recibos").status_code == 401

    def test_clients(self, client, editor_headers, viewer_headers):
        rid = _register(client, editor_headers)["reciboId"]
        resp = client.get("/clients", headers=viewer_headers)
        assert resp.json()["clients"] == [{"id": rid, "nombre": "Carlos", "email": "carlos@example.com"}]


class TestDelete:
    def test_admin_deletes_record_and_files(self, client, editor_headers, admin_headers):
        rid = _register(client, editor_headers)["reciboId"]
        folder = Path(settings.receipts_dir)
        resp = client.delete(f"/recibos/{rid}", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["ok"] is True
        assert not (folder / f"{rid}.html").exists()
        assert not (folder / f"{rid}.json").exists()
        assert client.get(f"/recibo/{rid}").status_code == 404
        assert client.delete(f"/recibos/{rid}", headers=admin_headers).status_code == 404

    def test_editor_cannot_delete(self, client, editor_headers):
        rid = _register(client, editor_headers)["reciboId"]
        assert client.delete(f"/recibos/{rid}", headers=editor_headers).status_code == 403
        assert client.get(f"/recibo/{rid}").status_code == 200

    def test_viewer_cannot_delete(self, client, editor_headers, viewer_headers, admin_headers):
        rid = _register(client, editor_headers)["reciboId"]
        resp = client.delete(f"/recibos/{rid}", headers=viewer_headers)
        assert resp.status_code == 403
        assert client.get(f"/recibo/{rid}").status_code == 200
        assert client.delete(f"/recibos/{rid}", headers=admin_headers).status_code == 200
