"""
Receipt Store: registro en `recibos` + snapshot HTML y sidecar JSON por recibo.

Una vez generado, el snapshot es lo que se sirve siempre para ese id; solo si
falta se vuelve a renderizar desde la base con la fecha del día.
"""
from __future__ import annotations

import html
import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from fastapi import Depends
from sqlalchemy import delete
from sqlmodel import Session, select

from pillatuvisa.config import settings
from pillatuvisa.database import get_session
from pillatuvisa.models import Receipt, utcnow

logger = logging.getLogger("pillatuvisa.receipts")

TEMPLATE_PATH = Path(__file__).parent / "templates" / "recibo.html"
PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")
DEFAULT_LIST_LIMIT = 200
MAX_LIST_LIMIT = 500


def escape_html(value: Any) -> str:
    return html.escape("" if value is None else str(value), quote=True)


def format_amount(value: Any) -> str:
    """Dos decimales exactos; lo que no sea numérico se devuelve tal cual (como texto)."""
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return "" if value is None else str(value)
    if not number.is_finite():
        return str(value)
    return str(number.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_issue_date(day: date) -> str:
    return day.strftime("%d/%m/%Y")


def render_template(template: str, data: Mapping[str, str]) -> str:
    return PLACEHOLDER_RE.sub(lambda m: data.get(m.group(1), ""), template)


def load_template() -> str:
    return TEMPLATE_PATH.read_text(encoding="utf-8")


def receipt_context(receipt: Receipt, issue_date: str) -> Dict[str, str]:
    return {
        "id": escape_html(receipt.id),
        "fechaEmision": escape_html(issue_date),
        "nombre": escape_html(receipt.nombre),
        "email": escape_html(receipt.email),
        "metodo": escape_html(receipt.metodo),
        "concepto": escape_html(receipt.concepto),
        "monto": escape_html(format_amount(receipt.monto)),
    }


def render_receipt(receipt: Receipt, issue_date: Optional[str] = None) -> str:
    issue_date = issue_date or format_issue_date(date.today())
    return render_template(load_template(), receipt_context(receipt, issue_date))


@dataclass
class CreatedReceipt:
    receipt: Receipt
    issue_date: str
    snapshot_saved: bool
    snapshot_error: Optional[str] = None

    @property
    def id(self) -> int:
        return self.receipt.id


@dataclass
class RenderedReceipt:
    id: int
    html: str
    from_snapshot: bool


class ReceiptStore:
    def __init__(self, db: Session, directory: str, today: Callable[[], date] = date.today) -> None:
        self.db = db
        self.directory = Path(directory)
        self.today = today

    def snapshot_path(self, receipt_id: int) -> Path:
        return self.directory / f"{receipt_id}.html"

    def sidecar_path(self, receipt_id: int) -> Path:
        return self.directory / f"{receipt_id}.json"

    def create(self, fields: Mapping[str, Any], notas: Optional[str] = None) -> CreatedReceipt:
        receipt = Receipt(
            nombre=fields["nombre"],
            email=fields["email"],
            concepto=fields["concepto"],
            monto=fields["monto"],
            metodo=fields["metodo"],
        )
        self.db.add(receipt)
        self.db.commit()
        self.db.refresh(receipt)
        logger.info("Stored receipt %s", receipt.id)

        issue_date = format_issue_date(self.today())
        # el registro ya está confirmado: un fallo aquí se informa pero no se deshace
        try:
            self._write_snapshot(receipt, issue_date, notas)
        except OSError as e:
            logger.exception("Failed writing snapshot for receipt %s", receipt.id)
            return CreatedReceipt(receipt=receipt, issue_date=issue_date, snapshot_saved=False, snapshot_error=str(e))
        return CreatedReceipt(receipt=receipt, issue_date=issue_date, snapshot_saved=True)

    def _write_snapshot(self, receipt: Receipt, issue_date: str, notas: Optional[str]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        meta = {
            "id": receipt.id,
            "fechaEmision": issue_date,
            "generado_en": utcnow().isoformat(timespec="seconds"),
            "notas": (notas or "").strip() or None,
        }
        # sidecar primero: si existe el HTML, su metadata también
        self._atomic_write(self.sidecar_path(receipt.id), json.dumps(meta, ensure_ascii=False))
        self._atomic_write(self.snapshot_path(receipt.id), render_receipt(receipt, issue_date))

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)

    def get_record(self, receipt_id: int) -> Optional[Receipt]:
        return self.db.get(Receipt, receipt_id)

    def get(self, receipt_id: int) -> Optional[RenderedReceipt]:
        snapshot = self.snapshot_path(receipt_id)
        try:
            return RenderedReceipt(id=receipt_id, html=snapshot.read_text(encoding="utf-8"), from_snapshot=True)
        except FileNotFoundError:
            pass
        except OSError:
            logger.exception("Unreadable snapshot for receipt %s, rendering on demand", receipt_id)

        receipt = self.get_record(receipt_id)
        if receipt is None:
            return None
        # sin snapshot: fecha de hoy, no la de emisión original
        rendered = render_receipt(receipt, format_issue_date(self.today()))
        return RenderedReceipt(id=receipt_id, html=rendered, from_snapshot=False)

    def read_sidecar(self, receipt_id: int) -> Dict[str, Any]:
        try:
            data = json.loads(self.sidecar_path(receipt_id).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            logger.warning("Invalid sidecar for receipt %s", receipt_id)
            return {}
        return data if isinstance(data, dict) else {}

    def issue_date_for(self, receipt_id: int) -> str:
        return self.read_sidecar(receipt_id).get("fechaEmision") or format_issue_date(self.today())

    def list(self, limit: int = DEFAULT_LIST_LIMIT) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        rows = self.db.exec(select(Receipt).order_by(Receipt.id.desc()).limit(limit)).all()
        out = []
        for r in rows:
            out.append({
                "id": r.id,
                "nombre": r.nombre,
                "email": r.email,
                "concepto": r.concepto,
                "monto": format_amount(r.monto),
                "metodo": r.metodo,
                "creado_en": r.creado_en.isoformat() if r.creado_en else None,
                "notas": self.read_sidecar(r.id).get("notas"),
            })
        return out

    def list_clients(self, limit: int = DEFAULT_LIST_LIMIT) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        rows = self.db.exec(select(Receipt).order_by(Receipt.id.desc()).limit(limit)).all()
        return [{"id": r.id, "nombre": r.nombre, "email": r.email} for r in rows]

    def delete(self, receipt_id: int) -> bool:
        result = self.db.exec(delete(Receipt).where(Receipt.id == receipt_id))
        self.db.commit()
        if not result.rowcount:
            return False
        for path in (self.snapshot_path(receipt_id), self.sidecar_path(receipt_id)):
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not remove %s", path)
        logger.info("Deleted receipt %s", receipt_id)
        return True


def get_receipt_store(db: Session = Depends(get_session)) -> ReceiptStore:
    return ReceiptStore(db, settings.receipts_dir)
