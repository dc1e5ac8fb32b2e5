"""
Recibos de pago.

POST   /register             guarda el recibo, genera snapshot y envía el correo
GET    /recibo/{id}          HTML del recibo (público: es el enlace que recibe el cliente)
GET    /recibo/{id}/pdf      mismo recibo en PDF
GET    /recibos              listado para la caja de recibos
DELETE /recibos/{id}         borra registro, snapshot y sidecar
GET    /clients              clientes (id, nombre, email) para los selects de tips/resultado
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel, EmailStr, Field

from pillatuvisa.mailer import Notifier, get_notifier
from pillatuvisa.pdf import render_receipt_pdf
from pillatuvisa.receipts import DEFAULT_LIST_LIMIT, ReceiptStore, get_receipt_store
from pillatuvisa.security import ADMIN_ROLES, STAFF_ROLES, WRITER_ROLES, require_role

logger = logging.getLogger("pillatuvisa.receipts_router")

router = APIRouter(tags=["recibos"])


class RegisterIn(BaseModel):
    nombre: str = Field(..., min_length=1, max_length=160)
    email: EmailStr
    concepto: str = Field(..., min_length=1, max_length=255)
    monto: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    metodo: str = Field(..., min_length=1, max_length=60)
    notas: Optional[str] = Field(None, max_length=2000)


def _parse_id(raw: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="ID inválido")
    if value <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="ID inválido")
    return value


@router.post("/register", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_role(WRITER_ROLES))])
async def register(
    payload: RegisterIn,
    store: ReceiptStore = Depends(get_receipt_store),
    notifier: Notifier = Depends(get_notifier),
):
    fields = payload.model_dump(exclude={"notas"})
    fields = {k: (v.strip() if isinstance(v, str) else v) for k, v in fields.items()}
    created = await run_in_threadpool(store.create, fields, payload.notas)

    # el recibo ya está guardado: el correo es un paso aparte que se informa por separado
    mail = await notifier.send_receipt(created.receipt)
    email_sent = mail["status"] == "sent"
    if not email_sent:
        logger.warning("Receipt %s stored but email status=%s", created.id, mail["status"])

    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={
            "ok": True,
            "error": False,
            "mensaje": "Recibo guardado correctamente",
            "reciboId": created.id,
            "receiptSaved": created.snapshot_saved,
            "receiptError": created.snapshot_error,
            "emailSent": email_sent,
            "emailStatus": mail["status"],
            "emailError": mail.get("error"),
        },
    )


@router.get("/recibo/{receipt_id}", response_class=HTMLResponse)
def get_receipt(receipt_id: str, store: ReceiptStore = Depends(get_receipt_store)):
    rid = _parse_id(receipt_id)
    rendered = store.get(rid)
    if rendered is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recibo no encontrado")
    return HTMLResponse(content=rendered.html)


@router.get("/recibo/{receipt_id}/pdf")
def get_receipt_pdf(receipt_id: str, store: ReceiptStore = Depends(get_receipt_store)):
    rid = _parse_id(receipt_id)
    receipt = store.get_record(rid)
    if receipt is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recibo no encontrado")
    try:
        pdf_bytes = render_receipt_pdf(receipt, store.issue_date_for(rid))
    except Exception as exc:
        logger.exception("PDF render failed for receipt %s", rid)
        raise HTTPException(status_code=500, detail="No se pudo generar el PDF") from exc
    headers = {"Content-Disposition": f'inline; filename="recibo-{rid}.pdf"'}
    return Response(content=pdf_bytes, media_type="application/pdf", headers=headers)


@router.get("/recibos", dependencies=[Depends(require_role(STAFF_ROLES))])
def list_receipts(
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, le=500),
    store: ReceiptStore = Depends(get_receipt_store),
):
    return {"ok": True, "recibos": store.list(limit)}


@router.delete("/recibos/{receipt_id}", dependencies=[Depends(require_role(ADMIN_ROLES))])
def delete_receipt(receipt_id: str, store: ReceiptStore = Depends(get_receipt_store)):
    rid = _parse_id(receipt_id)
    if not store.delete(rid):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recibo no encontrado")
    return {"ok": True, "mensaje": f"Recibo #{rid} eliminado"}


@router.get("/clients", dependencies=[Depends(require_role(STAFF_ROLES))])
def list_clients(
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, le=500),
    store: ReceiptStore = Depends(get_receipt_store),
):
    return {"ok": True, "clients": store.list_clients(limit)}
