import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from pillatuvisa.mailer import Notifier, get_notifier
from pillatuvisa.receipts import ReceiptStore, get_receipt_store
from pillatuvisa.security import WRITER_ROLES, require_role

logger = logging.getLogger("pillatuvisa.notifications")

router = APIRouter(tags=["notificaciones"], dependencies=[Depends(require_role(WRITER_ROLES))])


class TipsIn(BaseModel):
    clienteId: int = Field(..., gt=0)
    fechaCita: str = Field(..., min_length=1, max_length=40)
    perfil: Optional[str] = Field(None, max_length=2000)
    mensaje: str = Field(..., min_length=1, max_length=10000)


class ResultadoIn(BaseModel):
    clienteId: int = Field(..., gt=0)
    estado: str = Field(..., min_length=1, max_length=40)
    detalle: Optional[str] = Field(None, max_length=2000)
    mensaje: str = Field(..., min_length=1, max_length=10000)


def _client_or_404(store: ReceiptStore, client_id: int):
    receipt = store.get_record(client_id)
    if receipt is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cliente no encontrado")
    if not receipt.email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="El cliente no tiene email")
    return receipt


def _raise_for_delivery(result: Dict[str, Any]) -> None:
    if result["status"] == "not_configured":
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail="El envío de correo no está configurado")
    if result["status"] != "sent":
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="No se pudo enviar el correo")


@router.post("/tips")
async def send_tips(
    payload: TipsIn,
    store: ReceiptStore = Depends(get_receipt_store),
    notifier: Notifier = Depends(get_notifier),
):
    client = await run_in_threadpool(_client_or_404, store, payload.clienteId)
    result = await notifier.send_tips(client.email, client.nombre, payload.fechaCita.strip(), payload.mensaje.strip())
    _raise_for_delivery(result)
    return {"ok": True, "error": False, "mensaje": "Tips enviados correctamente"}


@router.post("/resultado")
async def send_result(
    payload: ResultadoIn,
    store: ReceiptStore = Depends(get_receipt_store),
    notifier: Notifier = Depends(get_notifier),
):
    client = await run_in_threadpool(_client_or_404, store, payload.clienteId)
    result = await notifier.send_result(client.email, client.nombre, payload.estado.strip(), payload.mensaje.strip())
    _raise_for_delivery(result)
    return {"ok": True, "error": False, "mensaje": "Resultado notificado correctamente"}
