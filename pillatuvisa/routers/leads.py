import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, EmailStr, Field
from sqlmodel import Session, select

from pillatuvisa.database import get_session
from pillatuvisa.mailer import Notifier, get_notifier
from pillatuvisa.models import Lead, LeadStatus, utcnow
from pillatuvisa.security import STAFF_ROLES, WRITER_ROLES, require_role

logger = logging.getLogger("pillatuvisa.leads")

router = APIRouter(prefix="/api/potenciales", tags=["potenciales"])


class LeadIn(BaseModel):
    nombre: str = Field(..., min_length=1, max_length=160)
    email: EmailStr
    telefono: Optional[str] = Field(None, max_length=40)
    mensaje: Optional[str] = Field(None, max_length=4000)


class LeadStatusIn(BaseModel):
    estado: LeadStatus


def _to_out(lead: Lead) -> Dict[str, Any]:
    return {
        "id": lead.id,
        "nombre": lead.nombre,
        "email": lead.email,
        "telefono": lead.telefono,
        "mensaje": lead.mensaje,
        "estado": lead.estado,
        "creado_en": lead.creado_en.isoformat() if lead.creado_en else None,
        "actualizado_en": lead.actualizado_en.isoformat() if lead.actualizado_en else None,
    }


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()[:64]
    return request.client.host if request.client else None


@router.post("", status_code=status.HTTP_201_CREATED)
def create_lead(
    payload: LeadIn,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    lead = Lead(
        nombre=payload.nombre.strip(),
        email=str(payload.email),
        telefono=(payload.telefono or "").strip() or None,
        mensaje=(payload.mensaje or "").strip() or None,
        ip=_client_ip(request),
        user_agent=(request.headers.get("user-agent") or "")[:255] or None,
    )
    db.add(lead)
    db.commit()
    db.refresh(lead)
    logger.info("Lead %s stored", lead.id)
    background_tasks.add_task(notifier.send_lead_alert, lead)
    return {"ok": True, "id": lead.id, "mensaje": "Hemos recibido tu solicitud, te contactaremos pronto."}


@router.get("", dependencies=[Depends(require_role(STAFF_ROLES))])
def list_leads(
    limit: int = Query(200, ge=1, le=500),
    estado: Optional[LeadStatus] = None,
    db: Session = Depends(get_session),
):
    stmt = select(Lead)
    if estado is not None:
        stmt = stmt.where(Lead.estado == estado.value)
    rows = db.exec(stmt.order_by(Lead.id.desc()).limit(limit)).all()
    items = [_to_out(r) for r in rows]
    return {"ok": True, "items": items}


@router.post("/{lead_id}/estado", dependencies=[Depends(require_role(WRITER_ROLES))])
def update_lead_status(lead_id: int, payload: LeadStatusIn, db: Session = Depends(get_session)):
    lead = db.get(Lead, lead_id)
    if lead is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Potencial no encontrado")
    lead.estado = payload.estado.value
    lead.actualizado_en = utcnow()
    db.add(lead)
    db.commit()
    db.refresh(lead)
    return {"ok": True, "item": _to_out(lead)}
