import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from pillatuvisa.ai import AINotConfiguredError, AIServiceError, DraftingClient, build_drafting_client
from pillatuvisa.security import WRITER_ROLES, require_role

logger = logging.getLogger("pillatuvisa.ai_router")

router = APIRouter(prefix="/ai", tags=["ai"], dependencies=[Depends(require_role(WRITER_ROLES))])


class TipsDraftIn(BaseModel):
    perfil: Optional[str] = Field(None, max_length=2000)
    fechaCita: Optional[str] = Field(None, max_length=40)


class ResultDraftIn(BaseModel):
    estado: Optional[str] = Field(None, max_length=40)
    detalle: Optional[str] = Field(None, max_length=2000)


def get_drafting_client() -> DraftingClient:
    try:
        return build_drafting_client()
    except AINotConfiguredError:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail="Falta configurar OPENAI_API_KEY")


@router.post("/tips")
async def draft_tips(payload: TipsDraftIn, client: DraftingClient = Depends(get_drafting_client)):
    try:
        text = await client.draft_tips(payload.perfil, payload.fechaCita)
    except AIServiceError:
        logger.exception("AI tips draft failed")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Error al generar tips")
    return {"ok": True, "text": text}


@router.post("/resultado")
async def draft_result(payload: ResultDraftIn, client: DraftingClient = Depends(get_drafting_client)):
    estado = (payload.estado or "").strip()
    if not estado:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Falta estado")
    try:
        text = await client.draft_result(estado, payload.detalle)
    except AIServiceError:
        logger.exception("AI result draft failed")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Error al redactar mensaje")
    return {"ok": True, "text": text}
