import logging
from typing import Optional

import openai
from openai import AsyncOpenAI

from pillatuvisa.config import settings

logger = logging.getLogger("pillatuvisa.ai")

TIPS_SYSTEM = (
    "Eres un asistente para preparar entrevistas de visa. Responde en español, claro y profesional. "
    "No menciones que eres IA. No uses emojis."
)
RESULT_SYSTEM = (
    "Eres un redactor profesional de mensajes para clientes. Responde en español. "
    "No menciones que eres IA. No uses emojis."
)


class AINotConfiguredError(Exception):
    pass


class AIServiceError(Exception):
    pass


class DraftingClient:
    def __init__(self, api_key: str, model: str, timeout: float) -> None:
        self.model = model
        # sin reintentos automáticos: el que llama decide si reintenta
        self.client = AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    async def chat(self, system: str, user: str, temperature: float = 0.4) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": user})
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                temperature=temperature,
                messages=messages,
            )
        except openai.APITimeoutError as e:
            raise AIServiceError("LLM request timed out") from e
        except openai.APIError as e:
            raise AIServiceError(f"LLM error: {e}") from e
        content = resp.choices[0].message.content if resp.choices else None
        return str(content or "").strip()

    async def draft_tips(self, perfil: Optional[str], fecha_cita: Optional[str]) -> str:
        user = "\n".join([
            "Genera un texto listo para copiar y enviar al cliente con: (1) 6-10 preguntas probables para la entrevista, "
            "(2) 6 consejos rápidos, (3) recordatorios de documentos.",
            f"Perfil del cliente: {(perfil or '').strip() or 'No especificado'}",
            f"Fecha de cita: {(fecha_cita or '').strip() or 'No especificada'}",
            "Formato: usa encabezados cortos y viñetas. Sé práctico.",
        ])
        return await self.chat(TIPS_SYSTEM, user, temperature=0.5)

    async def draft_result(self, estado: str, detalle: Optional[str]) -> str:
        user = "\n".join([
            "Redacta un mensaje corto (80-140 palabras) para el cliente sobre el resultado de su visa. "
            "Debe sonar humano y respetuoso.",
            f"Estado: {estado.strip()}",
            f"Detalles: {(detalle or '').strip() or 'No especificados'}",
            "Si es denegada, incluye pasos siguientes concretos sin sonar alarmista. "
            "Si es aprobada, felicita y sugiere próximos pasos.",
        ])
        return await self.chat(RESULT_SYSTEM, user, temperature=0.6)


def build_drafting_client() -> DraftingClient:
    if not settings.openai_api_key:
        raise AINotConfiguredError("Falta OPENAI_API_KEY")
    return DraftingClient(settings.openai_api_key, settings.openai_model, settings.ai_timeout_seconds)
