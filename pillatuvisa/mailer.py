import asyncio
import html
import logging
from typing import Any, Dict, Optional

import httpx
from fastapi_mail import ConnectionConfig, FastMail, MessageSchema, MessageType

from pillatuvisa.config import MAIL_RESEND, MAIL_SMTP, MailSettings, Settings, settings
from pillatuvisa.models import Lead, Receipt
from pillatuvisa.receipts import format_amount

logger = logging.getLogger("pillatuvisa.mailer")

RESEND_URL = "https://api.resend.com/emails"
BRAND = "Pilla Tu Visa"


class MailNotConfiguredError(Exception):
    pass


class MailDeliveryError(Exception):
    pass


class MailProvider:
    name = "base"

    async def send(self, to: str, subject: str, html_body: str, text_body: Optional[str] = None) -> None:
        raise NotImplementedError


class DisabledMailProvider(MailProvider):
    name = "disabled"

    async def send(self, to: str, subject: str, html_body: str, text_body: Optional[str] = None) -> None:
        raise MailNotConfiguredError("Mail not configured (MAIL_SERVER/MAIL_USERNAME/MAIL_PASSWORD or RESEND_API_KEY)")


class SmtpMailProvider(MailProvider):
    name = "smtp"

    def __init__(self, mail: MailSettings) -> None:
        self.timeout = mail.timeout_seconds
        self.conf = ConnectionConfig(
            MAIL_USERNAME=mail.username,
            MAIL_PASSWORD=mail.password,
            MAIL_FROM=mail.sender,
            MAIL_FROM_NAME=mail.sender_name,
            MAIL_PORT=mail.port,
            MAIL_SERVER=mail.server,
            MAIL_STARTTLS=mail.starttls,
            MAIL_SSL_TLS=mail.ssl_tls,
            USE_CREDENTIALS=bool(mail.username and mail.password),
            VALIDATE_CERTS=True,
            TIMEOUT=int(mail.timeout_seconds),
        )

    async def send(self, to: str, subject: str, html_body: str, text_body: Optional[str] = None) -> None:
        message = MessageSchema(
            subject=subject,
            recipients=[to],
            body=html_body,
            subtype=MessageType.html,
        )
        try:
            await asyncio.wait_for(FastMail(self.conf).send_message(message), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise MailDeliveryError(f"SMTP timeout after {self.timeout:.0f}s") from e
        except Exception as e:
            raise MailDeliveryError(f"SMTP error: {e}") from e


class ResendMailProvider(MailProvider):
    name = "resend"

    def __init__(self, mail: MailSettings) -> None:
        self.api_key = mail.api_key
        self.sender = f"{mail.sender_name} <{mail.sender}>" if mail.sender_name else mail.sender
        self.timeout = mail.timeout_seconds

    async def send(self, to: str, subject: str, html_body: str, text_body: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"from": self.sender, "to": [to], "subject": subject, "html": html_body}
        if text_body:
            payload["text"] = text_body
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as http:
                resp = await http.post(RESEND_URL, json=payload, headers={"Authorization": f"Bearer {self.api_key}"})
        except httpx.TimeoutException as e:
            raise MailDeliveryError(f"Resend timeout after {self.timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise MailDeliveryError(f"Resend connection error: {e}") from e
        if resp.status_code >= 400:
            raise MailDeliveryError(f"Resend error {resp.status_code}: {resp.text[:300]}")


def build_mail_provider(mail: MailSettings) -> MailProvider:
    if mail.kind == MAIL_SMTP:
        return SmtpMailProvider(mail)
    if mail.kind == MAIL_RESEND:
        return ResendMailProvider(mail)
    return DisabledMailProvider()


_provider: Optional[MailProvider] = None


def init_mail_provider(mail: MailSettings) -> MailProvider:
    global _provider
    _provider = build_mail_provider(mail)
    logger.info("Mail provider: %s", _provider.name)
    return _provider


def get_mail_provider() -> MailProvider:
    if _provider is None:
        return init_mail_provider(settings.mail)
    return _provider


def _paragraphs(text: str) -> str:
    return html.escape(text or "").replace("\r\n", "\n").replace("\n", "<br>")


def _layout(title: str, inner: str) -> str:
    return f"""
    <div style="font-family:Arial,Helvetica,sans-serif; background:#f3f4f6; padding:24px;">
      <div style="max-width:640px; margin:0 auto; background:#ffffff; border:1px solid #e5e7eb; border-radius:14px; padding:22px;">
        <h2 style="margin:0 0 10px; color:#111827;">{html.escape(title)}</h2>
        <div style="height:4px; background:#dc2626; border-radius:999px; margin:10px 0 16px;"></div>
        {inner}
        <p style="margin:16px 0 0; color:#6b7280; font-size:12px;">{BRAND} System</p>
      </div>
    </div>"""


class Notifier:
    """
    Arma los correos transaccionales y los entrega con el proveedor configurado.

    Nunca lanza por fallos de entrega: devuelve {"status": "sent"|"not_configured"|"failed", ...}
    para que quien llama decida qué informar.
    """

    def __init__(self, provider: MailProvider, config: Settings) -> None:
        self.provider = provider
        self.config = config

    async def deliver(self, to: str, subject: str, html_body: str, text_body: Optional[str] = None) -> Dict[str, Any]:
        try:
            await self.provider.send(to, subject, html_body, text_body)
        except MailNotConfiguredError:
            logger.warning("Mail not configured, %r to %s not sent", subject, to)
            return {"status": "not_configured", "to": to}
        except MailDeliveryError as e:
            logger.exception("Failed sending %r to %s", subject, to)
            return {"status": "failed", "to": to, "error": str(e)}
        logger.info("Email %r sent to %s", subject, to)
        return {"status": "sent", "to": to}

    def receipt_url(self, receipt_id: int) -> str:
        return f"{self.config.base_url.rstrip('/')}/recibo/{receipt_id}"

    async def send_receipt(self, receipt: Receipt) -> Dict[str, Any]:
        url = self.receipt_url(receipt.id)
        monto = format_amount(receipt.monto)
        subject = f"Recibo de pago #{receipt.id} | {BRAND}"
        inner = f"""
        <p style="margin:0 0 10px; color:#111827;">Hola {html.escape(receipt.nombre or '')},</p>
        <p style="margin:0 0 16px; color:#111827;">Aquí tienes tu comprobante de pago. Puedes abrirlo desde el siguiente enlace:</p>
        <p style="margin:0 0 18px;"><a href="{html.escape(url)}" style="display:inline-block; background:#111827; color:#ffffff; text-decoration:none; padding:10px 14px; border-radius:10px; font-weight:700;">Ver recibo #{receipt.id}</a></p>
        <table style="width:100%; border-collapse:collapse; border:1px solid #e5e7eb;">
          <tr><td style="padding:10px 12px; color:#6b7280; font-weight:700;">Concepto</td><td style="padding:10px 12px;">{html.escape(receipt.concepto or '')}</td></tr>
          <tr><td style="padding:10px 12px; color:#6b7280; font-weight:700;">Método</td><td style="padding:10px 12px;">{html.escape(receipt.metodo or '')}</td></tr>
          <tr><td style="padding:10px 12px; color:#6b7280; font-weight:700;">Monto</td><td style="padding:10px 12px; font-weight:800;">${html.escape(monto)}</td></tr>
        </table>
        <p style="margin:12px 0 0;"><a href="{html.escape(url)}/pdf">Descargar PDF</a></p>"""
        text = "\n".join([
            "Recibo de pago",
            f"Recibo #{receipt.id}",
            f"Concepto: {receipt.concepto}",
            f"Método: {receipt.metodo}",
            f"Monto: ${monto}",
            f"Link: {url}",
        ])
        return await self.deliver(receipt.email, subject, _layout("Recibo de pago", inner), text)

    async def send_tips(self, to: str, nombre: str, fecha_cita: str, mensaje: str) -> Dict[str, Any]:
        subject = f"Preparación para tu entrevista de visa | {BRAND}"
        inner = f"""
        <p style="margin:0 0 10px;">Hola {html.escape(nombre or '')},</p>
        <p style="margin:0 0 10px;">Tu cita está programada para el <strong>{html.escape(fecha_cita)}</strong>. Te compartimos algunas recomendaciones:</p>
        <div style="margin:0 0 10px; line-height:1.5;">{_paragraphs(mensaje)}</div>"""
        return await self.deliver(to, subject, _layout("Tips para tu entrevista", inner), mensaje)

    async def send_result(self, to: str, nombre: str, estado: str, mensaje: str) -> Dict[str, Any]:
        subject = f"Resultado de tu trámite de visa | {BRAND}"
        inner = f"""
        <p style="margin:0 0 10px;">Hola {html.escape(nombre or '')},</p>
        <p style="margin:0 0 10px;">Estado de tu visa: <strong>{html.escape(estado)}</strong></p>
        <div style="margin:0 0 10px; line-height:1.5;">{_paragraphs(mensaje)}</div>"""
        return await self.deliver(to, subject, _layout("Resultado de tu visa", inner), mensaje)

    async def send_password_reset(self, to: str, token: str) -> Dict[str, Any]:
        reset_link = f"{self.config.frontend_url.rstrip('/')}/reset-password?token={token}"
        minutes = self.config.reset_token_ttl_minutes
        subject = f"Restablecer contraseña - {BRAND}"
        inner = f"""
        <p>Has solicitado restablecer tu contraseña.</p>
        <p>Haz clic en el siguiente enlace para restablecerla (expira en {minutes} minutos):</p>
        <p><a href="{html.escape(reset_link)}">Restablecer contraseña</a></p>
        <p>Si no solicitaste el cambio, ignora este correo.</p>"""
        return await self.deliver(to, subject, _layout("Recuperar acceso", inner))

    async def send_lead_alert(self, lead: Lead) -> Dict[str, Any]:
        to = self.config.leads_notify_email
        if not to:
            logger.info("LEADS_NOTIFY_EMAIL not set, lead %s alert skipped", lead.id)
            return {"status": "not_configured", "to": None}
        subject = f"Nuevo cliente potencial: {lead.nombre}"
        inner = f"""
        <table style="width:100%; border-collapse:collapse;">
          <tr><td style="padding:6px 0; color:#6b7280; font-weight:700;">Nombre</td><td>{html.escape(lead.nombre or '')}</td></tr>
          <tr><td style="padding:6px 0; color:#6b7280; font-weight:700;">Email</td><td>{html.escape(lead.email or '')}</td></tr>
          <tr><td style="padding:6px 0; color:#6b7280; font-weight:700;">Teléfono</td><td>{html.escape(lead.telefono or '-')}</td></tr>
        </table>
        <div style="margin:12px 0 0; line-height:1.5;">{_paragraphs(lead.mensaje or '')}</div>"""
        return await self.deliver(to, subject, _layout("Nuevo cliente potencial", inner))


def get_notifier() -> Notifier:
    return Notifier(get_mail_provider(), settings)
