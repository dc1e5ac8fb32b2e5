import os
import logging
import secrets
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from dotenv import load_dotenv

# carga .env de la raíz del proyecto (no pisa variables ya definidas)
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

logger = logging.getLogger("pillatuvisa.config")

MAIL_SMTP = "smtp"
MAIL_RESEND = "resend"
MAIL_DISABLED = "disabled"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not str(value).strip():
        return default
    return value.strip()


def _env_bool(name: str, default: str) -> bool:
    return (os.getenv(name, default) or "").lower() in ("1", "true", "yes")


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class MailSettings:
    """Proveedor de correo elegido una sola vez al arrancar."""

    kind: str
    sender: Optional[str] = None
    sender_name: str = "Pilla Tu Visa"
    timeout_seconds: float = 15.0
    # smtp
    server: Optional[str] = None
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    starttls: bool = True
    ssl_tls: bool = False
    # resend
    api_key: Optional[str] = None

    @property
    def configured(self) -> bool:
        return self.kind != MAIL_DISABLED


def resolve_mail_settings() -> MailSettings:
    requested = (_env("MAIL_PROVIDER") or "").lower()
    username = _env("MAIL_USERNAME")
    password = _env("MAIL_PASSWORD")
    server = _env("MAIL_SERVER")
    api_key = _env("RESEND_API_KEY")

    common = dict(
        sender=_env("MAIL_FROM", username),
        sender_name=_env("MAIL_FROM_NAME", "Pilla Tu Visa"),
        timeout_seconds=float(_env_int("MAIL_TIMEOUT_SECONDS", 15)),
    )

    if not requested:
        if api_key:
            requested = MAIL_RESEND
        elif server and username and password:
            requested = MAIL_SMTP
        else:
            requested = MAIL_DISABLED

    if requested == MAIL_RESEND:
        if not api_key or not common["sender"]:
            logger.warning("MAIL_PROVIDER=resend but RESEND_API_KEY/MAIL_FROM missing; mail disabled")
            return MailSettings(kind=MAIL_DISABLED, **common)
        return MailSettings(kind=MAIL_RESEND, api_key=api_key, **common)

    if requested == MAIL_SMTP:
        if not server or not username or not password or not common["sender"]:
            logger.warning("MAIL_PROVIDER=smtp but MAIL_SERVER/MAIL_USERNAME/MAIL_PASSWORD missing; mail disabled")
            return MailSettings(kind=MAIL_DISABLED, **common)
        return MailSettings(
            kind=MAIL_SMTP,
            server=server,
            port=_env_int("MAIL_PORT", 587),
            username=username,
            password=password,
            starttls=_env_bool("MAIL_TLS", "true"),
            ssl_tls=_env_bool("MAIL_SSL", "false"),
            **common,
        )

    if requested != MAIL_DISABLED:
        logger.warning("Unknown MAIL_PROVIDER=%r; mail disabled", requested)
    return MailSettings(kind=MAIL_DISABLED, **common)


def _cors_origins() -> List[str]:
    frontend_env = _env("FRONTEND_URL", "")
    if frontend_env:
        return [u.strip() for u in frontend_env.split(",") if u.strip()]
    # en desarrollo mantenemos localhost para Vite
    return [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


@dataclass
class Settings:
    database_url: str = "sqlite:///./dev.db"
    session_ttl_hours: int = 24
    reset_token_ttl_minutes: int = 60
    min_password_length: int = 8
    bcrypt_rounds: int = 12
    admin_username: str = "admin"
    admin_password: Optional[str] = None
    admin_email: Optional[str] = None
    receipts_dir: str = "./data/recibos"
    base_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:5173"
    cors_origins: List[str] = field(default_factory=list)
    leads_notify_email: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    ai_timeout_seconds: float = 20.0
    mail: MailSettings = field(default_factory=lambda: MailSettings(kind=MAIL_DISABLED))

    @classmethod
    def from_env(cls) -> "Settings":
        mail = resolve_mail_settings()
        frontend_first = (_env("FRONTEND_URL", "http://localhost:5173") or "").split(",")[0].strip()
        return cls(
            database_url=_env("DATABASE_URL", "sqlite:///./dev.db"),
            session_ttl_hours=_env_int("SESSION_TTL_HOURS", 24),
            reset_token_ttl_minutes=_env_int("RESET_TOKEN_TTL_MINUTES", 60),
            min_password_length=_env_int("MIN_PASSWORD_LENGTH", 8),
            bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 12),
            admin_username=_env("ADMIN_USERNAME", "admin"),
            admin_password=_env("ADMIN_PASSWORD"),
            admin_email=_env("ADMIN_EMAIL", mail.sender),
            receipts_dir=_env("RECEIPTS_DIR", "./data/recibos"),
            base_url=_env("BASE_URL", "http://localhost:8000"),
            frontend_url=frontend_first or "http://localhost:5173",
            cors_origins=_cors_origins(),
            leads_notify_email=_env("LEADS_NOTIFY_EMAIL", mail.sender),
            openai_api_key=_env("OPENAI_API_KEY"),
            openai_model=_env("OPENAI_MODEL", "gpt-4o-mini"),
            ai_timeout_seconds=float(_env_int("AI_TIMEOUT_SECONDS", 20)),
            mail=mail,
        )

    def bootstrap_admin_password(self) -> Tuple[str, bool]:
        """Devuelve (password, generada). Sin ADMIN_PASSWORD se genera una temporal."""
        if self.admin_password:
            return self.admin_password, False
        return secrets.token_urlsafe(12), True


settings = Settings.from_env()
