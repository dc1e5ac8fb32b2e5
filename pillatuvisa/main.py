"""
Pilla Tu Visa back-office API: FastAPI application entry-point.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from pillatuvisa.config import settings
from pillatuvisa.credentials import ensure_admin
from pillatuvisa.database import engine
from pillatuvisa.mailer import init_mail_provider
from pillatuvisa.migrations import run_migrations
from pillatuvisa.routers import admin_users, ai, auth, leads, notifications, receipts

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(name)-30s  %(levelname)-5s  %(message)s",
)
logger = logging.getLogger("pillatuvisa")


def _mask(v: Optional[str]) -> Optional[str]:
    if not v:
        return None
    s = str(v)
    return s if len(s) <= 6 else f"{s[:3]}...{s[-3:]}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "ENV check: DATABASE_URL=%s MAIL_PROVIDER=%s MAIL_FROM=%s OPENAI_API_KEY=%s",
        _mask(settings.database_url),
        settings.mail.kind,
        _mask(settings.mail.sender),
        _mask(settings.openai_api_key),
    )
    applied = run_migrations(engine, settings)
    if applied:
        logger.info("Migrations applied: %s", applied)
    with Session(engine) as db:
        ensure_admin(db, settings)
    init_mail_provider(settings.mail)

    # imprime rutas para verificar en consola
    for route in app.routes:
        if isinstance(route, APIRoute):
            methods = ",".join(sorted(route.methods))
            logger.info("Route: %s  methods: %s", route.path, methods)
    yield
    logger.info("Shutting down")


app = FastAPI(title="Pilla Tu Visa API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_body(message: str) -> dict:
    return {"ok": False, "error": True, "mensaje": message}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.info("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(status_code=400, content=_error_body("Faltan datos obligatorios o son inválidos"))


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body("Error al acceder a la base de datos"))


@app.get("/")
def root():
    return {"ok": True, "mensaje": "Pilla Tu Visa API funcionando"}


@app.get("/health")
def health():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check failed")
        raise HTTPException(status_code=503, detail="Base de datos no disponible")
    return {"ok": True, "db": "up"}


# Incluir routers
app.include_router(auth.router)
app.include_router(receipts.router)
app.include_router(notifications.router)
app.include_router(leads.router)
app.include_router(ai.router)
app.include_router(admin_users.router)
