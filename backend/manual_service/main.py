from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import inspect as sa_inspect
from sqlalchemy import text

from manual_service.api.v1.router import api_router
from manual_service.config import APP_VERSION, _DEFAULT_SECRET_KEYS, settings
from manual_service.core.logging_config import configure_logging
from manual_service.core.metrics import app_info
from manual_service.core.rate_limit import limiter
from manual_service.database import engine
from manual_service.exceptions import PipelineError
from manual_service.models import Base

logger = logging.getLogger(__name__)

ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"


def check_secret_key(secret_key: str, environment: str) -> None:
    """Refuse to sign download links with a well-known key outside development."""
    if secret_key not in _DEFAULT_SECRET_KEYS:
        return
    if environment != "development":
        raise RuntimeError(
            "SECRET_KEY must be set to a strong random value in production. "
            'Generate one with: python -c "import secrets; print(secrets.token_urlsafe(64))"'
        )
    logger.warning("Using default SECRET_KEY, acceptable for development only.")


def _run_alembic_stamp(alembic_cfg, revision):
    from alembic import command
    command.stamp(alembic_cfg, revision)


def _run_alembic_upgrade(alembic_cfg, revision):
    from alembic import command
    command.upgrade(alembic_cfg, revision)


def alembic_config():
    from alembic.config import Config

    return Config(str(ALEMBIC_INI))


def schema_action(reset: bool, has_alembic: bool, alembic_version: str | None) -> str:
    """How to bring the schema up to date: ``reset``, ``create`` or ``upgrade``."""
    if reset:
        return "reset"
    if not has_alembic or alembic_version is None:
        return "create"
    return "upgrade"


async def prepare_schema(reset: bool) -> None:
    """Create or migrate the schema.

    Fresh (or pre-Alembic) databases get every table from the models and are
    stamped at head. Existing ones run pending migrations first, then
    ``create_all`` picks up tables that are new in this release.
    """
    async with engine.connect() as conn:
        has_alembic = await conn.run_sync(
            lambda sync_conn: sa_inspect(sync_conn).has_table("alembic_version")
        )
        alembic_version = None
        if has_alembic:
            row = await conn.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))
            first = row.first()
            alembic_version = first[0] if first else None

    action = schema_action(reset, has_alembic, alembic_version)
    cfg = alembic_config()
    if action == "upgrade":
        logger.info("Upgrading schema from revision %s", alembic_version)
        try:
            await asyncio.to_thread(_run_alembic_upgrade, cfg, "head")
        except Exception:
            logger.exception("Alembic migration failed")
            raise

    async with engine.begin() as conn:
        if action == "reset":
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    if action != "upgrade":
        await asyncio.to_thread(_run_alembic_stamp, cfg, "head")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.ENVIRONMENT, settings.LOG_LEVEL)
    app_info.info({"version": APP_VERSION, "environment": settings.ENVIRONMENT})

    check_secret_key(settings.SECRET_KEY, settings.ENVIRONMENT)

    await prepare_schema(settings.RESET_DB)

    if not settings.camunda_configured:
        logger.info("Camunda credentials not set; transfer endpoints will answer 503")

    yield

    await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url=None,
    openapi_url="/api/openapi.json" if settings.ENVIRONMENT == "development" else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type"],
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if exc.client:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    else:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": type(exc).__name__, "detail": exc.message},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "ValidationError", "detail": jsonable_errors(exc)},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "InternalError", "detail": str(exc) or type(exc).__name__},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/health")
async def health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
