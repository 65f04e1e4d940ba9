"""Request-scoped collaborators.

Each provider is a plain FastAPI dependency so tests can swap it through
``app.dependency_overrides``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException

from manual_service.config import settings
from manual_service.database import async_session
from manual_service.services.export_packager import ExportPackager, LocalBlobStore
from manual_service.services.repository import ServiceRepository
from manual_service.services.text_generation import TextGenerator
from manual_service.services.transfer_engine import (
    CamundaModelerClient,
    TokenCache,
    TransferEngine,
)

# Shared across requests so a token survives until it nears expiry
_token_cache = TokenCache(margin_seconds=settings.TOKEN_EXPIRY_MARGIN_SECONDS)


def get_repository() -> ServiceRepository:
    return ServiceRepository(async_session)


def get_blob_store() -> LocalBlobStore:
    return LocalBlobStore.from_settings()


def get_packager(blob_store: LocalBlobStore = Depends(get_blob_store)) -> ExportPackager:
    return ExportPackager(blob_store)


async def get_transfer_engine() -> AsyncGenerator[TransferEngine, None]:
    if not settings.camunda_configured:
        raise HTTPException(status_code=503, detail="Transfer target is not configured")
    client = CamundaModelerClient.from_settings(token_cache=_token_cache)
    try:
        yield TransferEngine(client)
    finally:
        await client.close()


def get_text_generator() -> TextGenerator:
    if not settings.ANTHROPIC_API_KEY:
        raise HTTPException(status_code=503, detail="Text generation is not configured")
    return TextGenerator.from_settings()


def get_optional_text_generator() -> TextGenerator | None:
    if not settings.ANTHROPIC_API_KEY:
        return None
    return TextGenerator.from_settings()
