from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response

from manual_service.api.deps import get_blob_store, get_repository
from manual_service.config import settings
from manual_service.services.export_packager import LocalBlobStore
from manual_service.services.repository import ServiceRepository
from manual_service.services.template_engine import TEMPLATE_NAMES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/templates", tags=["templates"])


def _check_name(name: str) -> None:
    if name not in TEMPLATE_NAMES:
        raise HTTPException(404, f"Unknown template '{name}'; expected one of {', '.join(TEMPLATE_NAMES)}")


@router.put("/{name}")
async def upload_template(
    name: str,
    request: Request,
    repository: ServiceRepository = Depends(get_repository),
    blob_store: LocalBlobStore = Depends(get_blob_store),
):
    """Store a form template. The body is the raw form JSON."""
    _check_name(name)
    raw = await request.body()
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(400, "Template is not valid JSON")
    if not isinstance(data, dict) or not isinstance(data.get("components"), list):
        raise HTTPException(400, "Template must be a form object with a components list")

    file_name = f"{name.lower()}.form"
    await blob_store.put(
        settings.TEMPLATES_BUCKET,
        file_name,
        json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8"),
        "application/json",
    )
    await repository.upsert_form_template(name, file_name)
    return {"templateName": name, "fileName": file_name, "components": len(data["components"])}


@router.get("/{name}")
async def download_template(
    name: str,
    repository: ServiceRepository = Depends(get_repository),
    blob_store: LocalBlobStore = Depends(get_blob_store),
):
    _check_name(name)
    row = await repository.get_form_template(name)
    if row is None:
        raise HTTPException(404, f"Template '{name}' is not configured")
    data = await blob_store.get(settings.TEMPLATES_BUCKET, row.file_name)
    return Response(content=data, media_type="application/json")


@router.delete("/{name}", status_code=204)
async def delete_template(
    name: str,
    repository: ServiceRepository = Depends(get_repository),
    blob_store: LocalBlobStore = Depends(get_blob_store),
):
    """Remove a template; bundles fall back to the built-in skeleton afterwards."""
    _check_name(name)
    row = await repository.get_form_template(name)
    if row is None:
        raise HTTPException(404, f"Template '{name}' is not configured")
    if not await blob_store.delete(settings.TEMPLATES_BUCKET, row.file_name):
        logger.warning("Template file %s was already missing", row.file_name)
    await repository.delete_form_template(name)
