from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

from manual_service.api.deps import (
    get_blob_store,
    get_packager,
    get_repository,
    get_transfer_engine,
)
from manual_service.config import settings
from manual_service.core.rate_limit import limiter
from manual_service.schemas.bundle import BundlePayload
from manual_service.services.export_packager import ExportPackager, LocalBlobStore
from manual_service.services.pipeline import generate_bundle, package_bundle, transfer_bundle
from manual_service.services.repository import ServiceRepository
from manual_service.services.transfer_engine import TransferEngine, TransferResult

router = APIRouter(tags=["bundles"])

_CONTENT_TYPES = {
    ".bpmn": "application/xml",
    ".form": "application/json",
    ".json": "application/json",
    ".zip": "application/zip",
}


def _transfer_response(result: TransferResult) -> JSONResponse:
    return JSONResponse(status_code=200 if result.success else 207, content=result.to_dict())


@router.post("/services/{service_key}/bundle")
async def build_bundle(
    service_key: str,
    repository: ServiceRepository = Depends(get_repository),
    blob_store: LocalBlobStore = Depends(get_blob_store),
):
    bundle = await generate_bundle(repository, blob_store, service_key)
    return bundle.to_dict()


@router.post("/services/{service_key}/transfer")
@limiter.limit(settings.TRANSFER_RATE_LIMIT)
async def transfer_service(
    request: Request,
    service_key: str,
    repository: ServiceRepository = Depends(get_repository),
    blob_store: LocalBlobStore = Depends(get_blob_store),
    engine: TransferEngine = Depends(get_transfer_engine),
):
    bundle = await generate_bundle(repository, blob_store, service_key)
    result = await transfer_bundle(repository, engine, bundle)
    return _transfer_response(result)


@router.post("/services/{service_key}/export")
async def export_service(
    service_key: str,
    repository: ServiceRepository = Depends(get_repository),
    blob_store: LocalBlobStore = Depends(get_blob_store),
    packager: ExportPackager = Depends(get_packager),
):
    bundle = await generate_bundle(repository, blob_store, service_key)
    result = await package_bundle(repository, packager, bundle)
    return {**result.to_dict(), "warnings": bundle.warnings}


@router.get("/services/{service_key}/exports/latest")
async def latest_export(service_key: str, packager: ExportPackager = Depends(get_packager)):
    listing = await packager.latest_export(service_key)
    if listing is None:
        raise HTTPException(404, f"No exports for service '{service_key}'")
    return listing.to_dict()


@router.post("/bundles/transfer")
@limiter.limit(settings.TRANSFER_RATE_LIMIT)
async def transfer_payload(
    request: Request,
    body: BundlePayload,
    repository: ServiceRepository = Depends(get_repository),
    engine: TransferEngine = Depends(get_transfer_engine),
):
    """Transfer a bundle the client already holds (e.g. after local edits)."""
    result = await transfer_bundle(repository, engine, body.to_bundle())
    return _transfer_response(result)


@router.post("/bundles/export")
async def export_payload(
    body: BundlePayload,
    repository: ServiceRepository = Depends(get_repository),
    packager: ExportPackager = Depends(get_packager),
):
    result = await package_bundle(repository, packager, body.to_bundle())
    return result.to_dict()


@router.get("/exports/download")
async def download_export(
    bucket: str = Query(...),
    path: str = Query(...),
    expires: int = Query(...),
    signature: str = Query(...),
    blob_store: LocalBlobStore = Depends(get_blob_store),
):
    if not blob_store.verify_signature(bucket, path, expires, signature):
        raise HTTPException(403, "Invalid or expired download link")
    try:
        data = await blob_store.get(bucket, path)
    except ValueError:
        raise HTTPException(400, "Invalid blob path")
    filename = path.rsplit("/", 1)[-1]
    suffix = filename[filename.rfind("."):] if "." in filename else ""
    return Response(
        content=data,
        media_type=_CONTENT_TYPES.get(suffix, "application/octet-stream"),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
