from __future__ import annotations

from fastapi import APIRouter, Depends

from manual_service.api.deps import get_repository
from manual_service.schemas.mds import MdsImportRequest
from manual_service.services.mds_import import import_mds_rows
from manual_service.services.repository import ServiceRepository

router = APIRouter(prefix="/mds", tags=["mds"])


@router.post("/import")
async def import_rows(
    body: MdsImportRequest, repository: ServiceRepository = Depends(get_repository)
):
    summary = await import_mds_rows(repository, body.rows)
    return summary.to_dict()
