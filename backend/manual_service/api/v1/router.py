from fastapi import APIRouter

from manual_service.api.v1.bundles import router as bundles_router
from manual_service.api.v1.descriptions import router as descriptions_router
from manual_service.api.v1.diagrams import router as diagrams_router
from manual_service.api.v1.diagrams import subprocess_router
from manual_service.api.v1.mds import router as mds_router
from manual_service.api.v1.templates import router as templates_router

api_router = APIRouter()
api_router.include_router(bundles_router)
api_router.include_router(diagrams_router)
api_router.include_router(subprocess_router)
api_router.include_router(descriptions_router)
api_router.include_router(mds_router)
api_router.include_router(templates_router)
