from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from manual_service.api.deps import get_optional_text_generator, get_repository
from manual_service.exceptions import (
    MalformedInput,
    NoDiagram,
    ServiceNotFound,
    SubprocessNotFound,
)
from manual_service.schemas.diagram import (
    DiagramResponse,
    DiagramSave,
    GenerateDiagramsRequest,
    SubprocessDiagramResponse,
    SubprocessSummary,
)
from manual_service.services import bpmn_document as bpmn
from manual_service.services.bundle_builder import select_diagram_xml
from manual_service.services.diagram_generation import generate_diagrams
from manual_service.services.event_bus import event_bus
from manual_service.services.repository import ServiceRepository
from manual_service.services.text_generation import TextGenerator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/services/{service_key}/diagram", tags=["diagrams"])
subprocess_router = APIRouter(prefix="/services/{service_key}/subprocesses", tags=["diagrams"])


async def _read_with_recovery(
    edited: str | None,
    original: str | None,
    save_edited: Callable[[str | None], Awaitable[object]],
    label: str,
) -> tuple[str, str, bool]:
    """Authoritative diagram text, repairing or clearing a corrupted edited copy.

    A wrapped edited copy that can be stripped is saved back repaired; one
    that cannot be recovered is cleared so the original is served from now on.
    """
    try:
        xml, source = select_diagram_xml(edited, original)
    except NoDiagram:
        raise NoDiagram(label)

    if source == "edited-recovered":
        await save_edited(xml)
        return xml, source, True
    if source == "original" and edited:
        logger.warning("Clearing corrupted edited diagram of %s", label)
        await save_edited(None)
        return xml, source, True
    return xml, source, False


def _validated(xml: str) -> str:
    if bpmn.has_markup_wrapper(xml):
        xml = bpmn.unwrap_markup(xml)
    if bpmn.is_likely_corrupted(xml):
        raise MalformedInput("Diagram has lowercased BPMN element or attribute names")
    bpmn.parse(xml)
    return xml


@router.get("", response_model=DiagramResponse)
async def get_diagram(service_key: str, repository: ServiceRepository = Depends(get_repository)):
    """Authoritative diagram of a service."""
    service = await repository.get_service(service_key)
    if service is None:
        raise ServiceNotFound(service_key)

    async def save(xml):
        await repository.save_edited_diagram(service_key, xml)

    xml, source, recovered = await _read_with_recovery(
        service.edited_bpmn_xml, service.original_bpmn_xml, save, service_key
    )
    return DiagramResponse(
        service_key=service_key, bpmn_xml=xml, source=source, recovered=recovered
    )


@router.put("", response_model=DiagramResponse)
async def save_diagram(
    service_key: str,
    body: DiagramSave,
    repository: ServiceRepository = Depends(get_repository),
):
    xml = _validated(body.bpmn_xml)
    service = await repository.save_edited_diagram(service_key, xml)
    if service is None:
        raise ServiceNotFound(service_key)

    event_bus.publish(
        "diagram.saved",
        service_key,
        {"service_key": service_key, "length": len(xml)},
        origin=body.origin,
    )
    return DiagramResponse(service_key=service_key, bpmn_xml=xml, source="edited")


@router.post("/generate")
async def generate(
    service_key: str,
    body: GenerateDiagramsRequest | None = None,
    repository: ServiceRepository = Depends(get_repository),
    text_generator: TextGenerator | None = Depends(get_optional_text_generator),
):
    """(Re)generate the original main and subprocess diagrams from master data.

    Edited copies are kept; they stay authoritative until cleared.
    """
    draft = body.draft if body else False
    if draft and text_generator is None:
        raise HTTPException(status_code=503, detail="Text generation is not configured")
    summary = await generate_diagrams(
        repository, service_key, text_generator=text_generator if draft else None
    )
    return summary.to_dict()


@router.get("/events")
async def diagram_events(
    request: Request,
    service_key: str,
    origin: str | None = Query(None),
):
    """SSE stream of saves to this diagram, excluding the caller's own writes."""
    sub_id, queue = event_bus.subscribe(service_key, origin)

    async def generate():
        async for data in event_bus.stream(sub_id, queue):
            if await request.is_disconnected():
                break
            yield data

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# Subprocess diagrams
# ---------------------------------------------------------------------------


async def _service_id(repository: ServiceRepository, service_key: str) -> uuid.UUID:
    service = await repository.get_service(service_key)
    if service is None:
        raise ServiceNotFound(service_key)
    return service.id


@subprocess_router.get("", response_model=list[SubprocessSummary])
async def list_subprocesses(
    service_key: str, repository: ServiceRepository = Depends(get_repository)
):
    service_id = await _service_id(repository, service_key)
    return [
        SubprocessSummary(
            id=str(sub.id),
            name=sub.name,
            step_external_id=sub.step_external_id,
            edited=bool(sub.edited_bpmn_xml),
        )
        for sub in await repository.list_subprocesses(service_id)
    ]


@subprocess_router.get("/{subprocess_id}/diagram", response_model=SubprocessDiagramResponse)
async def get_subprocess_diagram(
    service_key: str,
    subprocess_id: uuid.UUID,
    repository: ServiceRepository = Depends(get_repository),
):
    service_id = await _service_id(repository, service_key)
    sub = await repository.get_subprocess(service_id, subprocess_id)
    if sub is None:
        raise SubprocessNotFound(str(subprocess_id))

    async def save(xml):
        await repository.save_edited_subprocess_diagram(service_id, subprocess_id, xml)

    xml, source, recovered = await _read_with_recovery(
        sub.edited_bpmn_xml, sub.original_bpmn_xml, save, f"{service_key}/{sub.name}"
    )
    return SubprocessDiagramResponse(
        service_key=service_key,
        subprocess_id=str(subprocess_id),
        name=sub.name,
        step_external_id=sub.step_external_id,
        bpmn_xml=xml,
        source=source,
        recovered=recovered,
    )


@subprocess_router.put("/{subprocess_id}/diagram", response_model=SubprocessDiagramResponse)
async def save_subprocess_diagram(
    service_key: str,
    subprocess_id: uuid.UUID,
    body: DiagramSave,
    repository: ServiceRepository = Depends(get_repository),
):
    xml = _validated(body.bpmn_xml)
    service_id = await _service_id(repository, service_key)
    sub = await repository.save_edited_subprocess_diagram(service_id, subprocess_id, xml)
    if sub is None:
        raise SubprocessNotFound(str(subprocess_id))

    event_bus.publish(
        "subprocess.saved",
        str(subprocess_id),
        {"service_key": service_key, "subprocess_id": str(subprocess_id), "length": len(xml)},
        origin=body.origin,
    )
    return SubprocessDiagramResponse(
        service_key=service_key,
        subprocess_id=str(subprocess_id),
        name=sub.name,
        step_external_id=sub.step_external_id,
        bpmn_xml=xml,
        source="edited",
    )
