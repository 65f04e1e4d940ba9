from __future__ import annotations

from fastapi import APIRouter, Depends

from manual_service.api.deps import get_repository, get_text_generator
from manual_service.config import settings
from manual_service.exceptions import NoDiagram, ServiceNotFound
from manual_service.schemas.description import AssessmentRequest, DescriptionUpsert, DraftRequest
from manual_service.services import bpmn_document as bpmn
from manual_service.services.bundle_builder import select_diagram_xml
from manual_service.services.description_resolver import (
    DescriptionResolver,
    clamp_two_sentences,
    load_service_knowledge,
)
from manual_service.services.repository import ServiceRepository
from manual_service.services.text_generation import TextGenerator

router = APIRouter(tags=["descriptions"])


@router.put("/services/{service_key}/descriptions")
async def upsert_descriptions(
    service_key: str,
    body: DescriptionUpsert,
    repository: ServiceRepository = Depends(get_repository),
):
    max_chars = settings.DESCRIPTION_MAX_CHARS
    saved = 0
    if body.service_description is not None:
        await repository.upsert_description(
            service_key, None, clamp_two_sentences(body.service_description, max_chars)
        )
        saved += 1
    for step in body.steps:
        await repository.upsert_description(
            service_key, step.node_id, clamp_two_sentences(step.description, max_chars)
        )
        saved += 1
    return {"serviceKey": service_key, "saved": saved}


@router.post("/services/{service_key}/descriptions/draft")
async def draft_descriptions(
    service_key: str,
    body: DraftRequest,
    repository: ServiceRepository = Depends(get_repository),
    generator: TextGenerator = Depends(get_text_generator),
):
    """Draft descriptions for every task and call activity of the diagram.

    Steps are keyed by their master-data step key when one resolves, else
    by element id, matching how bundle generation looks them up.
    """
    service = await repository.get_service(service_key)
    if service is None:
        raise ServiceNotFound(service_key)
    try:
        xml, _source = select_diagram_xml(service.edited_bpmn_xml, service.original_bpmn_xml)
    except NoDiagram:
        raise NoDiagram(service_key)

    doc = bpmn.parse(xml)
    resolver = DescriptionResolver(await load_service_knowledge(repository, service_key))
    steps = []
    for node in bpmn.find_elements_ordered(doc, (bpmn.USER_TASK, bpmn.CALL_ACTIVITY)):
        key = resolver.resolve_step_key(node) or node.element_id
        steps.append((key, node.display_name))

    max_chars = settings.DESCRIPTION_MAX_CHARS
    drafts = await generator.draft_descriptions(service.name, steps, max_chars)
    if body.save:
        if drafts.service_description:
            await repository.upsert_description(service_key, None, drafts.service_description)
        for node_id, text in drafts.steps.items():
            await repository.upsert_description(service_key, node_id, text)

    return {
        "serviceKey": service_key,
        "serviceDescription": drafts.service_description,
        "steps": [{"nodeId": k, "description": v} for k, v in drafts.steps.items()],
        "saved": body.save,
    }


@router.post("/assessments/bpmn")
async def assess_bpmn(
    body: AssessmentRequest, generator: TextGenerator = Depends(get_text_generator)
):
    bpmn.parse(body.bpmn_xml)
    assessment = await generator.assess_bpmn(body.bpmn_xml, body.manual_service)
    return {"assessment": assessment}
