from __future__ import annotations

from pydantic import BaseModel


class DiagramSave(BaseModel):
    bpmn_xml: str
    origin: str | None = None  # writer's tab / client tag, echoed back to other subscribers


class DiagramResponse(BaseModel):
    service_key: str
    bpmn_xml: str
    source: str
    recovered: bool = False


class SubprocessDiagramResponse(DiagramResponse):
    subprocess_id: str
    name: str
    step_external_id: str | None = None


class SubprocessSummary(BaseModel):
    id: str
    name: str
    step_external_id: str | None = None
    edited: bool = False


class GenerateDiagramsRequest(BaseModel):
    draft: bool = False  # ask the text-generation collaborator before the built-in layout
