from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class StepDescriptionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    node_id: str = Field(alias="nodeId", min_length=1)
    description: str


class DescriptionUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    service_description: str | None = Field(default=None, alias="serviceDescription")
    steps: list[StepDescriptionIn] = []


class DraftRequest(BaseModel):
    save: bool = False


class AssessmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bpmn_xml: str = Field(alias="bpmnXml", min_length=1)
    manual_service: bool = Field(default=True, alias="manualService")
