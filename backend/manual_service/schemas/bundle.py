from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from manual_service.exceptions import MalformedInput
from manual_service.services import bpmn_document as bpmn
from manual_service.services.bundle_builder import Bundle, FormArtifact, SubprocessFile


def _plain_filename(value: str) -> str:
    if not value or "/" in value or "\\" in value or value in (".", "..") or ".." in value:
        raise ValueError("must be a plain file name")
    return value


def _well_formed_bpmn(value: str) -> str:
    if bpmn.is_likely_corrupted(value):
        raise ValueError("has lowercased BPMN element or attribute names")
    try:
        bpmn.parse(value)
    except MalformedInput as exc:
        raise ValueError(exc.message) from None
    return value


class SubprocessFilePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str
    xml: str
    name: str = ""
    step_key: str | None = Field(default=None, alias="stepKey")
    task_name: str | None = Field(default=None, alias="taskName")

    _check_filename = field_validator("filename")(_plain_filename)
    _check_xml = field_validator("xml")(_well_formed_bpmn)


class FormPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    node_id: str = Field(alias="nodeId")
    name: str
    filename: str
    form_id: str = Field(alias="formId")
    template_type: str = Field(default="task", alias="templateType")
    content: dict[str, Any]

    _check_filename = field_validator("filename")(_plain_filename)


class BundlePayload(BaseModel):
    """A bundle supplied by the client, in the shape returned by the bundle endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    service_key: str = Field(alias="serviceKey", min_length=1)
    service_name: str = Field(alias="serviceName", min_length=1)
    main_xml: str = Field(alias="mainXml", min_length=1)
    subprocesses: list[SubprocessFilePayload] = []
    forms: list[FormPayload] = []
    manifest: dict[str, Any] = {}
    warnings: list[str] = []

    @field_validator("service_key")
    @classmethod
    def _plain_key(cls, value: str) -> str:
        return _plain_filename(value)

    _check_main_xml = field_validator("main_xml")(_well_formed_bpmn)

    def to_bundle(self) -> Bundle:
        return Bundle(
            service_key=self.service_key,
            service_name=self.service_name,
            main_xml=self.main_xml,
            subprocesses=[
                SubprocessFile(
                    filename=s.filename,
                    xml=s.xml,
                    name=s.name,
                    step_key=s.step_key,
                    task_name=s.task_name,
                )
                for s in self.subprocesses
            ],
            forms=[
                FormArtifact(
                    node_id=f.node_id,
                    name=f.name,
                    filename=f.filename,
                    form_id=f.form_id,
                    template_type=f.template_type,
                    content=f.content,
                )
                for f in self.forms
            ],
            manifest=self.manifest,
            warnings=self.warnings,
        )
