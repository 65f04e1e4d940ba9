from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class MdsRow(BaseModel):
    """One master-data row as exported from the upstream step catalogue."""

    model_config = ConfigDict(populate_by_name=True)

    service_external_id: str = Field(min_length=1)
    service_name: str = ""
    performing_team: str | None = None
    performer_org: str | None = None
    step_external_id: str = Field(min_length=1)
    step_name: str = ""
    step_type: str | None = Field(default=None, alias="type")
    candidate_group: str | None = None
    sop_urls: str | None = None
    decision_sheet_urls: str | None = None
    document_urls: str | None = None
    document_name: str | None = None
    process_step: int | None = None


class MdsImportRequest(BaseModel):
    rows: list[MdsRow] = Field(min_length=1)
