"""Pydantic request/response schemas for the ESGFlow API."""
from __future__ import annotations

import re
from datetime import date
from typing import Any

from pydantic import BaseModel, Field, field_validator


class IndicatorCreate(BaseModel):
    code: str
    name: str
    category: str
    data_type: str = "numeric"
    unit: str = ""
    guidance: str = ""
    choices: list[Any] = []
    validation_rules: dict[str, Any] = {}

    @field_validator("code")
    @classmethod
    def code_must_be_safe(cls, v: str) -> str:
        if not re.match(r"^[A-Za-z0-9_.-]+$", v):
            raise ValueError("code must contain only letters, numbers, dots, hyphens, and underscores")
        return v


class IndicatorOut(BaseModel):
    id: int
    code: str
    name: str
    category: str
    data_type: str
    unit: str
    guidance: str
    choices: list[Any] = []
    validation_rules: dict[str, Any] = {}


class CompletenessOut(BaseModel):
    environmental: int
    social: int
    governance: int
    overall: int


class InitiativeCreate(BaseModel):
    name: str
    initiative_type: str
    description: str = ""
    period_start: date
    period_end: date
    due_date: date | None = None
    stakeholder_groups: list[str]
    indicator_ids: list[int] = []


class InitiativeOut(BaseModel):
    id: int
    organization_id: str
    name: str
    initiative_type: str
    description: str
    period_start: str
    period_end: str
    due_date: str | None = None
    stakeholder_groups: list[str] = []
    progress_percentage: int
    status: str
    completeness: CompletenessOut
    total_requests: int = 0
    approved_requests: int = 0


class InitiativeListResponse(BaseModel):
    items: list[InitiativeOut]
    total: int


class FanOutRequest(BaseModel):
    indicator_ids: list[int]
    # Defaults to the initiative's own stakeholder groups.
    stakeholder_groups: list[str] | None = None


class DataRequestOut(BaseModel):
    id: int
    initiative_id: int
    indicator_id: int
    indicator_code: str
    indicator_name: str
    category: str
    data_type: str
    stakeholder_group: str
    reporting_period: str
    due_date: str | None = None
    status: str


class RequestKeyOut(BaseModel):
    initiative_id: int
    indicator_id: int
    stakeholder_group: str


class FanOutResult(BaseModel):
    created: list[DataRequestOut]
    skipped: list[RequestKeyOut]


class InitiativeCreated(InitiativeOut):
    fan_out: FanOutResult | None = None


class DraftSave(BaseModel):
    payload: dict[str, Any]


class DraftOut(BaseModel):
    data_request_id: int
    contributor_id: str
    payload: dict[str, Any]
    saved_at: str
    saved: bool = False


class ContributionCreate(BaseModel):
    # Omitted fields fall back to the contributor's saved draft.
    value: Any = None
    unit: str | None = None
    notes: str | None = None
    supporting_documents: list[str] | None = None


class ContributionOut(BaseModel):
    id: int
    data_request_id: int
    contributor_id: str
    value: Any = None
    unit: str
    notes: str
    supporting_documents: list[str] = []
    verification_status: str
    reviewer_id: str | None = None
    reviewer_notes: str | None = None
    submitted_at: str
    reviewed_at: str | None = None


class ReviewRequest(BaseModel):
    decision: str
    notes: str | None = None


class ReviewOut(BaseModel):
    contribution: ContributionOut
    completeness: CompletenessOut | None = None


class ReportRequest(BaseModel):
    threshold: int | None = Field(None, ge=0, le=100)


class ReportOut(BaseModel):
    id: int
    initiative_id: int
    name: str
    completeness: CompletenessOut
    content_type: str
    created_at: str | None = None
    content: str | None = None


class StatusOut(BaseModel):
    initiative_id: int
    progress_percentage: int
    due_date: str | None = None
    status: str


class StatsOut(BaseModel):
    active_initiatives: int
    average_collection_rate: int
    completed_initiatives: int
    by_status: dict[str, int]


class ImportResult(BaseModel):
    total_rows: int
    created: int
    updated: int
    skipped: int
    errors: list[str] = []
