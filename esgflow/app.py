from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Generator

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.orm import Session

from esgflow import __version__
from esgflow.config import Settings, get_settings
from esgflow.db import get_session, init_db
from esgflow.errors import (
    AuthorizationError,
    ConflictError,
    ESGFlowError,
    InsufficientDataError,
    NotFoundError,
    ValidationError,
)
from esgflow.importer import import_indicators_xlsx
from esgflow.notifications import Dispatcher, build_dispatcher
from esgflow.repository import SqlRepository
from esgflow.schemas import (
    CompletenessOut,
    ContributionCreate,
    ContributionOut,
    DataRequestOut,
    DraftOut,
    DraftSave,
    FanOutRequest,
    FanOutResult,
    ImportResult,
    IndicatorCreate,
    IndicatorOut,
    InitiativeCreate,
    InitiativeCreated,
    InitiativeListResponse,
    InitiativeOut,
    ReportOut,
    ReportRequest,
    ReviewOut,
    ReviewRequest,
    StatsOut,
    StatusOut,
)
from esgflow.services import (
    Workflow,
    contribution_summary,
    data_request_summary,
    draft_summary,
    fan_out_summary,
    indicator_summary,
    report_summary,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    init_db(settings.database_path)
    app.state.dispatcher = build_dispatcher(settings)
    yield
    close = getattr(app.state.dispatcher, "close", None)
    if close is not None:
        close()


app = FastAPI(
    title="ESGFlow",
    version=__version__,
    description=(
        "ESG initiative workflow API. Create initiatives, fan out data requests to "
        "stakeholder groups, collect and verify contributions, and compile reports "
        "once enough data is approved. Callers identify themselves with the "
        "X-Organization-Id, X-Contributor-Id and X-Reviewer headers."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Indicators", "description": "ESG indicator catalog."},
        {"name": "Initiatives", "description": "Create and track initiatives and their progress."},
        {"name": "Data Requests", "description": "Fan out and list data requests per initiative."},
        {"name": "Drafts", "description": "Autosaved in-progress answers, one per contributor and request."},
        {"name": "Contributions", "description": "Submit and review stakeholder contributions."},
        {"name": "Reports", "description": "Completeness-gated report compilation."},
        {"name": "Stats", "description": "Dashboard hero metrics."},
    ],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_CODES: tuple[tuple[type[ESGFlowError], int], ...] = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
)


@app.exception_handler(InsufficientDataError)
async def insufficient_data_handler(request: Request, exc: InsufficientDataError):
    return JSONResponse(status_code=422, content={"detail": str(exc), **exc.to_dict()})


@app.exception_handler(ESGFlowError)
async def esgflow_error_handler(request: Request, exc: ESGFlowError):
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    log.error("Unhandled workflow error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_workflow(
    session: Session = Depends(db_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
) -> Workflow:
    return Workflow(SqlRepository(session), dispatcher, settings)


def organization_id(x_organization_id: str = Header(..., description="Tenant scope for every request")) -> str:
    if not x_organization_id.strip():
        raise HTTPException(400, "X-Organization-Id header is required")
    return x_organization_id.strip()


def contributor_id(x_contributor_id: str = Header(..., description="Calling user")) -> str:
    if not x_contributor_id.strip():
        raise HTTPException(400, "X-Contributor-Id header is required")
    return x_contributor_id.strip()


def is_reviewer(x_reviewer: str | None = Header(None, description="'true' when the caller holds the reviewer role")) -> bool:
    return (x_reviewer or "").strip().lower() in ("true", "1", "yes")


# ---------------------------------------------------------------------------
# Routes: Indicators
# ---------------------------------------------------------------------------


@app.get("/api/indicators", response_model=list[IndicatorOut],
         tags=["Indicators"], summary="List indicators, optionally by ESG category")
async def list_indicators(
    category: str | None = Query(None, description="environmental, social or governance"),
    workflow: Workflow = Depends(get_workflow),
):
    return [indicator_summary(i) for i in workflow.repo.list_indicators(category)]


@app.post("/api/indicators", response_model=IndicatorOut, status_code=201,
          tags=["Indicators"], summary="Add an indicator to the catalog")
async def create_indicator(body: IndicatorCreate, workflow: Workflow = Depends(get_workflow)):
    return indicator_summary(workflow.create_indicator(**body.model_dump()))


@app.post("/api/indicators/import", response_model=ImportResult,
          tags=["Indicators"], summary="Import indicators from an XLSX spreadsheet")
async def import_indicators(file: UploadFile = File(...), session: Session = Depends(db_session)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_indicators_xlsx(tmp_path, session)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Routes: Initiatives
# ---------------------------------------------------------------------------


@app.get("/api/initiatives", response_model=InitiativeListResponse,
         tags=["Initiatives"], summary="List initiatives with live progress and status")
async def list_initiatives(
    status: str | None = Query(None, description="no_deadline, overdue, on_track or at_risk"),
    sort_by: str = Query("due_date", description="Sort field: name, progress, due_date"),
    org: str = Depends(organization_id),
    workflow: Workflow = Depends(get_workflow),
):
    items = workflow.list_initiatives(org, status=status, sort_by=sort_by)
    return {"items": items, "total": len(items)}


@app.post("/api/initiatives", response_model=InitiativeCreated, status_code=201,
          tags=["Initiatives"], summary="Create an initiative, optionally fanning out data requests")
async def create_initiative(
    body: InitiativeCreate,
    org: str = Depends(organization_id),
    x_contributor_id: str | None = Header(None),
    workflow: Workflow = Depends(get_workflow),
):
    initiative, result = workflow.create_initiative(
        org, body.name, body.initiative_type, body.period_start, body.period_end,
        body.stakeholder_groups, due_date=body.due_date, description=body.description,
        created_by=(x_contributor_id or "").strip(), indicator_ids=body.indicator_ids,
    )
    data = workflow.initiative_summary(initiative)
    data["fan_out"] = fan_out_summary(result) if result is not None else None
    return data


@app.get("/api/initiatives/{initiative_id}", response_model=InitiativeOut,
         tags=["Initiatives"], summary="Get an initiative with its live progress and status")
async def get_initiative(initiative_id: int, org: str = Depends(organization_id),
                         workflow: Workflow = Depends(get_workflow)):
    return workflow.initiative_summary(workflow.get_initiative(org, initiative_id))


@app.get("/api/initiatives/{initiative_id}/completeness", response_model=CompletenessOut,
         tags=["Initiatives"], summary="Per-category and overall completeness percentages")
async def get_completeness(initiative_id: int, org: str = Depends(organization_id),
                           workflow: Workflow = Depends(get_workflow)):
    return workflow.compute_completeness(org, initiative_id).to_dict()


@app.get("/api/initiatives/{initiative_id}/status", response_model=StatusOut,
         tags=["Initiatives"], summary="Derived deadline status")
async def get_status(initiative_id: int, org: str = Depends(organization_id),
                     workflow: Workflow = Depends(get_workflow)):
    initiative = workflow.get_initiative(org, initiative_id)
    progress = workflow.compute_completeness(org, initiative_id).overall
    return {
        "initiative_id": initiative.id, "progress_percentage": progress,
        "due_date": initiative.due_date.isoformat() if initiative.due_date else None,
        "status": workflow.derive_status(progress, initiative.due_date),
    }


# ---------------------------------------------------------------------------
# Routes: Data Requests
# ---------------------------------------------------------------------------


@app.post("/api/initiatives/{initiative_id}/data-requests", response_model=FanOutResult,
          tags=["Data Requests"], summary="Fan out data requests (idempotent per key)")
async def fan_out(initiative_id: int, body: FanOutRequest, org: str = Depends(organization_id),
                  workflow: Workflow = Depends(get_workflow)):
    result = workflow.fan_out_data_requests(org, initiative_id, body.indicator_ids, body.stakeholder_groups)
    return fan_out_summary(result)


@app.get("/api/initiatives/{initiative_id}/data-requests", response_model=list[DataRequestOut],
         tags=["Data Requests"], summary="List data requests for an initiative")
async def list_data_requests(
    initiative_id: int,
    status: str | None = Query(None, description="pending, submitted or approved"),
    org: str = Depends(organization_id),
    workflow: Workflow = Depends(get_workflow),
):
    return [data_request_summary(r) for r in workflow.list_data_requests(org, initiative_id, status)]


# ---------------------------------------------------------------------------
# Routes: Drafts
# ---------------------------------------------------------------------------


@app.put("/api/data-requests/{data_request_id}/draft", response_model=DraftOut,
         tags=["Drafts"], summary="Save the caller's draft (overwrites, last write wins)")
async def save_draft(data_request_id: int, body: DraftSave, org: str = Depends(organization_id),
                     contributor: str = Depends(contributor_id), workflow: Workflow = Depends(get_workflow)):
    draft = workflow.save_draft(org, data_request_id, contributor, body.payload)
    return draft_summary(draft, saved=True)


@app.get("/api/data-requests/{data_request_id}/draft", response_model=DraftOut,
         tags=["Drafts"], summary="Load the caller's draft")
async def get_draft(data_request_id: int, org: str = Depends(organization_id),
                    contributor: str = Depends(contributor_id), workflow: Workflow = Depends(get_workflow)):
    return draft_summary(workflow.get_draft(org, data_request_id, contributor))


@app.delete("/api/data-requests/{data_request_id}/draft",
            tags=["Drafts"], summary="Discard the caller's draft")
async def delete_draft(data_request_id: int, org: str = Depends(organization_id),
                       contributor: str = Depends(contributor_id), workflow: Workflow = Depends(get_workflow)):
    return {"ok": workflow.discard_draft(org, data_request_id, contributor)}


# ---------------------------------------------------------------------------
# Routes: Contributions
# ---------------------------------------------------------------------------


@app.post("/api/data-requests/{data_request_id}/contributions", response_model=ContributionOut, status_code=201,
          tags=["Contributions"], summary="Submit a contribution; omitted fields come from the draft")
async def submit_contribution(data_request_id: int, body: ContributionCreate, org: str = Depends(organization_id),
                              contributor: str = Depends(contributor_id), workflow: Workflow = Depends(get_workflow)):
    contribution = workflow.submit_contribution(org, data_request_id, contributor, **body.model_dump(exclude_unset=True))
    return contribution_summary(contribution)


@app.get("/api/contributions", response_model=list[ContributionOut],
         tags=["Contributions"], summary="Review queue: contributions by verification status")
async def list_contributions(
    status: str | None = Query("pending", description="pending, approved or rejected; empty for all"),
    org: str = Depends(organization_id),
    workflow: Workflow = Depends(get_workflow),
):
    return [contribution_summary(c) for c in workflow.list_contributions(org, status or None)]


@app.post("/api/contributions/{contribution_id}/review", response_model=ReviewOut,
          tags=["Contributions"], summary="Approve or reject a pending contribution (reviewers only)")
async def review_contribution(
    contribution_id: int,
    body: ReviewRequest,
    org: str = Depends(organization_id),
    reviewer: str = Depends(contributor_id),
    reviewer_role: bool = Depends(is_reviewer),
    workflow: Workflow = Depends(get_workflow),
):
    outcome = workflow.review_contribution(org, contribution_id, reviewer, reviewer_role, body.decision, body.notes)
    return {
        "contribution": contribution_summary(outcome.contribution),
        "completeness": outcome.completeness.to_dict() if outcome.completeness else None,
    }


# ---------------------------------------------------------------------------
# Routes: Reports
# ---------------------------------------------------------------------------


@app.post("/api/initiatives/{initiative_id}/reports", response_model=ReportOut, status_code=201,
          tags=["Reports"], summary="Compile a report if completeness meets the threshold")
async def request_report(initiative_id: int, body: ReportRequest | None = None,
                         org: str = Depends(organization_id), workflow: Workflow = Depends(get_workflow)):
    threshold = body.threshold if body is not None else None
    return report_summary(workflow.request_report(org, initiative_id, threshold=threshold))


@app.get("/api/initiatives/{initiative_id}/reports", response_model=list[ReportOut],
         tags=["Reports"], summary="List compiled reports for an initiative")
async def list_reports(initiative_id: int, org: str = Depends(organization_id),
                       workflow: Workflow = Depends(get_workflow)):
    return [report_summary(r) for r in workflow.list_reports(org, initiative_id)]


@app.get("/api/reports/{report_id}/content", response_class=HTMLResponse,
         tags=["Reports"], summary="Rendered report document")
async def report_content(report_id: int, org: str = Depends(organization_id),
                         workflow: Workflow = Depends(get_workflow)):
    report = workflow.repo.get_report(org, report_id)
    return HTMLResponse(report.content)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Dashboard hero metrics for the organization")
async def get_stats(org: str = Depends(organization_id), workflow: Workflow = Depends(get_workflow)):
    return workflow.dashboard_stats(org)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("esgflow.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
