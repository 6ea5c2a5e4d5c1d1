from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager
from functools import lru_cache
from typing import Iterator

from mcp.server.fastmcp import FastMCP

from esgflow.config import get_settings
from esgflow.db import init_db, session_scope
from esgflow.errors import ESGFlowError, InsufficientDataError
from esgflow.notifications import Dispatcher, build_dispatcher
from esgflow.reports import missing_items
from esgflow.repository import SqlRepository
from esgflow.services import Workflow, contribution_summary, data_request_summary, report_summary

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def esgflow_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db(get_settings().database_path)
    yield


mcp = FastMCP(
    "ESGFlow",
    instructions=(
        "ESGFlow tracks ESG data collection for reporting initiatives. "
        "Every tool is scoped to an organization_id. Start with list_initiatives() "
        "for progress and deadline status, use list_missing_data(id) to see what is "
        "still outstanding and from which stakeholder group, and review_queue() for "
        "contributions awaiting verification."
    ),
    lifespan=esgflow_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@lru_cache
def _dispatcher() -> Dispatcher:
    return build_dispatcher(get_settings())


@contextmanager
def _workflow() -> Iterator[Workflow]:
    with session_scope() as session:
        yield Workflow(SqlRepository(session), _dispatcher(), get_settings())


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("esgflow://overview")
def esgflow_overview() -> str:
    """Overview of ESGFlow: data model, workflow, and status values."""
    return json.dumps({
        "system": "ESGFlow, ESG initiative and stakeholder contribution workflow",
        "data_model": {
            "initiative": "A reporting, audit, certification or assessment effort with a reporting period and optional due date.",
            "indicator": "A catalog metric in the environmental, social or governance category.",
            "data_request": "An ask for one indicator from one stakeholder group within one initiative.",
            "contribution": "A stakeholder's submitted answer to a data request, verified by a reviewer.",
            "report": "A compiled artifact, only produced once completeness reaches the threshold.",
        },
        "workflow": [
            "1. list_initiatives(organization_id) for progress and status.",
            "2. get_completeness(organization_id, id) for per-category percentages.",
            "3. list_missing_data(organization_id, id) for outstanding data requests.",
            "4. review_queue(organization_id) for contributions awaiting review.",
            "5. request_report(organization_id, id) once enough data is approved.",
        ],
        "statuses": {
            "no_deadline": "The initiative has no due date.",
            "overdue": "The due date has passed.",
            "on_track": "Complete, or the due date is more than the at-risk window away.",
            "at_risk": "Incomplete and due within the at-risk window.",
        },
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Initiatives
# ---------------------------------------------------------------------------


@mcp.tool()
def list_initiatives(organization_id: str, status: str | None = None, sort_by: str = "due_date") -> list[dict] | dict:
    """List an organization's initiatives with live progress and deadline status.

    Args:
        organization_id: Tenant whose initiatives to list.
        status: Optional filter: no_deadline, overdue, on_track or at_risk.
        sort_by: name, progress or due_date (initiatives without one last).
    """
    with _workflow() as wf:
        try:
            return wf.list_initiatives(organization_id, status=status, sort_by=sort_by)
        except ESGFlowError as exc:
            return {"error": str(exc)}


@mcp.tool()
def get_initiative(organization_id: str, initiative_id: int) -> dict:
    """Get one initiative with progress, status and its data requests."""
    with _workflow() as wf:
        try:
            initiative = wf.get_initiative(organization_id, initiative_id)
        except ESGFlowError as exc:
            return {"error": str(exc)}
        data = wf.initiative_summary(initiative)
        data["data_requests"] = [data_request_summary(r) for r in wf.repo.list_data_requests(initiative.id)]
        return data


@mcp.tool()
def get_completeness(organization_id: str, initiative_id: int) -> dict:
    """Per-category (environmental, social, governance) and overall completeness percentages."""
    with _workflow() as wf:
        try:
            return wf.compute_completeness(organization_id, initiative_id).to_dict()
        except ESGFlowError as exc:
            return {"error": str(exc)}


@mcp.tool()
def list_missing_data(organization_id: str, initiative_id: int) -> list[dict] | dict:
    """Data requests still lacking an approved contribution, with their stakeholder group."""
    with _workflow() as wf:
        try:
            requests = wf.list_data_requests(organization_id, initiative_id)
        except ESGFlowError as exc:
            return {"error": str(exc)}
        return [m.to_dict() for m in missing_items(requests)]


# ---------------------------------------------------------------------------
# Tools: Review
# ---------------------------------------------------------------------------


@mcp.tool()
def review_queue(organization_id: str, status: str = "pending") -> list[dict]:
    """Contributions by verification status (pending by default), oldest first."""
    with _workflow() as wf:
        return [contribution_summary(c) for c in wf.list_contributions(organization_id, status or None)]


@mcp.tool()
def review_contribution(
    organization_id: str, contribution_id: int, reviewer_id: str, decision: str,
    notes: str | None = None, is_reviewer: bool = False,
) -> dict:
    """Approve or reject a pending contribution.

    Args:
        decision: "approved" or "rejected". Rejection reopens the data request.
        is_reviewer: Caller holds the reviewer role; without it the review is refused.
    """
    with _workflow() as wf:
        try:
            outcome = wf.review_contribution(organization_id, contribution_id, reviewer_id, is_reviewer, decision, notes)
        except ESGFlowError as exc:
            return {"error": str(exc)}
        return {
            "contribution": contribution_summary(outcome.contribution),
            "completeness": outcome.completeness.to_dict() if outcome.completeness else None,
        }


# ---------------------------------------------------------------------------
# Tools: Reports
# ---------------------------------------------------------------------------


@mcp.tool()
def request_report(organization_id: str, initiative_id: int, threshold: int | None = None) -> dict:
    """Compile a report if completeness meets the threshold; otherwise list what is missing."""
    with _workflow() as wf:
        try:
            report = wf.request_report(organization_id, initiative_id, threshold=threshold)
        except InsufficientDataError as exc:
            return {"error": str(exc), **exc.to_dict()}
        except ESGFlowError as exc:
            return {"error": str(exc)}
        return report_summary(report)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the ESGFlow MCP server over stdio."""
    logging.basicConfig(level=get_settings().log_level.upper())
    mcp.run()


if __name__ == "__main__":
    main()
