from __future__ import annotations

import html
import logging
from typing import Protocol

from esgflow.completeness import CompletenessSnapshot, snapshot_from_requests
from esgflow.errors import InsufficientDataError, MissingItem, ReportCompilationError, ValidationError
from esgflow.models import CATEGORIES, DataRequest, Initiative, Report
from esgflow.repository import Repository
from esgflow.utils import json_dump, json_parse

log = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 80


class ReportCompiler(Protocol):
    def compile(self, repo: Repository, initiative: Initiative, snapshot: CompletenessSnapshot) -> Report:
        ...


def missing_items(requests: list[DataRequest]) -> list[MissingItem]:
    """Every data request still lacking an approved contribution."""
    return [
        MissingItem(
            data_request_id=r.id, category=r.indicator.category,
            indicator_id=r.indicator_id, indicator_code=r.indicator.code,
            indicator_name=r.indicator.name, stakeholder_group=r.stakeholder_group,
            status=r.status,
        )
        for r in requests if r.status != "approved"
    ]


def check_threshold(threshold: int) -> int:
    if isinstance(threshold, bool) or not isinstance(threshold, int) or not 0 <= threshold <= 100:
        raise ValidationError("Report threshold must be an integer between 0 and 100")
    return threshold


def request_report(
    repo: Repository,
    organization_id: str,
    initiative_id: int,
    compiler: ReportCompiler,
    threshold: int = DEFAULT_THRESHOLD,
) -> Report:
    """Compile a report if overall completeness is at or above *threshold*.

    Raises :class:`InsufficientDataError` listing every outstanding data
    request otherwise. Compiler errors propagate unchanged. Caller commits.
    """
    check_threshold(threshold)
    initiative = repo.get_initiative(organization_id, initiative_id)
    requests = repo.list_data_requests(initiative.id)
    snapshot = snapshot_from_requests(requests)
    if snapshot.overall < threshold:
        missing = missing_items(requests)
        log.info(
            "Report blocked for initiative %s: %d%% < %d%% (%d missing)",
            initiative.id, snapshot.overall, threshold, len(missing),
        )
        raise InsufficientDataError(snapshot.overall, threshold, missing)
    report = compiler.compile(repo, initiative, snapshot)
    log.info("Report %s compiled for initiative %s at %d%%", report.id, initiative.id, snapshot.overall)
    return report


# ---------------------------------------------------------------------------
# Built-in HTML compiler
# ---------------------------------------------------------------------------


def _format_value(value_json: str, unit: str) -> str:
    value = json_parse(value_json, None)
    if value is None:
        return "See supporting documents"
    if isinstance(value, bool):
        text = "Yes" if value else "No"
    elif isinstance(value, float) and value.is_integer():
        text = str(int(value))
    else:
        text = str(value)
    return f"{text} {unit}".strip()


class HtmlReportCompiler:
    """Persists a Report holding an HTML summary of approved contributions."""

    def compile(self, repo: Repository, initiative: Initiative, snapshot: CompletenessSnapshot) -> Report:
        try:
            content = self.render(initiative, snapshot, repo.list_data_requests(initiative.id))
        except (KeyError, TypeError, ValueError) as exc:
            raise ReportCompilationError(f"Could not render report for initiative {initiative.id}: {exc}") from exc
        report = Report(
            initiative_id=initiative.id, organization_id=initiative.organization_id,
            name=f"{initiative.name} ({initiative.reporting_period})",
            completeness_json=json_dump(snapshot.to_dict()),
            content=content, content_type="text/html",
        )
        repo.add(report)
        repo.flush()
        return report

    def render(self, initiative: Initiative, snapshot: CompletenessSnapshot, requests: list[DataRequest]) -> str:
        esc = html.escape
        sections = []
        for category in CATEGORIES:
            rows = []
            for request in requests:
                if request.indicator.category != category or request.status != "approved":
                    continue
                approved = next((c for c in request.contributions if c.verification_status == "approved"), None)
                if approved is None:
                    raise ReportCompilationError(f"Data request {request.id} is approved without an approved contribution")
                rows.append(
                    f"<tr><td>{esc(request.indicator.code)}</td><td>{esc(request.indicator.name)}</td>"
                    f"<td>{esc(request.stakeholder_group)}</td>"
                    f"<td>{esc(_format_value(approved.value_json, approved.unit))}</td></tr>"
                )
            if category not in snapshot.counts:
                continue
            approved_count, total = snapshot.counts[category]
            sections.append(
                f"<section><h2>{category.title()}</h2>"
                f"<p>{getattr(snapshot, category)}% complete ({approved_count} of {total} data points)</p>"
                "<table><tr><th>Code</th><th>Indicator</th><th>Stakeholder group</th><th>Value</th></tr>"
                f"{''.join(rows)}</table></section>"
            )
        return (
            "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
            f"<title>{esc(initiative.name)}</title></head><body>"
            f"<h1>{esc(initiative.name)}</h1>"
            f"<p><strong>Type:</strong> {esc(initiative.initiative_type)}</p>"
            f"<p><strong>Reporting period:</strong> {esc(initiative.reporting_period)}</p>"
            f"<p><strong>Overall completeness:</strong> {snapshot.overall}%</p>"
            f"{''.join(sections)}</body></html>"
        )
