"""Workflow call surface shared by the ESGFlow API and MCP server.

:class:`Workflow` binds a repository, an event dispatcher and settings, and
exposes the operations callers use. Each mutating operation commits before it
dispatches its event, so notifications only ever describe durable state.
"""
from __future__ import annotations

import logging
from collections import Counter
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Iterable, Iterator

from esgflow import completeness as completeness_mod
from esgflow import drafts, fanout, reports, verification
from esgflow.completeness import CompletenessSnapshot
from esgflow.config import Settings, get_settings
from esgflow.errors import ConflictError, InsufficientDataError, ValidationError
from esgflow.fanout import FanOutResult
from esgflow.models import CATEGORIES, DATA_TYPES, INITIATIVE_TYPES, Contribution, DataRequest, Draft, Indicator, Initiative, Report
from esgflow.notifications import Dispatcher, LogDispatcher
from esgflow.repository import Repository
from esgflow.status import STATUSES, derive_status
from esgflow.utils import json_dump, json_parse, utcnow
from esgflow.verification import ReviewOutcome

log = logging.getLogger(__name__)

SORT_FIELDS = ("name", "progress", "due_date")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def indicator_summary(ind: Indicator) -> dict:
    return {
        "id": ind.id, "code": ind.code, "name": ind.name, "category": ind.category,
        "data_type": ind.data_type, "unit": ind.unit, "guidance": ind.guidance,
        "choices": json_parse(ind.choices_json, []),
        "validation_rules": json_parse(ind.validation_rules_json, {}),
    }


def data_request_summary(req: DataRequest) -> dict:
    return {
        "id": req.id, "initiative_id": req.initiative_id,
        "indicator_id": req.indicator_id, "indicator_code": req.indicator.code,
        "indicator_name": req.indicator.name, "category": req.indicator.category,
        "data_type": req.indicator.data_type,
        "stakeholder_group": req.stakeholder_group,
        "reporting_period": req.reporting_period,
        "due_date": req.due_date.isoformat() if req.due_date else None,
        "status": req.status,
    }


def contribution_summary(con: Contribution) -> dict:
    return {
        "id": con.id, "data_request_id": con.data_request_id,
        "contributor_id": con.contributor_id,
        "value": json_parse(con.value_json, None), "unit": con.unit, "notes": con.notes,
        "supporting_documents": json_parse(con.supporting_documents_json, []),
        "verification_status": con.verification_status,
        "reviewer_id": con.reviewer_id, "reviewer_notes": con.reviewer_notes,
        "submitted_at": con.submitted_at.isoformat(),
        "reviewed_at": con.reviewed_at.isoformat() if con.reviewed_at else None,
    }


def draft_summary(draft: Draft, saved: bool = False) -> dict:
    return {
        "data_request_id": draft.data_request_id, "contributor_id": draft.contributor_id,
        "payload": json_parse(draft.payload_json, {}),
        "saved_at": draft.saved_at.isoformat(), "saved": saved,
    }


def report_summary(report: Report, include_content: bool = False) -> dict:
    data = {
        "id": report.id, "initiative_id": report.initiative_id, "name": report.name,
        "completeness": json_parse(report.completeness_json, {}),
        "content_type": report.content_type,
        "created_at": report.created_at.isoformat() if report.created_at else None,
    }
    if include_content:
        data["content"] = report.content
    return data


def fan_out_summary(result: FanOutResult) -> dict:
    return {
        "created": [data_request_summary(r) for r in result.created],
        "skipped": [
            {"initiative_id": k.initiative_id, "indicator_id": k.indicator_id,
             "stakeholder_group": k.stakeholder_group}
            for k in result.skipped
        ],
    }


def _parse_date(value: date | str | None, field: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format") from None


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class Workflow:
    def __init__(self, repo: Repository, dispatcher: Dispatcher | None = None, settings: Settings | None = None):
        self.repo = repo
        self.dispatcher = dispatcher or LogDispatcher()
        self.settings = settings or get_settings()

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Commit on success; roll back and re-raise on any error."""
        try:
            yield
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        # Delivery is fire-and-forget.
        try:
            self.dispatcher.dispatch(event_type, payload)
        except Exception as exc:
            log.warning("Dispatching %s failed: %s", event_type, exc)

    # -- indicators ---------------------------------------------------------

    def create_indicator(
        self, code: str, name: str, category: str, data_type: str = "numeric",
        unit: str = "", guidance: str = "", choices: list[Any] | None = None,
        validation_rules: dict[str, Any] | None = None,
    ) -> Indicator:
        code, name = (code or "").strip(), (name or "").strip()
        if not code or not name:
            raise ValidationError("Indicator code and name are required")
        if category not in CATEGORIES:
            raise ValidationError(f"Category must be one of: {', '.join(CATEGORIES)}")
        if data_type not in DATA_TYPES:
            raise ValidationError(f"Data type must be one of: {', '.join(DATA_TYPES)}")
        if data_type == "choice" and not choices:
            raise ValidationError("Choice indicators need at least one choice")
        if self.repo.get_indicator_by_code(code) is not None:
            raise ConflictError(f"Indicator code '{code}' already exists")
        indicator = Indicator(
            code=code, name=name, category=category, data_type=data_type, unit=unit,
            guidance=guidance, choices_json=json_dump(choices or []),
            validation_rules_json=json_dump(validation_rules or {}),
        )
        with self._transaction():
            self.repo.add(indicator)
        return indicator

    # -- initiatives --------------------------------------------------------

    def create_initiative(
        self,
        organization_id: str,
        name: str,
        initiative_type: str,
        period_start: date | str,
        period_end: date | str,
        stakeholder_groups: Iterable[str],
        due_date: date | str | None = None,
        description: str = "",
        created_by: str = "",
        indicator_ids: Iterable[int] | None = None,
    ) -> tuple[Initiative, FanOutResult | None]:
        """Create an initiative, fanning out data requests when indicators are given."""
        if not organization_id:
            raise ValidationError("organization_id is required")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Initiative name is required")
        if initiative_type not in INITIATIVE_TYPES:
            raise ValidationError(f"Initiative type must be one of: {', '.join(INITIATIVE_TYPES)}")
        start = _parse_date(period_start, "period_start")
        end = _parse_date(period_end, "period_end")
        if start is None or end is None:
            raise ValidationError("Reporting period start and end are required")
        if end < start:
            raise ValidationError("Reporting period end must not be before its start")
        groups = fanout.normalize_groups(stakeholder_groups)
        if not groups:
            raise ValidationError("At least one stakeholder group is required")
        indicators = self.repo.get_indicators(indicator_ids) if indicator_ids else []

        initiative = Initiative(
            organization_id=organization_id, name=name, initiative_type=initiative_type,
            description=description, period_start=start, period_end=end,
            due_date=_parse_date(due_date, "due_date"),
            stakeholder_groups_json=json_dump(groups), created_by=created_by, version=0,
        )
        with self._transaction():
            self.repo.add(initiative)
            self.repo.flush()
            result = fanout.fan_out(self.repo, initiative, indicators, groups) if indicators else None
        log.info("Initiative %s created for organization %s", initiative.id, organization_id)

        self._emit("initiative.created", {
            "organization_id": organization_id, "initiative_id": initiative.id, "name": initiative.name,
        })
        if result is not None:
            self._emit_fan_out(initiative, result)
        return initiative, result

    def fan_out_data_requests(
        self, organization_id: str, initiative_id: int,
        indicator_ids: Iterable[int], stakeholder_groups: Iterable[str] | None = None,
    ) -> FanOutResult:
        """Fan out data requests; groups default to the initiative's targets."""
        initiative = self.repo.get_initiative(organization_id, initiative_id)
        ids = list(indicator_ids or [])
        if not ids:
            raise ValidationError("At least one indicator is required")
        indicators = self.repo.get_indicators(ids)
        if stakeholder_groups is None:
            stakeholder_groups = json_parse(initiative.stakeholder_groups_json, [])
        with self._transaction():
            result = fanout.fan_out(self.repo, initiative, indicators, stakeholder_groups)
        self._emit_fan_out(initiative, result)
        return result

    def _emit_fan_out(self, initiative: Initiative, result: FanOutResult) -> None:
        self._emit("datarequest.fanned_out", {
            "organization_id": initiative.organization_id, "initiative_id": initiative.id,
            "created": len(result.created), "skipped": len(result.skipped),
            "stakeholder_groups": sorted({r.stakeholder_group for r in result.created}),
        })

    def get_initiative(self, organization_id: str, initiative_id: int) -> Initiative:
        return self.repo.get_initiative(organization_id, initiative_id)

    def list_data_requests(self, organization_id: str, initiative_id: int, status: str | None = None) -> list[DataRequest]:
        initiative = self.repo.get_initiative(organization_id, initiative_id)
        return self.repo.list_data_requests(initiative.id, status=status)

    # -- drafts -------------------------------------------------------------

    def save_draft(
        self, organization_id: str, data_request_id: int, contributor_id: str,
        payload: dict[str, Any], now: datetime | None = None,
    ) -> Draft:
        with self._transaction():
            draft = drafts.save_draft(self.repo, organization_id, data_request_id, contributor_id, payload, now=now)
        return draft

    def autosave_session(
        self, organization_id: str, data_request_id: int, contributor_id: str,
        snapshot: Callable[[], dict[str, Any]],
    ) -> drafts.AutosaveSession:
        """Autosave ticker that persists *snapshot()* as this contributor's draft."""
        def persist(payload: dict[str, Any]) -> None:
            self.save_draft(organization_id, data_request_id, contributor_id, payload)

        return drafts.AutosaveSession(
            persist, snapshot,
            interval=self.settings.autosave_interval_s,
            flag=drafts.SavedFlag(self.settings.saved_flag_ttl_s),
        )

    def get_draft(self, organization_id: str, data_request_id: int, contributor_id: str) -> Draft:
        return drafts.load_draft(self.repo, organization_id, data_request_id, contributor_id)

    def discard_draft(self, organization_id: str, data_request_id: int, contributor_id: str) -> bool:
        request = self.repo.get_data_request(organization_id, data_request_id)
        with self._transaction():
            removed = drafts.discard_draft(self.repo, request.id, contributor_id)
        return removed

    # -- contributions ------------------------------------------------------

    def submit_contribution(
        self, organization_id: str, data_request_id: int, contributor_id: str,
        **fields: Any,
    ) -> Contribution:
        with self._transaction():
            contribution = verification.submit_contribution(
                self.repo, organization_id, data_request_id, contributor_id, **fields,
            )
        self._emit("contribution.submitted", {
            "organization_id": organization_id, "contribution_id": contribution.id,
            "data_request_id": contribution.data_request_id, "contributor_id": contributor_id,
        })
        return contribution

    def review_contribution(
        self, organization_id: str, contribution_id: int, reviewer_id: str,
        is_reviewer: bool, decision: str, notes: str | None = None,
    ) -> ReviewOutcome:
        with self._transaction():
            outcome = verification.review_contribution(
                self.repo, organization_id, contribution_id, reviewer_id, is_reviewer, decision, notes,
            )
        payload: dict[str, Any] = {
            "organization_id": organization_id, "contribution_id": contribution_id,
            "data_request_id": outcome.contribution.data_request_id,
            "decision": decision, "reviewer_id": reviewer_id,
        }
        if outcome.completeness is not None:
            payload["completeness"] = outcome.completeness.to_dict()
        self._emit("contribution.verified", payload)
        return outcome

    def list_contributions(self, organization_id: str, status: str | None = None) -> list[Contribution]:
        return self.repo.list_contributions(organization_id, status=status)

    # -- read models --------------------------------------------------------

    def compute_completeness(self, organization_id: str, initiative_id: int) -> CompletenessSnapshot:
        initiative = self.repo.get_initiative(organization_id, initiative_id)
        return completeness_mod.compute_completeness(self.repo, initiative.id)

    def derive_status(self, progress_percentage: int, due_date: date | None, now: datetime | None = None) -> str:
        return derive_status(
            progress_percentage, due_date, now or utcnow(),
            at_risk_window_days=self.settings.at_risk_window_days,
        )

    def initiative_summary(self, initiative: Initiative, now: datetime | None = None) -> dict:
        snapshot = completeness_mod.compute_completeness(self.repo, initiative.id)
        return {
            "id": initiative.id, "organization_id": initiative.organization_id,
            "name": initiative.name, "initiative_type": initiative.initiative_type,
            "description": initiative.description,
            "period_start": initiative.period_start.isoformat(),
            "period_end": initiative.period_end.isoformat(),
            "due_date": initiative.due_date.isoformat() if initiative.due_date else None,
            "stakeholder_groups": json_parse(initiative.stakeholder_groups_json, []),
            "progress_percentage": snapshot.overall,
            "status": self.derive_status(snapshot.overall, initiative.due_date, now),
            "completeness": snapshot.to_dict(),
            "total_requests": snapshot.total_requests,
            "approved_requests": snapshot.approved_requests,
        }

    def list_initiatives(
        self, organization_id: str, status: str | None = None, sort_by: str = "due_date",
        now: datetime | None = None,
    ) -> list[dict]:
        if status and status not in STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(STATUSES)}")
        if sort_by not in SORT_FIELDS:
            raise ValidationError(f"sort_by must be one of: {', '.join(SORT_FIELDS)}")
        items = [self.initiative_summary(i, now) for i in self.repo.list_initiatives(organization_id)]
        if status:
            items = [i for i in items if i["status"] == status]
        if sort_by == "name":
            items.sort(key=lambda i: i["name"].lower())
        elif sort_by == "progress":
            items.sort(key=lambda i: i["progress_percentage"], reverse=True)
        else:
            # Initiatives without a due date go last.
            items.sort(key=lambda i: (i["due_date"] is None, i["due_date"] or ""))
        return items

    def dashboard_stats(self, organization_id: str, now: datetime | None = None) -> dict:
        items = self.list_initiatives(organization_id, now=now)
        by_status: Counter[str] = Counter(i["status"] for i in items)
        return {
            "active_initiatives": sum(1 for i in items if i["progress_percentage"] < 100),
            "average_collection_rate": round(sum(i["progress_percentage"] for i in items) / len(items)) if items else 0,
            "completed_initiatives": sum(1 for i in items if i["progress_percentage"] == 100),
            "by_status": dict(by_status),
        }

    # -- reports ------------------------------------------------------------

    def request_report(
        self, organization_id: str, initiative_id: int,
        threshold: int | None = None, compiler: reports.ReportCompiler | None = None,
    ) -> Report:
        if threshold is None:
            threshold = self.settings.report_threshold
        try:
            with self._transaction():
                report = reports.request_report(
                    self.repo, organization_id, initiative_id,
                    compiler or reports.HtmlReportCompiler(), threshold=threshold,
                )
        except InsufficientDataError as exc:
            self._emit("report.blocked", {
                "organization_id": organization_id, "initiative_id": initiative_id,
                "overall": exc.overall, "threshold": exc.threshold, "missing": len(exc.missing),
            })
            raise
        self._emit("report.ready", {
            "organization_id": organization_id, "initiative_id": initiative_id,
            "report_id": report.id, "completeness": json_parse(report.completeness_json, {}),
        })
        return report

    def list_reports(self, organization_id: str, initiative_id: int) -> list[Report]:
        initiative = self.repo.get_initiative(organization_id, initiative_id)
        return self.repo.list_reports(organization_id, initiative.id)
