"""Contribution submission and review.

A contribution moves ``pending -> approved`` or ``pending -> rejected`` once.
Rejected contributions stay rejected as an audit record; the data request
goes back to ``pending`` and accepts a brand-new contribution. Both submission
and review run inside the owning initiative's write section so a data request
never has two contributions in flight and concurrent approvals never lose a
completeness update.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from esgflow.completeness import CompletenessSnapshot, compute_completeness
from esgflow.drafts import discard_draft, draft_payload
from esgflow.errors import AuthorizationError, ConflictError, ValidationError
from esgflow.models import Contribution, Indicator
from esgflow.repository import Repository
from esgflow.utils import json_dump, json_parse, utcnow

log = logging.getLogger(__name__)

DECISIONS = ("approved", "rejected")

_TRUE = ("true", "1", "yes", "y")
_FALSE = ("false", "0", "no", "n")
_MISSING = object()


@dataclass
class ReviewOutcome:
    contribution: Contribution
    completeness: CompletenessSnapshot | None = None


# ---------------------------------------------------------------------------
# Value validation
# ---------------------------------------------------------------------------


def _numeric(value: Any, rules: dict[str, Any]) -> float:
    if isinstance(value, bool):
        raise ValidationError("Must be a valid number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Must be a valid number") from None
    if number != number or number in (float("inf"), float("-inf")):
        raise ValidationError("Must be a valid number")
    if rules.get("min") is not None and number < rules["min"]:
        raise ValidationError(f"Must be at least {rules['min']}")
    if rules.get("max") is not None and number > rules["max"]:
        raise ValidationError(f"Must be at most {rules['max']}")
    return number


def _boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValidationError("Must be true or false")


def _date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value).strip()).isoformat()
    except ValueError:
        raise ValidationError("Must be a date in YYYY-MM-DD format") from None


def _text(value: Any, rules: dict[str, Any]) -> str:
    text = str(value).strip()
    if not text:
        raise ValidationError("A value is required")
    if rules.get("min_length") and len(text) < rules["min_length"]:
        raise ValidationError(f"Must be at least {rules['min_length']} characters")
    if rules.get("max_length") and len(text) > rules["max_length"]:
        raise ValidationError(f"Must be at most {rules['max_length']} characters")
    return text


def validate_value(indicator: Indicator, value: Any, supporting_documents: list[str]) -> Any:
    """Check *value* against the indicator's data type and rules; return it normalized."""
    rules = json_parse(indicator.validation_rules_json, {})
    data_type = indicator.data_type
    if data_type == "file":
        if not supporting_documents:
            raise ValidationError(f"Indicator {indicator.code} requires at least one supporting document")
        return value if value not in (None, "") else None
    if value is None or value == "":
        raise ValidationError(f"A value is required for indicator {indicator.code}")
    if data_type == "numeric":
        return _numeric(value, rules)
    if data_type == "boolean":
        return _boolean(value)
    if data_type == "date":
        return _date(value)
    if data_type == "choice":
        choices = json_parse(indicator.choices_json, [])
        if value not in choices:
            raise ValidationError(f"Must be one of: {', '.join(map(str, choices))}")
        return value
    return _text(value, rules)


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


def submit_contribution(
    repo: Repository,
    organization_id: str,
    data_request_id: int,
    contributor_id: str,
    value: Any = _MISSING,
    unit: str | None = None,
    notes: str | None = None,
    supporting_documents: list[str] | None = None,
    now: datetime | None = None,
) -> Contribution:
    """Create a pending contribution for a data request (caller must commit).

    The contributor's draft seeds the payload; explicit arguments override it.
    The draft for this key is discarded once the contribution exists.
    """
    if not contributor_id:
        raise ValidationError("contributor_id is required")
    request = repo.get_data_request(organization_id, data_request_id)
    repo.lock_initiative(request.initiative_id)
    repo.refresh(request)

    if request.status == "approved":
        raise ConflictError(f"Data request {request.id} is already approved")
    if repo.active_contribution(request.id) is not None:
        raise ConflictError(f"Data request {request.id} already has a contribution awaiting review")

    draft = repo.get_draft(request.id, contributor_id)
    payload = draft_payload(draft)
    if value is _MISSING:
        value = payload.get("value")
    if unit is None:
        unit = payload.get("unit") or request.indicator.unit or ""
    if notes is None:
        notes = payload.get("notes") or ""
    if supporting_documents is None:
        supporting_documents = list(payload.get("supporting_documents") or [])

    normalized = validate_value(request.indicator, value, supporting_documents)
    contribution = Contribution(
        data_request_id=request.id, contributor_id=contributor_id,
        value_json=json_dump(normalized), unit=unit, notes=notes,
        supporting_documents_json=json_dump(supporting_documents),
        verification_status="pending", submitted_at=now or utcnow(),
    )
    repo.add(contribution)
    request.status = "submitted"
    discard_draft(repo, request.id, contributor_id)
    repo.flush()
    log.info("Contribution %s submitted for data request %s by %s", contribution.id, request.id, contributor_id)
    return contribution


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


def review_contribution(
    repo: Repository,
    organization_id: str,
    contribution_id: int,
    reviewer_id: str,
    is_reviewer: bool,
    decision: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> ReviewOutcome:
    """Approve or reject a pending contribution (caller must commit).

    Approval marks the data request approved and recomputes the initiative's
    completeness inside the same write section; rejection reopens the request.
    """
    if not is_reviewer:
        raise AuthorizationError("Reviewer role required to verify contributions")
    if decision not in DECISIONS:
        raise ValidationError(f"Decision must be one of: {', '.join(DECISIONS)}")

    contribution = repo.get_contribution(organization_id, contribution_id)
    request = contribution.data_request
    repo.lock_initiative(request.initiative_id)
    repo.refresh(contribution)
    repo.refresh(request)

    if contribution.verification_status != "pending":
        raise ConflictError(
            f"Contribution {contribution.id} is already {contribution.verification_status}"
        )

    contribution.verification_status = decision
    contribution.reviewer_id = reviewer_id
    contribution.reviewer_notes = notes
    contribution.reviewed_at = now or utcnow()
    request.status = "approved" if decision == "approved" else "pending"
    repo.flush()

    outcome = ReviewOutcome(contribution=contribution)
    if decision == "approved":
        outcome.completeness = compute_completeness(repo, request.initiative_id)
    log.info(
        "Contribution %s %s by %s (data request %s)",
        contribution.id, decision, reviewer_id, request.id,
    )
    return outcome
