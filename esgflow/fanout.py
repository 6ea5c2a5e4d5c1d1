from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from esgflow.errors import ValidationError
from esgflow.models import DataRequest, Indicator, Initiative
from esgflow.repository import Repository
from esgflow.utils import json_dump, json_parse

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestKey:
    initiative_id: int
    indicator_id: int
    stakeholder_group: str


@dataclass
class FanOutResult:
    created: list[DataRequest] = field(default_factory=list)
    skipped: list[RequestKey] = field(default_factory=list)


def normalize_groups(groups: Iterable[str]) -> list[str]:
    """Strip, lowercase and de-duplicate stakeholder group tags, keeping order."""
    seen: dict[str, None] = {}
    for group in groups:
        tag = (group or "").strip().lower()
        if tag:
            seen.setdefault(tag, None)
    return list(seen)


def fan_out(
    repo: Repository,
    initiative: Initiative,
    indicators: Sequence[Indicator],
    stakeholder_groups: Iterable[str],
) -> FanOutResult:
    """Materialize one data request per (indicator, stakeholder group) pair.

    Existing keys are left untouched and reported as skipped, so re-running
    with the same or a superset selection only adds the missing requests.
    Runs inside the initiative's write section; the caller commits.
    """
    groups = normalize_groups(stakeholder_groups)
    if not groups:
        raise ValidationError("At least one stakeholder group is required")
    if not indicators:
        raise ValidationError("At least one indicator is required")

    repo.lock_initiative(initiative.id)
    repo.refresh(initiative)
    existing = {(r.indicator_id, r.stakeholder_group) for r in repo.list_data_requests(initiative.id)}

    result = FanOutResult()
    unique_indicators = {i.id: i for i in indicators}.values()
    for indicator in unique_indicators:
        for group in groups:
            if (indicator.id, group) in existing:
                result.skipped.append(RequestKey(initiative.id, indicator.id, group))
                continue
            result.created.append(DataRequest(
                initiative_id=initiative.id, indicator_id=indicator.id,
                stakeholder_group=group, reporting_period=initiative.reporting_period,
                due_date=initiative.due_date, status="pending",
            ))
            existing.add((indicator.id, group))

    if result.created:
        repo.add_data_requests(result.created)

    targeted = normalize_groups([*json_parse(initiative.stakeholder_groups_json, []), *groups])
    initiative.stakeholder_groups_json = json_dump(targeted)

    log.info(
        "Fan-out for initiative %s: %d created, %d skipped",
        initiative.id, len(result.created), len(result.skipped),
    )
    return result
