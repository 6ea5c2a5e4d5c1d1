from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from esgflow.models import CATEGORIES, DataRequest
from esgflow.repository import Repository
from esgflow.utils import round_half_up


@dataclass(frozen=True)
class CompletenessSnapshot:
    environmental: int = 0
    social: int = 0
    governance: int = 0
    overall: int = 0
    # category -> (approved, total); categories without requests are absent
    counts: dict[str, tuple[int, int]] = field(default_factory=dict)

    @property
    def requested_categories(self) -> list[str]:
        return [c for c in CATEGORIES if c in self.counts]

    @property
    def total_requests(self) -> int:
        return sum(total for _, total in self.counts.values())

    @property
    def approved_requests(self) -> int:
        return sum(approved for approved, _ in self.counts.values())

    def to_dict(self) -> dict[str, int]:
        return {
            "environmental": self.environmental, "social": self.social,
            "governance": self.governance, "overall": self.overall,
        }


def percentage(approved: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, max(0, round_half_up(approved / total * 100)))


def snapshot_from_requests(requests: Iterable[DataRequest]) -> CompletenessSnapshot:
    """Build the completeness read-model from an initiative's data requests.

    Each category is approved / total for requests whose indicator belongs to
    it. ``overall`` is the mean of the category percentages, counting only
    categories that have at least one request.
    """
    totals: Counter[str] = Counter()
    approved: Counter[str] = Counter()
    for request in requests:
        category = request.indicator.category
        totals[category] += 1
        if request.status == "approved":
            approved[category] += 1

    per_category = {c: percentage(approved[c], totals[c]) for c in CATEGORIES}
    requested = [c for c in CATEGORIES if totals[c]]
    overall = round_half_up(sum(per_category[c] for c in requested) / len(requested)) if requested else 0
    return CompletenessSnapshot(
        **per_category,
        overall=overall,
        counts={c: (approved[c], totals[c]) for c in requested},
    )


def compute_completeness(repo: Repository, initiative_id: int) -> CompletenessSnapshot:
    return snapshot_from_requests(repo.list_data_requests(initiative_id))
