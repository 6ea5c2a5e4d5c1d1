"""Tests for completeness calculation."""
from __future__ import annotations

from types import SimpleNamespace

import pytest

from esgflow.completeness import percentage, snapshot_from_requests
from esgflow.errors import NotFoundError
from esgflow.tests.conftest import ORG, approve


def _req(category: str, status: str = "pending"):
    return SimpleNamespace(indicator=SimpleNamespace(category=category), status=status)


class TestPercentage:
    @pytest.mark.parametrize("approved, total, expected", [
        (0, 0, 0),
        (0, 4, 0),
        (1, 3, 33),
        (2, 3, 67),
        (1, 8, 13),
        (8, 10, 80),
        (4, 4, 100),
    ])
    def test_rounds_half_up(self, approved, total, expected):
        assert percentage(approved, total) == expected


class TestSnapshot:
    def test_no_requests_is_zero(self):
        snap = snapshot_from_requests([])
        assert snap.to_dict() == {"environmental": 0, "social": 0, "governance": 0, "overall": 0}
        assert snap.total_requests == 0

    def test_empty_categories_excluded_from_overall(self):
        snap = snapshot_from_requests([_req("environmental", "approved"), _req("environmental")])
        assert snap.environmental == 50
        assert snap.social == 0
        assert snap.governance == 0
        assert snap.overall == 50
        assert snap.requested_categories == ["environmental"]

    def test_overall_is_mean_of_requested_categories(self):
        snap = snapshot_from_requests([
            _req("environmental", "approved"),
            _req("social"),
            _req("social", "approved"),
            _req("social"),
            _req("social"),
        ])
        assert snap.environmental == 100
        assert snap.social == 25
        assert snap.overall == 63

    def test_only_approved_counts(self):
        snap = snapshot_from_requests([_req("governance", "submitted"), _req("governance", "pending")])
        assert snap.governance == 0
        assert snap.counts == {"governance": (0, 2)}

    def test_bounds(self):
        for statuses in (["approved"] * 5, ["pending"] * 5, ["approved", "pending", "submitted"]):
            snap = snapshot_from_requests([_req(c, s) for c in ("environmental", "social") for s in statuses])
            for value in snap.to_dict().values():
                assert 0 <= value <= 100


class TestComputeCompleteness:
    def test_ten_requests_eight_approved(self, workflow, initiative, catalog):
        workflow.fan_out_data_requests(
            ORG, initiative.id, [catalog["GHG-1"].id, catalog["GHG-2"].id],
            ["finance", "operations", "legal", "facilities", "fleet"],
        )
        requests = workflow.list_data_requests(ORG, initiative.id)
        assert len(requests) == 10
        for request in requests[:8]:
            approve(workflow, request.id)
        snap = workflow.compute_completeness(ORG, initiative.id)
        assert snap.environmental == 80
        assert snap.overall == 80
        assert snap.approved_requests == 8

    def test_reflects_each_approval(self, workflow, initiative, catalog):
        workflow.fan_out_data_requests(ORG, initiative.id, [catalog["GHG-1"].id, catalog["EMP-2"].id], ["finance"])
        requests = workflow.list_data_requests(ORG, initiative.id)
        outcome = approve(workflow, requests[0].id)
        assert outcome.completeness.overall == 50
        outcome = approve(workflow, requests[1].id)
        assert outcome.completeness.overall == 100

    def test_unknown_initiative(self, workflow):
        with pytest.raises(NotFoundError):
            workflow.compute_completeness(ORG, 404)

    def test_scoped_to_organization(self, workflow, initiative):
        with pytest.raises(NotFoundError):
            workflow.compute_completeness("globex", initiative.id)
