"""Tests for the MCP tool functions, run against the in-memory workflow."""
from __future__ import annotations

from contextlib import contextmanager

import pytest

from esgflow import mcp_server
from esgflow.tests.conftest import ORG


@pytest.fixture()
def tools(monkeypatch, workflow):
    @contextmanager
    def _workflow():
        yield workflow

    monkeypatch.setattr(mcp_server, "_workflow", _workflow)
    return mcp_server


@pytest.fixture()
def contribution_id(workflow, initiative, catalog) -> int:
    workflow.fan_out_data_requests(ORG, initiative.id, [catalog["GHG-1"].id], ["finance"])
    request_id = workflow.list_data_requests(ORG, initiative.id)[0].id
    return workflow.submit_contribution(ORG, request_id, "casey", value=7).id


class TestReviewTool:
    def test_refused_without_reviewer_role(self, tools, workflow, dispatcher, contribution_id):
        result = tools.review_contribution(ORG, contribution_id, "random-caller", "approved")
        assert "error" in result
        assert [c.id for c in workflow.list_contributions(ORG, "pending")] == [contribution_id]
        assert "contribution.verified" not in dispatcher.types

    def test_reviewer_approves(self, tools, contribution_id):
        result = tools.review_contribution(ORG, contribution_id, "rita", "approved", is_reviewer=True)
        assert result["contribution"]["verification_status"] == "approved"
        assert result["contribution"]["reviewer_id"] == "rita"
        assert result["completeness"]["overall"] == 100


class TestListInitiativesTool:
    def test_lists_initiatives(self, tools, initiative):
        names = [i["name"] for i in tools.list_initiatives(ORG)]
        assert names == ["FY2024 Sustainability Report"]

    def test_unknown_status_returns_error(self, tools, initiative):
        assert "error" in tools.list_initiatives(ORG, status="late")
