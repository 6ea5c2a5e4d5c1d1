from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from esgflow.config import Settings
from esgflow.db import seed_indicators
from esgflow.models import Base
from esgflow.repository import SqlRepository
from esgflow.services import Workflow

ORG = "acme"


class RecordingDispatcher:
    """Collects dispatched events in memory."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def dispatch(self, event_type, payload):
        self.events.append((event_type, payload))

    @property
    def types(self) -> list[str]:
        return [t for t, _ in self.events]


# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database with the default indicator catalog
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    # StaticPool keeps one connection so autosave worker threads see the same database.
    eng = create_engine(
        "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    seed_indicators(eng)
    return eng


@pytest.fixture()
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def repo(session) -> SqlRepository:
    return SqlRepository(session)


@pytest.fixture()
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def workflow(repo, dispatcher, settings) -> Workflow:
    return Workflow(repo, dispatcher, settings)


@pytest.fixture()
def catalog(repo) -> dict:
    """Seeded indicators keyed by code."""
    return {i.code: i for i in repo.list_indicators()}


@pytest.fixture()
def initiative(workflow):
    init, _ = workflow.create_initiative(
        ORG, "FY2024 Sustainability Report", "report",
        date(2024, 1, 1), date(2024, 12, 31), ["finance", "operations"],
        due_date=date(2025, 3, 31), created_by="olivia",
    )
    return init


def approve(workflow, data_request_id: int, value=10, contributor="casey", reviewer="rita"):
    """Submit a contribution for a data request and approve it."""
    contribution = workflow.submit_contribution(ORG, data_request_id, contributor, value=value)
    return workflow.review_contribution(ORG, contribution.id, reviewer, True, "approved")
