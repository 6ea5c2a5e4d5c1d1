"""Concurrent writers on one initiative, against a file-backed SQLite database."""
from __future__ import annotations

import threading
from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from esgflow.config import Settings
from esgflow.db import seed_indicators
from esgflow.errors import ConflictError
from esgflow.models import Base, Contribution, Initiative
from esgflow.repository import SqlRepository
from esgflow.services import Workflow
from esgflow.tests.conftest import ORG, RecordingDispatcher


@pytest.fixture()
def factory(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'esgflow.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(eng)
    seed_indicators(eng)
    yield sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)
    eng.dispose()


def _workflow(session) -> Workflow:
    return Workflow(SqlRepository(session), RecordingDispatcher(), Settings(_env_file=None))


def _run_concurrently(*targets):
    barrier = threading.Barrier(len(targets))
    errors: list[BaseException] = []

    def wrap(fn):
        def run():
            barrier.wait()
            try:
                fn()
            except BaseException as exc:
                errors.append(exc)
        return run

    threads = [threading.Thread(target=wrap(t)) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return errors


@pytest.fixture()
def setup(factory):
    with factory() as session:
        wf = _workflow(session)
        catalog = {i.code: i for i in wf.repo.list_indicators()}
        init, _ = wf.create_initiative(
            ORG, "FY2024 report", "report", date(2024, 1, 1), date(2024, 12, 31), ["finance"],
            indicator_ids=[catalog["GHG-1"].id, catalog["EMP-1"].id],
        )
        request_ids = [r.id for r in wf.list_data_requests(ORG, init.id)]
        contribution_ids = [wf.submit_contribution(ORG, rid, "casey", value=5).id for rid in request_ids]
        return init.id, request_ids, contribution_ids


class TestConcurrentApprovals:
    def test_both_approvals_counted(self, factory, setup):
        initiative_id, _, contribution_ids = setup
        snapshots = []

        def review(cid):
            def run():
                with factory() as session:
                    outcome = _workflow(session).review_contribution(ORG, cid, "rita", True, "approved")
                    snapshots.append(outcome.completeness.overall)
            return run

        errors = _run_concurrently(*(review(cid) for cid in contribution_ids))
        assert errors == []

        with factory() as session:
            wf = _workflow(session)
            assert wf.compute_completeness(ORG, initiative_id).overall == 100
            statuses = session.execute(select(Contribution.verification_status)).scalars().all()
            assert statuses == ["approved", "approved"]
            version = session.execute(select(Initiative.version).where(Initiative.id == initiative_id)).scalar_one()
        # One fan-out, two submissions, two reviews.
        assert version == 5
        # The second writer observed the first writer's approval.
        assert sorted(snapshots) == [50, 100]


class TestConcurrentSubmissions:
    def test_only_one_contribution_in_flight(self, factory):
        with factory() as session:
            wf = _workflow(session)
            catalog = {i.code: i for i in wf.repo.list_indicators()}
            init, _ = wf.create_initiative(
                ORG, "Audit", "audit", date(2024, 1, 1), date(2024, 12, 31), ["finance"],
                indicator_ids=[catalog["GHG-1"].id],
            )
            request_id = wf.list_data_requests(ORG, init.id)[0].id

        def submit(contributor):
            def run():
                with factory() as session:
                    _workflow(session).submit_contribution(ORG, request_id, contributor, value=1)
            return run

        errors = _run_concurrently(submit("casey"), submit("devon"))
        assert len(errors) == 1
        assert isinstance(errors[0], ConflictError)
        with factory() as session:
            rows = session.execute(select(Contribution)).scalars().all()
            assert len(rows) == 1
