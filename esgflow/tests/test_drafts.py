"""Tests for draft autosave."""
from __future__ import annotations

import asyncio
import threading
import time
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from esgflow import drafts
from esgflow.config import Settings
from esgflow.db import seed_indicators
from esgflow.drafts import AutosaveSession, SavedFlag
from esgflow.errors import ConflictError, NotFoundError, ValidationError
from esgflow.models import Base, Draft
from esgflow.repository import SqlRepository
from esgflow.services import Workflow
from esgflow.tests.conftest import ORG, RecordingDispatcher, approve


@pytest.fixture()
def request_id(workflow, initiative, catalog) -> int:
    workflow.fan_out_data_requests(ORG, initiative.id, [catalog["GHG-1"].id], ["finance"])
    return workflow.list_data_requests(ORG, initiative.id)[0].id


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Tests: save/load
# ---------------------------------------------------------------------------


class TestSaveDraft:
    def test_later_save_overwrites(self, workflow, session, request_id):
        t0 = datetime(2024, 6, 1, 9, 0, 0)
        workflow.save_draft(ORG, request_id, "casey", {"value": "A"}, now=t0)
        workflow.save_draft(ORG, request_id, "casey", {"value": "B"}, now=t0 + timedelta(seconds=30))

        draft = workflow.get_draft(ORG, request_id, "casey")
        assert draft.payload_json == '{"value": "B"}'
        assert draft.saved_at == t0 + timedelta(seconds=30)
        count = session.execute(select(func.count()).select_from(Draft)).scalar()
        assert count == 1

    def test_contributors_are_independent(self, workflow, request_id):
        workflow.save_draft(ORG, request_id, "casey", {"value": 1})
        workflow.save_draft(ORG, request_id, "devon", {"value": 2})
        assert workflow.get_draft(ORG, request_id, "casey").payload_json == '{"value": 1}'
        assert workflow.get_draft(ORG, request_id, "devon").payload_json == '{"value": 2}'

    def test_payload_must_be_object(self, workflow, request_id):
        with pytest.raises(ValidationError):
            workflow.save_draft(ORG, request_id, "casey", ["not", "a", "dict"])

    def test_contributor_required(self, workflow, request_id):
        with pytest.raises(ValidationError):
            workflow.save_draft(ORG, request_id, "", {"value": 1})

    def test_approved_request_rejects_drafts(self, workflow, request_id):
        approve(workflow, request_id)
        with pytest.raises(ConflictError):
            workflow.save_draft(ORG, request_id, "casey", {"value": 3})

    def test_load_missing_draft(self, workflow, request_id):
        with pytest.raises(NotFoundError):
            workflow.get_draft(ORG, request_id, "nobody")

    def test_unknown_request(self, workflow, initiative):
        with pytest.raises(NotFoundError):
            workflow.save_draft(ORG, 999, "casey", {"value": 1})

    def test_discard(self, workflow, request_id):
        workflow.save_draft(ORG, request_id, "casey", {"value": 1})
        assert workflow.discard_draft(ORG, request_id, "casey") is True
        assert workflow.discard_draft(ORG, request_id, "casey") is False

    def test_submission_consumes_draft(self, workflow, request_id):
        workflow.save_draft(ORG, request_id, "casey", {"value": 42, "notes": "from meter readings"})
        contribution = workflow.submit_contribution(ORG, request_id, "casey")
        assert contribution.value_json == "42.0"
        assert contribution.notes == "from meter readings"
        with pytest.raises(NotFoundError):
            workflow.get_draft(ORG, request_id, "casey")


# ---------------------------------------------------------------------------
# Tests: SavedFlag
# ---------------------------------------------------------------------------


class TestSavedFlag:
    def test_hidden_until_marked(self):
        assert not SavedFlag().visible

    def test_clears_after_ttl(self):
        clock = FakeClock()
        flag = SavedFlag(ttl=2.0, clock=clock)
        flag.mark()
        clock.now = 1.9
        assert flag.visible
        clock.now = 2.0
        assert not flag.visible

    def test_remark_restarts_timer(self):
        clock = FakeClock()
        flag = SavedFlag(ttl=2.0, clock=clock)
        flag.mark()
        clock.now = 1.5
        flag.mark()
        clock.now = 3.0
        assert flag.visible


# ---------------------------------------------------------------------------
# Tests: AutosaveSession
# ---------------------------------------------------------------------------


class TestAutosaveSession:
    def test_save_now_marks_flag(self):
        saved = []
        autosave = AutosaveSession(saved.append, lambda: {"value": "A"})
        autosave.save_now()
        assert saved == [{"value": "A"}]
        assert autosave.saved
        assert autosave.saves == 1

    @pytest.mark.asyncio
    async def test_ticks_save_current_payload(self):
        saved = []
        state = {"value": "A"}
        autosave = AutosaveSession(saved.append, lambda: dict(state), interval=0.01)
        autosave.start()
        assert autosave.running
        await asyncio.sleep(0.05)
        state["value"] = "B"
        await asyncio.sleep(0.05)
        await autosave.stop()
        assert not autosave.running
        assert len(saved) >= 2
        assert saved[-1] == {"value": "B"}

    @pytest.mark.asyncio
    async def test_ticks_write_off_the_event_loop(self):
        writers = []
        autosave = AutosaveSession(lambda p: writers.append(threading.get_ident()), dict, interval=0.01)
        autosave.start()
        await asyncio.sleep(0.05)
        await autosave.stop()
        assert writers
        assert threading.get_ident() not in writers

    @pytest.mark.asyncio
    async def test_failed_tick_keeps_running(self):
        calls = []

        def flaky_save(payload):
            calls.append(payload)
            if len(calls) == 1:
                raise RuntimeError("database is locked")

        autosave = AutosaveSession(flaky_save, lambda: {"value": 1}, interval=0.01)
        autosave.start()
        await asyncio.sleep(0.08)
        await autosave.stop()
        assert len(calls) >= 2
        assert autosave.saves == len(calls) - 1

    @pytest.mark.asyncio
    async def test_drives_draft_storage(self, repo, dispatcher, request_id):
        wf = Workflow(repo, dispatcher, Settings(_env_file=None, autosave_interval_s=0.01))
        state = {"value": "A"}
        autosave = wf.autosave_session(ORG, request_id, "casey", lambda: dict(state))
        autosave.start()
        await asyncio.sleep(0.03)
        state["value"] = "B"
        await asyncio.sleep(0.05)
        await autosave.stop()
        assert wf.get_draft(ORG, request_id, "casey").payload_json == '{"value": "B"}'
        assert autosave.saved

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        autosave = AutosaveSession(lambda p: None, dict)
        await autosave.stop()
        assert not autosave.running


# ---------------------------------------------------------------------------
# Tests: two tabs saving the same key
# ---------------------------------------------------------------------------


@pytest.fixture()
def file_factory(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'drafts.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(eng)
    seed_indicators(eng)
    yield sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)
    eng.dispose()


class TestConcurrentTabs:
    def test_first_save_race_resolves_last_write_wins(self, file_factory):
        with file_factory() as session:
            wf = Workflow(SqlRepository(session), RecordingDispatcher(), Settings(_env_file=None))
            ghg = wf.repo.get_indicator_by_code("GHG-1")
            init, _ = wf.create_initiative(
                ORG, "Audit", "audit", date(2024, 1, 1), date(2024, 12, 31), ["finance"],
                indicator_ids=[ghg.id],
            )
            request_id = wf.list_data_requests(ORG, init.id)[0].id

        first_saved = threading.Event()
        errors: list[BaseException] = []

        def first_tab():
            with file_factory() as session:
                drafts.save_draft(SqlRepository(session), ORG, request_id, "casey", {"value": "A"})
                first_saved.set()
                time.sleep(0.2)
                session.commit()

        def second_tab():
            first_saved.wait(timeout=10)
            with file_factory() as session:
                drafts.save_draft(SqlRepository(session), ORG, request_id, "casey", {"value": "B"})
                session.commit()

        def run(fn):
            try:
                fn()
            except BaseException as exc:
                errors.append(exc)

        threads = [threading.Thread(target=run, args=(fn,)) for fn in (first_tab, second_tab)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        with file_factory() as session:
            rows = session.execute(select(Draft)).scalars().all()
        assert [r.payload_json for r in rows] == ['{"value": "B"}']

    def test_same_session_saves_reuse_row(self, workflow, request_id):
        first = workflow.save_draft(ORG, request_id, "casey", {"value": "A"})
        second = workflow.save_draft(ORG, request_id, "casey", {"value": "B"})
        assert first.id == second.id
        assert second.payload_json == '{"value": "B"}'
