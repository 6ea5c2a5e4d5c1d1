"""Tests for database bootstrap and settings."""
from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select

from esgflow import db
from esgflow.config import Settings
from esgflow.models import Indicator


class TestInitDb:
    def test_creates_file_and_seeds_catalog(self, tmp_path):
        path = tmp_path / "nested" / "esgflow.db"
        db.init_db(path)
        assert path.exists()
        with db.session_scope() as session:
            count = session.execute(select(func.count()).select_from(Indicator)).scalar()
        assert count == len(db.DEFAULT_INDICATORS)

    def test_seeding_is_idempotent(self, tmp_path):
        path = tmp_path / "esgflow.db"
        db.init_db(path)
        db.init_db(path)
        with db.session_scope() as session:
            codes = session.execute(select(Indicator.code)).scalars().all()
        assert len(codes) == len(set(codes)) == len(db.DEFAULT_INDICATORS)

    def test_catalog_covers_every_category(self, tmp_path):
        db.init_db(tmp_path / "esgflow.db")
        with db.session_scope() as session:
            categories = set(session.execute(select(Indicator.category)).scalars())
        assert categories == {"environmental", "social", "governance"}


class TestSettings:
    def test_defaults(self):
        s = Settings(_env_file=None)
        assert s.report_threshold == 80
        assert s.at_risk_window_days == 7
        assert s.autosave_interval_s == 30
        assert s.saved_flag_ttl_s == 2
        assert s.webhook_url is None

    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("ESGFLOW_REPORT_THRESHOLD", "65")
        monkeypatch.setenv("ESGFLOW_AT_RISK_WINDOW_DAYS", "10")
        s = Settings(_env_file=None)
        assert s.report_threshold == 65
        assert s.at_risk_window_days == 10

    def test_threshold_bounds(self):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, report_threshold=120)
