from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from esgflow.models import Base, Indicator
from esgflow.utils import json_dump

_lock = threading.Lock()
_engine = None
_SessionLocal = None

DATA_DIR = Path(__file__).parent / "data"

# (code, name, category, data_type, unit, validation_rules)
DEFAULT_INDICATORS = (
    ("GHG-1", "Scope 1 greenhouse gas emissions", "environmental", "numeric", "tonnes", {"min": 0}),
    ("GHG-2", "Scope 2 greenhouse gas emissions", "environmental", "numeric", "tonnes", {"min": 0}),
    ("ENR-1", "Total energy consumption", "environmental", "numeric", "kwh", {"min": 0}),
    ("WAT-1", "Water withdrawal", "environmental", "numeric", "litres", {"min": 0}),
    ("EMP-1", "Employee turnover rate", "social", "numeric", "percent", {"min": 0, "max": 100}),
    ("EMP-2", "Average training hours per employee", "social", "numeric", "count", {"min": 0}),
    ("HS-1", "Health and safety policy in place", "social", "boolean", "", {}),
    ("GOV-1", "Share of independent board members", "governance", "numeric", "percent", {"min": 0, "max": 100}),
    ("GOV-2", "Anti-corruption policy in place", "governance", "boolean", "", {}),
    ("GOV-3", "Supplier code of conduct", "governance", "file", "", {}),
)


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = DATA_DIR / "esgflow.db"
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        # Writers on the same initiative queue on the SQLite write lock; give them time.
        _engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        seed_indicators(_engine)


def seed_indicators(engine: Engine) -> None:
    """Seed the default indicator catalog if the table is empty."""
    with Session(engine) as session:
        if session.execute(select(func.count()).select_from(Indicator)).scalar():
            return
        for code, name, category, data_type, unit, rules in DEFAULT_INDICATORS:
            session.add(Indicator(
                code=code, name=name, category=category, data_type=data_type,
                unit=unit, validation_rules_json=json_dump(rules),
            ))
        session.commit()


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, scripts, etc.)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

