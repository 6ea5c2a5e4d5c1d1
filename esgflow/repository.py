"""Persistence boundary for the workflow core.

Core modules only talk to a :class:`Repository`; :class:`SqlRepository` is the
SQLAlchemy implementation used by the API and MCP server. Every lookup is
scoped to an organization. Errors raised by the session propagate unchanged,
except unique-key violations on data requests which surface as
:class:`~esgflow.errors.ConflictError`.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol, Sequence

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from esgflow.errors import ConflictError, NotFoundError
from esgflow.models import Contribution, DataRequest, Draft, Indicator, Initiative, Report


class Repository(Protocol):
    def add(self, obj: object) -> None: ...
    def delete(self, obj: object) -> None: ...
    def flush(self) -> None: ...
    def refresh(self, obj: object) -> None: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...

    def lock_initiative(self, initiative_id: int) -> None: ...

    def get_indicator(self, indicator_id: int) -> Indicator: ...
    def get_indicator_by_code(self, code: str) -> Indicator | None: ...
    def get_indicators(self, indicator_ids: Iterable[int]) -> list[Indicator]: ...
    def list_indicators(self, category: str | None = None) -> list[Indicator]: ...

    def get_initiative(self, organization_id: str, initiative_id: int) -> Initiative: ...
    def list_initiatives(self, organization_id: str) -> list[Initiative]: ...

    def get_data_request(self, organization_id: str, data_request_id: int) -> DataRequest: ...
    def list_data_requests(self, initiative_id: int, status: str | None = None) -> list[DataRequest]: ...
    def add_data_requests(self, requests: Sequence[DataRequest]) -> None: ...

    def get_contribution(self, organization_id: str, contribution_id: int) -> Contribution: ...
    def list_contributions(self, organization_id: str, status: str | None = None) -> list[Contribution]: ...
    def active_contribution(self, data_request_id: int) -> Contribution | None: ...

    def get_draft(self, data_request_id: int, contributor_id: str) -> Draft | None: ...
    def upsert_draft(self, data_request_id: int, contributor_id: str, payload_json: str, saved_at: datetime) -> Draft: ...

    def get_report(self, organization_id: str, report_id: int) -> Report: ...
    def list_reports(self, organization_id: str, initiative_id: int) -> list[Report]: ...


class SqlRepository:
    def __init__(self, session: Session):
        self.session = session

    # -- unit of work -------------------------------------------------------

    def add(self, obj: object) -> None:
        self.session.add(obj)

    def delete(self, obj: object) -> None:
        self.session.delete(obj)

    def flush(self) -> None:
        self.session.flush()

    def refresh(self, obj: object) -> None:
        self.session.refresh(obj)

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def lock_initiative(self, initiative_id: int) -> None:
        """Enter the single-writer section for an initiative.

        The version bump is the first write of the transaction, so it takes the
        row lock (PostgreSQL) or the database write lock (SQLite) and holds it
        until commit or rollback. Concurrent fan-out, submission and review on
        the same initiative therefore serialize.
        """
        result = self.session.execute(
            update(Initiative)
            .where(Initiative.id == initiative_id)
            .values(version=Initiative.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Initiative", initiative_id)

    # -- indicators ---------------------------------------------------------

    def get_indicator(self, indicator_id: int) -> Indicator:
        obj = self.session.get(Indicator, indicator_id)
        if obj is None:
            raise NotFoundError("Indicator", indicator_id)
        return obj

    def get_indicator_by_code(self, code: str) -> Indicator | None:
        return self.session.execute(select(Indicator).where(Indicator.code == code)).scalars().first()

    def get_indicators(self, indicator_ids: Iterable[int]) -> list[Indicator]:
        ids = list(dict.fromkeys(indicator_ids))
        found = {
            i.id: i for i in self.session.execute(
                select(Indicator).where(Indicator.id.in_(ids))
            ).scalars()
        }
        missing = [i for i in ids if i not in found]
        if missing:
            raise NotFoundError("Indicator", missing[0])
        return [found[i] for i in ids]

    def list_indicators(self, category: str | None = None) -> list[Indicator]:
        query = select(Indicator).order_by(Indicator.category, Indicator.code)
        if category:
            query = query.where(Indicator.category == category)
        return list(self.session.execute(query).scalars())

    # -- initiatives --------------------------------------------------------

    def get_initiative(self, organization_id: str, initiative_id: int) -> Initiative:
        obj = self.session.execute(
            select(Initiative).where(
                Initiative.id == initiative_id,
                Initiative.organization_id == organization_id,
            )
        ).scalars().first()
        if obj is None:
            raise NotFoundError("Initiative", initiative_id)
        return obj

    def list_initiatives(self, organization_id: str) -> list[Initiative]:
        return list(self.session.execute(
            select(Initiative)
            .where(Initiative.organization_id == organization_id)
            .order_by(Initiative.id)
        ).scalars())

    # -- data requests ------------------------------------------------------

    def get_data_request(self, organization_id: str, data_request_id: int) -> DataRequest:
        obj = self.session.execute(
            select(DataRequest)
            .join(Initiative, DataRequest.initiative_id == Initiative.id)
            .where(
                DataRequest.id == data_request_id,
                Initiative.organization_id == organization_id,
            )
        ).scalars().first()
        if obj is None:
            raise NotFoundError("Data request", data_request_id)
        return obj

    def list_data_requests(self, initiative_id: int, status: str | None = None) -> list[DataRequest]:
        # Overwrite identity-map state with the committed rows.
        query = (
            select(DataRequest)
            .where(DataRequest.initiative_id == initiative_id)
            .order_by(DataRequest.id)
            .execution_options(populate_existing=True)
        )
        if status:
            query = query.where(DataRequest.status == status)
        return list(self.session.execute(query).scalars())

    def add_data_requests(self, requests: Sequence[DataRequest]) -> None:
        self.session.add_all(requests)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise ConflictError(
                "Data request key collision; another fan-out for this initiative committed first"
            ) from exc

    # -- contributions ------------------------------------------------------

    def get_contribution(self, organization_id: str, contribution_id: int) -> Contribution:
        obj = self.session.execute(
            select(Contribution)
            .join(DataRequest, Contribution.data_request_id == DataRequest.id)
            .join(Initiative, DataRequest.initiative_id == Initiative.id)
            .where(
                Contribution.id == contribution_id,
                Initiative.organization_id == organization_id,
            )
        ).scalars().first()
        if obj is None:
            raise NotFoundError("Contribution", contribution_id)
        return obj

    def list_contributions(self, organization_id: str, status: str | None = None) -> list[Contribution]:
        query = (
            select(Contribution)
            .join(DataRequest, Contribution.data_request_id == DataRequest.id)
            .join(Initiative, DataRequest.initiative_id == Initiative.id)
            .where(Initiative.organization_id == organization_id)
            .order_by(Contribution.submitted_at, Contribution.id)
        )
        if status:
            query = query.where(Contribution.verification_status == status)
        return list(self.session.execute(query).scalars())

    def active_contribution(self, data_request_id: int) -> Contribution | None:
        return self.session.execute(
            select(Contribution).where(
                Contribution.data_request_id == data_request_id,
                Contribution.verification_status.in_(("pending", "approved")),
            )
        ).scalars().first()

    # -- drafts -------------------------------------------------------------

    def get_draft(self, data_request_id: int, contributor_id: str) -> Draft | None:
        return self.session.execute(
            select(Draft).where(
                Draft.data_request_id == data_request_id,
                Draft.contributor_id == contributor_id,
            )
        ).scalars().first()

    def upsert_draft(self, data_request_id: int, contributor_id: str, payload_json: str, saved_at: datetime) -> Draft:
        """Insert or overwrite the draft for this key in one statement.

        Two writers racing on a key that has no row yet both land on the
        unique index; the later one turns into an UPDATE instead of failing.
        """
        dialect = self.session.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(Draft).values(
            data_request_id=data_request_id,
            contributor_id=contributor_id,
            payload_json=payload_json,
            saved_at=saved_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Draft.data_request_id, Draft.contributor_id],
            set_={"payload_json": stmt.excluded.payload_json, "saved_at": stmt.excluded.saved_at},
        )
        self.session.execute(stmt)
        return self.session.execute(
            select(Draft)
            .where(Draft.data_request_id == data_request_id, Draft.contributor_id == contributor_id)
            .execution_options(populate_existing=True)
        ).scalars().one()

    # -- reports ------------------------------------------------------------

    def list_reports(self, organization_id: str, initiative_id: int) -> list[Report]:
        return list(self.session.execute(
            select(Report).where(
                Report.initiative_id == initiative_id,
                Report.organization_id == organization_id,
            ).order_by(Report.id)
        ).scalars())

    def get_report(self, organization_id: str, report_id: int) -> Report:
        obj = self.session.execute(
            select(Report).where(Report.id == report_id, Report.organization_id == organization_id)
        ).scalars().first()
        if obj is None:
            raise NotFoundError("Report", report_id)
        return obj
