from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

CATEGORIES = ("environmental", "social", "governance")
DATA_TYPES = ("numeric", "boolean", "date", "choice", "file", "text")
INITIATIVE_TYPES = ("report", "audit", "certification", "assessment")
REQUEST_STATUSES = ("pending", "submitted", "approved", "rejected")
VERIFICATION_STATUSES = ("pending", "approved", "rejected")


class Base(DeclarativeBase):
    pass


class Indicator(Base):
    __tablename__ = "indicators"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)  # environmental | social | governance
    data_type: Mapped[str] = mapped_column(String(20), nullable=False, default="numeric")
    unit: Mapped[str] = mapped_column(String(50), default="")
    guidance: Mapped[str] = mapped_column(Text, default="")
    choices_json: Mapped[str] = mapped_column(Text, default="[]")
    validation_rules_json: Mapped[str] = mapped_column(Text, default="{}")


class Initiative(Base):
    __tablename__ = "initiatives"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    initiative_type: Mapped[str] = mapped_column(String(30), nullable=False, default="report")
    description: Mapped[str] = mapped_column(Text, default="")
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    stakeholder_groups_json: Mapped[str] = mapped_column(Text, default="[]")
    created_by: Mapped[str] = mapped_column(String(100), default="")
    # Bumped by every write section on this initiative; see Repository.lock_initiative.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    data_requests: Mapped[list[DataRequest]] = relationship(
        "DataRequest", back_populates="initiative", cascade="all, delete-orphan",
    )
    reports: Mapped[list[Report]] = relationship(
        "Report", back_populates="initiative", cascade="all, delete-orphan",
    )

    @property
    def reporting_period(self) -> str:
        return f"{self.period_start.isoformat()}/{self.period_end.isoformat()}"


class DataRequest(Base):
    __tablename__ = "data_requests"
    __table_args__ = (
        UniqueConstraint("initiative_id", "indicator_id", "stakeholder_group", name="uq_data_request_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    initiative_id: Mapped[int] = mapped_column(Integer, ForeignKey("initiatives.id"), nullable=False, index=True)
    indicator_id: Mapped[int] = mapped_column(Integer, ForeignKey("indicators.id"), nullable=False)
    stakeholder_group: Mapped[str] = mapped_column(String(100), nullable=False)
    reporting_period: Mapped[str] = mapped_column(String(50), default="")
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # pending | submitted | approved | rejected
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    initiative: Mapped[Initiative] = relationship("Initiative", back_populates="data_requests")
    indicator: Mapped[Indicator] = relationship("Indicator")
    contributions: Mapped[list[Contribution]] = relationship(
        "Contribution", back_populates="data_request", cascade="all, delete-orphan",
        order_by="Contribution.id",
    )


class Contribution(Base):
    __tablename__ = "contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    data_request_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_requests.id"), nullable=False, index=True)
    contributor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    value_json: Mapped[str] = mapped_column(Text, default="null")
    unit: Mapped[str] = mapped_column(String(50), default="")
    notes: Mapped[str] = mapped_column(Text, default="")
    supporting_documents_json: Mapped[str] = mapped_column(Text, default="[]")
    verification_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    reviewer_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reviewer_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    data_request: Mapped[DataRequest] = relationship("DataRequest", back_populates="contributions")


class Draft(Base):
    __tablename__ = "drafts"
    __table_args__ = (
        UniqueConstraint("data_request_id", "contributor_id", name="uq_draft_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    data_request_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_requests.id"), nullable=False)
    contributor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    saved_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class Report(Base):
    __tablename__ = "reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    initiative_id: Mapped[int] = mapped_column(Integer, ForeignKey("initiatives.id"), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    completeness_json: Mapped[str] = mapped_column(Text, default="{}")
    content: Mapped[str] = mapped_column(Text, default="")
    content_type: Mapped[str] = mapped_column(String(50), default="text/html")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    initiative: Mapped[Initiative] = relationship("Initiative", back_populates="reports")
