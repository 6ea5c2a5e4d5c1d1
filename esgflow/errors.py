from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


class ESGFlowError(Exception):
    """Base error for ESGFlow."""


class ValidationError(ESGFlowError):
    """Missing or invalid required input."""


class NotFoundError(ESGFlowError):
    """Unknown initiative, indicator, data request, contribution or draft."""

    def __init__(self, label: str, entity_id: Any):
        super().__init__(f"{label} {entity_id} not found")
        self.label = label
        self.entity_id = entity_id


class ConflictError(ESGFlowError):
    """State transition not allowed from the entity's current state."""


class AuthorizationError(ESGFlowError):
    """Caller lacks the reviewer role required for the action."""


class ReportCompilationError(ESGFlowError):
    """The report compiler could not produce an artifact."""


@dataclass(frozen=True)
class MissingItem:
    data_request_id: int
    category: str
    indicator_id: int
    indicator_code: str
    indicator_name: str
    stakeholder_group: str
    status: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class InsufficientDataError(ESGFlowError):
    """Completeness is below the report threshold.

    Carries every data request still lacking an approved contribution so the
    caller can show what is missing and from whom without another query.
    """

    def __init__(self, overall: int, threshold: int, missing: list[MissingItem]):
        super().__init__(
            f"Completeness {overall}% is below the {threshold}% report threshold "
            f"({len(missing)} data requests outstanding)"
        )
        self.overall = overall
        self.threshold = threshold
        self.missing = missing

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall,
            "threshold": self.threshold,
            "missing": [m.to_dict() for m in self.missing],
        }
