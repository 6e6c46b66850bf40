"""Outcome reported by multi-step lifecycle operations."""

from enum import Enum
from typing import Optional, Any
from pydantic import BaseModel, Field


class OutcomeStatus(str, Enum):
    """Overall result of a multi-step operation."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    NOOP = "noop"


class OperationOutcome(BaseModel):
    """Result of a multi-step operation.

    ``partial`` means the checkpoint write landed but at least one
    follow-up step failed. ``failed`` means the checkpoint did not land.
    ``noop`` means the requested change was already in effect.
    """
    status: OutcomeStatus
    reason: Optional[str] = None
    failed_steps: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in (OutcomeStatus.SUCCESS, OutcomeStatus.NOOP)

    @classmethod
    def success(cls, **data: Any) -> "OperationOutcome":
        return cls(status=OutcomeStatus.SUCCESS, data=data)

    @classmethod
    def noop(cls, reason: str, **data: Any) -> "OperationOutcome":
        return cls(status=OutcomeStatus.NOOP, reason=reason, data=data)

    @classmethod
    def failed(cls, reason: str, failed_steps: Optional[list[str]] = None, **data: Any) -> "OperationOutcome":
        return cls(status=OutcomeStatus.FAILED, reason=reason, failed_steps=failed_steps or [], data=data)

    @classmethod
    def from_steps(cls, failed_steps: list[str], **data: Any) -> "OperationOutcome":
        """Build a success or partial outcome once the checkpoint write has landed."""
        if failed_steps:
            return cls(
                status=OutcomeStatus.PARTIAL,
                reason=f"steps failed: {', '.join(failed_steps)}",
                failed_steps=list(failed_steps),
                data=data,
            )
        return cls(status=OutcomeStatus.SUCCESS, data=data)
