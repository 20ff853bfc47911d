"""External operation journal: pending references to provider side effects."""

from enum import Enum
from typing import Any

from sqlalchemy import JSON, Index, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from solar_billing.models import Base, BaseModel


class OperationKind(str, Enum):
    CHARGE = "charge"
    TRANSFER = "transfer"


class OperationStatus(str, Enum):
    """Progress of an operation with an external side effect.

    PENDING: claimed locally, provider not (yet) known to have acted.
    SUBMITTED: provider accepted, local bookkeeping not yet committed.
    COMPLETED: provider accepted and bookkeeping committed.
    """

    PENDING = "pending"
    SUBMITTED = "submitted"
    COMPLETED = "completed"


class ExternalOperation(Base, BaseModel):
    """Row written before a provider call and finalized with the bookkeeping.

    A row left in PENDING or SUBMITTED marks an attempt whose local state may
    diverge from the provider and needs reconciliation. The unique
    idempotency_key prevents two concurrent attempts on the same target.
    """

    __tablename__ = "external_operations"

    kind: Mapped[OperationKind] = mapped_column(SQLEnum(OperationKind), nullable=False)
    target_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[int] = mapped_column(nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    status: Mapped[OperationStatus] = mapped_column(
        SQLEnum(OperationStatus),
        nullable=False,
        default=OperationStatus.PENDING,
    )
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        Index("idx_operation_target", "target_type", "target_id"),
        Index("idx_operation_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ExternalOperation(id={self.id}, kind={self.kind}, target={self.target_type}:"
            f"{self.target_id}, status={self.status}, external_id={self.external_id})>"
        )


__all__ = ["ExternalOperation", "OperationKind", "OperationStatus"]
