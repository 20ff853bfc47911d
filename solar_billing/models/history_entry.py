"""History entry model for the audit trail of billing entities."""

from typing import Any

from sqlalchemy import JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from solar_billing.models import Base, BaseModel


class HistoryEntry(Base, BaseModel):
    """Audit trail entry.

    Records what happened (action) to which entity (entity_type, entity_id),
    with an optional JSON snapshot of the relevant values (details).
    """

    __tablename__ = "entity_history"

    entity_type: Mapped[str] = mapped_column(index=False)
    """Entity type: "invoice", "consolidated_invoice", "plant_closing", "commission"."""

    entity_id: Mapped[int] = mapped_column(index=False)

    action: Mapped[str] = mapped_column(index=False)
    """Action performed: "payment_issued", "created", "settled", ..."""

    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True, index=False)

    __table_args__ = (Index("idx_history_entity", "entity_type", "entity_id"),)

    def __repr__(self) -> str:
        return (
            f"<HistoryEntry(id={self.id}, entity_type={self.entity_type}, "
            f"entity_id={self.entity_id}, action={self.action}, created_at={self.created_at})>"
        )


__all__ = ["HistoryEntry"]
