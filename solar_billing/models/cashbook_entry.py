"""Cashbook entry ORM model: a ledger line of a plant's finances."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from solar_billing.models import Base, BaseModel


class EntryDirection(str, Enum):
    INFLOW = "inflow"
    OUTFLOW = "outflow"


class EntryStatus(str, Enum):
    PROVISIONED = "provisioned"
    """Expected money, not yet passed on"""

    SETTLED = "settled"


class CashbookEntry(Base, BaseModel):
    """Ledger line tied to a plant.

    Outflows are written by the settlement service (one per expense category).
    Inflows come from paid invoices. Origin is an explicit foreign key, either
    closing_id or invoice_id; rows are never mutated except for the status flip.
    """

    __tablename__ = "cashbook_entries"

    plant_id: Mapped[int] = mapped_column(ForeignKey("plants.id"), nullable=False, index=True)
    direction: Mapped[EntryDirection] = mapped_column(SQLEnum(EntryDirection), nullable=False)
    category: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="maintenance, lease, management_fee, services, invoice_payment",
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[EntryStatus] = mapped_column(
        SQLEnum(EntryStatus),
        nullable=False,
        default=EntryStatus.PROVISIONED,
    )
    transaction_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # Origin
    closing_id: Mapped[int | None] = mapped_column(
        ForeignKey("plant_closings.id"), nullable=True, index=True
    )
    invoice_id: Mapped[int | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True, index=True
    )

    # Relationships
    plant: Mapped["Plant"] = relationship("Plant", foreign_keys=[plant_id])  # noqa: F821

    __table_args__ = (Index("idx_cashbook_plant_direction", "plant_id", "direction", "status"),)

    def __repr__(self) -> str:
        return (
            f"<CashbookEntry(id={self.id}, plant_id={self.plant_id}, direction={self.direction}, "
            f"category={self.category}, amount={self.amount}, status={self.status})>"
        )


__all__ = ["CashbookEntry", "EntryDirection", "EntryStatus"]
