"""Commission ORM model for originator payouts."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Numeric, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from solar_billing.models import Base, BaseModel


class CommissionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class Commission(Base, BaseModel):
    """Monthly commission owed to an originator. Mutated exactly once, when paid."""

    __tablename__ = "commissions"

    originator_id: Mapped[int] = mapped_column(
        ForeignKey("originators.id"),
        nullable=False,
        index=True,
    )
    reference_month: Mapped[int] = mapped_column(nullable=False)
    reference_year: Mapped[int] = mapped_column(nullable=False)
    total_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[CommissionStatus] = mapped_column(
        SQLEnum(CommissionStatus),
        nullable=False,
        default=CommissionStatus.PENDING,
    )
    transfer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    originator: Mapped["Originator"] = relationship(  # noqa: F821
        "Originator",
        back_populates="commissions",
        foreign_keys=[originator_id],
    )

    @property
    def reference_label(self) -> str:
        return f"{self.reference_month:02d}/{self.reference_year}"

    def __repr__(self) -> str:
        return (
            f"<Commission(id={self.id}, originator_id={self.originator_id}, "
            f"total_value={self.total_value}, status={self.status})>"
        )


__all__ = ["Commission", "CommissionStatus"]
