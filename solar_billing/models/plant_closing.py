"""Plant closing ORM model: monthly financial reconciliation of a plant."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from solar_billing.models import Base, BaseModel


class ClosingStatus(str, Enum):
    """Status of a plant closing.

    DRAFT and CLOSED are set by hand; SETTLED is terminal and only reached
    through the settlement service after a successful payout.
    """

    DRAFT = "draft"
    CLOSED = "closed"
    SETTLED = "settled"


class PlantClosing(Base, BaseModel):
    """Monthly closing of one plant.

    Inputs (paid invoices base, expenses, fee percent) are editable while the
    closing is not settled. management_fee_value, total_expenses and net_balance
    are derived and always rewritten from the inputs on save.
    """

    __tablename__ = "plant_closings"

    plant_id: Mapped[int] = mapped_column(
        ForeignKey("plants.id"),
        nullable=False,
        index=True,
    )
    reference_month: Mapped[int] = mapped_column(nullable=False, comment="1..12")
    reference_year: Mapped[int] = mapped_column(nullable=False)
    closing_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[ClosingStatus] = mapped_column(
        SQLEnum(ClosingStatus),
        nullable=False,
        default=ClosingStatus.DRAFT,
    )

    # Informational figures
    generated_energy: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00"), comment="kWh"
    )
    compensated_energy: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00"), comment="kWh"
    )
    monthly_billed: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )

    # Inputs
    paid_invoices_base: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    availability_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    maintenance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    lease: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    bundled_services: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    management_fee_percent: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("0.00")
    )

    # Derived
    management_fee_value: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    total_expenses: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    net_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )

    # Settlement
    transfer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency counter, bumped by SQLAlchemy on every UPDATE
    version: Mapped[int] = mapped_column(nullable=False)

    # Relationships
    plant: Mapped["Plant"] = relationship(  # noqa: F821
        "Plant",
        back_populates="closings",
        foreign_keys=[plant_id],
    )

    __table_args__ = (
        UniqueConstraint(
            "plant_id", "reference_year", "reference_month", name="uq_plant_closing_period"
        ),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def reference_label(self) -> str:
        return f"{self.reference_month:02d}/{self.reference_year}"

    def __repr__(self) -> str:
        return (
            f"<PlantClosing(id={self.id}, plant_id={self.plant_id}, "
            f"ref={self.reference_label}, net_balance={self.net_balance}, status={self.status})>"
        )


__all__ = ["PlantClosing", "ClosingStatus"]
