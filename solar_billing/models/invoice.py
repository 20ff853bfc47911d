"""Invoice ORM model for one period's billable amount of a consumer unit."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, ForeignKey, Index, Numeric, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from solar_billing.models import Base, BaseModel


class InvoiceStatus(str, Enum):
    """Lifecycle status of an invoice."""

    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELED = "canceled"
    SETTLED = "settled"
    """Paid and already passed on to the plant in a settled closing"""


# Statuses that can no longer be put on a new charge
NON_CHARGEABLE_STATUSES = (InvoiceStatus.PAID, InvoiceStatus.CANCELED, InvoiceStatus.SETTLED)


class Invoice(Base, BaseModel):
    """Monthly usage invoice of a consumer unit.

    Amount and status are mutated by charge issuance and settlement only.
    Once a provider charge is attached the row is never deleted.
    """

    __tablename__ = "invoices"

    consumer_unit_id: Mapped[int] = mapped_column(
        ForeignKey("consumer_units.id"),
        nullable=False,
        index=True,
    )

    # Reference period
    reference_month: Mapped[int] = mapped_column(nullable=False, comment="1..12")
    reference_year: Mapped[int] = mapped_column(nullable=False)

    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    consumed_kwh: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Compensated energy in kWh",
    )
    amount_payable: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Amount the subscriber must pay",
    )
    status: Mapped[InvoiceStatus] = mapped_column(
        SQLEnum(InvoiceStatus),
        nullable=False,
        default=InvoiceStatus.PENDING,
        index=True,
    )

    # Billing provider link
    provider_charge_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    provider_document_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    provider_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    consolidated_invoice_id: Mapped[int | None] = mapped_column(
        ForeignKey("consolidated_invoices.id"),
        nullable=True,
        index=True,
    )

    # Relationships
    consumer_unit: Mapped["ConsumerUnit"] = relationship(  # noqa: F821
        "ConsumerUnit",
        back_populates="invoices",
        foreign_keys=[consumer_unit_id],
    )
    consolidated_invoice: Mapped["ConsolidatedInvoice | None"] = relationship(  # noqa: F821
        "ConsolidatedInvoice",
        back_populates="invoices",
        foreign_keys=[consolidated_invoice_id],
    )

    __table_args__ = (
        Index("idx_invoice_period", "reference_year", "reference_month"),
        Index("idx_invoice_unit_period", "consumer_unit_id", "reference_year", "reference_month"),
    )

    @property
    def reference_label(self) -> str:
        return f"{self.reference_month:02d}/{self.reference_year}"

    def __repr__(self) -> str:
        return (
            f"<Invoice(id={self.id}, consumer_unit_id={self.consumer_unit_id}, "
            f"ref={self.reference_month}/{self.reference_year}, "
            f"amount_payable={self.amount_payable}, status={self.status})>"
        )


__all__ = ["Invoice", "InvoiceStatus", "NON_CHARGEABLE_STATUSES"]
