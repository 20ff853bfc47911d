"""Consolidated invoice ORM model: one provider charge covering many invoices."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, ForeignKey, Numeric, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from solar_billing.models import Base, BaseModel


class ConsolidatedInvoiceStatus(str, Enum):
    PENDING = "pending"
    CANCELED = "canceled"


class ConsolidatedInvoice(Base, BaseModel):
    """Aggregate charge for several invoices of the same subscriber.

    total_value is fixed at creation (sum of the member invoices at that time).
    Member invoices point here through Invoice.consolidated_invoice_id.
    """

    __tablename__ = "consolidated_invoices"

    subscriber_id: Mapped[int] = mapped_column(
        ForeignKey("subscribers.id"),
        nullable=False,
        index=True,
    )
    total_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    provider_charge_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_document_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[ConsolidatedInvoiceStatus] = mapped_column(
        SQLEnum(ConsolidatedInvoiceStatus),
        nullable=False,
        default=ConsolidatedInvoiceStatus.PENDING,
    )

    # Relationships
    subscriber: Mapped["Subscriber"] = relationship(  # noqa: F821
        "Subscriber",
        foreign_keys=[subscriber_id],
    )
    invoices: Mapped[list["Invoice"]] = relationship(  # noqa: F821
        "Invoice",
        back_populates="consolidated_invoice",
    )

    def __repr__(self) -> str:
        return (
            f"<ConsolidatedInvoice(id={self.id}, subscriber_id={self.subscriber_id}, "
            f"total_value={self.total_value}, provider_charge_id={self.provider_charge_id})>"
        )


__all__ = ["ConsolidatedInvoice", "ConsolidatedInvoiceStatus"]
