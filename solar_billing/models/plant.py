"""Plant (usina) ORM model holding closing defaults and payout destination."""

from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from solar_billing.models import Base, BaseModel


class Plant(Base, BaseModel):
    """Power-generation asset whose output is allocated across consumer units.

    Expense and fee columns are only defaults: each monthly closing copies them
    at creation time and may override them afterwards.
    """

    __tablename__ = "plants"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Closing defaults
    availability_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Utility availability (minimum) cost per month",
    )
    maintenance_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Maintenance cost per month",
    )
    lease_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Land lease cost per month",
    )
    bundled_services: Mapped[dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
        comment='Recurring service costs: {"internet": 120, "security": 300}',
    )
    management_fee_percent: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Management fee as a percentage of paid invoices",
    )

    # Payout destination
    pix_key: Mapped[str | None] = mapped_column(String(140), nullable=True)
    pix_key_type: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="cpf, cnpj, email, phone or random",
    )

    # Relationships
    consumer_units: Mapped[list["ConsumerUnit"]] = relationship(  # noqa: F821
        "ConsumerUnit",
        back_populates="plant",
    )
    closings: Mapped[list["PlantClosing"]] = relationship(  # noqa: F821
        "PlantClosing",
        back_populates="plant",
    )

    def bundled_services_total(self) -> Decimal:
        """Sum of the configured recurring service costs."""
        total = Decimal("0.00")
        for value in (self.bundled_services or {}).values():
            total += Decimal(str(value or 0))
        return total

    def __repr__(self) -> str:
        return f"<Plant(id={self.id}, name={self.name!r})>"


__all__ = ["Plant"]
