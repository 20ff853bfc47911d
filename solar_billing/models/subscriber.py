"""Subscriber ORM model for end customers who pay energy invoices."""

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from solar_billing.models import Base, BaseModel


class Subscriber(Base, BaseModel):
    """End customer billed for the energy allocated to their consumer units.

    The billing provider customer id is resolved lazily on the first charge
    and cached here, so repeated charge attempts reuse the same provider record.
    """

    __tablename__ = "subscribers"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Full name or company name",
    )
    cpf_cnpj: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="Tax id (CPF or CNPJ), digits or formatted",
    )
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)

    provider_customer_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Cached billing provider customer id",
    )

    # Relationships
    consumer_units: Mapped[list["ConsumerUnit"]] = relationship(  # noqa: F821
        "ConsumerUnit",
        back_populates="subscriber",
    )

    __table_args__ = (
        Index("idx_subscriber_cpf_cnpj", "cpf_cnpj"),
        Index("idx_subscriber_provider_customer", "provider_customer_id"),
    )

    @property
    def tax_id_digits(self) -> str:
        """Tax id stripped of punctuation, as the provider expects it."""
        return "".join(ch for ch in (self.cpf_cnpj or "") if ch.isdigit())

    def __repr__(self) -> str:
        return (
            f"<Subscriber(id={self.id}, name={self.name!r}, "
            f"provider_customer_id={self.provider_customer_id})>"
        )


__all__ = ["Subscriber"]
