"""Consumer unit ORM model (a billed utility connection point)."""

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from solar_billing.models import Base, BaseModel


class ConsumerUnit(Base, BaseModel):
    """Utility connection point owned by a subscriber, optionally fed by a plant."""

    __tablename__ = "consumer_units"

    subscriber_id: Mapped[int] = mapped_column(
        ForeignKey("subscribers.id"),
        nullable=False,
        index=True,
        comment="Subscriber who pays this unit's invoices",
    )
    plant_id: Mapped[int | None] = mapped_column(
        ForeignKey("plants.id"),
        nullable=True,
        index=True,
        comment="Plant whose output is allocated to this unit",
    )
    installation_code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Utility installation number",
    )
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Relationships
    subscriber: Mapped["Subscriber"] = relationship(  # noqa: F821
        "Subscriber",
        back_populates="consumer_units",
        foreign_keys=[subscriber_id],
    )
    plant: Mapped["Plant | None"] = relationship(  # noqa: F821
        "Plant",
        back_populates="consumer_units",
        foreign_keys=[plant_id],
    )
    invoices: Mapped[list["Invoice"]] = relationship(  # noqa: F821
        "Invoice",
        back_populates="consumer_unit",
    )

    __table_args__ = (Index("idx_consumer_unit_installation", "installation_code"),)

    def __repr__(self) -> str:
        return (
            f"<ConsumerUnit(id={self.id}, installation_code={self.installation_code}, "
            f"subscriber_id={self.subscriber_id}, plant_id={self.plant_id})>"
        )


__all__ = ["ConsumerUnit"]
