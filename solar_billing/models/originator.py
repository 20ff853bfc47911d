"""Originator ORM model (referring party paid by commission)."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from solar_billing.models import Base, BaseModel


class Originator(Base, BaseModel):
    """Partner who refers subscribers and receives commissions."""

    __tablename__ = "originators"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    pix_key: Mapped[str | None] = mapped_column(String(140), nullable=True)
    pix_key_type: Mapped[str | None] = mapped_column(String(20), nullable=True)

    commissions: Mapped[list["Commission"]] = relationship(  # noqa: F821
        "Commission",
        back_populates="originator",
    )

    def __repr__(self) -> str:
        return f"<Originator(id={self.id}, name={self.name!r})>"


__all__ = ["Originator"]
