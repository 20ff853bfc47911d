"""SQLAlchemy base model with common fields and model exports."""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

# Base class for all models
Base = declarative_base()


class BaseModel:
    """Base model with common timestamp fields."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


# Import models to register them with Base (after Base is defined)
# This must be after Base declaration to avoid circular imports
from solar_billing.models.subscriber import Subscriber  # noqa: E402
from solar_billing.models.plant import Plant  # noqa: E402
from solar_billing.models.consumer_unit import ConsumerUnit  # noqa: E402
from solar_billing.models.consolidated_invoice import (  # noqa: E402
    ConsolidatedInvoice,
    ConsolidatedInvoiceStatus,
)
from solar_billing.models.invoice import Invoice, InvoiceStatus  # noqa: E402
from solar_billing.models.plant_closing import ClosingStatus, PlantClosing  # noqa: E402
from solar_billing.models.cashbook_entry import (  # noqa: E402
    CashbookEntry,
    EntryDirection,
    EntryStatus,
)
from solar_billing.models.originator import Originator  # noqa: E402
from solar_billing.models.commission import Commission, CommissionStatus  # noqa: E402
from solar_billing.models.history_entry import HistoryEntry  # noqa: E402
from solar_billing.models.external_operation import (  # noqa: E402
    ExternalOperation,
    OperationKind,
    OperationStatus,
)

__all__ = [
    "Base",
    "BaseModel",
    "Subscriber",
    "Plant",
    "ConsumerUnit",
    "ConsolidatedInvoice",
    "ConsolidatedInvoiceStatus",
    "Invoice",
    "InvoiceStatus",
    "PlantClosing",
    "ClosingStatus",
    "CashbookEntry",
    "EntryDirection",
    "EntryStatus",
    "Originator",
    "Commission",
    "CommissionStatus",
    "HistoryEntry",
    "ExternalOperation",
    "OperationKind",
    "OperationStatus",
]
