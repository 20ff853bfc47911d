"""History service for the audit trail of billing entities."""

from sqlalchemy.orm import Session

from solar_billing.models.history_entry import HistoryEntry


class HistoryService:
    """Service for history (audit trail) operations.

    Entries are added to the session only; they are committed together with
    the change they describe.
    """

    @staticmethod
    def log(
        db: Session,
        entity_type: str,
        entity_id: int,
        action: str,
        details: dict | None = None,
    ) -> HistoryEntry:
        """Create history entry (one-liner).

        Args:
            db: Database session
            entity_type: Type of entity ("invoice", "plant_closing", etc.)
            entity_id: Primary key of the entity
            action: Action performed ("payment_issued", "settled", etc.)
            details: Optional JSON snapshot of relevant values

        Returns:
            Created HistoryEntry object
        """
        entry = HistoryEntry(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            details=details,
        )
        db.add(entry)
        return entry

    @staticmethod
    def for_entity(db: Session, entity_type: str, entity_id: int) -> list[HistoryEntry]:
        """Entries of one entity, oldest first."""
        return (
            db.query(HistoryEntry)
            .filter(HistoryEntry.entity_type == entity_type, HistoryEntry.entity_id == entity_id)
            .order_by(HistoryEntry.created_at, HistoryEntry.id)
            .all()
        )


__all__ = ["HistoryService"]
