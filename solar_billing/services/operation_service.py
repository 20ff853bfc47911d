"""External operation journal (two-phase write around provider calls).

Sequence used by the charge and settlement services:

1. claim()          commit a PENDING row with a unique idempotency key
2. provider call
3. mark_submitted() commit the provider id right after the call succeeds
4. mark_completed() flagged in the same commit as the local bookkeeping

A structured provider rejection means nothing happened externally, so the
claim is released. An unknown outcome leaves the claim PENDING: the provider
may have acted, and no operation touching the same target may run until
someone reconciles it (see reconciliation_service).
"""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from solar_billing.models.external_operation import (
    ExternalOperation,
    OperationKind,
    OperationStatus,
)
from solar_billing.services.exceptions import ValidationError
from solar_billing.services.logging import get_operations_logger

logger = logging.getLogger(__name__)
trail = get_operations_logger()

OPEN_STATUSES = (OperationStatus.PENDING, OperationStatus.SUBMITTED)


class OperationService:
    """Service for ExternalOperation rows."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def claim(
        self,
        kind: OperationKind,
        target_type: str,
        target_id: int,
        idempotency_key: str,
        payload: dict | None = None,
    ) -> ExternalOperation:
        """Insert and commit a PENDING operation.

        Raises:
            ValidationError: If an operation with the same key already exists
        """
        operation = ExternalOperation(
            kind=kind,
            target_type=target_type,
            target_id=target_id,
            idempotency_key=idempotency_key,
            status=OperationStatus.PENDING,
            payload=payload,
        )
        self.db.add(operation)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning("Operation %s already claimed", idempotency_key)
            raise ValidationError(
                f"Another {kind.value} for {target_type} {target_id} is in progress "
                "or was already performed"
            ) from e

        trail.info(
            "claimed id=%d key=%s target=%s:%d payload=%s",
            operation.id,
            idempotency_key,
            target_type,
            target_id,
            payload,
        )
        return operation

    def claim_exclusive(
        self,
        kind: OperationKind,
        target_type: str,
        target_id: int,
        idempotency_key: str,
        payload: dict | None = None,
    ) -> ExternalOperation:
        """Claim, then back out if another open operation targets the same row.

        Checked after the commit, so of two racing claims at least one sees
        the other.

        Raises:
            ValidationError: Same key claimed, or another operation on the
                target is in flight or awaiting reconciliation
        """
        operation = self.claim(kind, target_type, target_id, idempotency_key, payload)
        others = self.open_operations(
            kind, target_type=target_type, target_id=target_id, exclude_id=operation.id
        )
        if others:
            self.release(operation)
            raise ValidationError(
                f"{target_type} {target_id} has {kind.value} operation(s) awaiting "
                f"reconciliation: {', '.join(str(op.id) for op in others)}"
            )
        return operation

    def open_operations(
        self,
        kind: OperationKind | None = None,
        target_type: str | None = None,
        target_id: int | None = None,
        exclude_id: int | None = None,
    ) -> list[ExternalOperation]:
        """PENDING or SUBMITTED operations, optionally narrowed by kind and target."""
        query = self.db.query(ExternalOperation).filter(
            ExternalOperation.status.in_(OPEN_STATUSES)
        )
        if kind is not None:
            query = query.filter(ExternalOperation.kind == kind)
        if target_type is not None:
            query = query.filter(ExternalOperation.target_type == target_type)
        if target_id is not None:
            query = query.filter(ExternalOperation.target_id == target_id)
        if exclude_id is not None:
            query = query.filter(ExternalOperation.id != exclude_id)
        return query.order_by(ExternalOperation.created_at, ExternalOperation.id).all()

    def mark_submitted(self, operation: ExternalOperation, external_id: str) -> None:
        operation.status = OperationStatus.SUBMITTED
        operation.external_id = external_id
        self.db.commit()
        trail.info(
            "submitted id=%d key=%s external_id=%s",
            operation.id,
            operation.idempotency_key,
            external_id,
        )

    def mark_completed(self, operation: ExternalOperation) -> None:
        """Flag completion; the caller commits it with the bookkeeping."""
        operation.status = OperationStatus.COMPLETED
        operation.error = None
        trail.info("completed id=%d key=%s", operation.id, operation.idempotency_key)

    def release(self, operation: ExternalOperation) -> None:
        """Drop a claim whose provider call was definitively rejected."""
        operation_id, key = operation.id, operation.idempotency_key
        self.db.delete(operation)
        self.db.commit()
        trail.info("released id=%d key=%s", operation_id, key)

    def mark_unknown(self, operation: ExternalOperation, error: str) -> None:
        """Keep the claim PENDING and record why its outcome is unknown."""
        operation.error = error[:500]
        self.db.commit()
        trail.error(
            "unknown outcome id=%d key=%s: %s", operation.id, operation.idempotency_key, error
        )

    def list_unreconciled(self) -> list[ExternalOperation]:
        """Operations whose provider outcome and local state may diverge."""
        return self.open_operations()


__all__ = ["OperationService", "OPEN_STATUSES"]
