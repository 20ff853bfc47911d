"""Manual reconciliation of provider operations whose outcome is unknown.

An operation stays PENDING (or SUBMITTED) when the provider call timed out,
failed mid-flight, or the local bookkeeping after it did not commit. It
blocks further charges of its invoices and further payouts of its target
until an operator checks the provider and resolves it here:

- the provider acted: pass its charge/transfer id; the local bookkeeping the
  original request would have written is applied now
- the provider has no record: resolve without an id; the claim is dropped
  and the charge or payout can be requested again

SUBMITTED rows already carry the provider id, so resolving them always
applies the bookkeeping.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from solar_billing.models.commission import Commission, CommissionStatus
from solar_billing.models.external_operation import ExternalOperation, OperationKind
from solar_billing.models.invoice import Invoice
from solar_billing.models.plant_closing import ClosingStatus, PlantClosing
from solar_billing.services.charge_service import (
    ChargeService,
    charge_total,
    resolve_due_date,
)
from solar_billing.services.exceptions import ConsistencyError, NotFoundError, ValidationError
from solar_billing.services.history_service import HistoryService
from solar_billing.services.logging import get_operations_logger
from solar_billing.services.money import money
from solar_billing.services.operation_service import OPEN_STATUSES, OperationService
from solar_billing.services.provider_client import BillingProviderClient
from solar_billing.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)
trail = get_operations_logger()

APPLIED = "applied"
ABANDONED = "abandoned"


@dataclass
class ReconciliationResult:
    operation_id: int
    outcome: str
    external_id: str | None = None


class ReconciliationService:
    """Resolve open ExternalOperation rows after a manual provider check."""

    def __init__(self, db_session: Session, provider: BillingProviderClient):
        self.db = db_session
        self.provider = provider
        self.operations = OperationService(db_session)

    def list_unreconciled(self) -> list[ExternalOperation]:
        return self.operations.list_unreconciled()

    def resolve(self, operation_id: int, external_id: str | None = None) -> ReconciliationResult:
        """Close an open operation.

        Args:
            operation_id: ExternalOperation id (see ``solar-billing unreconciled``)
            external_id: Provider charge/transfer id when the provider acted

        Raises:
            NotFoundError: Operation or its target missing
            ValidationError: Operation already closed, or a different provider
                id was recorded for it
            ConsistencyError: The target was settled or charged by another
                operation in the meantime
            ExternalProviderError: Charge lookup at the provider failed
        """
        operation = self.db.get(ExternalOperation, operation_id)
        if operation is None:
            raise NotFoundError(f"Operation {operation_id} not found")
        if operation.status not in OPEN_STATUSES:
            raise ValidationError(
                f"Operation {operation_id} is {operation.status.value}, nothing to reconcile"
            )
        if operation.external_id and external_id and external_id != operation.external_id:
            raise ValidationError(
                f"Operation {operation_id} already recorded provider id {operation.external_id}"
            )

        external_id = external_id or operation.external_id
        if not external_id:
            return self._abandon(operation)

        if operation.kind == OperationKind.CHARGE:
            self._apply_charge(operation, external_id)
        elif operation.target_type == "plant_closing":
            self._apply_closing_transfer(operation, external_id)
        elif operation.target_type == "commission":
            self._apply_commission_transfer(operation, external_id)
        else:
            raise ValidationError(
                f"Operation {operation_id} targets unsupported {operation.target_type}"
            )

        operation.external_id = external_id
        HistoryService.log(
            self.db,
            operation.target_type,
            operation.target_id,
            "reconciled",
            {"operation_id": operation.id, "external_id": external_id},
        )
        self.db.commit()

        trail.info(
            "reconciled id=%d key=%s external_id=%s",
            operation.id,
            operation.idempotency_key,
            external_id,
        )
        return ReconciliationResult(operation.id, APPLIED, external_id)

    def _abandon(self, operation: ExternalOperation) -> ReconciliationResult:
        operation_id = operation.id
        HistoryService.log(
            self.db,
            operation.target_type,
            operation.target_id,
            "operation_abandoned",
            {"operation_id": operation_id, "idempotency_key": operation.idempotency_key},
        )
        self.operations.release(operation)
        logger.warning("Operation %d abandoned: provider has no record of it", operation_id)
        return ReconciliationResult(operation_id, ABANDONED)

    def _apply_charge(self, operation: ExternalOperation, external_id: str) -> None:
        payload = operation.payload or {}
        invoice_ids = payload.get("invoice_ids") or []
        invoices = (
            self.db.query(Invoice).filter(Invoice.id.in_(invoice_ids)).order_by(Invoice.id).all()
        )
        if not invoice_ids or len(invoices) != len(invoice_ids):
            raise NotFoundError(f"Invoices of operation {operation.id} no longer exist")

        charged = sorted(
            inv.id
            for inv in invoices
            if inv.provider_charge_id and inv.provider_charge_id != external_id
        )
        if charged:
            raise ConsistencyError(f"Invoices {charged} already carry another provider charge")

        subscriber = invoices[0].consumer_unit.subscriber
        charge = self.provider.get_payment(external_id)
        ChargeService(self.db, self.provider).record_charge(
            invoices,
            subscriber,
            operation,
            charge,
            money(payload["value"]) if payload.get("value") else charge_total(invoices),
            charge.due_date or resolve_due_date(invoices),
        )

    def _apply_closing_transfer(self, operation: ExternalOperation, external_id: str) -> None:
        closing = self.db.get(PlantClosing, operation.target_id)
        if closing is None:
            raise NotFoundError(f"Closing {operation.target_id} not found")
        if closing.status == ClosingStatus.SETTLED:
            raise ConsistencyError(
                f"Closing {closing.id} is already settled by transfer {closing.transfer_id}; "
                f"transfer {external_id} has no local counterpart"
            )

        value = money((operation.payload or {}).get("value") or closing.net_balance)
        if value != money(closing.net_balance):
            logger.warning(
                "Closing %d net balance is %s but transfer %s moved %s",
                closing.id,
                closing.net_balance,
                external_id,
                value,
            )
        SettlementService(self.db, self.provider).record_closing_settlement(
            closing, operation, external_id, value
        )

    def _apply_commission_transfer(self, operation: ExternalOperation, external_id: str) -> None:
        commission = self.db.get(Commission, operation.target_id)
        if commission is None:
            raise NotFoundError(f"Commission {operation.target_id} not found")
        if commission.status == CommissionStatus.PAID:
            raise ConsistencyError(
                f"Commission {commission.id} is already paid by transfer {commission.transfer_id}; "
                f"transfer {external_id} has no local counterpart"
            )

        value = money((operation.payload or {}).get("value") or commission.total_value)
        SettlementService(self.db, self.provider).record_commission_payment(
            commission, operation, external_id, value
        )


__all__ = ["ReconciliationService", "ReconciliationResult", "APPLIED", "ABANDONED"]
