"""Settlement executor: payouts of plant closings and originator commissions.

A payout is irreversible, so every precondition is checked before the
provider is contacted:

- the target exists and is not already settled/paid
- the stored derived values of a closing match their recomputation
- the amount to pay is strictly positive
- the receiver has a PIX key registered

Each attempt claims an idempotency key (ExternalOperation) before calling
the transfer endpoint. The claim is exclusive per target: while any transfer
for the same closing or commission is pending or submitted, whatever the
closing version it was claimed for, no new transfer is sent. Such an
operation is cleared only through reconciliation.
After the transfer, one commit flips the closing, the period's paid invoices
and the matching inflow entries to settled and writes the expense outflows.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from solar_billing.models.cashbook_entry import CashbookEntry, EntryDirection, EntryStatus
from solar_billing.models.commission import Commission, CommissionStatus
from solar_billing.models.consumer_unit import ConsumerUnit
from solar_billing.models.external_operation import ExternalOperation, OperationKind
from solar_billing.models.invoice import Invoice, InvoiceStatus
from solar_billing.models.plant_closing import ClosingStatus, PlantClosing
from solar_billing.services.closing_service import verify_totals
from solar_billing.services.exceptions import (
    ConsistencyError,
    ExternalProviderError,
    NotFoundError,
    ValidationError,
)
from solar_billing.services.history_service import HistoryService
from solar_billing.services.money import money
from solar_billing.services.operation_service import OperationService
from solar_billing.services.provider_client import BillingProviderClient, ProviderTransfer

logger = logging.getLogger(__name__)

# (cashbook category, closing attribute, label)
EXPENSE_CATEGORIES = (
    ("maintenance", "maintenance", "Maintenance"),
    ("lease", "lease", "Lease"),
    ("management_fee", "management_fee_value", "Management fee"),
    ("services", "bundled_services", "Bundled services"),
)


@dataclass
class SettlementResult:
    transfer_id: str


def expense_outflows(closing: PlantClosing, when: datetime) -> list[CashbookEntry]:
    """Settled outflow entries for the non-zero expense categories of a closing."""
    entries = []
    for category, attribute, label in EXPENSE_CATEGORIES:
        amount = money(getattr(closing, attribute))
        if amount <= 0:
            continue
        entries.append(
            CashbookEntry(
                plant_id=closing.plant_id,
                direction=EntryDirection.OUTFLOW,
                category=category,
                amount=amount,
                description=f"{label} - Ref. {closing.reference_label}",
                status=EntryStatus.SETTLED,
                transaction_date=when,
                closing_id=closing.id,
            )
        )
    return entries


class SettlementService:
    """Execute payouts and the bookkeeping that follows them."""

    def __init__(self, db_session: Session, provider: BillingProviderClient):
        """Initialize with database session and provider client."""
        self.db = db_session
        self.provider = provider
        self.operations = OperationService(db_session)

    def _transfer(
        self,
        operation: ExternalOperation,
        value,
        pix_key: str,
        pix_key_type: str | None,
        description: str,
    ) -> ProviderTransfer:
        try:
            transfer = self.provider.create_transfer(
                value,
                pix_key,
                pix_key_type,
                description,
                external_reference=operation.idempotency_key,
            )
        except ExternalProviderError as e:
            if e.transport_failure:
                self.operations.mark_unknown(operation, e.message)
            else:
                self.operations.release(operation)
            raise
        self.operations.mark_submitted(operation, transfer.id)
        return transfer

    def _paid_period_invoices(self, closing: PlantClosing) -> list[Invoice]:
        return (
            self.db.query(Invoice)
            .join(ConsumerUnit, Invoice.consumer_unit_id == ConsumerUnit.id)
            .filter(
                ConsumerUnit.plant_id == closing.plant_id,
                Invoice.reference_month == closing.reference_month,
                Invoice.reference_year == closing.reference_year,
                Invoice.status == InvoiceStatus.PAID,
            )
            .all()
        )

    def settle_closing(self, closing_id: int) -> SettlementResult:
        """Pay a closing's net balance to its plant and settle the period.

        Raises:
            NotFoundError: Closing missing
            ValidationError: Already settled, non-positive balance, no PIX key,
                or another transfer for the closing is in flight or unreconciled
            ConsistencyError: Stored derived values are stale, or the closing
                changed while the transfer was in flight
            ExternalProviderError: Transfer rejected or outcome unknown
        """
        closing = self.db.get(PlantClosing, closing_id)
        if closing is None:
            raise NotFoundError(f"Closing {closing_id} not found")
        if closing.status == ClosingStatus.SETTLED:
            raise ValidationError(f"Closing {closing_id} is already settled")

        verify_totals(closing)

        net_balance = money(closing.net_balance)
        if net_balance <= 0:
            logger.warning("Refusing payout of closing %d: net balance %s", closing_id, net_balance)
            raise ValidationError(
                f"Closing {closing_id} has no positive balance to pay out ({net_balance})"
            )

        plant = closing.plant
        if not plant.pix_key:
            raise ValidationError(f"Plant {plant.name} has no PIX key registered")

        expected_version = closing.version
        reference = closing.reference_label
        operation = self.operations.claim_exclusive(
            OperationKind.TRANSFER,
            "plant_closing",
            closing.id,
            f"transfer:plant_closing:{closing.id}:v{expected_version}",
            payload={"value": str(net_balance), "pix_key": plant.pix_key},
        )
        transfer = self._transfer(
            operation,
            net_balance,
            plant.pix_key,
            plant.pix_key_type,
            f"Monthly payout plant {plant.name} - {reference}",
        )

        # Reloaded after the claim/submit commits
        if closing.version != expected_version or closing.status == ClosingStatus.SETTLED:
            raise ConsistencyError(
                f"Transfer {transfer.id} executed but closing {closing_id} changed meanwhile; "
                f"reconcile operation {operation.id}"
            )

        self.record_closing_settlement(closing, operation, transfer.id, net_balance)
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise ConsistencyError(
                f"Transfer {transfer.id} executed but closing {closing_id} changed meanwhile; "
                f"reconcile operation {operation.id}"
            ) from e

        logger.info(
            "Settled closing %d (plant %d, %s): transfer=%s value=%s",
            closing_id,
            closing.plant_id,
            reference,
            transfer.id,
            net_balance,
        )
        return SettlementResult(transfer_id=transfer.id)

    def record_closing_settlement(
        self,
        closing: PlantClosing,
        operation: ExternalOperation,
        transfer_id: str,
        value: Decimal,
    ) -> None:
        """Stage the bookkeeping of an executed closing payout; the caller commits.

        Flips the closing, the period's paid invoices and their provisioned
        inflows to settled, writes the expense outflows and completes the
        operation.
        """
        now = datetime.now(timezone.utc)
        closing.status = ClosingStatus.SETTLED
        closing.transfer_id = transfer_id
        closing.settled_at = now

        invoices = self._paid_period_invoices(closing)
        for invoice in invoices:
            invoice.status = InvoiceStatus.SETTLED
        settled_ids = [invoice.id for invoice in invoices]

        outflows = expense_outflows(closing, now)
        self.db.add_all(outflows)

        inflows = []
        if settled_ids:
            inflows = (
                self.db.query(CashbookEntry)
                .filter(
                    CashbookEntry.plant_id == closing.plant_id,
                    CashbookEntry.direction == EntryDirection.INFLOW,
                    CashbookEntry.status == EntryStatus.PROVISIONED,
                    CashbookEntry.invoice_id.in_(settled_ids),
                )
                .all()
            )
            for entry in inflows:
                entry.status = EntryStatus.SETTLED

        HistoryService.log(
            self.db,
            "plant_closing",
            closing.id,
            "settled",
            {
                "transfer_id": transfer_id,
                "net_balance": str(value),
                "invoices_settled": len(settled_ids),
                "outflows": len(outflows),
                "inflows_settled": len(inflows),
            },
        )
        self.operations.mark_completed(operation)
        logger.debug(
            "Closing %d bookkeeping: invoices=%d outflows=%d inflows=%d",
            closing.id,
            len(settled_ids),
            len(outflows),
            len(inflows),
        )

    def pay_commission(self, commission_id: int) -> SettlementResult:
        """Pay an originator commission through a PIX transfer.

        Raises:
            NotFoundError: Commission missing
            ValidationError: Already paid, non-positive total, no PIX key,
                or another transfer for the commission is in flight or unreconciled
            ExternalProviderError: Transfer rejected or outcome unknown
        """
        commission = self.db.get(Commission, commission_id)
        if commission is None:
            raise NotFoundError(f"Commission {commission_id} not found")
        if commission.status == CommissionStatus.PAID:
            raise ValidationError(f"Commission {commission_id} is already paid")

        total = money(commission.total_value)
        if total <= 0:
            raise ValidationError(f"Commission {commission_id} has no positive value ({total})")

        originator = commission.originator
        if not originator.pix_key:
            raise ValidationError(f"Originator {originator.name} has no PIX key registered")

        operation = self.operations.claim_exclusive(
            OperationKind.TRANSFER,
            "commission",
            commission.id,
            f"transfer:commission:{commission.id}",
            payload={"value": str(total), "pix_key": originator.pix_key},
        )
        transfer = self._transfer(
            operation,
            total,
            originator.pix_key,
            originator.pix_key_type,
            f"Commission - {commission.reference_label}",
        )

        self.record_commission_payment(commission, operation, transfer.id, total)
        self.db.commit()

        logger.info(
            "Paid commission %d to originator %d: transfer=%s value=%s",
            commission_id,
            commission.originator_id,
            transfer.id,
            total,
        )
        return SettlementResult(transfer_id=transfer.id)

    def record_commission_payment(
        self,
        commission: Commission,
        operation: ExternalOperation,
        transfer_id: str,
        value: Decimal,
    ) -> None:
        """Stage the bookkeeping of an executed commission payout; the caller commits."""
        commission.status = CommissionStatus.PAID
        commission.transfer_id = transfer_id
        commission.paid_at = datetime.now(timezone.utc)
        HistoryService.log(
            self.db,
            "commission",
            commission.id,
            "paid",
            {"transfer_id": transfer_id, "value": str(value)},
        )
        self.operations.mark_completed(operation)


__all__ = ["SettlementService", "SettlementResult", "expense_outflows", "EXPENSE_CATEGORIES"]
