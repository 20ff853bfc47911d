"""Invoice charge consolidation service.

Resolves a set of invoices (one invoice, or all chargeable invoices of a
subscriber), makes sure the subscriber exists at the billing provider, issues
one charge for the whole set and records the result locally:

1. ConsolidatedInvoice row (only when more than one invoice is charged)
2. charge id / document URL / provider status on every invoice
3. one history entry per invoice, plus one for the consolidated invoice

The provider call is wrapped in an ExternalOperation (see operation_service),
so a crash between the provider call and step 3 leaves a SUBMITTED row
instead of a silently unlinked charge. An invoice listed on any PENDING or
SUBMITTED charge operation cannot go on another charge, whatever selection
it comes from, until that operation is reconciled.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from solar_billing.models.consolidated_invoice import (
    ConsolidatedInvoice,
    ConsolidatedInvoiceStatus,
)
from solar_billing.models.consumer_unit import ConsumerUnit
from solar_billing.models.external_operation import ExternalOperation, OperationKind
from solar_billing.models.invoice import NON_CHARGEABLE_STATUSES, Invoice, InvoiceStatus
from solar_billing.models.subscriber import Subscriber
from solar_billing.services.customer_service import CustomerService
from solar_billing.services.exceptions import (
    ExternalProviderError,
    NotFoundError,
    ValidationError,
)
from solar_billing.services.history_service import HistoryService
from solar_billing.services.money import money
from solar_billing.services.operation_service import OperationService
from solar_billing.services.provider_client import BillingProviderClient, ProviderCharge

logger = logging.getLogger(__name__)


@dataclass
class ChargeResult:
    """Outcome of a charge issuance."""

    url: str | None
    payment_id: str
    consolidated_id: int | None = None


def charge_total(invoices: list[Invoice]) -> Decimal:
    """Sum of amount payable over the selected invoices."""
    return money(sum((money(inv.amount_payable) for inv in invoices), Decimal("0.00")))


def resolve_due_date(
    invoices: list[Invoice], override: date | None = None, today: date | None = None
) -> date:
    """Explicit override, else the earliest invoice due date, else today."""
    if override is not None:
        return override
    due_dates = [inv.due_date for inv in invoices if inv.due_date is not None]
    if due_dates:
        return min(due_dates)
    return today or date.today()


def charge_description(invoices: list[Invoice]) -> str:
    if len(invoices) == 1:
        return f"Energy invoice - Ref: {invoices[0].reference_label}"
    return f"Consolidated invoice - {len(invoices)} consumer units"


def charge_key(invoices: list[Invoice]) -> str:
    """Idempotency key of a charge: same invoice set, same key."""
    ids = ",".join(str(i) for i in sorted(inv.id for inv in invoices))
    return "charge:" + hashlib.sha256(ids.encode("utf-8")).hexdigest()[:32]


class ChargeService:
    """Issue, update and cancel provider charges for invoices."""

    def __init__(self, db_session: Session, provider: BillingProviderClient):
        """Initialize with database session and provider client."""
        self.db = db_session
        self.provider = provider
        self.customers = CustomerService(db_session, provider)
        self.operations = OperationService(db_session)

    def select_chargeable_invoices(
        self, subscriber_id: int, invoice_ids: list[int] | None = None
    ) -> list[Invoice]:
        """Invoices of a subscriber that can go on a new charge.

        Excludes paid, canceled and settled invoices and any invoice that already
        carries a provider charge id. A non-empty invoice_ids narrows the set.
        Ordered by due date (undated last), then id.
        """
        query = (
            self.db.query(Invoice)
            .join(ConsumerUnit, Invoice.consumer_unit_id == ConsumerUnit.id)
            .filter(
                ConsumerUnit.subscriber_id == subscriber_id,
                Invoice.status.notin_(NON_CHARGEABLE_STATUSES),
                Invoice.provider_charge_id.is_(None),
            )
        )
        if invoice_ids:
            query = query.filter(Invoice.id.in_(invoice_ids))
        return query.order_by(Invoice.due_date.is_(None), Invoice.due_date, Invoice.id).all()

    def _resolve_single(self, invoice_id: int) -> tuple[list[Invoice], Subscriber]:
        invoice = self.db.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")

        subscriber = invoice.consumer_unit.subscriber if invoice.consumer_unit else None
        if subscriber is None:
            raise NotFoundError(f"Subscriber not found for invoice {invoice_id}")

        if invoice.provider_charge_id:
            raise ValidationError(
                f"Invoice {invoice_id} already has provider charge {invoice.provider_charge_id}"
            )
        if invoice.status in NON_CHARGEABLE_STATUSES:
            raise ValidationError(f"Invoice {invoice_id} is {invoice.status.value}")

        return [invoice], subscriber

    def _resolve_subscriber(
        self, subscriber_id: int, invoice_ids: list[int] | None
    ) -> tuple[list[Invoice], Subscriber]:
        subscriber = self.db.get(Subscriber, subscriber_id)
        if subscriber is None:
            raise NotFoundError(f"Subscriber {subscriber_id} not found")

        invoices = self.select_chargeable_invoices(subscriber_id, invoice_ids)
        if not invoices:
            raise ValidationError(
                f"No pending invoices without a charge found for subscriber {subscriber_id}"
            )
        return invoices, subscriber

    def issue_charge(
        self,
        invoice_id: int | None = None,
        subscriber_id: int | None = None,
        invoice_ids: list[int] | None = None,
        due_date: date | None = None,
    ) -> ChargeResult:
        """Issue one provider charge for an invoice or a subscriber's pending invoices.

        Args:
            invoice_id: Charge a single invoice
            subscriber_id: Charge every chargeable invoice of the subscriber
            invoice_ids: Optional subset of the subscriber's invoices
            due_date: Optional due date override

        Returns:
            ChargeResult with document URL, provider charge id and consolidated id

        Raises:
            ValidationError: Bad selector, nothing to charge, missing tax id
            NotFoundError: Invoice or subscriber missing
            ExternalProviderError: Provider rejected the customer or the charge
        """
        if (invoice_id is None) == (subscriber_id is None):
            raise ValidationError("Provide either invoice_id or subscriber_id")

        if invoice_id is not None:
            invoices, subscriber = self._resolve_single(invoice_id)
        else:
            invoices, subscriber = self._resolve_subscriber(subscriber_id, invoice_ids)

        consolidated = len(invoices) > 1
        customer_id = self.customers.ensure_customer(subscriber)

        total = charge_total(invoices)
        effective_due = resolve_due_date(invoices, due_date)
        description = charge_description(invoices)
        key = charge_key(invoices)
        invoice_id_list = [inv.id for inv in invoices]

        operation = self.operations.claim(
            OperationKind.CHARGE,
            "subscriber" if consolidated else "invoice",
            subscriber.id if consolidated else invoice_id_list[0],
            key,
            payload={
                "invoice_ids": invoice_id_list,
                "subscriber_id": subscriber.id,
                "value": str(total),
            },
        )
        busy = self.invoices_awaiting_reconciliation(invoice_id_list, exclude_id=operation.id)
        if busy:
            self.operations.release(operation)
            raise ValidationError(
                f"Invoices {busy} are on a charge awaiting reconciliation; "
                "resolve it before charging them again"
            )

        try:
            charge = self.provider.create_payment(
                customer_id,
                total,
                effective_due,
                description,
                external_reference=key,
            )
        except ExternalProviderError as e:
            if e.transport_failure:
                self.operations.mark_unknown(operation, e.message)
            else:
                self.operations.release(operation)
            raise
        self.operations.mark_submitted(operation, charge.id)

        consolidated_id = self.record_charge(
            invoices, subscriber, operation, charge, total, effective_due
        )
        self.db.commit()

        logger.info(
            "Issued charge %s: subscriber=%d invoices=%s total=%s due=%s consolidated_id=%s",
            charge.id,
            subscriber.id,
            invoice_id_list,
            total,
            effective_due,
            consolidated_id,
        )
        return ChargeResult(url=charge.document_url, payment_id=charge.id, consolidated_id=consolidated_id)

    def invoices_awaiting_reconciliation(
        self, invoice_ids: list[int], exclude_id: int | None = None
    ) -> list[int]:
        """Invoice ids that appear on an open (PENDING or SUBMITTED) charge operation."""
        wanted = set(invoice_ids)
        busy = set()
        open_charges = self.operations.open_operations(OperationKind.CHARGE, exclude_id=exclude_id)
        for operation in open_charges:
            busy.update(wanted.intersection((operation.payload or {}).get("invoice_ids") or []))
        return sorted(busy)

    def record_charge(
        self,
        invoices: list[Invoice],
        subscriber: Subscriber,
        operation: ExternalOperation,
        charge: ProviderCharge,
        total: Decimal,
        due_date: date,
    ) -> int | None:
        """Stage the local records of a charge created at the provider; the caller commits.

        Returns:
            Id of the ConsolidatedInvoice, None for a single-invoice charge
        """
        consolidated = len(invoices) > 1
        consolidated_id = None
        if consolidated:
            consolidated_invoice = ConsolidatedInvoice(
                subscriber_id=subscriber.id,
                total_value=total,
                due_date=due_date,
                provider_charge_id=charge.id,
                provider_document_url=charge.document_url,
                status=ConsolidatedInvoiceStatus.PENDING,
            )
            self.db.add(consolidated_invoice)
            self.db.flush()
            consolidated_id = consolidated_invoice.id

        for invoice in invoices:
            invoice.provider_charge_id = charge.id
            invoice.provider_document_url = charge.document_url
            invoice.provider_status = charge.status
            invoice.consolidated_invoice_id = consolidated_id

        for invoice in invoices:
            HistoryService.log(
                self.db,
                "invoice",
                invoice.id,
                "payment_issued",
                {"provider_charge_id": charge.id, "consolidated": consolidated, "value": str(total)},
            )
        if consolidated:
            HistoryService.log(
                self.db,
                "consolidated_invoice",
                consolidated_id,
                "created",
                {
                    "provider_charge_id": charge.id,
                    "total_value": str(total),
                    "invoices_count": len(invoices),
                },
            )

        self.operations.mark_completed(operation)
        return consolidated_id

    def cancel_charge(self, invoice_id: int) -> Invoice:
        """Cancel an invoice and its provider charge.

        A charge already gone at the provider (``not_found``) is tolerated.
        When the charge was consolidated, the other member invoices are
        detached from it so they can be charged again.
        """
        invoice = self.db.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.SETTLED):
            raise ValidationError(f"Invoice {invoice_id} is {invoice.status.value} and cannot be canceled")
        if invoice.status == InvoiceStatus.CANCELED:
            raise ValidationError(f"Invoice {invoice_id} is already canceled")

        charge_id = invoice.provider_charge_id
        if charge_id:
            try:
                self.provider.delete_payment(charge_id)
            except ExternalProviderError as e:
                if e.code != "not_found":
                    raise
                logger.warning("Charge %s already absent at provider", charge_id)

            consolidated_invoice = invoice.consolidated_invoice
            if consolidated_invoice is not None:
                consolidated_invoice.status = ConsolidatedInvoiceStatus.CANCELED
                for sibling in consolidated_invoice.invoices:
                    if sibling.id == invoice.id:
                        continue
                    sibling.provider_charge_id = None
                    sibling.provider_document_url = None
                    sibling.provider_status = None
                    sibling.consolidated_invoice_id = None
                    HistoryService.log(
                        self.db, "invoice", sibling.id, "charge_detached", {"provider_charge_id": charge_id}
                    )
                HistoryService.log(
                    self.db, "consolidated_invoice", consolidated_invoice.id, "canceled", None
                )

        invoice.status = InvoiceStatus.CANCELED
        invoice.provider_status = "CANCELLED"
        HistoryService.log(self.db, "invoice", invoice.id, "charge_canceled", {"provider_charge_id": charge_id})
        self.db.commit()

        logger.info("Canceled invoice %d (charge %s)", invoice_id, charge_id)
        return invoice

    def update_charge(
        self,
        invoice_id: int,
        value: Decimal | None = None,
        due_date: date | None = None,
    ) -> Invoice:
        """Change value and/or due date of an invoice's provider charge."""
        invoice = self.db.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        if not invoice.provider_charge_id:
            raise ValidationError(f"Invoice {invoice_id} has no provider charge")
        if value is None and due_date is None:
            raise ValidationError("Nothing to update: provide value or due_date")
        if invoice.status in NON_CHARGEABLE_STATUSES:
            raise ValidationError(f"Invoice {invoice_id} is {invoice.status.value}")

        consolidated_invoice = invoice.consolidated_invoice
        if value is not None:
            if consolidated_invoice is not None:
                raise ValidationError(
                    "The value of a consolidated charge cannot be changed through one invoice"
                )
            value = money(value)
            if value <= 0:
                raise ValidationError("Charge value must be positive")

        self.provider.update_payment(invoice.provider_charge_id, value=value, due_date=due_date)

        changes = {}
        if value is not None:
            invoice.amount_payable = value
            changes["value"] = str(value)
        if due_date is not None:
            invoice.due_date = due_date
            if consolidated_invoice is not None:
                consolidated_invoice.due_date = due_date
            changes["due_date"] = due_date.isoformat()

        HistoryService.log(self.db, "invoice", invoice.id, "charge_updated", changes)
        self.db.commit()

        logger.info("Updated charge %s of invoice %d: %s", invoice.provider_charge_id, invoice_id, changes)
        return invoice


__all__ = [
    "ChargeService",
    "ChargeResult",
    "charge_total",
    "resolve_due_date",
    "charge_description",
    "charge_key",
]
