"""Integration tests for charge issuance, cancellation and updates."""

from datetime import date
from decimal import Decimal

import httpx
import pytest

from solar_billing.models import (
    ConsolidatedInvoice,
    ConsolidatedInvoiceStatus,
    ExternalOperation,
    InvoiceStatus,
    OperationStatus,
)
from solar_billing.services.charge_service import ChargeService
from solar_billing.services.exceptions import (
    ExternalProviderError,
    NotFoundError,
    ValidationError,
)
from solar_billing.services.history_service import HistoryService


@pytest.fixture
def service(db_session, provider):
    return ChargeService(db_session, provider)


@pytest.fixture
def subscriber_with_invoices(make_subscriber, make_unit, make_invoice):
    """Subscriber with three pending invoices of 120.00, 95.50 and 200.00."""
    subscriber = make_subscriber()
    invoices = [
        make_invoice(make_unit(subscriber), "120.00", due_date=date(2025, 4, 20)),
        make_invoice(make_unit(subscriber), "95.50", due_date=date(2025, 4, 10)),
        make_invoice(make_unit(subscriber), "200.00", due_date=date(2025, 4, 15)),
    ]
    return subscriber, invoices


class TestIssueConsolidatedCharge:
    """Charging all pending invoices of a subscriber."""

    def test_consolidated_total_and_due_date(self, service, provider_api, subscriber_with_invoices):
        subscriber, invoices = subscriber_with_invoices

        result = service.issue_charge(subscriber_id=subscriber.id)

        payment = provider_api.calls("POST", "payments")[0]["json"]
        assert payment["value"] == 415.5
        assert payment["dueDate"] == "2025-04-10"
        assert payment["billingType"] == "BOLETO"
        assert payment["description"] == "Consolidated invoice - 3 consumer units"
        assert result.payment_id == payment_id_of(provider_api)
        assert result.url == f"https://provider.test/b/{result.payment_id}"
        assert result.consolidated_id is not None

    def test_records_consolidated_invoice_and_links(
        self, db_session, service, subscriber_with_invoices
    ):
        subscriber, invoices = subscriber_with_invoices

        result = service.issue_charge(subscriber_id=subscriber.id)

        consolidated = db_session.get(ConsolidatedInvoice, result.consolidated_id)
        assert consolidated.total_value == Decimal("415.50")
        assert consolidated.due_date == date(2025, 4, 10)
        assert consolidated.provider_charge_id == result.payment_id
        assert consolidated.status == ConsolidatedInvoiceStatus.PENDING
        for invoice in invoices:
            db_session.refresh(invoice)
            assert invoice.provider_charge_id == result.payment_id
            assert invoice.consolidated_invoice_id == consolidated.id
            assert invoice.provider_status == "PENDING"

    def test_history_entries(self, db_session, service, subscriber_with_invoices):
        subscriber, invoices = subscriber_with_invoices

        result = service.issue_charge(subscriber_id=subscriber.id)

        for invoice in invoices:
            actions = [e.action for e in HistoryService.for_entity(db_session, "invoice", invoice.id)]
            assert actions == ["payment_issued"]
        aggregate = HistoryService.for_entity(db_session, "consolidated_invoice", result.consolidated_id)
        assert [e.action for e in aggregate] == ["created"]
        assert aggregate[0].details["invoices_count"] == 3

    def test_excludes_paid_canceled_settled(
        self, service, provider_api, make_subscriber, make_unit, make_invoice
    ):
        subscriber = make_subscriber()
        unit = make_unit(subscriber)
        make_invoice(unit, "100.00", status=InvoiceStatus.PENDING)
        make_invoice(unit, "50.00", status=InvoiceStatus.OVERDUE)
        make_invoice(unit, "70.00", status=InvoiceStatus.PAID)
        make_invoice(unit, "80.00", status=InvoiceStatus.CANCELED)
        make_invoice(unit, "90.00", status=InvoiceStatus.SETTLED)

        service.issue_charge(subscriber_id=subscriber.id)

        assert provider_api.calls("POST", "payments")[0]["json"]["value"] == 150.0

    def test_charged_invoice_never_reselected(
        self, db_session, service, provider_api, make_subscriber, make_unit, make_invoice
    ):
        """An invoice that carries a charge id stays out of later consolidations."""
        subscriber = make_subscriber()
        unit = make_unit(subscriber)
        first = make_invoice(unit, "100.00", month=1)
        service.issue_charge(invoice_id=first.id)

        make_invoice(unit, "60.00", month=2)
        make_invoice(unit, "40.00", month=3)
        result = service.issue_charge(subscriber_id=subscriber.id)

        second_payment = provider_api.calls("POST", "payments")[1]["json"]
        assert second_payment["value"] == 100.0
        db_session.refresh(first)
        assert first.provider_charge_id != result.payment_id
        assert first.consolidated_invoice_id is None

    def test_invoice_ids_narrow_selection(
        self, service, provider_api, subscriber_with_invoices
    ):
        subscriber, invoices = subscriber_with_invoices

        service.issue_charge(
            subscriber_id=subscriber.id, invoice_ids=[invoices[0].id, invoices[2].id]
        )

        assert provider_api.calls("POST", "payments")[0]["json"]["value"] == 320.0

    def test_due_date_override(self, service, provider_api, subscriber_with_invoices):
        subscriber, _ = subscriber_with_invoices

        service.issue_charge(subscriber_id=subscriber.id, due_date=date(2025, 5, 5))

        assert provider_api.calls("POST", "payments")[0]["json"]["dueDate"] == "2025-05-05"

    def test_subscriber_selector_with_one_invoice_is_not_consolidated(
        self, db_session, service, make_subscriber, make_unit, make_invoice
    ):
        subscriber = make_subscriber()
        invoice = make_invoice(make_unit(subscriber), "99.90")

        result = service.issue_charge(subscriber_id=subscriber.id)

        assert result.consolidated_id is None
        assert db_session.query(ConsolidatedInvoice).count() == 0
        db_session.refresh(invoice)
        assert invoice.provider_charge_id == result.payment_id

    def test_nothing_to_charge(self, service, provider_api, make_subscriber):
        subscriber = make_subscriber()

        with pytest.raises(ValidationError, match="No pending invoices"):
            service.issue_charge(subscriber_id=subscriber.id)
        assert provider_api.requests == []


def payment_id_of(provider_api) -> str:
    return next(iter(provider_api.payments))


class TestIssueSingleCharge:
    def test_single_invoice_charge(self, db_session, service, provider_api, make_subscriber, make_unit, make_invoice):
        invoice = make_invoice(make_unit(make_subscriber()), "120.00", due_date=date(2025, 4, 20))

        result = service.issue_charge(invoice_id=invoice.id)

        payment = provider_api.calls("POST", "payments")[0]["json"]
        assert payment["description"] == "Energy invoice - Ref: 03/2025"
        assert payment["value"] == 120.0
        assert result.consolidated_id is None
        db_session.refresh(invoice)
        assert invoice.provider_document_url == result.url

    def test_already_charged_invoice_rejected(self, service, provider_api, make_subscriber, make_unit, make_invoice):
        invoice = make_invoice(make_unit(make_subscriber()), "120.00")
        service.issue_charge(invoice_id=invoice.id)

        with pytest.raises(ValidationError, match="already has provider charge"):
            service.issue_charge(invoice_id=invoice.id)
        assert len(provider_api.calls("POST", "payments")) == 1

    def test_paid_invoice_rejected(self, service, provider_api, make_subscriber, make_unit, make_invoice):
        invoice = make_invoice(make_unit(make_subscriber()), "120.00", status=InvoiceStatus.PAID)

        with pytest.raises(ValidationError, match="paid"):
            service.issue_charge(invoice_id=invoice.id)
        assert provider_api.requests == []

    def test_missing_invoice(self, service):
        with pytest.raises(NotFoundError):
            service.issue_charge(invoice_id=999)

    @pytest.mark.parametrize("kwargs", [{}, {"invoice_id": 1, "subscriber_id": 1}])
    def test_exactly_one_selector(self, service, kwargs):
        with pytest.raises(ValidationError, match="either invoice_id or subscriber_id"):
            service.issue_charge(**kwargs)


class TestCustomerResolution:
    def test_customer_created_once_and_cached(
        self, db_session, service, provider_api, make_subscriber, make_unit, make_invoice
    ):
        subscriber = make_subscriber()
        unit = make_unit(subscriber)
        first = make_invoice(unit, "10.00", month=1)
        second = make_invoice(unit, "20.00", month=2)

        service.issue_charge(invoice_id=first.id)
        service.issue_charge(invoice_id=second.id)

        assert len(provider_api.calls("POST", "customers")) == 1
        assert len(provider_api.calls("GET", "customers")) == 1
        db_session.refresh(subscriber)
        customer_id = subscriber.provider_customer_id
        assert customer_id is not None
        assert {p["customer"] for p in provider_api.payments.values()} == {customer_id}

    def test_existing_provider_customer_reused(
        self, db_session, service, provider_api, make_subscriber, make_unit, make_invoice
    ):
        existing_id = provider_api.add_customer("12345678909")
        invoice = make_invoice(make_unit(make_subscriber()), "10.00")

        service.issue_charge(invoice_id=invoice.id)

        assert provider_api.calls("POST", "customers") == []
        assert provider_api.calls("POST", "payments")[0]["json"]["customer"] == existing_id

    def test_missing_tax_id_rejected_before_charge(
        self, service, provider_api, make_subscriber, make_unit, make_invoice
    ):
        invoice = make_invoice(make_unit(make_subscriber(cpf_cnpj=None)), "10.00")

        with pytest.raises(ValidationError, match="CPF/CNPJ"):
            service.issue_charge(invoice_id=invoice.id)
        assert provider_api.requests == []


class TestChargeFailures:
    def test_rejected_charge_leaves_invoices_untouched(
        self, db_session, service, provider_api, subscriber_with_invoices
    ):
        subscriber, invoices = subscriber_with_invoices
        provider_api.reject("POST", "payments", "Customer has no valid email")

        with pytest.raises(ExternalProviderError, match="Customer has no valid email"):
            service.issue_charge(subscriber_id=subscriber.id)

        for invoice in invoices:
            db_session.refresh(invoice)
            assert invoice.provider_charge_id is None
        assert db_session.query(ConsolidatedInvoice).count() == 0
        # Claim released: the same selection can be retried
        assert db_session.query(ExternalOperation).count() == 0

    def test_retry_after_rejection_succeeds(self, service, provider_api, subscriber_with_invoices):
        subscriber, _ = subscriber_with_invoices
        provider_api.reject("POST", "payments", "Temporary validation failure")
        with pytest.raises(ExternalProviderError):
            service.issue_charge(subscriber_id=subscriber.id)

        provider_api.failures.clear()
        result = service.issue_charge(subscriber_id=subscriber.id)
        assert result.payment_id

    def test_transport_failure_keeps_pending_claim(
        self, db_session, service, provider_api, subscriber_with_invoices
    ):
        subscriber, _ = subscriber_with_invoices
        provider_api.break_connection("POST", "payments")

        with pytest.raises(ExternalProviderError) as exc_info:
            service.issue_charge(subscriber_id=subscriber.id)
        assert exc_info.value.transport_failure

        operation = db_session.query(ExternalOperation).one()
        assert operation.status == OperationStatus.PENDING
        assert "unreachable" in operation.error

        provider_api.failures.clear()
        with pytest.raises(ValidationError, match="in progress or was already performed"):
            service.issue_charge(subscriber_id=subscriber.id)

    def test_unknown_outcome_blocks_other_selections_of_same_invoices(
        self, db_session, service, provider_api, subscriber_with_invoices
    ):
        """An invoice on an unreconciled charge is not charged again through another selection."""
        subscriber, invoices = subscriber_with_invoices
        provider_api.break_connection("POST", "payments")
        with pytest.raises(ExternalProviderError):
            service.issue_charge(subscriber_id=subscriber.id)
        provider_api.failures.clear()

        with pytest.raises(ValidationError, match="awaiting reconciliation"):
            service.issue_charge(invoice_id=invoices[0].id)
        with pytest.raises(ValidationError, match="awaiting reconciliation"):
            service.issue_charge(subscriber_id=subscriber.id, invoice_ids=[invoices[1].id])

        assert len(provider_api.calls("POST", "payments")) == 1
        assert db_session.query(ExternalOperation).count() == 1

    def test_gateway_error_keeps_pending_claim(
        self, db_session, service, provider_api, subscriber_with_invoices
    ):
        subscriber, _ = subscriber_with_invoices
        provider_api.failures[("POST", "payments")] = httpx.Response(502, text="Bad Gateway")

        with pytest.raises(ExternalProviderError) as exc_info:
            service.issue_charge(subscriber_id=subscriber.id)

        assert exc_info.value.transport_failure
        assert db_session.query(ExternalOperation).one().status == OperationStatus.PENDING

    def test_invoices_outside_open_charge_still_chargeable(
        self, service, provider_api, subscriber_with_invoices
    ):
        subscriber, invoices = subscriber_with_invoices
        provider_api.break_connection("POST", "payments")
        with pytest.raises(ExternalProviderError):
            service.issue_charge(invoice_id=invoices[0].id)
        provider_api.failures.clear()

        result = service.issue_charge(
            subscriber_id=subscriber.id, invoice_ids=[invoices[1].id, invoices[2].id]
        )

        assert result.consolidated_id is not None

    def test_successful_charge_completes_operation(
        self, db_session, service, subscriber_with_invoices
    ):
        subscriber, _ = subscriber_with_invoices

        result = service.issue_charge(subscriber_id=subscriber.id)

        operation = db_session.query(ExternalOperation).one()
        assert operation.status == OperationStatus.COMPLETED
        assert operation.external_id == result.payment_id
        assert operation.idempotency_key.startswith("charge:")


class TestCancelCharge:
    def test_cancel_single_charge(self, db_session, service, provider_api, make_subscriber, make_unit, make_invoice):
        invoice = make_invoice(make_unit(make_subscriber()), "120.00")
        result = service.issue_charge(invoice_id=invoice.id)

        canceled = service.cancel_charge(invoice.id)

        assert provider_api.calls("DELETE", "payments")[0]["path"] == f"/payments/{result.payment_id}"
        assert canceled.status == InvoiceStatus.CANCELED
        assert canceled.provider_status == "CANCELLED"
        actions = [e.action for e in HistoryService.for_entity(db_session, "invoice", invoice.id)]
        assert actions == ["payment_issued", "charge_canceled"]

    def test_charge_already_gone_is_tolerated(
        self, service, provider_api, make_subscriber, make_unit, make_invoice
    ):
        invoice = make_invoice(make_unit(make_subscriber()), "120.00")
        result = service.issue_charge(invoice_id=invoice.id)
        del provider_api.payments[result.payment_id]

        assert service.cancel_charge(invoice.id).status == InvoiceStatus.CANCELED

    def test_other_provider_error_propagates(
        self, db_session, service, provider_api, make_subscriber, make_unit, make_invoice
    ):
        invoice = make_invoice(make_unit(make_subscriber()), "120.00")
        service.issue_charge(invoice_id=invoice.id)
        provider_api.reject("DELETE", "payments", "Payment already received")

        with pytest.raises(ExternalProviderError):
            service.cancel_charge(invoice.id)
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.PENDING

    def test_cancel_consolidated_member_detaches_siblings(
        self, db_session, service, subscriber_with_invoices
    ):
        subscriber, invoices = subscriber_with_invoices
        result = service.issue_charge(subscriber_id=subscriber.id)

        service.cancel_charge(invoices[0].id)

        consolidated = db_session.get(ConsolidatedInvoice, result.consolidated_id)
        assert consolidated.status == ConsolidatedInvoiceStatus.CANCELED
        for sibling in invoices[1:]:
            db_session.refresh(sibling)
            assert sibling.provider_charge_id is None
            assert sibling.consolidated_invoice_id is None
            assert sibling.status == InvoiceStatus.PENDING
        # Detached siblings are chargeable again
        assert len(service.select_chargeable_invoices(subscriber.id)) == 2

    def test_paid_invoice_cannot_be_canceled(
        self, service, provider_api, make_subscriber, make_unit, make_invoice
    ):
        invoice = make_invoice(make_unit(make_subscriber()), "120.00", status=InvoiceStatus.PAID)

        with pytest.raises(ValidationError, match="cannot be canceled"):
            service.cancel_charge(invoice.id)
        assert provider_api.requests == []


class TestUpdateCharge:
    def test_update_value_and_due_date(
        self, db_session, service, provider_api, make_subscriber, make_unit, make_invoice
    ):
        invoice = make_invoice(make_unit(make_subscriber()), "120.00")
        result = service.issue_charge(invoice_id=invoice.id)

        updated = service.update_charge(invoice.id, value=Decimal("130.00"), due_date=date(2025, 6, 1))

        sent = provider_api.calls("POST", "payments")[-1]
        assert sent["path"] == f"/payments/{result.payment_id}"
        assert sent["json"] == {"value": 130.0, "dueDate": "2025-06-01"}
        assert updated.amount_payable == Decimal("130.00")
        assert updated.due_date == date(2025, 6, 1)

    def test_consolidated_due_date_follows(self, db_session, service, subscriber_with_invoices):
        subscriber, invoices = subscriber_with_invoices
        result = service.issue_charge(subscriber_id=subscriber.id)

        service.update_charge(invoices[1].id, due_date=date(2025, 7, 1))

        assert db_session.get(ConsolidatedInvoice, result.consolidated_id).due_date == date(2025, 7, 1)

    def test_consolidated_value_change_rejected(self, service, provider_api, subscriber_with_invoices):
        subscriber, invoices = subscriber_with_invoices
        service.issue_charge(subscriber_id=subscriber.id)
        calls_before = len(provider_api.requests)

        with pytest.raises(ValidationError, match="consolidated charge"):
            service.update_charge(invoices[0].id, value=Decimal("1.00"))
        assert len(provider_api.requests) == calls_before

    def test_invoice_without_charge(self, service, make_subscriber, make_unit, make_invoice):
        invoice = make_invoice(make_unit(make_subscriber()), "120.00")
        with pytest.raises(ValidationError, match="no provider charge"):
            service.update_charge(invoice.id, due_date=date(2025, 6, 1))

    def test_nothing_to_update(self, service, make_subscriber, make_unit, make_invoice):
        invoice = make_invoice(make_unit(make_subscriber()), "120.00")
        service.issue_charge(invoice_id=invoice.id)
        with pytest.raises(ValidationError, match="Nothing to update"):
            service.update_charge(invoice.id)

    def test_non_positive_value(self, service, make_subscriber, make_unit, make_invoice):
        invoice = make_invoice(make_unit(make_subscriber()), "120.00")
        service.issue_charge(invoice_id=invoice.id)
        with pytest.raises(ValidationError, match="positive"):
            service.update_charge(invoice.id, value=Decimal("0"))
