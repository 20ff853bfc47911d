"""Billing API endpoints: charges, customers, closings and payouts."""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Generator

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from solar_billing.config import get_settings
from solar_billing.models.external_operation import OperationKind, OperationStatus
from solar_billing.models.invoice import InvoiceStatus
from solar_billing.models.plant_closing import ClosingStatus
from solar_billing.services import get_db
from solar_billing.services.charge_service import ChargeService
from solar_billing.services.closing_service import ClosingService
from solar_billing.services.customer_service import CustomerService
from solar_billing.services.exceptions import BillingError
from solar_billing.services.operation_service import OperationService
from solar_billing.services.provider_client import BillingProviderClient
from solar_billing.services.reconciliation_service import ReconciliationService
from solar_billing.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])

ERROR_STATUS_CODES = {
    "validation_error": 422,
    "not_found": 404,
    "provider_error": 502,
    "consistency_error": 409,
}


def get_provider() -> Generator[BillingProviderClient, None, None]:
    """Provider client for one request, built from the configured environment."""
    try:
        config = get_settings().provider_config()
    except ValueError as e:
        logger.error("Billing provider not configured: %s", e)
        raise HTTPException(status_code=503, detail=str(e)) from e

    client = BillingProviderClient(config)
    try:
        yield client
    finally:
        client.close()


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Translate service errors into {"error": kind, "detail": message}."""
    status_code = ERROR_STATUS_CODES.get(exc.kind, 400)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# Error response model
class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None

    model_config = ConfigDict(from_attributes=True)


ERROR_RESPONSES = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


# Request schemas
class ChargeRequest(BaseModel):
    """Charge one invoice, or all chargeable invoices of a subscriber."""

    invoice_id: int | None = None
    subscriber_id: int | None = None
    invoice_ids: list[int] | None = None  # Subset of the subscriber's invoices
    due_date: date | None = None


class UpdateChargeRequest(BaseModel):
    value: Decimal | None = None
    due_date: date | None = None


class ClosingUpsertRequest(BaseModel):
    """Create (closing_id omitted) or update a plant closing."""

    month: int
    year: int
    closing_id: int | None = None
    refresh: bool = False  # Re-aggregate the period invoices before applying fields
    fields: dict[str, Any] = Field(default_factory=dict)


# Response schemas
class ChargeResponse(BaseModel):
    url: str | None
    payment_id: str
    consolidated_id: int | None = None

    model_config = ConfigDict(from_attributes=True)


class InvoiceResponse(BaseModel):
    """Invoice state after a charge change."""

    id: int
    status: InvoiceStatus
    amount_payable: Decimal
    due_date: date | None = None
    provider_charge_id: str | None = None
    provider_status: str | None = None
    consolidated_invoice_id: int | None = None

    model_config = ConfigDict(from_attributes=True)


class CustomerSyncResponse(BaseModel):
    customer_id: str
    is_new: bool


class ClosingResponse(BaseModel):
    """Closing inputs and derived values (draft records have no id yet)."""

    id: int | None = None
    plant_id: int
    reference_month: int
    reference_year: int
    status: ClosingStatus
    closing_date: date | None = None
    generated_energy: Decimal
    compensated_energy: Decimal
    monthly_billed: Decimal
    paid_invoices_base: Decimal
    availability_cost: Decimal
    maintenance: Decimal
    lease: Decimal
    bundled_services: Decimal
    management_fee_percent: Decimal
    management_fee_value: Decimal
    total_expenses: Decimal
    net_balance: Decimal

    model_config = ConfigDict(from_attributes=True)


class TransferResponse(BaseModel):
    transfer_id: str

    model_config = ConfigDict(from_attributes=True)


class ResolveOperationRequest(BaseModel):
    """Provider id when the provider acted; omit it when it has no record."""

    external_id: str | None = None


class OperationResponse(BaseModel):
    id: int
    kind: OperationKind
    status: OperationStatus
    target_type: str
    target_id: int
    idempotency_key: str
    external_id: str | None = None
    error: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ReconciliationResponse(BaseModel):
    operation_id: int
    outcome: str
    external_id: str | None = None

    model_config = ConfigDict(from_attributes=True)


# Charges
@router.post("/charges", response_model=ChargeResponse, responses=ERROR_RESPONSES)
def issue_charge(
    request: ChargeRequest,
    db: Session = Depends(get_db),
    provider: BillingProviderClient = Depends(get_provider),
) -> ChargeResponse:
    """Issue one provider charge (boleto) for an invoice or a subscriber's open invoices."""
    result = ChargeService(db, provider).issue_charge(
        invoice_id=request.invoice_id,
        subscriber_id=request.subscriber_id,
        invoice_ids=request.invoice_ids,
        due_date=request.due_date,
    )
    return ChargeResponse.model_validate(result)


@router.post(
    "/invoices/{invoice_id}/cancel-charge",
    response_model=InvoiceResponse,
    responses=ERROR_RESPONSES,
)
def cancel_charge(
    invoice_id: int,
    db: Session = Depends(get_db),
    provider: BillingProviderClient = Depends(get_provider),
) -> InvoiceResponse:
    invoice = ChargeService(db, provider).cancel_charge(invoice_id)
    return InvoiceResponse.model_validate(invoice)


@router.patch(
    "/invoices/{invoice_id}/charge",
    response_model=InvoiceResponse,
    responses=ERROR_RESPONSES,
)
def update_charge(
    invoice_id: int,
    request: UpdateChargeRequest,
    db: Session = Depends(get_db),
    provider: BillingProviderClient = Depends(get_provider),
) -> InvoiceResponse:
    invoice = ChargeService(db, provider).update_charge(
        invoice_id, value=request.value, due_date=request.due_date
    )
    return InvoiceResponse.model_validate(invoice)


# Customers
@router.post(
    "/subscribers/{subscriber_id}/sync-customer",
    response_model=CustomerSyncResponse,
    responses=ERROR_RESPONSES,
)
def sync_customer(
    subscriber_id: int,
    db: Session = Depends(get_db),
    provider: BillingProviderClient = Depends(get_provider),
) -> CustomerSyncResponse:
    """Create or update the subscriber's customer record at the provider."""
    customer_id, is_new = CustomerService(db, provider).sync_customer(subscriber_id)
    return CustomerSyncResponse(customer_id=customer_id, is_new=is_new)


# Closings
@router.get(
    "/plants/{plant_id}/closings/draft",
    response_model=ClosingResponse,
    responses=ERROR_RESPONSES,
)
def closing_draft(
    plant_id: int,
    month: int = Query(...),
    year: int = Query(...),
    closing_id: int | None = Query(None),
    db: Session = Depends(get_db),
) -> ClosingResponse:
    """Stored closing, or an unsaved draft seeded from plant defaults and period invoices."""
    record = ClosingService(db).draft_closing(plant_id, month, year, closing_id=closing_id)
    return ClosingResponse.model_validate(record)


@router.put("/plants/{plant_id}/closings", response_model=ClosingResponse, responses=ERROR_RESPONSES)
def upsert_closing(
    plant_id: int,
    request: ClosingUpsertRequest,
    db: Session = Depends(get_db),
) -> ClosingResponse:
    closing = ClosingService(db).upsert_closing(
        plant_id,
        request.month,
        request.year,
        closing_id=request.closing_id,
        fields=request.fields,
        refresh=request.refresh,
    )
    return ClosingResponse.model_validate(closing)


@router.get("/plants/{plant_id}/closings", response_model=list[ClosingResponse])
def list_closings(plant_id: int, db: Session = Depends(get_db)) -> list[ClosingResponse]:
    """Closings of a plant, newest period first."""
    return [ClosingResponse.model_validate(c) for c in ClosingService(db).list_closings(plant_id)]


# Payouts
@router.post(
    "/closings/{closing_id}/settle",
    response_model=TransferResponse,
    responses=ERROR_RESPONSES,
)
def settle_closing(
    closing_id: int,
    db: Session = Depends(get_db),
    provider: BillingProviderClient = Depends(get_provider),
) -> TransferResponse:
    """Transfer the closing's net balance to the plant and settle the period."""
    result = SettlementService(db, provider).settle_closing(closing_id)
    return TransferResponse.model_validate(result)


@router.post(
    "/commissions/{commission_id}/pay",
    response_model=TransferResponse,
    responses=ERROR_RESPONSES,
)
def pay_commission(
    commission_id: int,
    db: Session = Depends(get_db),
    provider: BillingProviderClient = Depends(get_provider),
) -> TransferResponse:
    result = SettlementService(db, provider).pay_commission(commission_id)
    return TransferResponse.model_validate(result)


# Reconciliation
@router.get("/operations/unreconciled", response_model=list[OperationResponse])
def list_unreconciled(db: Session = Depends(get_db)) -> list[OperationResponse]:
    """Provider operations whose outcome is unknown or whose bookkeeping is missing."""
    operations = OperationService(db).list_unreconciled()
    return [OperationResponse.model_validate(op) for op in operations]


@router.post(
    "/operations/{operation_id}/resolve",
    response_model=ReconciliationResponse,
    responses=ERROR_RESPONSES,
)
def resolve_operation(
    operation_id: int,
    request: ResolveOperationRequest,
    db: Session = Depends(get_db),
    provider: BillingProviderClient = Depends(get_provider),
) -> ReconciliationResponse:
    """Apply or abandon an open operation after checking the provider."""
    result = ReconciliationService(db, provider).resolve(operation_id, request.external_id)
    return ReconciliationResponse.model_validate(result)


__all__ = ["router", "get_provider", "billing_error_handler", "ERROR_STATUS_CODES"]
