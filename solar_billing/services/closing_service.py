"""Plant closing calculator.

Monthly closing of a plant:

    management_fee_value = paid_invoices_base * management_fee_percent / 100
    total_expenses       = availability_cost + maintenance + lease + bundled_services
    net_balance          = paid_invoices_base - (management_fee_value + total_expenses)

All currency values are rounded half-up to cents. Derived values are never
taken from the caller: every save recomputes them from the stored inputs.
"""

import logging
from dataclasses import asdict, dataclass, replace
from datetime import date
from decimal import Decimal

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from solar_billing.models.consumer_unit import ConsumerUnit
from solar_billing.models.invoice import Invoice, InvoiceStatus
from solar_billing.models.plant import Plant
from solar_billing.models.plant_closing import ClosingStatus, PlantClosing
from solar_billing.services.exceptions import ConsistencyError, NotFoundError, ValidationError
from solar_billing.services.history_service import HistoryService
from solar_billing.services.money import money, percent

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

AMOUNT_FIELDS = (
    "generated_energy",
    "compensated_energy",
    "monthly_billed",
    "paid_invoices_base",
    "availability_cost",
    "maintenance",
    "lease",
    "bundled_services",
)
EDITABLE_FIELDS = frozenset(AMOUNT_FIELDS + ("management_fee_percent", "status", "closing_date"))
DERIVED_FIELDS = ("management_fee_value", "total_expenses", "net_balance")


@dataclass(frozen=True)
class ClosingRecord:
    """Plain snapshot of a closing's inputs and derived values."""

    plant_id: int
    reference_month: int
    reference_year: int
    id: int | None = None
    status: ClosingStatus = ClosingStatus.DRAFT
    closing_date: date | None = None

    generated_energy: Decimal = ZERO
    compensated_energy: Decimal = ZERO
    monthly_billed: Decimal = ZERO

    paid_invoices_base: Decimal = ZERO
    availability_cost: Decimal = ZERO
    maintenance: Decimal = ZERO
    lease: Decimal = ZERO
    bundled_services: Decimal = ZERO
    management_fee_percent: Decimal = ZERO

    management_fee_value: Decimal = ZERO
    total_expenses: Decimal = ZERO
    net_balance: Decimal = ZERO

    @classmethod
    def from_model(cls, closing: PlantClosing) -> "ClosingRecord":
        return cls(
            plant_id=closing.plant_id,
            reference_month=closing.reference_month,
            reference_year=closing.reference_year,
            id=closing.id,
            status=closing.status,
            closing_date=closing.closing_date,
            generated_energy=money(closing.generated_energy),
            compensated_energy=money(closing.compensated_energy),
            monthly_billed=money(closing.monthly_billed),
            paid_invoices_base=money(closing.paid_invoices_base),
            availability_cost=money(closing.availability_cost),
            maintenance=money(closing.maintenance),
            lease=money(closing.lease),
            bundled_services=money(closing.bundled_services),
            management_fee_percent=percent(closing.management_fee_percent),
            management_fee_value=money(closing.management_fee_value),
            total_expenses=money(closing.total_expenses),
            net_balance=money(closing.net_balance),
        )

    def apply_to(self, closing: PlantClosing) -> None:
        """Copy inputs and derived values onto an ORM row (id and period excluded)."""
        values = asdict(self)
        for name in ("id", "plant_id", "reference_month", "reference_year"):
            values.pop(name)
        for name, value in values.items():
            setattr(closing, name, value)


def compute_totals(
    paid_invoices_base,
    management_fee_percent,
    availability_cost,
    maintenance,
    lease,
    bundled_services,
) -> tuple[Decimal, Decimal, Decimal]:
    """Return (management_fee_value, total_expenses, net_balance)."""
    base = money(paid_invoices_base)
    fee_value = money(base * percent(management_fee_percent) / Decimal(100))
    total_expenses = money(
        money(availability_cost) + money(maintenance) + money(lease) + money(bundled_services)
    )
    net_balance = money(base - (fee_value + total_expenses))
    return fee_value, total_expenses, net_balance


def recompute_totals(record: ClosingRecord) -> ClosingRecord:
    """Pure recomputation of the derived fields of a closing record."""
    fee_value, total_expenses, net_balance = compute_totals(
        record.paid_invoices_base,
        record.management_fee_percent,
        record.availability_cost,
        record.maintenance,
        record.lease,
        record.bundled_services,
    )
    return replace(
        record,
        paid_invoices_base=money(record.paid_invoices_base),
        availability_cost=money(record.availability_cost),
        maintenance=money(record.maintenance),
        lease=money(record.lease),
        bundled_services=money(record.bundled_services),
        management_fee_percent=percent(record.management_fee_percent),
        management_fee_value=fee_value,
        total_expenses=total_expenses,
        net_balance=net_balance,
    )


def verify_totals(closing: PlantClosing) -> None:
    """Check the stored derived values against a fresh recomputation.

    Raises:
        ConsistencyError: If any stored derived value differs
    """
    expected = dict(
        zip(
            DERIVED_FIELDS,
            compute_totals(
                closing.paid_invoices_base,
                closing.management_fee_percent,
                closing.availability_cost,
                closing.maintenance,
                closing.lease,
                closing.bundled_services,
            ),
        )
    )
    mismatches = {
        name: (str(money(getattr(closing, name))), str(value))
        for name, value in expected.items()
        if money(getattr(closing, name)) != value
    }
    if mismatches:
        raise ConsistencyError(
            f"Closing {closing.id} has stale derived values (stored, expected): {mismatches}"
        )


def _validate_period(month: int, year: int) -> None:
    if not 1 <= int(month) <= 12:
        raise ValidationError(f"Invalid reference month: {month}")
    if not 2000 <= int(year) <= 2100:
        raise ValidationError(f"Invalid reference year: {year}")


def _normalize_fields(fields: dict) -> dict:
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown or read-only closing fields: {', '.join(sorted(unknown))}")

    normalized = {}
    for name, value in fields.items():
        if name == "status":
            try:
                status = ClosingStatus(value)
            except ValueError as e:
                raise ValidationError(f"Invalid closing status: {value}") from e
            if status == ClosingStatus.SETTLED:
                raise ValidationError("A closing is settled only by executing its payout")
            normalized[name] = status
        elif name == "closing_date":
            if value is None or isinstance(value, date):
                normalized[name] = value
            else:
                try:
                    normalized[name] = date.fromisoformat(str(value))
                except ValueError as e:
                    raise ValidationError(f"Invalid closing date: {value}") from e
        else:
            try:
                amount = percent(value) if name == "management_fee_percent" else money(value)
            except ValueError as e:
                raise ValidationError(f"{name}: {e}") from e
            if amount < 0:
                raise ValidationError(f"{name} cannot be negative")
            if name == "management_fee_percent" and amount > 100:
                raise ValidationError("management_fee_percent cannot exceed 100")
            normalized[name] = amount
    return normalized


class ClosingService:
    """Service for plant closing calculations and persistence."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def _get_plant(self, plant_id: int) -> Plant:
        plant = self.db.get(Plant, plant_id)
        if plant is None:
            raise NotFoundError(f"Plant {plant_id} not found")
        return plant

    def _get_plant_closing(self, plant_id: int, closing_id: int) -> PlantClosing:
        closing = self.db.get(PlantClosing, closing_id)
        if closing is None or closing.plant_id != plant_id:
            raise NotFoundError(f"Closing {closing_id} not found for plant {plant_id}")
        return closing

    def get_by_period(self, plant_id: int, month: int, year: int) -> PlantClosing | None:
        return (
            self.db.query(PlantClosing)
            .filter(
                PlantClosing.plant_id == plant_id,
                PlantClosing.reference_month == month,
                PlantClosing.reference_year == year,
            )
            .first()
        )

    def list_closings(self, plant_id: int) -> list[PlantClosing]:
        """Closings of a plant, most recent period first."""
        self._get_plant(plant_id)
        return (
            self.db.query(PlantClosing)
            .filter(PlantClosing.plant_id == plant_id)
            .order_by(PlantClosing.reference_year.desc(), PlantClosing.reference_month.desc())
            .all()
        )

    def load_or_init_closing(
        self, plant_id: int, month: int, year: int, closing_id: int | None = None
    ) -> ClosingRecord:
        """Load a stored closing verbatim, or seed a new one from plant defaults.

        New records take availability, maintenance, lease, the sum of bundled
        services and the management fee percent from the plant configuration.
        """
        _validate_period(month, year)
        plant = self._get_plant(plant_id)

        if closing_id is not None:
            return ClosingRecord.from_model(self._get_plant_closing(plant_id, closing_id))

        record = ClosingRecord(
            plant_id=plant.id,
            reference_month=month,
            reference_year=year,
            closing_date=date.today(),
            availability_cost=money(plant.availability_cost),
            maintenance=money(plant.maintenance_cost),
            lease=money(plant.lease_cost),
            bundled_services=plant.bundled_services_total(),
            management_fee_percent=percent(plant.management_fee_percent),
        )
        return recompute_totals(record)

    def refresh_from_invoices(self, plant_id: int, month: int, year: int) -> dict[str, Decimal]:
        """Aggregate the period invoices of the plant's consumer units.

        Single statement (invoice joined to consumer unit), so all three sums
        come from one consistent read.

        Returns:
            Dict with compensated_energy (kWh), monthly_billed and
            paid_invoices_base (paid invoices only)
        """
        _validate_period(month, year)
        self._get_plant(plant_id)

        stmt = (
            select(
                func.coalesce(func.sum(Invoice.consumed_kwh), 0),
                func.coalesce(func.sum(Invoice.amount_payable), 0),
                func.coalesce(
                    func.sum(
                        case(
                            (Invoice.status == InvoiceStatus.PAID, Invoice.amount_payable),
                            else_=0,
                        )
                    ),
                    0,
                ),
            )
            .select_from(Invoice)
            .join(ConsumerUnit, Invoice.consumer_unit_id == ConsumerUnit.id)
            .where(
                ConsumerUnit.plant_id == plant_id,
                Invoice.reference_month == month,
                Invoice.reference_year == year,
            )
        )
        energy, billed, paid = self.db.execute(stmt).one()

        aggregates = {
            "compensated_energy": money(energy),
            "monthly_billed": money(billed),
            "paid_invoices_base": money(paid),
        }
        logger.debug("Invoice aggregates for plant %d %02d/%d: %s", plant_id, month, year, aggregates)
        return aggregates

    def draft_closing(
        self, plant_id: int, month: int, year: int, closing_id: int | None = None
    ) -> ClosingRecord:
        """Record shown before saving a closing.

        An explicit closing_id, or an existing closing for the period, is
        returned as stored. Otherwise the plant defaults are prefilled with the
        period invoice aggregates and the totals recomputed.
        """
        if closing_id is None:
            _validate_period(month, year)
            existing = self.get_by_period(plant_id, month, year)
            if existing is not None:
                closing_id = existing.id

        record = self.load_or_init_closing(plant_id, month, year, closing_id=closing_id)
        if closing_id is not None:
            return record
        return recompute_totals(replace(record, **self.refresh_from_invoices(plant_id, month, year)))

    def upsert_closing(
        self,
        plant_id: int,
        month: int,
        year: int,
        closing_id: int | None = None,
        fields: dict | None = None,
        refresh: bool = False,
    ) -> PlantClosing:
        """Create or update a closing, always recomputing derived values.

        New closings are seeded from the plant and prefilled from the period
        invoices. Caller fields override both (including paid_invoices_base).
        refresh=True re-runs the invoice aggregation for an existing closing.

        Raises:
            ValidationError: Settled closing, direct settle, duplicate period,
                unknown field, negative amount, period mismatch
            NotFoundError: Plant or closing missing
        """
        _validate_period(month, year)
        self._get_plant(plant_id)
        overrides = _normalize_fields(dict(fields or {}))

        if closing_id is not None:
            closing = self._get_plant_closing(plant_id, closing_id)
            if closing.status == ClosingStatus.SETTLED:
                raise ValidationError(f"Closing {closing_id} is settled and cannot be edited")
            if (closing.reference_month, closing.reference_year) != (month, year):
                raise ValidationError(
                    f"Closing {closing_id} belongs to {closing.reference_label}, "
                    f"not {month:02d}/{year}"
                )
            record = ClosingRecord.from_model(closing)
            if refresh:
                record = replace(record, **self.refresh_from_invoices(plant_id, month, year))
            action = "updated"
        else:
            existing = self.get_by_period(plant_id, month, year)
            if existing is not None:
                raise ValidationError(
                    f"Plant {plant_id} already has closing {existing.id} for {month:02d}/{year}"
                )
            record = self.load_or_init_closing(plant_id, month, year)
            record = replace(record, **self.refresh_from_invoices(plant_id, month, year))
            closing = PlantClosing(plant_id=plant_id, reference_month=month, reference_year=year)
            self.db.add(closing)
            action = "created"

        record = recompute_totals(replace(record, **overrides))
        record.apply_to(closing)

        try:
            self.db.flush()
            HistoryService.log(
                self.db,
                "plant_closing",
                closing.id,
                action,
                {
                    "status": record.status.value,
                    "paid_invoices_base": str(record.paid_invoices_base),
                    "net_balance": str(record.net_balance),
                },
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ValidationError(
                f"Plant {plant_id} already has a closing for {month:02d}/{year}"
            ) from e
        except StaleDataError as e:
            self.db.rollback()
            raise ValidationError(
                f"Closing {closing_id} was modified concurrently, reload and retry"
            ) from e

        logger.info(
            "Closing %d %s: plant=%d ref=%02d/%d status=%s net_balance=%s",
            closing.id,
            action,
            plant_id,
            month,
            year,
            record.status.value,
            record.net_balance,
        )
        return closing


__all__ = [
    "ClosingRecord",
    "ClosingService",
    "compute_totals",
    "recompute_totals",
    "verify_totals",
    "EDITABLE_FIELDS",
]
