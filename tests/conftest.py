"""Pytest configuration: in-memory database, fake billing provider, factories."""

import json
import os
from datetime import date
from decimal import Decimal

# Set test database URL BEFORE any imports from solar_billing
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from solar_billing.config import ProviderConfig  # noqa: E402
from solar_billing.models import (  # noqa: E402
    Base,
    Commission,
    ConsumerUnit,
    Invoice,
    InvoiceStatus,
    Originator,
    Plant,
    Subscriber,
)
from solar_billing.services.provider_client import BillingProviderClient  # noqa: E402

PROVIDER_URL = "https://provider.test/v3"


class FakeProviderAPI:
    """In-memory billing provider REST API, served through httpx.MockTransport.

    Every request is recorded in ``requests`` as a dict with method, path
    (relative to the API root), JSON body and query params.
    """

    def __init__(self):
        self.requests: list[dict] = []
        self.customers: dict[str, dict] = {}
        self.payments: dict[str, dict] = {}
        self.transfers: dict[str, dict] = {}
        self.failures: dict[tuple[str, str], object] = {}
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq:06d}"

    def calls(self, method: str | None = None, resource: str | None = None) -> list[dict]:
        return [
            r
            for r in self.requests
            if (method is None or r["method"] == method)
            and (resource is None or r["path"].strip("/").split("/")[0] == resource)
        ]

    def reject(self, method: str, resource: str, description: str, code: str = "invalid_action"):
        """Answer the next matching requests with a structured provider error."""
        self.failures[(method, resource)] = httpx.Response(
            400, json={"errors": [{"code": code, "description": description}]}
        )

    def break_connection(self, method: str, resource: str):
        self.failures[(method, resource)] = "connect_error"

    def add_customer(self, cpf_cnpj: str, name: str = "Existing Customer") -> str:
        customer_id = self._next_id("cus")
        self.customers[customer_id] = {"id": customer_id, "name": name, "cpfCnpj": cpf_cnpj}
        return customer_id

    def add_payment(self, value: float, due_date: str = "2025-04-10", **fields) -> str:
        """Charge that exists at the provider without a local record."""
        payment_id = self._next_id("pay")
        self.payments[payment_id] = {
            "id": payment_id,
            "status": "PENDING",
            "value": value,
            "dueDate": due_date,
            "bankSlipUrl": f"https://provider.test/b/{payment_id}",
            **fields,
        }
        return payment_id

    @staticmethod
    def _not_found(what: str) -> httpx.Response:
        return httpx.Response(
            404, json={"errors": [{"code": "not_found", "description": f"{what} not found"}]}
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.split("/v3", 1)[-1]
        body = json.loads(request.content) if request.content else None
        self.requests.append(
            {
                "method": request.method,
                "path": path,
                "json": body,
                "params": dict(request.url.params),
                "headers": dict(request.headers),
            }
        )
        parts = path.strip("/").split("/")
        resource = parts[0]

        failure = self.failures.get((request.method, resource))
        if failure == "connect_error":
            raise httpx.ConnectError("Connection refused", request=request)
        if failure is not None:
            return failure

        if resource == "customers":
            if request.method == "GET":
                cpf = request.url.params.get("cpfCnpj")
                data = [c for c in self.customers.values() if c["cpfCnpj"] == cpf]
                return httpx.Response(200, json={"object": "list", "totalCount": len(data), "data": data})
            if len(parts) == 1:
                customer_id = self._next_id("cus")
                self.customers[customer_id] = {"id": customer_id, **body}
                return httpx.Response(200, json=self.customers[customer_id])
            customer = self.customers.get(parts[1])
            if customer is None:
                return self._not_found("Customer")
            customer.update(body)
            return httpx.Response(200, json=customer)

        if resource == "payments":
            if len(parts) == 1:
                payment_id = self._next_id("pay")
                self.payments[payment_id] = {
                    "id": payment_id,
                    "status": "PENDING",
                    "bankSlipUrl": f"https://provider.test/b/{payment_id}",
                    "invoiceUrl": f"https://provider.test/i/{payment_id}",
                    **body,
                }
                return httpx.Response(200, json=self.payments[payment_id])
            payment = self.payments.get(parts[1])
            if payment is None:
                return self._not_found("Payment")
            if request.method == "GET":
                return httpx.Response(200, json=payment)
            if request.method == "DELETE":
                del self.payments[parts[1]]
                return httpx.Response(200, json={"deleted": True, "id": parts[1]})
            payment.update(body)
            return httpx.Response(200, json=payment)

        if resource == "transfers":
            transfer_id = self._next_id("tra")
            self.transfers[transfer_id] = {"id": transfer_id, "status": "PENDING", **body}
            return httpx.Response(200, json=self.transfers[transfer_id])

        return httpx.Response(404, text="unknown route")


@pytest.fixture
def engine():
    """Shared in-memory engine (StaticPool keeps one connection across threads)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Create test database session."""
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def provider_api():
    return FakeProviderAPI()


@pytest.fixture
def provider_config():
    return ProviderConfig(base_url=PROVIDER_URL, api_key="test-api-key", timeout=5.0)


@pytest.fixture
def provider(provider_api, provider_config):
    """Real provider client talking to the fake API."""
    client = BillingProviderClient(provider_config, transport=httpx.MockTransport(provider_api.handle))
    yield client
    client.close()


# Factories


@pytest.fixture
def make_subscriber(db_session):
    def _make(name: str = "Maria Souza", cpf_cnpj: str | None = "123.456.789-09", **kwargs):
        kwargs.setdefault("email", "maria@example.com")
        kwargs.setdefault("phone", "(11) 98765-4321")
        subscriber = Subscriber(name=name, cpf_cnpj=cpf_cnpj, **kwargs)
        db_session.add(subscriber)
        db_session.commit()
        return subscriber

    return _make


@pytest.fixture
def make_plant(db_session):
    def _make(name: str = "Usina Sol Nascente", **kwargs):
        kwargs.setdefault("availability_cost", Decimal("800.00"))
        kwargs.setdefault("maintenance_cost", Decimal("500.00"))
        kwargs.setdefault("lease_cost", Decimal("300.00"))
        kwargs.setdefault("bundled_services", {"internet": 100, "security": 50})
        kwargs.setdefault("management_fee_percent", Decimal("5.00"))
        kwargs.setdefault("pix_key", "12.345.678/0001-90")
        kwargs.setdefault("pix_key_type", "cnpj")
        plant = Plant(name=name, **kwargs)
        db_session.add(plant)
        db_session.commit()
        return plant

    return _make


@pytest.fixture
def make_unit(db_session):
    counter = {"n": 0}

    def _make(subscriber: Subscriber, plant: Plant | None = None, **kwargs):
        counter["n"] += 1
        kwargs.setdefault("installation_code", f"UC-{counter['n']:04d}")
        unit = ConsumerUnit(
            subscriber_id=subscriber.id,
            plant_id=plant.id if plant is not None else None,
            **kwargs,
        )
        db_session.add(unit)
        db_session.commit()
        return unit

    return _make


@pytest.fixture
def make_invoice(db_session):
    def _make(
        unit: ConsumerUnit,
        amount,
        month: int = 3,
        year: int = 2025,
        due_date: date | None = None,
        status: InvoiceStatus = InvoiceStatus.PENDING,
        consumed_kwh="0",
        **kwargs,
    ):
        invoice = Invoice(
            consumer_unit_id=unit.id,
            reference_month=month,
            reference_year=year,
            due_date=due_date,
            amount_payable=Decimal(str(amount)),
            consumed_kwh=Decimal(str(consumed_kwh)),
            status=status,
            **kwargs,
        )
        db_session.add(invoice)
        db_session.commit()
        return invoice

    return _make


@pytest.fixture
def make_commission(db_session):
    def _make(total_value="350.00", pix_key="joao@example.com", pix_key_type="email", **kwargs):
        originator = Originator(name="Joao Originador", pix_key=pix_key, pix_key_type=pix_key_type)
        db_session.add(originator)
        db_session.flush()
        kwargs.setdefault("reference_month", 3)
        kwargs.setdefault("reference_year", 2025)
        commission = Commission(
            originator_id=originator.id, total_value=Decimal(str(total_value)), **kwargs
        )
        db_session.add(commission)
        db_session.commit()
        return commission

    return _make
