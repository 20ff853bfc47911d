"""Billing provider client (Asaas-style REST API).

Thin request/response wrapper: customers, payments (charges) and PIX transfers.
Structured provider errors (``{"errors": [{"code", "description"}]}``) become
ExternalProviderError carrying the first reported description verbatim.
No retries: every call is attempted at most once.

Only a 4xx answer is a definite rejection. Connection errors, timeouts, 5xx
answers and 2xx answers without a usable body are raised with
``transport_failure=True``: the provider may have acted on the request.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

import httpx

from solar_billing.config import ProviderConfig
from solar_billing.services.exceptions import ExternalProviderError

logger = logging.getLogger(__name__)

# Local key type names (and their Portuguese aliases) to provider PIX key types
PIX_KEY_TYPES = {
    "cpf": "CPF",
    "cnpj": "CNPJ",
    "email": "EMAIL",
    "phone": "PHONE",
    "telefone": "PHONE",
    "random": "EVP",
    "aleatoria": "EVP",
    "evp": "EVP",
}
DEFAULT_PIX_KEY_TYPE = "EVP"


def map_pix_key_type(key_type: str | None) -> str:
    """Translate a stored PIX key type into the provider's enum (EVP when unknown)."""
    return PIX_KEY_TYPES.get((key_type or "").strip().lower(), DEFAULT_PIX_KEY_TYPE)


def _amount(value: Decimal) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01")))


def _preview(text: str, limit: int = 300) -> str:
    text = (text or "").strip()
    return text if len(text) <= limit else text[:limit] + "...(truncated)"


@dataclass(frozen=True)
class ProviderCharge:
    """Charge created at the provider."""

    id: str
    document_url: str | None
    status: str
    due_date: date | None = None

    @classmethod
    def from_response(cls, body: dict[str, Any]) -> "ProviderCharge":
        due = body.get("dueDate")
        return cls(
            id=body["id"],
            document_url=body.get("bankSlipUrl") or body.get("invoiceUrl"),
            status=body.get("status") or "PENDING",
            due_date=date.fromisoformat(due) if due else None,
        )


@dataclass(frozen=True)
class ProviderTransfer:
    """Transfer (payout) accepted by the provider."""

    id: str
    status: str


class BillingProviderClient:
    """Synchronous client for the billing provider API."""

    def __init__(self, config: ProviderConfig, transport: httpx.BaseTransport | None = None):
        """Initialize client.

        Args:
            config: Provider URL, API key and timeout
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.config = config
        self._client = httpx.Client(
            base_url=config.base_url,
            headers={
                "access_token": config.api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=config.timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "BillingProviderClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        json_data: dict | None = None,
        params: dict | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, json=json_data, params=params)
        except httpx.HTTPError as e:
            logger.error("Billing provider %s %s failed: %s", method, path, e)
            raise ExternalProviderError(
                f"Billing provider unreachable: {e}", transport_failure=True
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 500:
            # Gateway or server failure: the request may have been processed
            logger.error(
                "Billing provider %s %s returned HTTP %d, outcome unknown",
                method,
                path,
                response.status_code,
            )
            raise ExternalProviderError(
                f"Billing provider returned HTTP {response.status_code}: "
                f"{_preview(response.text)}",
                status_code=response.status_code,
                transport_failure=True,
            )

        if isinstance(body, dict) and body.get("errors"):
            first = body["errors"][0] or {}
            description = first.get("description") or "Billing provider rejected the request"
            logger.error(
                "Billing provider %s %s rejected: status=%d code=%s description=%s",
                method,
                path,
                response.status_code,
                first.get("code"),
                description,
            )
            raise ExternalProviderError(
                description, code=first.get("code"), status_code=response.status_code
            )

        if response.is_error:
            raise ExternalProviderError(
                f"Billing provider returned HTTP {response.status_code}: "
                f"{_preview(response.text)}",
                status_code=response.status_code,
            )

        if not isinstance(body, dict):
            raise ExternalProviderError(
                f"Billing provider returned non-JSON: {_preview(response.text)}",
                status_code=response.status_code,
                transport_failure=True,
            )

        logger.debug("Billing provider %s %s -> %d", method, path, response.status_code)
        return body

    # Customers

    def find_customers(self, cpf_cnpj: str) -> list[dict[str, Any]]:
        """Search customers by tax id (digits only)."""
        body = self._request("GET", "/customers", params={"cpfCnpj": cpf_cnpj})
        return list(body.get("data") or [])

    def create_customer(self, payload: dict[str, Any]) -> dict[str, Any]:
        body = self._request("POST", "/customers", json_data=payload)
        if not body.get("id"):
            raise ExternalProviderError(
                "Customer creation response has no id", transport_failure=True
            )
        logger.info("Created provider customer %s", body["id"])
        return body

    def update_customer(self, customer_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", f"/customers/{customer_id}", json_data=payload)

    # Payments (charges)

    def create_payment(
        self,
        customer_id: str,
        value: Decimal,
        due_date: date,
        description: str,
        billing_type: str = "BOLETO",
        external_reference: str | None = None,
    ) -> ProviderCharge:
        """Create a charge and return its id and hosted document URL.

        The bank-slip URL is preferred; the generic invoice URL is the fallback.
        """
        payload = {
            "customer": customer_id,
            "billingType": billing_type,
            "value": _amount(value),
            "dueDate": due_date.isoformat(),
            "description": description,
        }
        if external_reference:
            payload["externalReference"] = external_reference

        body = self._request("POST", "/payments", json_data=payload)
        if not body.get("id"):
            raise ExternalProviderError(
                "Charge creation response has no id", transport_failure=True
            )

        return ProviderCharge.from_response(body)

    def get_payment(self, payment_id: str) -> ProviderCharge:
        """Fetch an existing charge (used when reconciling an unknown outcome)."""
        body = self._request("GET", f"/payments/{payment_id}")
        if not body.get("id"):
            raise ExternalProviderError(f"Charge {payment_id} lookup returned no id")
        return ProviderCharge.from_response(body)

    def update_payment(
        self,
        payment_id: str,
        value: Decimal | None = None,
        due_date: date | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if value is not None:
            payload["value"] = _amount(value)
        if due_date is not None:
            payload["dueDate"] = due_date.isoformat()
        return self._request("POST", f"/payments/{payment_id}", json_data=payload)

    def delete_payment(self, payment_id: str) -> dict[str, Any]:
        return self._request("DELETE", f"/payments/{payment_id}")

    # Transfers (payouts)

    def create_transfer(
        self,
        value: Decimal,
        pix_key: str,
        pix_key_type: str | None,
        description: str,
        external_reference: str | None = None,
    ) -> ProviderTransfer:
        """Send an immediate PIX transfer."""
        payload = {
            "value": _amount(value),
            "operationType": "PIX",
            "pixAddressKey": pix_key,
            "pixAddressKeyType": map_pix_key_type(pix_key_type),
            "description": description,
            "scheduleDate": None,
        }
        if external_reference:
            payload["externalReference"] = external_reference

        body = self._request("POST", "/transfers", json_data=payload)
        if not body.get("id"):
            raise ExternalProviderError("Transfer response has no id", transport_failure=True)

        logger.info("Provider transfer %s accepted: value=%s", body["id"], payload["value"])
        return ProviderTransfer(id=body["id"], status=body.get("status") or "PENDING")


__all__ = [
    "BillingProviderClient",
    "ProviderCharge",
    "ProviderTransfer",
    "PIX_KEY_TYPES",
    "map_pix_key_type",
]
