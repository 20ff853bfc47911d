"""Provider customer resolution for subscribers."""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from solar_billing.models.subscriber import Subscriber
from solar_billing.services.exceptions import (
    ExternalProviderError,
    NotFoundError,
    ValidationError,
)
from solar_billing.services.provider_client import BillingProviderClient

logger = logging.getLogger(__name__)


def _digits(value: str | None) -> str:
    return "".join(ch for ch in (value or "") if ch.isdigit())


def customer_payload(subscriber: Subscriber) -> dict:
    """Provider customer fields built from a subscriber."""
    phone = _digits(subscriber.phone) or None
    return {
        "name": subscriber.name,
        "cpfCnpj": subscriber.tax_id_digits,
        "email": subscriber.email,
        "phone": phone,
        "mobilePhone": phone,
        "notificationDisabled": False,
    }


class CustomerService:
    """Ensure each subscriber maps to exactly one provider customer."""

    def __init__(self, db_session: Session, provider: BillingProviderClient):
        self.db = db_session
        self.provider = provider

    def _lock_subscriber(self, subscriber_id: int) -> Subscriber:
        # Row lock serializes concurrent resolutions for the same subscriber
        # (no-op on SQLite, SELECT ... FOR UPDATE elsewhere)
        subscriber = self.db.execute(
            select(Subscriber)
            .where(Subscriber.id == subscriber_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if subscriber is None:
            raise NotFoundError(f"Subscriber {subscriber_id} not found")
        return subscriber

    def ensure_customer(self, subscriber: Subscriber) -> str:
        """Return the subscriber's provider customer id, resolving it once.

        Uses the cached id when present. Otherwise searches the provider by
        tax id and reuses the first match, or creates a new customer; the id
        is cached on the subscriber and committed.

        Raises:
            ValidationError: If the subscriber has no tax id
            ExternalProviderError: If the provider rejects the search or creation
        """
        if subscriber.provider_customer_id:
            return subscriber.provider_customer_id

        subscriber = self._lock_subscriber(subscriber.id)
        if subscriber.provider_customer_id:
            # Resolved by a concurrent request while we waited for the lock
            self.db.commit()
            return subscriber.provider_customer_id

        tax_id = subscriber.tax_id_digits
        if not tax_id:
            self.db.rollback()
            raise ValidationError(f"Subscriber {subscriber.id} has no CPF/CNPJ registered")

        try:
            matches = self.provider.find_customers(tax_id)
            if matches:
                customer_id = matches[0]["id"]
                logger.info(
                    "Reusing provider customer %s for subscriber %d", customer_id, subscriber.id
                )
            else:
                created = self.provider.create_customer(customer_payload(subscriber))
                customer_id = created["id"]
                logger.info(
                    "Created provider customer %s for subscriber %d", customer_id, subscriber.id
                )
        except ExternalProviderError:
            self.db.rollback()
            raise

        subscriber.provider_customer_id = customer_id
        self.db.commit()
        return customer_id

    def sync_customer(self, subscriber_id: int) -> tuple[str, bool]:
        """Push subscriber data to the provider, creating the customer if needed.

        Returns:
            (customer_id, is_new)
        """
        subscriber = self.db.get(Subscriber, subscriber_id)
        if subscriber is None:
            raise NotFoundError(f"Subscriber {subscriber_id} not found")

        tax_id = subscriber.tax_id_digits
        if not tax_id:
            raise ValidationError("CPF/CNPJ is required to sync the customer")

        payload = customer_payload(subscriber)
        matches = self.provider.find_customers(tax_id)
        if matches:
            customer_id = matches[0]["id"]
            self.provider.update_customer(customer_id, payload)
            is_new = False
            logger.info("Updated provider customer %s from subscriber %d", customer_id, subscriber_id)
        else:
            customer_id = self.provider.create_customer(payload)["id"]
            is_new = True

        subscriber.provider_customer_id = customer_id
        self.db.commit()
        return customer_id, is_new


__all__ = ["CustomerService", "customer_payload"]
