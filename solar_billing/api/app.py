"""FastAPI application for the billing API."""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from solar_billing.api.billing import billing_error_handler
from solar_billing.api.billing import router as billing_router
from solar_billing.services.exceptions import BillingError

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Solar Billing",
    description="Invoice charge consolidation, plant closings and payouts",
    version="0.1.0",
)

# Back-office UI is served from another origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(BillingError, billing_error_handler)
app.include_router(billing_router)


# Register health check endpoint
@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint for monitoring."""
    return {"status": "ok"}


__all__ = ["app"]
