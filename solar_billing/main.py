"""Main application entry point."""

import argparse
import logging

import uvicorn
from dotenv import load_dotenv

from solar_billing.config import get_settings
from solar_billing.services.exceptions import BillingError
from solar_billing.services.logging import setup_server_logging

logger = logging.getLogger(__name__)


def run_server(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Serve the billing API with Uvicorn."""
    from solar_billing.api.app import app

    settings = get_settings()
    logger.info(
        "Starting billing API on %s:%d (provider environment: %s)",
        host,
        port,
        settings.billing_provider_environment,
    )
    config = uvicorn.Config(app=app, host=host, port=port, log_level="info")
    server = uvicorn.Server(config)
    server.run()


def list_unreconciled() -> int:
    """Print provider operations that still need manual reconciliation.

    Returns:
        Number of operations listed
    """
    from solar_billing.services import SessionLocal
    from solar_billing.services.operation_service import OperationService

    with SessionLocal() as db:
        operations = OperationService(db).list_unreconciled()
        for op in operations:
            print(
                f"{op.id}\t{op.kind.value}\t{op.status.value}\t{op.target_type}:{op.target_id}\t"
                f"{op.idempotency_key}\t{op.external_id or '-'}\t{op.error or ''}"
            )
    logger.info("%d operation(s) awaiting reconciliation", len(operations))
    return len(operations)


def resolve_operation(operation_id: int, external_id: str | None = None) -> str:
    """Apply (provider id given) or abandon (no id) an open operation.

    Returns:
        Outcome: "applied" or "abandoned"
    """
    from solar_billing.services import SessionLocal
    from solar_billing.services.provider_client import BillingProviderClient
    from solar_billing.services.reconciliation_service import ReconciliationService

    config = get_settings().provider_config()
    with SessionLocal() as db, BillingProviderClient(config) as provider:
        result = ReconciliationService(db, provider).resolve(operation_id, external_id)
    print(f"{result.operation_id}\t{result.outcome}\t{result.external_id or '-'}")
    return result.outcome


def main():
    """Main entry point."""
    # Load environment variables before settings are read
    load_dotenv()

    parser = argparse.ArgumentParser(description="Solar billing engine")
    parser.add_argument(
        "command",
        nargs="?",
        choices=["serve", "unreconciled", "resolve"],
        default="serve",
        help=(
            "serve: run the API (default); unreconciled: list pending provider operations; "
            "resolve: close one of them"
        ),
    )
    parser.add_argument("operation_id", nargs="?", type=int, help="Operation to resolve")
    parser.add_argument(
        "--external-id",
        default=None,
        help="Provider charge/transfer id when the provider acted (omit to abandon)",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    args = parser.parse_args()

    if args.command == "resolve" and args.operation_id is None:
        parser.error("resolve requires an operation id")

    settings = get_settings()
    setup_server_logging(settings.log_file, settings.operations_log_file)

    if args.command == "unreconciled":
        list_unreconciled()
    elif args.command == "resolve":
        try:
            resolve_operation(args.operation_id, args.external_id)
        except BillingError as e:
            logger.error("Resolve of operation %d failed: %s", args.operation_id, e.message)
            parser.exit(1, f"error: {e.message}\n")
        except ValueError as e:
            # Provider credentials missing
            parser.exit(1, f"error: {e}\n")
    else:
        run_server(args.host, args.port)


if __name__ == "__main__":
    main()
