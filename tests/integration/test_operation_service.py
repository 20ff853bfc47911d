"""Integration tests for the external operation journal."""

import pytest

from solar_billing.models import ExternalOperation, OperationKind, OperationStatus
from solar_billing.services.exceptions import ValidationError
from solar_billing.services.history_service import HistoryService
from solar_billing.services.operation_service import OperationService


@pytest.fixture
def service(db_session):
    return OperationService(db_session)


class TestOperationJournal:
    def test_claim_is_committed_pending(self, service):
        operation = service.claim(
            OperationKind.TRANSFER, "commission", 1, "transfer:commission:1", {"value": "10.00"}
        )

        assert operation.id is not None
        assert operation.status == OperationStatus.PENDING
        assert operation.payload == {"value": "10.00"}

    def test_duplicate_key_rejected(self, service):
        service.claim(OperationKind.CHARGE, "invoice", 5, "charge:abc")

        with pytest.raises(ValidationError, match="charge for invoice 5"):
            service.claim(OperationKind.CHARGE, "invoice", 5, "charge:abc")

    def test_lifecycle(self, db_session, service):
        operation = service.claim(OperationKind.CHARGE, "invoice", 1, "charge:one")

        service.mark_submitted(operation, "pay_1")
        assert operation.status == OperationStatus.SUBMITTED
        assert operation.external_id == "pay_1"

        service.mark_completed(operation)
        db_session.commit()
        assert db_session.get(ExternalOperation, operation.id).status == OperationStatus.COMPLETED

    def test_release_frees_key(self, db_session, service):
        operation = service.claim(OperationKind.CHARGE, "invoice", 1, "charge:one")
        service.release(operation)

        assert db_session.query(ExternalOperation).count() == 0
        assert service.claim(OperationKind.CHARGE, "invoice", 1, "charge:one").id is not None

    def test_unknown_outcome_stays_pending_with_error(self, service):
        operation = service.claim(OperationKind.TRANSFER, "commission", 2, "transfer:commission:2")

        service.mark_unknown(operation, "Billing provider unreachable: timed out")

        assert operation.status == OperationStatus.PENDING
        assert operation.error == "Billing provider unreachable: timed out"

    def test_list_unreconciled(self, db_session, service):
        pending = service.claim(OperationKind.CHARGE, "invoice", 1, "charge:a")
        submitted = service.claim(OperationKind.CHARGE, "invoice", 2, "charge:b")
        service.mark_submitted(submitted, "pay_2")
        done = service.claim(OperationKind.CHARGE, "invoice", 3, "charge:c")
        service.mark_submitted(done, "pay_3")
        service.mark_completed(done)
        db_session.commit()

        keys = [op.idempotency_key for op in service.list_unreconciled()]

        assert keys == [pending.idempotency_key, submitted.idempotency_key]

    def test_open_operations_filters(self, service):
        charge = service.claim(OperationKind.CHARGE, "invoice", 1, "charge:a")
        transfer = service.claim(OperationKind.TRANSFER, "commission", 1, "transfer:commission:1")
        service.claim(OperationKind.TRANSFER, "commission", 2, "transfer:commission:2")

        assert service.open_operations(OperationKind.CHARGE) == [charge]
        assert service.open_operations(target_type="commission", target_id=1) == [transfer]
        assert len(service.open_operations(OperationKind.TRANSFER, exclude_id=transfer.id)) == 1


class TestExclusiveClaim:
    def test_claims_when_target_is_free(self, service):
        operation = service.claim_exclusive(
            OperationKind.TRANSFER, "plant_closing", 4, "transfer:plant_closing:4:v1"
        )

        assert operation.status == OperationStatus.PENDING

    def test_open_operation_under_another_key_blocks(self, db_session, service):
        first = service.claim_exclusive(
            OperationKind.TRANSFER, "plant_closing", 4, "transfer:plant_closing:4:v1"
        )
        service.mark_unknown(first, "Billing provider returned HTTP 504")

        with pytest.raises(ValidationError, match=f"awaiting reconciliation: {first.id}"):
            service.claim_exclusive(
                OperationKind.TRANSFER, "plant_closing", 4, "transfer:plant_closing:4:v2"
            )

        assert [op.idempotency_key for op in db_session.query(ExternalOperation)] == [
            "transfer:plant_closing:4:v1"
        ]

    def test_completed_operation_does_not_block(self, db_session, service):
        first = service.claim_exclusive(
            OperationKind.TRANSFER, "plant_closing", 4, "transfer:plant_closing:4:v1"
        )
        service.mark_submitted(first, "tra_1")
        service.mark_completed(first)
        db_session.commit()

        second = service.claim_exclusive(
            OperationKind.TRANSFER, "plant_closing", 4, "transfer:plant_closing:4:v2"
        )

        assert second.id != first.id

    def test_other_targets_do_not_block(self, service):
        service.claim_exclusive(OperationKind.TRANSFER, "commission", 1, "transfer:commission:1")

        operation = service.claim_exclusive(
            OperationKind.TRANSFER, "commission", 2, "transfer:commission:2"
        )

        assert operation.target_id == 2


class TestHistory:
    def test_entries_added_with_caller_commit(self, db_session):
        HistoryService.log(db_session, "invoice", 9, "payment_issued", {"provider_charge_id": "pay_9"})
        db_session.commit()

        entries = HistoryService.for_entity(db_session, "invoice", 9)
        assert len(entries) == 1
        assert entries[0].details == {"provider_charge_id": "pay_9"}
        assert HistoryService.for_entity(db_session, "invoice", 10) == []
