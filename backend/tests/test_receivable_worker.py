"""
Receivable outbox: enqueue idempotency, worker materialisation, retry/backoff, DEAD.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from job_runner import run_receivable_schedule_worker, run_stuck_receivable_job_recovery
from models import AuditAction
from services.contract_errors import SchedulingFailure
from services.receivable_queue import (
    STATUS_DEAD,
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    enqueue_receivable_schedule,
    list_receivables,
    materialize_receivables,
)

pytestmark = pytest.mark.asyncio

OWNER_ID = "owner-123"


async def _signed_contract(service, lead_snapshot, business_snapshot, template):
    result = await service.generate(
        lead_snapshot=lead_snapshot,
        business_snapshot=business_snapshot,
        template_id=template["id"],
        content_override=None,
        validity_days=7,
        owner_id=OWNER_ID,
    )
    await service.approve_and_sign(result["token"], {"full_name": "Maria Souza"}, "sig")
    return result["contract_id"]


async def test_enqueue_is_idempotent(fake_db):
    assert await enqueue_receivable_schedule("c-1", OWNER_ID) is True
    assert await enqueue_receivable_schedule("c-1", OWNER_ID) is False
    assert await fake_db.receivable_jobs.count_documents({"contract_id": "c-1"}) == 1


async def test_worker_materialises_schedule(fake_db, service, lead_snapshot, business_snapshot, template):
    contract_id = await _signed_contract(service, lead_snapshot, business_snapshot, template)

    outcome = await run_receivable_schedule_worker()

    assert outcome["count"] == 1
    receivables = await list_receivables(contract_id)
    assert [r["amount"] for r in receivables] == [300.0, 233.33, 233.33, 233.34]
    assert [r["due_date"] for r in receivables] == ["2024-03-10", "2024-04-10", "2024-05-10", "2024-06-10"]
    assert all(r["status"] == "pending" and r["total_count"] == 4 for r in receivables)
    assert all(r["owner_id"] == OWNER_ID for r in receivables)
    assert receivables[1]["description"] == "Installment 1/3 - Contract Maria Souza"

    job = await fake_db.receivable_jobs.find_one({"contract_id": contract_id})
    assert job["status"] == STATUS_DONE
    assert job["receivable_count"] == 4
    audit = await fake_db.audit_logs.find_one({"action": AuditAction.RECEIVABLES_SCHEDULED})
    assert audit["resource_id"] == contract_id


async def test_materialise_twice_creates_no_duplicates(fake_db, service, lead_snapshot, business_snapshot, template):
    contract_id = await _signed_contract(service, lead_snapshot, business_snapshot, template)

    assert await materialize_receivables(contract_id) == 4
    assert await materialize_receivables(contract_id) == 4
    assert await fake_db.receivables.count_documents({"contract_id": contract_id}) == 4


async def test_pending_contract_is_not_scheduled(fake_db, service, lead_snapshot, business_snapshot, template):
    result = await service.generate(
        lead_snapshot=lead_snapshot,
        business_snapshot=business_snapshot,
        template_id=template["id"],
        content_override=None,
        validity_days=7,
        owner_id=OWNER_ID,
    )
    with pytest.raises(SchedulingFailure):
        await materialize_receivables(result["contract_id"])


async def test_failure_backs_off_then_dies(fake_db, service, lead_snapshot, business_snapshot, template):
    contract_id = await _signed_contract(service, lead_snapshot, business_snapshot, template)

    with patch("services.receivable_queue.schedule", side_effect=RuntimeError("boom")):
        await run_receivable_schedule_worker()
        job = await fake_db.receivable_jobs.find_one({"contract_id": contract_id})
        assert job["status"] == STATUS_FAILED
        assert job["attempts"] == 1
        assert job["last_error"] == "boom"
        assert job["next_run_at"] > datetime.now(timezone.utc).isoformat()

        # Not due yet: nothing is claimed
        outcome = await run_receivable_schedule_worker()
        assert outcome["count"] == 0
        assert (await fake_db.receivable_jobs.find_one({"contract_id": contract_id}))["attempts"] == 1

        for _ in range(4):
            await fake_db.receivable_jobs.update_one(
                {"contract_id": contract_id}, {"$set": {"next_run_at": "2000-01-01T00:00:00+00:00"}}
            )
            await run_receivable_schedule_worker()

    job = await fake_db.receivable_jobs.find_one({"contract_id": contract_id})
    assert job["status"] == STATUS_DEAD
    assert job["attempts"] == 5
    assert await fake_db.receivables.count_documents({}) == 0
    failures = await fake_db.audit_logs.count_documents({"action": AuditAction.RECEIVABLES_SCHEDULE_FAILED})
    assert failures == 5


async def test_claimed_job_is_skipped(fake_db):
    await enqueue_receivable_schedule("c-1", OWNER_ID)
    materialize = AsyncMock(return_value=0)
    original_update = fake_db.receivable_jobs.update_one

    async def claim_lost(query, update, upsert=False):
        # Another worker claims between find and claim
        if update["$set"].get("status") == STATUS_RUNNING:
            return await original_update({"contract_id": "none"}, update)
        return await original_update(query, update, upsert)

    fake_db.receivable_jobs.update_one = claim_lost
    with patch("services.receivable_queue.materialize_receivables", materialize):
        outcome = await run_receivable_schedule_worker()

    assert outcome["count"] == 0
    materialize.assert_not_awaited()


async def test_stuck_running_jobs_are_requeued(fake_db):
    await fake_db.receivable_jobs.insert_one({
        "contract_id": "c-9",
        "status": STATUS_RUNNING,
        "attempts": 0,
        "updated_at": "2000-01-01T00:00:00+00:00",
        "next_run_at": "2000-01-01T00:00:00+00:00",
    })

    outcome = await run_stuck_receivable_job_recovery()

    assert outcome["count"] == 1
    job = await fake_db.receivable_jobs.find_one({"contract_id": "c-9"})
    assert job["status"] == STATUS_PENDING
