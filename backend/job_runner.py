"""
Shared job runner for scheduled background jobs.
Used by the server scheduler. Each run_* returns a dict with "message" (and optionally "count").
"""
import logging
from datetime import datetime, timezone, timedelta

logger = logging.getLogger(__name__)

# RUNNING jobs older than this are assumed orphaned by a crashed worker
STUCK_JOB_MINUTES = 10


async def run_receivable_schedule_worker():
    """
    Process receivable_jobs: claim due PENDING/FAILED jobs, materialise receivables,
    retry with backoff or mark DEAD.
    """
    try:
        from database import database
        from services.receivable_queue import (
            STATUS_PENDING,
            STATUS_RUNNING,
            STATUS_DONE,
            STATUS_FAILED,
            STATUS_DEAD,
            RECEIVABLE_JOB_BACKOFF,
            MAX_ATTEMPTS,
            materialize_receivables,
        )
        from models import AuditAction, ActorRole
        from utils.audit import create_audit_log

        db = database.get_db()
        now = datetime.now(timezone.utc)
        now_iso = now.isoformat()
        cursor = db.receivable_jobs.find(
            {"status": {"$in": [STATUS_PENDING, STATUS_FAILED]}, "next_run_at": {"$lte": now_iso}}
        ).sort("next_run_at", 1).limit(10)
        jobs = await cursor.to_list(10)
        processed = 0
        for job in jobs:
            jid = job["_id"]
            contract_id = job["contract_id"]
            owner_id = job.get("owner_id")
            correlation_id = job.get("correlation_id", "")
            attempts = job.get("attempts", 0)
            # Atomic claim
            r = await db.receivable_jobs.update_one(
                {"_id": jid, "status": job["status"]},
                {"$set": {"status": STATUS_RUNNING, "updated_at": now_iso}},
            )
            if r.modified_count == 0:
                continue
            try:
                count = await materialize_receivables(contract_id)
                await db.receivable_jobs.update_one(
                    {"_id": jid},
                    {"$set": {
                        "status": STATUS_DONE,
                        "attempts": attempts + 1,
                        "receivable_count": count,
                        "updated_at": datetime.now(timezone.utc).isoformat(),
                    }},
                )
                await create_audit_log(
                    action=AuditAction.RECEIVABLES_SCHEDULED,
                    actor_role=ActorRole.ROLE_SYSTEM,
                    owner_id=owner_id,
                    resource_type="contract",
                    resource_id=contract_id,
                    metadata={"receivable_count": count, "correlation_id": correlation_id},
                )
                processed += 1
            except Exception as e:
                next_attempts = attempts + 1
                if next_attempts >= MAX_ATTEMPTS:
                    new_status = STATUS_DEAD
                    next_run_at = now_iso
                else:
                    new_status = STATUS_FAILED
                    delta = RECEIVABLE_JOB_BACKOFF[min(next_attempts - 1, len(RECEIVABLE_JOB_BACKOFF) - 1)]
                    next_run_at = (now + timedelta(seconds=delta)).isoformat()
                err_str = str(e)
                await db.receivable_jobs.update_one(
                    {"_id": jid},
                    {"$set": {
                        "status": new_status,
                        "attempts": next_attempts,
                        "next_run_at": next_run_at,
                        "last_error": err_str,
                        "updated_at": datetime.now(timezone.utc).isoformat(),
                    }},
                )
                await create_audit_log(
                    action=AuditAction.RECEIVABLES_SCHEDULE_FAILED,
                    actor_role=ActorRole.ROLE_SYSTEM,
                    owner_id=owner_id,
                    resource_type="contract",
                    resource_id=contract_id,
                    metadata={
                        "attempts": next_attempts,
                        "error": err_str,
                        "status": new_status,
                        "correlation_id": correlation_id,
                    },
                )
                logger.warning(f"Receivable schedule failed contract_id={contract_id} attempts={next_attempts} err={err_str}")
        return {"message": f"Receivable schedule worker: {processed} processed", "count": processed}
    except Exception as e:
        logger.error(f"Receivable schedule worker failed: {e}")
        raise


async def run_stuck_receivable_job_recovery():
    """Return RUNNING jobs whose worker died back to PENDING so they are picked up again."""
    try:
        from database import database
        from services.receivable_queue import STATUS_PENDING, STATUS_RUNNING

        db = database.get_db()
        now = datetime.now(timezone.utc)
        cutoff = (now - timedelta(minutes=STUCK_JOB_MINUTES)).isoformat()
        result = await db.receivable_jobs.update_many(
            {"status": STATUS_RUNNING, "updated_at": {"$lt": cutoff}},
            {"$set": {"status": STATUS_PENDING, "next_run_at": now.isoformat(), "updated_at": now.isoformat()}},
        )
        count = result.modified_count
        if count:
            logger.warning(f"Recovered {count} stuck receivable jobs")
        return {"message": f"Recovered {count} stuck receivable jobs", "count": count}
    except Exception as e:
        logger.error(f"Stuck receivable job recovery failed: {e}")
        raise
