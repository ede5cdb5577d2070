"""
Receivable scheduling outbox.
Signing enqueues one job per contract; the worker in job_runner materialises the
schedule via materialize_receivables(). Idempotent by contract_id at both levels:
a second enqueue is a no-op and a second materialisation finds the rows already there.
"""
from database import database
from datetime import datetime, timezone
from typing import Optional
import logging

from models import ContractStatus, LeadSnapshot, PaymentTerms
from services.contract_errors import SchedulingFailure, NotFoundError
from services.installment_scheduler import schedule
from utils.clock import as_utc

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_RUNNING = "RUNNING"
STATUS_DONE = "DONE"
STATUS_FAILED = "FAILED"
STATUS_DEAD = "DEAD"

# Backoff seconds: attempt 1 => +10s, 2 => +30s, 3 => +2m, 4 => +10m, >=5 => DEAD
RECEIVABLE_JOB_BACKOFF = [10, 30, 120, 600]
MAX_ATTEMPTS = 5


def _is_duplicate_key(e: Exception) -> bool:
    return "duplicate key" in str(e).lower() or "E11000" in str(e)


async def enqueue_receivable_schedule(
    contract_id: str,
    owner_id: Optional[str],
    correlation_id: Optional[str] = None,
) -> bool:
    """
    Enqueue receivable materialisation for a freshly signed contract.
    Returns True if a new job was enqueued, False if one already exists.
    """
    db = database.get_db()
    now = datetime.now(timezone.utc)
    doc = {
        "contract_id": contract_id,
        "owner_id": owner_id,
        "correlation_id": correlation_id or f"SIGNED:{contract_id}",
        "status": STATUS_PENDING,
        "attempts": 0,
        "next_run_at": now.isoformat(),
        "last_error": None,
        "created_at": now.isoformat(),
        "updated_at": now.isoformat(),
    }
    try:
        await db.receivable_jobs.insert_one(doc)
        logger.info(f"Enqueued receivable schedule contract_id={contract_id}")
        return True
    except Exception as e:
        if _is_duplicate_key(e):
            return False
        raise


async def materialize_receivables(contract_id: str) -> int:
    """
    Create the receivables of a signed contract. Returns the number of receivables
    the contract has afterwards. Raises SchedulingFailure when it cannot.
    """
    db = database.get_db()
    contract = await db.contracts.find_one({"id": contract_id}, {"_id": 0})
    if not contract:
        raise NotFoundError(f"Contract {contract_id} not found", contract_id=contract_id)
    if contract.get("status") != ContractStatus.SIGNED.value:
        raise SchedulingFailure(
            f"Contract is {contract.get('status')}, receivables are only created after signing",
            contract_id=contract_id,
        )

    existing = await db.receivables.count_documents({"contract_id": contract_id})
    if existing:
        logger.info(f"Receivables already exist contract_id={contract_id} count={existing}")
        return existing

    try:
        lead = LeadSnapshot.model_validate(contract.get("lead_data_json") or {})
        terms = PaymentTerms.model_validate(
            contract.get("payment_details_json") or lead.payment_details or {}
        )
    except Exception as e:
        raise SchedulingFailure(f"Unreadable contract snapshot: {e}", contract_id=contract_id) from e

    signed_at = contract.get("signed_at")
    if isinstance(signed_at, str):
        signed_at = datetime.fromisoformat(signed_at.replace("Z", "+00:00"))
    if signed_at is None:
        raise SchedulingFailure("Signed contract has no signed_at", contract_id=contract_id)
    anchor = as_utc(signed_at).date()

    records = schedule(
        lead.total_value,
        terms,
        anchor,
        client_name=lead.client_name,
        payment_method=lead.payment_method_name,
    )
    if not records:
        logger.info(f"No receivables to schedule contract_id={contract_id}")
        return 0

    now_iso = datetime.now(timezone.utc).isoformat()
    docs = []
    for record in records:
        doc = record.to_document()
        doc.update({
            "contract_id": contract_id,
            "owner_id": contract.get("owner_id"),
            "created_at": now_iso,
        })
        docs.append(doc)

    try:
        await db.receivables.insert_many(docs)
    except Exception as e:
        if _is_duplicate_key(e):
            # A concurrent run got there first
            return await db.receivables.count_documents({"contract_id": contract_id})
        raise SchedulingFailure(f"Failed to insert receivables: {e}", contract_id=contract_id) from e

    logger.info(f"Scheduled {len(docs)} receivables contract_id={contract_id}")
    return len(docs)


async def list_receivables(contract_id: str) -> list:
    db = database.get_db()
    cursor = db.receivables.find({"contract_id": contract_id}, {"_id": 0}).sort("sequence_number", 1)
    return await cursor.to_list(1000)
