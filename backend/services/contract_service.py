"""
Contract Service - Business Logic Layer
Owns contract status and the guarded transitions:

- generate()          -> pending   (professional)
- approve_and_sign()  pending -> signed   (public signer, compare-and-set)
- lazy_expire()       pending -> expired  (any read after expires_at)

This is the ONLY module that writes contracts.status. Receivable creation is handed
to the receivable_jobs outbox after signing; it never blocks the signer.
"""
import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, List, Any

from pymongo import ReturnDocument

from database import database
from models import (
    ContractStatus, AuditAction, ActorRole, NotificationType,
    LeadSnapshot, BusinessSnapshot, ClientSnapshot,
)
from services.contract_errors import (
    MissingSignatureError, ValidationError, StateConflictError,
    ExpirationError, NotFoundError, SchedulingFailure,
)
from services.contract_workflow import (
    assert_transition, is_past_expiry, requires_owner_notification,
)
from services.contract_variables import resolve
from services.receivable_queue import enqueue_receivable_schedule
from utils.audit import create_audit_log
from utils.clock import system_clock
from utils.public_app_url import build_contract_link

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY_DAYS = int(os.getenv("CONTRACT_DEFAULT_VALIDITY_DAYS", "7"))
MAX_VALIDITY_DAYS = int(os.getenv("CONTRACT_MAX_VALIDITY_DAYS", "30"))

# Live contracts block a second contract for the same lead
LIVE_STATES = [ContractStatus.PENDING.value, ContractStatus.SIGNED.value]

RESOURCE_TYPE = "contract"


def generate_contract_token() -> str:
    """URL-safe, 256 bits of entropy. The token is the only credential of the public link."""
    return secrets.token_urlsafe(32)


class ContractService:
    def __init__(self, clock=None):
        self.clock = clock or system_clock

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        lead_snapshot: LeadSnapshot,
        business_snapshot: BusinessSnapshot,
        template_id: Optional[str],
        content_override: Optional[str],
        validity_days: Optional[int],
        owner_id: str,
        lead_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a pending contract with frozen snapshots.
        Refuses before any write when the professional has no signature on file.
        """
        if not (business_snapshot.signature_base64 or "").strip():
            raise MissingSignatureError(
                "Add your signature in business settings before generating contracts."
            )

        if validity_days is None:
            validity_days = DEFAULT_VALIDITY_DAYS
        if not 1 <= validity_days <= MAX_VALIDITY_DAYS:
            raise ValidationError(f"validity_days must be between 1 and {MAX_VALIDITY_DAYS}")

        if not template_id and not content_override:
            raise ValidationError("A template or contract text is required")

        db = database.get_db()

        if not content_override:
            template = await db.contract_templates.find_one(
                {"id": template_id, "owner_id": owner_id}, {"_id": 0}
            )
            if not template:
                raise NotFoundError(f"Template {template_id} not found")
            # Freeze the template text; later template edits never touch this contract
            content_override = template.get("content_text") or ""

        if lead_id:
            await self._ensure_no_live_contract(lead_id, owner_id)

        now = self.clock.now()
        contract_id = str(uuid.uuid4())
        token = generate_contract_token()
        payment_terms = lead_snapshot.payment_details

        contract_doc = {
            "id": contract_id,
            "token": token,
            "owner_id": owner_id,
            "lead_id": lead_id,
            "template_id": template_id,
            "content_override": content_override,

            # Snapshots - frozen at generation
            "lead_data_json": lead_snapshot.model_dump(mode="json"),
            "user_data_json": business_snapshot.model_dump(mode="json"),
            "payment_details_json": payment_terms.model_dump(mode="json") if payment_terms else None,
            "user_signature_base64": business_snapshot.signature_base64,

            # Filled on signing
            "client_data_json": None,
            "signature_base64": None,
            "client_ip": None,
            "signed_at": None,

            "status": ContractStatus.PENDING.value,
            "expires_at": now + timedelta(days=validity_days),
            "created_at": now,
            "updated_at": now,
        }

        await db.contracts.insert_one(contract_doc)
        contract_doc.pop("_id", None)
        logger.info(f"Contract generated: {contract_id} owner={owner_id} expires_at={contract_doc['expires_at'].isoformat()}")

        if requires_owner_notification(ContractStatus.PENDING):
            await self._notify_owner(
                owner_id,
                NotificationType.CONTRACT_GENERATED,
                contract_doc,
                title="Contract generated",
                message=f"Contract for {lead_snapshot.client_name or 'client'} is ready to send.",
            )

        await create_audit_log(
            action=AuditAction.CONTRACT_GENERATED,
            actor_role=ActorRole.ROLE_OWNER,
            actor_id=owner_id,
            owner_id=owner_id,
            resource_type=RESOURCE_TYPE,
            resource_id=contract_id,
            after_state={"status": ContractStatus.PENDING.value},
            metadata={
                "lead_id": lead_id,
                "template_id": template_id,
                "validity_days": validity_days,
                "total_value": str(lead_snapshot.total_value),
            },
        )

        return {
            "contract_id": contract_id,
            "token": token,
            "link": build_contract_link(token),
            "status": ContractStatus.PENDING.value,
            "expires_at": contract_doc["expires_at"],
        }

    async def _ensure_no_live_contract(self, lead_id: str, owner_id: str):
        db = database.get_db()
        cursor = db.contracts.find(
            {"lead_id": lead_id, "owner_id": owner_id, "status": {"$in": LIVE_STATES}},
            {"_id": 0},
        )
        for existing in await cursor.to_list(10):
            existing = await self.lazy_expire(existing)
            if existing["status"] in LIVE_STATES:
                raise StateConflictError(
                    f"Lead already has a {existing['status']} contract",
                    contract_id=existing["id"],
                )

    # ------------------------------------------------------------------
    # Lazy expiration
    # ------------------------------------------------------------------

    async def lazy_expire(self, contract: Dict) -> Dict:
        """
        Expire a pending contract read after its expiry instant. Idempotent and
        lock-free: the conditional write only matches while the contract is pending,
        so concurrent readers (or a racing signer) cannot both win.
        """
        if contract.get("status") != ContractStatus.PENDING.value:
            return contract
        now = self.clock.now()
        if not is_past_expiry(contract, now):
            return contract

        db = database.get_db()
        result = await db.contracts.update_one(
            {"id": contract["id"], "status": ContractStatus.PENDING.value},
            {"$set": {"status": ContractStatus.EXPIRED.value, "updated_at": now}},
        )
        if result.modified_count:
            logger.info(f"Contract expired: {contract['id']}")
            await create_audit_log(
                action=AuditAction.CONTRACT_EXPIRED,
                actor_role=ActorRole.ROLE_SYSTEM,
                owner_id=contract.get("owner_id"),
                resource_type=RESOURCE_TYPE,
                resource_id=contract["id"],
                before_state={"status": ContractStatus.PENDING.value},
                after_state={"status": ContractStatus.EXPIRED.value},
            )
            expired = dict(contract)
            expired.update({"status": ContractStatus.EXPIRED.value, "updated_at": now})
            return expired

        # Someone else moved it first; report what is stored
        current = await db.contracts.find_one({"id": contract["id"]}, {"_id": 0})
        return current or contract

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_contract_by_token(self, token: str) -> Dict:
        db = database.get_db()
        contract = await db.contracts.find_one({"token": token}, {"_id": 0})
        if not contract:
            raise NotFoundError("Contract not found")
        return await self.lazy_expire(contract)

    async def get_contract_for_owner(self, contract_id: str, owner_id: str) -> Dict:
        db = database.get_db()
        contract = await db.contracts.find_one({"id": contract_id, "owner_id": owner_id}, {"_id": 0})
        if not contract:
            raise NotFoundError("Contract not found", contract_id=contract_id)
        return await self.lazy_expire(contract)

    async def list_contracts(
        self,
        owner_id: str,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict]:
        db = database.get_db()
        query: Dict[str, Any] = {"owner_id": owner_id}
        if status:
            query["status"] = status
        cursor = db.contracts.find(query, {"_id": 0}).sort("created_at", -1)
        contracts = [await self.lazy_expire(c) for c in await cursor.to_list(limit)]
        if status:
            # Lazy expiration may have moved some out of the requested status
            contracts = [c for c in contracts if c.get("status") == status]
        return contracts

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    async def approve_and_sign(
        self,
        token: str,
        client_data: Optional[Dict[str, Any]],
        client_signature: Optional[str],
        client_ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Move a pending contract to signed.

        Order of checks: unknown token, lazy expiration, state, client input. The
        final write is conditional on status == pending and expires_at not passed,
        so of two concurrent submissions exactly one succeeds.
        """
        contract = await self.get_contract_by_token(token)
        assert_transition(contract, ContractStatus.SIGNED)

        client = self._validate_client_submission(client_data, client_signature, contract["id"])

        db = database.get_db()
        now = self.clock.now()
        updated = await db.contracts.find_one_and_update(
            {
                "token": token,
                "status": ContractStatus.PENDING.value,
                "expires_at": {"$gte": now},
            },
            {"$set": {
                "status": ContractStatus.SIGNED.value,
                "client_data_json": client.model_dump(mode="json"),
                "signature_base64": client_signature,
                "client_ip": client_ip,
                "signed_at": now,
                "updated_at": now,
            }},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

        if updated is None:
            await self._raise_sign_conflict(token, contract, client_ip)

        logger.info(f"Contract signed: {updated['id']} ip={client_ip}")

        await self._schedule_receivables(updated)

        await self._notify_owner(
            updated.get("owner_id"),
            NotificationType.CONTRACT_SIGNED,
            updated,
            title="Contract signed",
            message=f"{client.full_name} signed the contract.",
        )

        await create_audit_log(
            action=AuditAction.CONTRACT_SIGNED,
            actor_role=ActorRole.ROLE_PUBLIC_SIGNER,
            owner_id=updated.get("owner_id"),
            resource_type=RESOURCE_TYPE,
            resource_id=updated["id"],
            before_state={"status": ContractStatus.PENDING.value},
            after_state={"status": ContractStatus.SIGNED.value},
            ip_address=client_ip,
        )

        return {"status": ContractStatus.SIGNED.value, "signed_at": updated["signed_at"]}

    def _validate_client_submission(
        self,
        client_data: Optional[Dict[str, Any]],
        client_signature: Optional[str],
        contract_id: str,
    ) -> ClientSnapshot:
        if not client_data:
            raise ValidationError("Client data is required", contract_id=contract_id)
        if not (client_signature or "").strip():
            raise ValidationError("Client signature is required", contract_id=contract_id)
        try:
            client = ClientSnapshot.model_validate(client_data)
        except Exception as e:
            raise ValidationError(f"Invalid client data: {e}", contract_id=contract_id) from e
        if not (client.full_name or "").strip():
            raise ValidationError("Client full name is required", contract_id=contract_id)
        return client

    async def _raise_sign_conflict(self, token: str, contract: Dict, client_ip: Optional[str]):
        """Conditional write matched nothing: report why."""
        db = database.get_db()
        current = await db.contracts.find_one({"token": token}, {"_id": 0}) or contract
        current = await self.lazy_expire(current)

        await create_audit_log(
            action=AuditAction.CONTRACT_SIGN_CONFLICT,
            actor_role=ActorRole.ROLE_PUBLIC_SIGNER,
            owner_id=current.get("owner_id"),
            resource_type=RESOURCE_TYPE,
            resource_id=current.get("id"),
            metadata={"status": current.get("status")},
            reason_code="CONCURRENT_TRANSITION",
            ip_address=client_ip,
        )
        logger.warning(f"Sign conflict on contract {current.get('id')}: status={current.get('status')}")

        if current.get("status") == ContractStatus.EXPIRED.value:
            raise ExpirationError(
                "This contract link has expired. Ask the professional to generate a new contract.",
                contract_id=current.get("id"),
            )
        raise StateConflictError(
            f"Contract is already {current.get('status')}",
            contract_id=current.get("id"),
        )

    async def _schedule_receivables(self, contract: Dict):
        """Hand receivable creation to the outbox. Failures are logged, never raised to the signer."""
        try:
            await enqueue_receivable_schedule(
                contract["id"],
                contract.get("owner_id"),
                correlation_id=f"SIGNED:{contract['id']}",
            )
        except Exception as e:
            failure = SchedulingFailure(f"Could not enqueue receivables: {e}", contract_id=contract["id"])
            logger.error(f"{failure.code} contract_id={failure.contract_id}: {failure.message}")
            await create_audit_log(
                action=AuditAction.RECEIVABLES_SCHEDULE_FAILED,
                actor_role=ActorRole.ROLE_SYSTEM,
                owner_id=contract.get("owner_id"),
                resource_type=RESOURCE_TYPE,
                resource_id=contract["id"],
                metadata={"error": str(e), "stage": "enqueue"},
            )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _notify_owner(
        self,
        owner_id: Optional[str],
        notification_type: NotificationType,
        contract: Dict,
        title: str,
        message: str,
    ):
        if not owner_id:
            return
        try:
            db = database.get_db()
            await db.notifications.insert_one({
                "id": str(uuid.uuid4()),
                "owner_id": owner_id,
                "type": notification_type.value,
                "title": title,
                "message": message,
                "related_id": contract["id"],
                "read": False,
                "created_at": self.clock.now(),
            })
        except Exception as e:
            # Notification failure never rolls back the contract
            logger.error(f"Failed to notify owner {owner_id} ({notification_type.value}) contract={contract.get('id')}: {e}")

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    async def render_contract(
        self,
        contract: Dict,
        client: Optional[ClientSnapshot] = None,
    ) -> str:
        """Resolved contract text from the frozen snapshots. Pass client to preview unsaved data."""
        content = contract.get("content_override")
        if content is None and contract.get("template_id"):
            db = database.get_db()
            template = await db.contract_templates.find_one({"id": contract["template_id"]}, {"_id": 0})
            content = (template or {}).get("content_text", "")

        if client is None and contract.get("client_data_json"):
            client = ClientSnapshot.model_validate(contract["client_data_json"])

        reference = contract.get("signed_at") or self.clock.now()
        if isinstance(reference, str):
            reference = datetime.fromisoformat(reference.replace("Z", "+00:00"))

        return resolve(
            content or "",
            BusinessSnapshot.model_validate(contract.get("user_data_json") or {}),
            client,
            LeadSnapshot.model_validate(contract.get("lead_data_json") or {}),
            reference_date=reference.date(),
        )


contract_service = ContractService()
