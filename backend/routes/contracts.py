"""
Professional contract routes.
The owner is identified by the X-Owner-Id header set by the upstream auth layer.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from database import database
from models import LeadSnapshot, BusinessSnapshot, ContractTemplate, PersonType
from services.contract_service import contract_service
from services.contract_workflow import STATUS_LABELS
from services.receivable_queue import list_receivables
from utils.audit import get_audit_logs_for_resource

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/contracts", tags=["Contracts"])


async def get_owner_id(x_owner_id: Optional[str] = Header(None)) -> str:
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header")
    return x_owner_id.strip()


class GenerateContractRequest(BaseModel):
    lead: LeadSnapshot
    lead_id: Optional[str] = None
    template_id: Optional[str] = None
    content_override: Optional[str] = None
    validity_days: Optional[int] = None


class TemplateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    content_text: str


class BusinessSettingsRequest(BaseModel):
    business_name: Optional[str] = None
    person_type: PersonType = PersonType.INDIVIDUAL
    individual_tax_id: Optional[str] = None
    company_tax_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    pix_key: Optional[str] = None
    bank_name: Optional[str] = None
    bank_agency: Optional[str] = None
    bank_account: Optional[str] = None
    bank_account_type: Optional[str] = None
    signature_base64: Optional[str] = None


# ============================================
# Templates & business settings
# ============================================

@router.post("/templates")
async def create_template(body: TemplateRequest, owner_id: str = Depends(get_owner_id)):
    db = database.get_db()
    doc = ContractTemplate(name=body.name, content_text=body.content_text).model_dump()
    doc.update({"owner_id": owner_id, "created_at": datetime.now(timezone.utc)})
    await db.contract_templates.insert_one(doc)
    doc.pop("_id", None)
    return doc


@router.get("/templates")
async def list_templates(owner_id: str = Depends(get_owner_id)):
    db = database.get_db()
    cursor = db.contract_templates.find({"owner_id": owner_id}, {"_id": 0}).sort("created_at", -1)
    return {"templates": await cursor.to_list(200)}


@router.get("/business-settings")
async def get_business_settings(owner_id: str = Depends(get_owner_id)):
    db = database.get_db()
    settings = await db.business_settings.find_one({"owner_id": owner_id}, {"_id": 0})
    if not settings:
        raise HTTPException(status_code=404, detail="Business settings not found")
    settings["has_signature"] = bool(settings.pop("signature_base64", None))
    return settings


@router.put("/business-settings")
async def update_business_settings(body: BusinessSettingsRequest, owner_id: str = Depends(get_owner_id)):
    """Save settings. An omitted signature keeps the stored one; an explicit null clears it."""
    db = database.get_db()
    update = body.model_dump(mode="json")
    if "signature_base64" not in body.model_fields_set:
        update.pop("signature_base64")
    update["updated_at"] = datetime.now(timezone.utc)
    await db.business_settings.update_one(
        {"owner_id": owner_id},
        {"$set": update, "$setOnInsert": {"owner_id": owner_id}},
        upsert=True,
    )
    stored = await db.business_settings.find_one({"owner_id": owner_id}, {"_id": 0, "signature_base64": 1})
    return {"success": True, "has_signature": bool((stored or {}).get("signature_base64"))}


# ============================================
# Contracts
# ============================================

@router.post("")
async def generate_contract(body: GenerateContractRequest, owner_id: str = Depends(get_owner_id)):
    """Generate a pending contract and return its public signing link."""
    db = database.get_db()
    settings = await db.business_settings.find_one({"owner_id": owner_id}, {"_id": 0}) or {}
    business = BusinessSnapshot.model_validate(settings)

    return await contract_service.generate(
        lead_snapshot=body.lead,
        business_snapshot=business,
        template_id=body.template_id,
        content_override=body.content_override,
        validity_days=body.validity_days,
        owner_id=owner_id,
        lead_id=body.lead_id,
    )


@router.get("")
async def list_contracts(
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    owner_id: str = Depends(get_owner_id),
):
    contracts = await contract_service.list_contracts(owner_id, status=status, limit=limit)
    # Signatures are large; the list view never needs them
    for contract in contracts:
        contract.pop("user_signature_base64", None)
        contract.pop("signature_base64", None)
    return {"contracts": contracts, "total": len(contracts), "status_labels": STATUS_LABELS}


@router.get("/{contract_id}")
async def get_contract(contract_id: str, owner_id: str = Depends(get_owner_id)):
    return await contract_service.get_contract_for_owner(contract_id, owner_id)


@router.get("/{contract_id}/preview")
async def preview_contract(contract_id: str, owner_id: str = Depends(get_owner_id)):
    contract = await contract_service.get_contract_for_owner(contract_id, owner_id)
    content = await contract_service.render_contract(contract)
    return {"contract_id": contract_id, "status": contract["status"], "content": content}


@router.get("/{contract_id}/receivables")
async def get_contract_receivables(contract_id: str, owner_id: str = Depends(get_owner_id)):
    contract = await contract_service.get_contract_for_owner(contract_id, owner_id)
    receivables = await list_receivables(contract["id"])
    return {"contract_id": contract_id, "receivables": receivables, "total": len(receivables)}


@router.get("/{contract_id}/history")
async def get_contract_history(
    contract_id: str,
    limit: int = Query(50, ge=1, le=200),
    owner_id: str = Depends(get_owner_id),
):
    await contract_service.get_contract_for_owner(contract_id, owner_id)
    logs = await get_audit_logs_for_resource("contract", contract_id, limit=limit)
    return {"contract_id": contract_id, "history": logs}
