"""
Public contract routes (no auth).
The token in the path is the only credential.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from models import ClientSnapshot, ContractStatus
from services.contract_access import contract_access, is_well_formed_token
from services.contract_errors import NotFoundError, ValidationError
from services.contract_service import contract_service
from services.completion_poller import wait_until_signed

logger = logging.getLogger(__name__)

public_router = APIRouter(prefix="/api/public/contracts", tags=["Public Contracts"])


class PreviewRequest(BaseModel):
    client_data: Dict[str, Any] = {}


class SignRequest(BaseModel):
    client_data: Optional[Dict[str, Any]] = None
    client_signature: Optional[str] = None
    client_ip: Optional[str] = None


def _peer_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@public_router.get("/verify/{token}")
async def verify_contract(token: str):
    """Authenticity stamp of a signed contract."""
    return await contract_access.verify(token)


@public_router.get("/{token}")
async def get_public_contract(token: str):
    """Contract bundle for the signing page."""
    return await contract_access.fetch_bundle(token)


@public_router.post("/{token}/preview")
async def preview_with_client_data(token: str, body: PreviewRequest):
    """Resolve the contract with the data the client typed so far. Nothing is stored."""
    bundle = await contract_access.fetch_bundle(token)
    try:
        client = ClientSnapshot.model_validate(body.client_data)
    except Exception as e:
        raise ValidationError(f"Invalid client data: {e}") from e
    content = await contract_service.render_contract(bundle["contract"], client=client)
    return {"status": bundle["contract"]["status"], "content": content}


@public_router.get("/{token}/preview")
async def preview_signed_contract(token: str):
    bundle = await contract_access.fetch_bundle(token)
    contract = bundle["contract"]
    if contract["status"] != ContractStatus.SIGNED.value:
        raise NotFoundError("Contract has not been signed", contract_id=contract.get("id"))
    content = await contract_service.render_contract(contract)
    return {"status": contract["status"], "signed_at": contract.get("signed_at"), "content": content}


@public_router.post("/{token}/sign")
async def sign_contract(token: str, body: SignRequest, request: Request):
    if not is_well_formed_token(token):
        raise NotFoundError("Contract not found")
    return await contract_service.approve_and_sign(
        token,
        client_data=body.client_data,
        client_signature=body.client_signature,
        client_ip=body.client_ip or _peer_ip(request),
    )


@public_router.get("/{token}/complete")
async def confirm_completion(token: str):
    """Completion page: wait briefly for the signed state to become visible."""
    contract = await wait_until_signed(token)
    return {"status": contract["status"], "signed_at": contract.get("signed_at")}
