"""
Public contract access.
The token in the link is the only credential; anyone holding it may read the
contract bundle. Owner-internal fields never leave this module.
"""
import re
import logging
from typing import Dict, Any, Optional

from database import database
from models import ContractStatus
from services.contract_errors import NotFoundError
from services.contract_service import contract_service, ContractService
from utils.public_app_url import build_verification_url

logger = logging.getLogger(__name__)

# token_urlsafe(32) is 43 chars; accept a little slack either side
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{20,128}$")

# Never exposed on the public path
PRIVATE_FIELDS = ("_id", "owner_id", "lead_id", "template_id")


def is_well_formed_token(token: Optional[str]) -> bool:
    return bool(token) and bool(TOKEN_PATTERN.match(token))


def public_projection(contract: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in contract.items() if k not in PRIVATE_FIELDS}


class ContractAccessGateway:
    def __init__(self, service: Optional[ContractService] = None):
        self.service = service or contract_service

    async def _load(self, token: str) -> Dict[str, Any]:
        # Malformed tokens never reach the index
        if not is_well_formed_token(token):
            raise NotFoundError("Contract not found")
        return await self.service.get_contract_by_token(token)

    async def fetch_bundle(self, token: str) -> Dict[str, Any]:
        """
        Contract, template and business settings for the public signing page.
        Lazy expiration has already run on the returned contract.
        """
        contract = await self._load(token)

        content = contract.get("content_override")
        template_name = None
        if contract.get("template_id"):
            db = database.get_db()
            template = await db.contract_templates.find_one(
                {"id": contract["template_id"]},
                {"_id": 0, "name": 1, "content_text": 1},
            )
            if template:
                template_name = template.get("name")
                if content is None:
                    content = template.get("content_text")

        return {
            "contract": public_projection(contract),
            "template": {"name": template_name, "content_text": content or ""},
            # Frozen at generation; live settings may have changed since
            "business_settings": contract.get("user_data_json") or {},
        }

    async def verify(self, token: str) -> Dict[str, Any]:
        """Authenticity stamp of a signed contract, for the verification page."""
        contract = await self._load(token)
        if contract.get("status") != ContractStatus.SIGNED.value:
            raise NotFoundError("No signed contract for this link", contract_id=contract.get("id"))

        business = contract.get("user_data_json") or {}
        client = contract.get("client_data_json") or {}
        return {
            "valid": True,
            "contract_id": contract["id"],
            "status": contract["status"],
            "signed_at": contract.get("signed_at"),
            "business_name": business.get("business_name"),
            "client_name": client.get("full_name"),
            "client_ip": contract.get("client_ip"),
            "verification_url": build_verification_url(token),
        }


contract_access = ContractAccessGateway()
