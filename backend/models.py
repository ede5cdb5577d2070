from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
import uuid

SNAPSHOT_SCHEMA_VERSION = 1

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class ContractStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"
    EXPIRED = "expired"

class DownPaymentMode(str, Enum):
    PERCENT = "percent"
    FIXED = "fixed"

class PersonType(str, Enum):
    INDIVIDUAL = "individual"
    COMPANY = "company"

class ReceivableStatus(str, Enum):
    PENDING = "pending"

class ReceivableKind(str, Enum):
    DOWN_PAYMENT = "down_payment"
    INSTALLMENT = "installment"

class NotificationType(str, Enum):
    CONTRACT_GENERATED = "contract_generated"
    CONTRACT_SIGNED = "contract_signed"

class ActorRole(str, Enum):
    ROLE_OWNER = "ROLE_OWNER"
    ROLE_PUBLIC_SIGNER = "ROLE_PUBLIC_SIGNER"
    ROLE_SYSTEM = "ROLE_SYSTEM"

class AuditAction(str, Enum):
    # Lifecycle
    CONTRACT_GENERATED = "CONTRACT_GENERATED"
    CONTRACT_SIGNED = "CONTRACT_SIGNED"
    CONTRACT_EXPIRED = "CONTRACT_EXPIRED"
    CONTRACT_SIGN_CONFLICT = "CONTRACT_SIGN_CONFLICT"

    # Receivables
    RECEIVABLES_SCHEDULED = "RECEIVABLES_SCHEDULED"
    RECEIVABLES_SCHEDULE_FAILED = "RECEIVABLES_SCHEDULE_FAILED"

# ============================================================================
# SNAPSHOTS (frozen at generation / signing time)
# ============================================================================

class PaymentTerms(BaseModel):
    """Payment method selected at quote time; consumed by the installment scheduler."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: Optional[str] = None
    down_payment_mode: DownPaymentMode = DownPaymentMode.PERCENT
    down_payment_amount: Decimal = Field(default=Decimal("0"), ge=0)
    installment_count: int = Field(default=0, ge=0)

class ProductLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    unit_price: Decimal = Decimal("0")
    quantity: int = Field(default=1, ge=0)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

class LeadSnapshot(BaseModel):
    """Client, event and price breakdown captured once when the contract is generated."""
    model_config = ConfigDict(extra="ignore")

    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    client_phone: Optional[str] = None
    event_type: Optional[str] = None
    event_date: Optional[date] = None
    event_city: Optional[str] = None
    products: List[ProductLine] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    coupon_discount: Decimal = Decimal("0")
    payment_surcharge_percent: Decimal = Decimal("0")
    seasonal_adjustment: Decimal = Decimal("0")
    geographic_adjustment_percent: Decimal = Decimal("0")
    total_value: Decimal = Decimal("0")
    payment_method_name: Optional[str] = None
    payment_details: Optional[PaymentTerms] = None
    hide_intermediate_values: bool = False

class BusinessSnapshot(BaseModel):
    """Professional's business identity at generation time."""
    model_config = ConfigDict(extra="ignore")

    schema_version: int = SNAPSHOT_SCHEMA_VERSION
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
    # Kept on the contract as user_signature_base64, never inside user_data_json
    signature_base64: Optional[str] = Field(default=None, exclude=True)

    @property
    def tax_id(self) -> Optional[str]:
        if self.person_type == PersonType.COMPANY:
            return self.company_tax_id
        return self.individual_tax_id

class ClientSnapshot(BaseModel):
    """Data the client types into the signing form."""
    model_config = ConfigDict(extra="allow")

    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    full_name: Optional[str] = None
    tax_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

class ContractTemplate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    content_text: str

# ============================================================================
# RECEIVABLES
# ============================================================================

class ReceivableRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    contract_id: Optional[str] = None
    sequence_number: int
    total_count: int
    amount: Decimal
    due_date: date
    description: str
    kind: ReceivableKind
    payment_method: Optional[str] = None
    status: ReceivableStatus = ReceivableStatus.PENDING

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="json")
        doc["amount"] = float(self.amount)
        return doc

# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[ActorRole] = None
    actor_id: Optional[str] = None
    owner_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(datetime.now().astimezone().tzinfo))
