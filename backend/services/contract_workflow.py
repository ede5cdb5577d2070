"""
Contract Workflow State Machine
Defines the valid states and transitions of a contract.
This is the single source of truth for contract workflow logic.

pending -> signed   (client approved and signed)
pending -> expired  (read after expires_at while still pending)
signed and expired are terminal.
"""
from datetime import datetime
from typing import Dict, List, Set

from models import ContractStatus
from services.contract_errors import StateConflictError, ExpirationError
from utils.clock import as_utc


# Valid state transitions - whitelist approach
ALLOWED_TRANSITIONS: Dict[ContractStatus, List[ContractStatus]] = {
    ContractStatus.PENDING: [ContractStatus.SIGNED, ContractStatus.EXPIRED],
    # Terminal states
    ContractStatus.SIGNED: [],
    ContractStatus.EXPIRED: [],
}


TERMINAL_STATES: Set[ContractStatus] = {
    ContractStatus.SIGNED,
    ContractStatus.EXPIRED,
}


# States that notify the owning professional when entered
OWNER_NOTIFICATION_STATES: Set[ContractStatus] = {
    ContractStatus.PENDING,
    ContractStatus.SIGNED,
}


def is_valid_transition(from_status: ContractStatus, to_status: ContractStatus) -> bool:
    """Check if a state transition is valid"""
    return to_status in ALLOWED_TRANSITIONS.get(from_status, [])


def is_terminal_state(status: ContractStatus) -> bool:
    """Check if a status is terminal (no further transitions)"""
    return status in TERMINAL_STATES


def requires_owner_notification(status: ContractStatus) -> bool:
    return status in OWNER_NOTIFICATION_STATES


def get_allowed_transitions(status: ContractStatus) -> List[ContractStatus]:
    """Get list of valid next states from current status"""
    return ALLOWED_TRANSITIONS.get(status, [])


def is_past_expiry(contract: Dict, now: datetime) -> bool:
    """Strictly after expires_at; a contract is still valid at the exact expiry instant."""
    expires_at = contract.get("expires_at")
    if expires_at is None:
        return False
    if isinstance(expires_at, str):
        expires_at = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
    return as_utc(now) > as_utc(expires_at)


def assert_transition(contract: Dict, to_status: ContractStatus) -> ContractStatus:
    """
    Raise if contract cannot move to to_status.
    Expired contracts raise ExpirationError so callers can tell the two conflicts apart.
    """
    current = ContractStatus(contract["status"])
    if is_valid_transition(current, to_status):
        return current
    if current == ContractStatus.EXPIRED:
        raise ExpirationError(
            "This contract link has expired. Ask the professional to generate a new contract.",
            contract_id=contract.get("id"),
        )
    allowed = [s.value for s in get_allowed_transitions(current)]
    raise StateConflictError(
        f"Invalid transition: {current.value} → {to_status.value}. Allowed: {allowed}",
        contract_id=contract.get("id"),
    )


# Status labels for the professional's dashboard
STATUS_LABELS: List[Dict] = [
    {"status": ContractStatus.PENDING, "label": "Pending", "color": "yellow"},
    {"status": ContractStatus.SIGNED, "label": "Signed", "color": "green"},
    {"status": ContractStatus.EXPIRED, "label": "Expired", "color": "red"},
]
