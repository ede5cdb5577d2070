"""
Contract error taxonomy.
Routes never build HTTP errors for these; server.py maps ContractError to a JSON response
using status_code and code.
"""
from typing import Optional


class ContractError(Exception):
    status_code = 400
    code = "contract_error"

    def __init__(self, message: str, contract_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.contract_id = contract_id


class MissingSignatureError(ContractError):
    """Professional has no signature on file; generation refused."""
    status_code = 422
    code = "missing_signature"


class ValidationError(ContractError):
    """Incomplete generation request or client submission."""
    status_code = 422
    code = "validation_error"


class StateConflictError(ContractError):
    """Transition attempted from a non-pending state, including the double-submit race."""
    status_code = 409
    code = "state_conflict"


class ExpirationError(StateConflictError):
    """Signing attempted after lazy expiration moved the contract to expired."""
    status_code = 410
    code = "contract_expired"


class NotFoundError(ContractError):
    status_code = 404
    code = "not_found"


class NotReadyError(ContractError):
    """Completion poller budget exhausted before the signed state became visible."""
    status_code = 425
    code = "not_ready"

    def __init__(self, message: str, contract_id: Optional[str] = None, retry_after_seconds: int = 2):
        super().__init__(message, contract_id)
        self.retry_after_seconds = retry_after_seconds


class PollCancelledError(ContractError):
    """The completion wait was cancelled by its caller before the signed state showed up."""
    status_code = 499
    code = "poll_cancelled"


class SchedulingFailure(ContractError):
    """Receivable materialisation failed. Logged only, never surfaced to the signer."""
    status_code = 500
    code = "scheduling_failure"
