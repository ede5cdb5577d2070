"""
Completion poller.
After a client signs, the completion page confirms the stored status is signed.
Reads may lag the write, so the check is retried a bounded number of times.
"""
import os
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from models import ContractStatus
from services.contract_errors import ExpirationError, NotFoundError, NotReadyError, PollCancelledError
from services.contract_access import is_well_formed_token
from services.contract_service import contract_service, ContractService

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = int(os.getenv("CONTRACT_COMPLETION_POLL_ATTEMPTS", "5"))
DEFAULT_DELAY_SECONDS = float(os.getenv("CONTRACT_COMPLETION_POLL_DELAY_SECONDS", "2"))


class PollOutcome(str, Enum):
    READY = "ready"
    NOT_READY = "not_ready"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    value: Any = None

    @property
    def ready(self) -> bool:
        return self.outcome == PollOutcome.READY


class CompletionPoller:
    """
    Call fetch() up to max_attempts times, delay_seconds apart, until it returns
    a non-None value. Setting cancel_event stops the loop at the next wait.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Any]],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.fetch = fetch
        self.max_attempts = max_attempts
        self.delay_seconds = delay_seconds

    async def _pause(self, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep between attempts. Returns True if cancelled while waiting."""
        if cancel_event is None:
            await asyncio.sleep(self.delay_seconds)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.delay_seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def wait(self, cancel_event: Optional[asyncio.Event] = None) -> PollResult:
        attempts = 0
        while attempts < self.max_attempts:
            if cancel_event is not None and cancel_event.is_set():
                return PollResult(PollOutcome.CANCELLED, attempts)
            attempts += 1
            value = await self.fetch()
            if value is not None:
                return PollResult(PollOutcome.READY, attempts, value)
            if attempts < self.max_attempts and await self._pause(cancel_event):
                return PollResult(PollOutcome.CANCELLED, attempts)
        return PollResult(PollOutcome.NOT_READY, attempts)


async def wait_until_signed(
    token: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay_seconds: float = DEFAULT_DELAY_SECONDS,
    cancel_event: Optional[asyncio.Event] = None,
    service: Optional[ContractService] = None,
) -> dict:
    """
    Return the signed contract once visible.
    Raises NotReadyError when the budget runs out and PollCancelledError when
    cancel_event fires first. An expired contract raises ExpirationError at once.
    """
    if not is_well_formed_token(token):
        raise NotFoundError("Contract not found")
    service = service or contract_service

    async def _fetch_signed():
        contract = await service.get_contract_by_token(token)
        if contract["status"] == ContractStatus.SIGNED.value:
            return contract
        if contract["status"] == ContractStatus.EXPIRED.value:
            raise ExpirationError("This contract link has expired.", contract_id=contract.get("id"))
        return None

    result = await CompletionPoller(_fetch_signed, max_attempts, delay_seconds).wait(cancel_event)
    if result.ready:
        return result.value
    if result.outcome == PollOutcome.CANCELLED:
        raise PollCancelledError("Completion wait cancelled.")

    logger.info(f"Completion poll gave up: outcome={result.outcome.value} attempts={result.attempts}")
    raise NotReadyError(
        "The signature is still being confirmed. Try again in a moment.",
        retry_after_seconds=int(delay_seconds) or 1,
    )
