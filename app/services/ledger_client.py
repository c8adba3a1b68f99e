"""
Expense Lifecycle - Ledger Client

Boundary to the external general ledger (NetSuite).

The orchestrator only depends on ``LedgerClient``: submit a batch and get an
outcome, or look up what the ledger already holds for a batch reference.
Failures are classified by exception type:

- ``LedgerTransientError`` (network, timeout, 5xx, 429): safe to retry
- ``LedgerPermanentError`` (4xx, rejected payload): never retried
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


# ===========================================
# CONTRACT
# ===========================================

@dataclass(frozen=True)
class LedgerLine:
    line_number: int
    gl_account: str
    amount_cents: int
    currency: str
    department: Optional[str] = None
    memo: Optional[str] = None
    tax_code: Optional[str] = None


@dataclass(frozen=True)
class LedgerSubmission:
    """Everything the ledger needs to post one batch."""
    batch_reference: str
    lines: Tuple[LedgerLine, ...]

    @property
    def total_amount_cents(self) -> int:
        return sum(line.amount_cents for line in self.lines)


@dataclass
class LedgerOutcome:
    """Ledger acknowledgement of a posted batch."""
    succeeded: bool
    reference: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "reference": self.reference,
            "message": self.message,
            "raw": self.raw,
        }


class LedgerError(Exception):
    """Base class for ledger failures."""

    def __init__(self, message: str, raw: Optional[Dict[str, Any]] = None):
        self.message = message
        self.raw = raw or {}
        super().__init__(message)


class LedgerTransientError(LedgerError):
    """Retryable failure: the batch may or may not have been received."""


class LedgerTimeoutError(LedgerTransientError):
    """No answer within the deadline; the ledger might still post the batch."""


class LedgerPermanentError(LedgerError):
    """The ledger rejected the batch; retrying will not help."""


class LedgerClient(ABC):
    """Interface implemented by every ledger backend and by test doubles."""

    @abstractmethod
    async def submit_batch(self, submission: LedgerSubmission) -> LedgerOutcome:
        """Post a batch. Raises ``LedgerTransientError`` or ``LedgerPermanentError``."""

    @abstractmethod
    async def fetch_batch_status(self, batch_reference: str) -> Optional[LedgerOutcome]:
        """What the ledger holds for ``batch_reference``, or None if it has nothing."""


# ===========================================
# NETSUITE REST CLIENT
# ===========================================

class NetSuiteLedgerClient(LedgerClient):
    """
    Posts batches as journal entries through the NetSuite REST record API.

    The batch reference is sent as the journal entry ``externalId`` so the
    entry can be looked up again after a timeout.
    """

    ENDPOINTS = {
        "journal_entry": "/services/rest/record/v1/journalEntry",
        "journal_entry_by_external_id": "/services/rest/record/v1/journalEntry/eid:{external_id}",
    }

    def __init__(
        self,
        base_url: Optional[str] = None,
        account: Optional[str] = None,
        token: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.ledger_base_url).rstrip("/")
        self.account = account if account is not None else settings.ledger_account
        self.token = token if token is not None else settings.ledger_token
        self.timeout_seconds = timeout_seconds or settings.ledger_timeout_seconds
        self.transport = transport

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.token}",
            "X-NetSuite-Account": self.account,
        }

    def _build_payload(self, submission: LedgerSubmission) -> Dict[str, Any]:
        items: List[Dict[str, Any]] = []
        for line in submission.lines:
            entry = {
                "line": line.line_number,
                "account": {"id": line.gl_account},
                "debit": f"{Decimal(line.amount_cents) / 100:.2f}",
                "currency": line.currency,
                "memo": line.memo,
            }
            if line.department:
                entry["department"] = {"refName": line.department}
            if line.tax_code:
                entry["taxCode"] = {"refName": line.tax_code}
            items.append(entry)

        return {
            "externalId": submission.batch_reference,
            "memo": f"Expense batch {submission.batch_reference}",
            "line": {"items": items},
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Make an HTTP request to NetSuite.

        Returns:
            Tuple of (status_code, response_data)
        """
        url = f"{self.base_url}{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.request(method, url, headers=self._get_headers(), json=payload)
        except httpx.TimeoutException as exc:
            raise LedgerTimeoutError("Request timeout - ledger did not respond in time") from exc
        except httpx.RequestError as exc:
            raise LedgerTransientError(f"Network error: {str(exc)}") from exc

        try:
            data = response.json() if response.content else {}
        except json.JSONDecodeError:
            data = {"body": response.text}
        if not isinstance(data, dict):
            data = {"body": data}
        return response.status_code, data

    @staticmethod
    def _classify(status_code: int, data: Dict[str, Any]) -> None:
        raw = {"status_code": status_code, "body": data}
        message = data.get("title") or data.get("message") or f"HTTP {status_code}"
        if status_code == 429 or status_code >= 500:
            raise LedgerTransientError(message, raw)
        if status_code >= 400:
            raise LedgerPermanentError(message, raw)

    async def submit_batch(self, submission: LedgerSubmission) -> LedgerOutcome:
        status_code, data = await self._make_request(
            "POST", self.ENDPOINTS["journal_entry"], self._build_payload(submission)
        )
        self._classify(status_code, data)

        reference = data.get("id") or data.get("tranId") or submission.batch_reference
        logger.info(f"NetSuite accepted batch {submission.batch_reference} as {reference}")
        return LedgerOutcome(
            succeeded=True,
            reference=str(reference),
            message=data.get("message", "Journal entry created"),
            raw={"status_code": status_code, "body": data},
        )

    async def fetch_batch_status(self, batch_reference: str) -> Optional[LedgerOutcome]:
        endpoint = self.ENDPOINTS["journal_entry_by_external_id"].format(external_id=batch_reference)
        status_code, data = await self._make_request("GET", endpoint)
        if status_code == 404:
            return None
        self._classify(status_code, data)
        return LedgerOutcome(
            succeeded=True,
            reference=str(data.get("id") or batch_reference),
            message="Journal entry already present in ledger",
            raw={"status_code": status_code, "body": data},
        )


# ===========================================
# STUB CLIENT
# ===========================================

class StubLedgerClient(LedgerClient):
    """Accepts every batch. Used until ledger credentials are configured."""

    def __init__(self):
        self._posted: Dict[str, LedgerOutcome] = {}

    async def submit_batch(self, submission: LedgerSubmission) -> LedgerOutcome:
        logger.info(f"Ledger stub accepted batch {submission.batch_reference}")
        outcome = LedgerOutcome(
            succeeded=True,
            reference=f"STUB-{submission.batch_reference}",
            message="Simulated export",
            raw={"mode": "stub", "line_count": len(submission.lines)},
        )
        self._posted[submission.batch_reference] = outcome
        return outcome

    async def fetch_batch_status(self, batch_reference: str) -> Optional[LedgerOutcome]:
        return self._posted.get(batch_reference)


@lru_cache()
def get_ledger_client() -> LedgerClient:
    """Ledger backend selected by ``settings.ledger_backend``, shared per process."""
    if settings.ledger_backend == "netsuite":
        return NetSuiteLedgerClient()
    return StubLedgerClient()
