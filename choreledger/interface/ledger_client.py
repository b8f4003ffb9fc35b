"""Client for the external ledger that executes reward transfers."""

import logging
from typing import Protocol

import httpx
from pydantic import BaseModel, Field

from choreledger.core.config import Constants, settings
from choreledger.core.errors import TransferFailedError


logger = logging.getLogger(__name__)


# HTTP status code constants for error handling
HTTP_CLIENT_ERROR_START = 400
HTTP_CLIENT_ERROR_END = 500

FAILED_STATUS = "FAILED"


class TransferResult(BaseModel):
    """Result of a transfer reported by the ledger."""

    tx_hash: str = Field(..., description="Ledger transaction hash")
    status: str = Field(..., description="Ledger-reported status, e.g. CONFIRMED or FAILED")
    block_number: int | None = Field(default=None, description="Block the transfer was included in")
    gas_used: str | None = None
    gas_fee: str | None = None


class LedgerClient(Protocol):
    """Anything that can execute a transfer."""

    async def transfer(self, *, to_address: str, amount: str, reference: str) -> TransferResult:
        """Transfer ``amount`` to ``to_address``.

        ``reference`` identifies the transaction row so the ledger can
        deduplicate repeated attempts.

        Raises:
            TransferFailedError: If the ledger rejected or could not execute the transfer
        """
        ...


class HttpLedgerClient:
    """Ledger client talking to a JSON transfer service over HTTP."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        from_address: str | None = None,
        timeout: float = Constants.LEDGER_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.ledger_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ledger_api_key
        self.from_address = from_address or settings.ledger_sender_address
        self.timeout = timeout
        self._transport = transport

    def _headers(self, reference: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Idempotency-Key": reference}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        return headers

    async def transfer(self, *, to_address: str, amount: str, reference: str) -> TransferResult:
        url = f"{self.base_url}/transfers"
        payload = {
            "from_address": self.from_address,
            "to_address": to_address,
            "amount": amount,
            "reference": reference,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=self._headers(reference))
        except httpx.HTTPError as e:
            logger.warning("Ledger request failed for %s: %s", reference, e)
            raise TransferFailedError(f"Ledger unreachable: {e!s}", reference=reference) from e

        if HTTP_CLIENT_ERROR_START <= response.status_code < HTTP_CLIENT_ERROR_END:
            raise TransferFailedError(f"Ledger rejected transfer: {response.text}", reference=reference)
        if not response.is_success:
            raise TransferFailedError(f"Ledger server error: {response.status_code}", reference=reference)

        try:
            result = TransferResult.model_validate(response.json())
        except ValueError as e:
            raise TransferFailedError(f"Malformed ledger response: {e!s}", reference=reference) from e

        if result.status.upper() == FAILED_STATUS:
            raise TransferFailedError(f"Ledger reported transfer {result.tx_hash} as failed", reference=reference)

        logger.info("Ledger accepted transfer %s (tx %s)", reference, result.tx_hash)
        return result


def get_ledger_client() -> LedgerClient:
    """Ledger client used by the API (overridable as a FastAPI dependency)."""
    return HttpLedgerClient()
