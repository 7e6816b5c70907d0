"""
Redemption API client for consumer apps and merchant scanners.

Thin httpx wrapper over the HTTP API. Responses are parsed into the same
Pydantic models the server returns.
"""

from types import TracebackType
from typing import Any
from uuid import UUID

import httpx
from structlog import get_logger

from app.exceptions import IssueRejectedError, ServiceUnavailableError
from app.models.api import (
    IssueFailure,
    IssueTokenRequest,
    IssueTokenResponse,
    OfferUsageResponse,
    QuotaResponse,
    ValidateScanRequest,
    ValidateScanResponse,
)

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

_REJECTION_STATUSES = {402, 404, 409}


class RedemptionApiClient:
    """
    Async client for the redemption HTTP API.

    Usage:
        async with RedemptionApiClient(base_url, access_token) as client:
            issued = await client.issue_token(offer_id, merchant_id)
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def __aenter__(self) -> "RedemptionApiClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def issue_token(
        self,
        offer_id: UUID,
        merchant_id: UUID,
        device_tag: str = "unknown",
        ttl_seconds: int | None = None,
    ) -> IssueTokenResponse:
        """
        Ask the server for a fresh token for this offer.

        Raises:
            IssueRejectedError: quota exhausted, offer inactive/missing, or
                merchant mismatch. Not worth retrying.
            ServiceUnavailableError: Transport failure or server error
        """
        body = IssueTokenRequest(
            offer_id=offer_id,
            merchant_id=merchant_id,
            device_tag=device_tag,
            ttl_seconds=ttl_seconds,
        )
        response = await self._request(
            "POST", "/v1/redemptions/tokens", json=body.model_dump(mode="json")
        )

        if response.status_code in _REJECTION_STATUSES:
            reason = _rejection_reason(response)
            if reason is not None:
                logger.info(
                    "token_issue_rejected",
                    offer_id=str(offer_id),
                    reason=reason.value,
                    status_code=response.status_code,
                )
                raise IssueRejectedError(reason, response.status_code)

        self._raise_for_status(response)
        return IssueTokenResponse.model_validate(response.json())

    async def peek_quota(self) -> int:
        """Free redemptions the caller has left."""
        response = await self._request("GET", "/v1/redemptions/quota")
        self._raise_for_status(response)
        return QuotaResponse.model_validate(response.json()).remaining

    async def validate_scan(self, token: str) -> ValidateScanResponse:
        """Submit a scanned code from a merchant scanner session."""
        body = ValidateScanRequest(token=token)
        response = await self._request(
            "POST", "/v1/redemptions/scans", json=body.model_dump(mode="json")
        )
        self._raise_for_status(response)
        return ValidateScanResponse.model_validate(response.json())

    async def get_offer_usage(self, offer_id: UUID) -> OfferUsageResponse:
        """Today's redemptions for an offer."""
        response = await self._request("GET", f"/v1/offers/{offer_id}/usage")
        self._raise_for_status(response)
        return OfferUsageResponse.model_validate(response.json())

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            return await self.http_client.request(
                method, f"{self.base_url}{path}", headers=headers, **kwargs
            )
        except httpx.HTTPError as e:
            logger.warning("redemption_api_transport_error", path=path, error=str(e))
            raise ServiceUnavailableError(str(e)) from e

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return

        retry_after = None
        header = response.headers.get("Retry-After")
        if header is not None:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None

        raise ServiceUnavailableError(
            f"{response.request.method} {response.request.url.path} "
            f"returned {response.status_code}",
            status_code=response.status_code,
            retry_after=retry_after,
        )


def _rejection_reason(response: httpx.Response) -> IssueFailure | None:
    """Map an error body to an issuance refusal, None for anything else."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    try:
        return IssueFailure(body.get("detail"))
    except ValueError:
        return None
