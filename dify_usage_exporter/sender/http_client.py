"""
Partner API HTTP Client
=======================
Single POST to the billing API; every failure comes back as a DeliveryError.
"""

from typing import Any, Optional

import httpx
import structlog

from dify_usage_exporter import __version__
from dify_usage_exporter.errors import DeliveryError

logger = structlog.get_logger()

MASKED_AUTHORIZATION = "Bearer ***MASKED***"


def mask_token(headers: dict[str, str]) -> dict[str, str]:
    """Copy of headers safe to log."""
    masked = dict(headers)
    for name in list(masked):
        if name.lower() == "authorization":
            masked[name] = MASKED_AUTHORIZATION
    return masked


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in seconds; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _network_code(exc: httpx.TransportError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "ETIMEDOUT"
    if isinstance(exc, httpx.ConnectError):
        text = str(exc).lower()
        if "name or service not known" in text or "nodename nor servname" in text:
            return "ENOTFOUND"
        return "ECONNREFUSED"
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return "ECONNRESET"
    return "ENETWORK"


class PartnerApiClient:
    """
    Posts usage requests to EXTERNAL_API_URL with bearer auth.

    Transport failures become DeliveryError(kind="network"); non-2xx
    responses become DeliveryError(kind="http").
    """

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self._headers = {
            "Content-Type": "application/json",
            "User-Agent": f"dify-usage-exporter/{__version__}",
            "Authorization": f"Bearer {token}",
        }
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers=self._headers,
            transport=transport,
        )

    async def post_usage(self, payload: dict[str, Any]) -> httpx.Response:
        logger.debug(
            "HTTP request",
            method="POST",
            url=self.url,
            headers=mask_token(self._headers),
            record_count=len(payload.get("records", [])),
        )

        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.TransportError as e:
            code = _network_code(e)
            logger.error("HTTP network error", url=self.url, code=code, error=str(e))
            raise DeliveryError("network", str(e) or code, code=code) from e

        logger.debug("HTTP response", status=response.status_code)

        if response.is_success:
            return response

        message = f"HTTP {response.status_code}: {response.reason_phrase}"
        logger.error("HTTP error", url=self.url, status=response.status_code, message=message)
        raise DeliveryError(
            "http",
            message,
            status=response.status_code,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "PartnerApiClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
