"""
HTTP transport for the HarperDB operations endpoint.

The transport sends exactly one request and classifies failures; retrying,
caching and response normalization happen in the layers above it.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, runtime_checkable

import httpx

from vertector_harperdb.config import HarperDBConfig
from vertector_harperdb.errors import PermanentTransportError, TransientTransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportResponse:
    """Status and decoded body of a successful response."""

    status: int
    body: Any


@runtime_checkable
class Transport(Protocol):
    """Boundary the request executor sends through."""

    async def send(
        self,
        method: str,
        path: str,
        body: Mapping[str, Any] | None,
        timeout: float | None,
    ) -> TransportResponse:
        ...

    async def aclose(self) -> None:
        ...


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text


def _error_message(status: int, body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        for field in ("error", "message"):
            if body.get(field):
                return str(body[field])
    elif isinstance(body, str) and body.strip():
        return body.strip()[:500]
    return f"Request failed with status code {status}" if status else fallback


class HttpTransport:
    """
    httpx-based transport with pooled keep-alive connections.

    One AsyncClient is shared by every concurrent request so sockets are
    reused rather than opened per call; the pool is bounded by
    PoolConfig.max_connections.
    """

    def __init__(self, config: HarperDBConfig, client: httpx.AsyncClient | None = None):
        """
        Initialize transport.

        Args:
            config: Client configuration (URL, credentials, pool limits)
            client: Pre-built httpx client (tests inject one with a MockTransport)
        """
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=config.url,
            auth=httpx.BasicAuth(config.username, config.password or ""),
            timeout=config.timeout,
            limits=self.build_limits(config),
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    @staticmethod
    def build_limits(config: HarperDBConfig) -> httpx.Limits:
        """Connection limits derived from the pool configuration."""
        pool = config.pool
        if not pool.keep_alive:
            return httpx.Limits(
                max_connections=pool.max_connections,
                max_keepalive_connections=0,
            )
        return httpx.Limits(
            max_connections=pool.max_connections,
            max_keepalive_connections=pool.max_keepalive_connections,
            keepalive_expiry=pool.keep_alive_expiry,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def send(
        self,
        method: str,
        path: str,
        body: Mapping[str, Any] | None,
        timeout: float | None,
    ) -> TransportResponse:
        """
        Send one request.

        Raises:
            TransientTransportError: 5xx status or timeout
            PermanentTransportError: 4xx status or any other failure
        """
        try:
            response = await self._client.request(
                method,
                path,
                json=body,
                timeout=timeout if timeout is not None else self.config.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientTransportError(
                f"timeout of {timeout}s exceeded",
                code="ECONNABORTED",
                original_error=e,
            )
        except httpx.RequestError as e:
            raise PermanentTransportError(
                str(e) or type(e).__name__,
                code=type(e).__name__,
                original_error=e,
            )

        body_out = _decode_body(response)
        status = response.status_code
        if status >= 500:
            raise TransientTransportError(
                _error_message(status, body_out, "Server error"),
                status=status,
                body=body_out,
            )
        if status >= 400:
            raise PermanentTransportError(
                _error_message(status, body_out, "Client error"),
                status=status,
                body=body_out,
            )

        return TransportResponse(status=status, body=body_out)

    async def aclose(self) -> None:
        """Close pooled connections if this transport created the client."""
        if self._owns_client:
            await self._client.aclose()
