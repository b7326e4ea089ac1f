"""Shared HTTP client helper for REST providers."""
import logging
from typing import Any, Dict, Iterable, Optional

import httpx

from ..domains.errors import (
    OperationInProgressError,
    ProviderRejectedError,
    TransientProviderError,
)
from ..domains.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def classify_response(response: httpx.Response, provider: str, description: str) -> None:
    """
    Raise the typed provider error matching a failed response.

    429 with "in progress" means the remote is busy with another long
    operation; other 429s and 5xx are transient; every other 4xx is permanent.
    """
    status = response.status_code
    if status < 400:
        return

    body = response.text[:500]
    message = f"{description} failed: HTTP {status} {body}".strip()
    if status == 429:
        if "in progress" in body.lower():
            raise OperationInProgressError(message, provider=provider)
        raise TransientProviderError(message, provider=provider)
    if status >= 500:
        raise TransientProviderError(message, provider=provider)
    raise ProviderRejectedError(message, provider=provider)


class ApiClient:
    """
    Thin REST helper on httpx.AsyncClient.

    A new client is opened per call so no connection is reused between
    requests. Transient failures are retried through the shared RetryPolicy.
    """

    def __init__(self, base_url: str, provider: str, headers: Optional[Dict[str, str]] = None,
                 retry: Optional[RetryPolicy] = None, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.headers = dict(headers or {})
        self.retry = retry or RetryPolicy()
        self.timeout = timeout

    async def _send(self, method: str, path: str, allow_status: Iterable[int] = (),
                    **kwargs: Any) -> httpx.Response:
        headers = {**self.headers, **(kwargs.pop("headers", None) or {})}
        description = f"{self.provider} {method} {path}"
        try:
            async with httpx.AsyncClient(base_url=self.base_url, headers=headers,
                                         timeout=self.timeout) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientProviderError(f"{description} failed: {e}", provider=self.provider) from e

        if response.status_code not in allow_status:
            classify_response(response, self.provider, description)
        return response

    async def request(self, method: str, path: str, *, retry: bool = True,
                      allow_status: Iterable[int] = (), **kwargs: Any) -> httpx.Response:
        """
        Send one request.

        Args:
            method: HTTP method
            path: Path relative to base_url
            retry: Retry transient failures with the shared policy
            allow_status: Error statuses returned to the caller instead of raised
            **kwargs: Passed to httpx (json, data, params, headers)
        """
        allow_status = tuple(allow_status)

        async def attempt() -> httpx.Response:
            return await self._send(method, path, allow_status=allow_status, **dict(kwargs))

        if not retry:
            return await attempt()
        return await self.retry.run(attempt, description=f"{self.provider} {method} {path}")

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", path, **kwargs)


def json_body(response: httpx.Response, provider: str) -> Any:
    """Decode a JSON response body, treating garbage as a transient failure."""
    try:
        return response.json()
    except ValueError as e:
        raise TransientProviderError(
            f"{provider} returned a non-JSON response (HTTP {response.status_code})",
            provider=provider,
        ) from e
