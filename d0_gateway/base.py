"""
Base API client with common functionality for all external API providers
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from core.config import get_settings
from core.logging import get_logger

from .exceptions import GatewayError, GatewayTimeoutError


class BaseAPIClient(ABC):
    """Abstract base class for all external API clients

    Every request carries a timeout. A timeout, or a transport failure after
    the request may have been sent, raises GatewayTimeoutError so callers
    treat the outcome as unknown rather than failed.
    """

    def __init__(
        self,
        provider: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider = provider
        self.settings = get_settings()
        self.logger = get_logger(f"gateway.{provider}", domain="d0")
        self.timeout = timeout or self.settings.gateway_timeout_seconds

        if self.settings.use_stubs:
            self.api_key = api_key or f"stub-{provider}-key"
            self.base_url = base_url or self.settings.stub_base_url
        else:
            self.api_key = api_key or self.settings.get_api_key(provider)
            self.base_url = base_url or self._get_base_url()

        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    @abstractmethod
    def _get_base_url(self) -> str:
        """Get the base URL for this provider"""

    @abstractmethod
    def _get_headers(self) -> dict[str, str]:
        """Get authentication headers for this provider"""

    def _parse_error(self, response: httpx.Response) -> GatewayError:
        """Turn an error response into a GatewayError; providers refine this"""
        message = f"HTTP {response.status_code}"
        try:
            body = response.json()
            message = body.get("message", message) if isinstance(body, dict) else message
        except ValueError:
            message = response.text or message
        return GatewayError(
            provider=self.provider,
            message=message,
            status_code=response.status_code,
            response_body=response.text,
        )

    async def make_request(
        self,
        method: str,
        endpoint: str,
        idempotency_key: Optional[str] = None,
        **kwargs,
    ) -> dict[str, Any]:
        """
        Make an authenticated API request

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint path
            idempotency_key: Sent as the Idempotency-Key header when given
            **kwargs: Additional arguments passed to httpx

        Returns:
            Dict containing the API response

        Raises:
            GatewayTimeoutError: When the outcome of the call is unknown
            GatewayError: When the API returns an error
        """
        operation = f"{method}:{endpoint}"
        url = f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"

        headers = {**self._get_headers(), **(kwargs.pop("headers", None) or {})}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        kwargs["headers"] = headers

        start_time = time.time()
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            self.logger.warning(f"Timeout calling {self.provider} {operation} after {self.timeout}s")
            raise GatewayTimeoutError(self.provider, self.timeout, operation) from e
        except httpx.ConnectError as e:
            # Nothing reached the provider
            raise GatewayError(provider=self.provider, message=f"Connection failed: {e}", error_code="connection_error") from e
        except httpx.RequestError as e:
            self.logger.warning(f"Transport error calling {self.provider} {operation}: {e}")
            raise GatewayTimeoutError(self.provider, self.timeout, operation) from e

        duration_ms = int((time.time() - start_time) * 1000)
        self.logger.debug(f"{self.provider} {operation} -> {response.status_code} in {duration_ms}ms")

        if response.status_code >= 400:
            raise self._parse_error(response)

        if not response.content:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                provider=self.provider,
                message="Invalid JSON response",
                status_code=response.status_code,
                response_body=response.text,
            ) from e
