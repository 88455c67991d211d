from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

import httpx

from stepauth.client.refresh import RefreshCoordinator
from stepauth.client.secure_store import SecureStore
from stepauth.logging import get_correlation_id, get_logger
from stepauth.service.errors import TransientNetworkError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestDescriptor:
    """Everything needed to send, and later replay, one API call."""

    method: str
    url: str
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    authenticated: bool = True
    retried: bool = False

    def as_retry(self) -> "RequestDescriptor":
        return replace(self, retried=True)


class RequestGateway:
    """Sends requests with the stored access token and refreshes it on 401."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: SecureStore,
        coordinator: RefreshCoordinator,
    ) -> None:
        self.client = client
        self.store = store
        self.coordinator = coordinator

    def _build_headers(
        self, descriptor: RequestDescriptor, access_token: Optional[str]
    ) -> Dict[str, str]:
        headers = dict(descriptor.headers)
        correlation_id = get_correlation_id()
        if correlation_id:
            headers.setdefault("X-Request-ID", correlation_id)
        if descriptor.authenticated and access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _dispatch(
        self, descriptor: RequestDescriptor, access_token: Optional[str]
    ) -> httpx.Response:
        try:
            return await self.client.request(
                descriptor.method,
                descriptor.url,
                params=descriptor.params,
                json=descriptor.json,
                headers=self._build_headers(descriptor, access_token),
            )
        except httpx.TransportError as exc:
            logger.warning(
                "gateway_transport_error",
                method=descriptor.method,
                url=descriptor.url,
                error_type=type(exc).__name__,
            )
            raise TransientNetworkError(
                f"{descriptor.method} {descriptor.url} failed: {type(exc).__name__}"
            ) from exc

    async def send(self, descriptor: RequestDescriptor) -> httpx.Response:
        """Send ``descriptor``; on 401 wait for one refresh and replay once.

        Non-401 responses come back unchanged. When the refresh fails, or the
        replay is rejected too, ``AuthLostError`` propagates.
        """
        pair = await asyncio.to_thread(self.store.load) if descriptor.authenticated else None
        response = await self._dispatch(descriptor, pair.access_token if pair else None)
        if response.status_code != 401 or not descriptor.authenticated:
            return response

        logger.info("gateway_auth_failure", method=descriptor.method, url=descriptor.url)
        access_token = await self.coordinator.on_auth_failure(descriptor)
        retry = descriptor.as_retry()
        response = await self._dispatch(retry, access_token)
        if response.status_code == 401:
            await self.coordinator.on_auth_failure(retry)
        return response

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.send(RequestDescriptor("GET", url, **kwargs))

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.send(RequestDescriptor("POST", url, **kwargs))

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.send(RequestDescriptor("PUT", url, **kwargs))

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.send(RequestDescriptor("PATCH", url, **kwargs))

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.send(RequestDescriptor("DELETE", url, **kwargs))
