"""High-level API client that keeps its token pair fresh."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import httpx

from stepauth.client.envelope import unwrap
from stepauth.client.exchange import HttpTokenExchanger
from stepauth.client.gateway import RequestGateway
from stepauth.client.refresh import RefreshCoordinator
from stepauth.client.secure_store import (
    FileSecureStore,
    MemorySecureStore,
    SecureStore,
)
from stepauth.config import ClientSettings
from stepauth.logging import get_logger
from stepauth.service.errors import ServiceError
from stepauth.storage.models import TokenPair

logger = get_logger(__name__)


def _store_from_settings(settings: ClientSettings) -> SecureStore:
    if settings.token_store_path:
        return FileSecureStore(settings.token_store_path, settings.token_store_key or "")
    return MemorySecureStore()


class AuthClient:
    def __init__(self, gateway: RequestGateway, store: SecureStore) -> None:
        self.gateway = gateway
        self.store = store

    @classmethod
    def from_settings(
        cls,
        settings: Optional[ClientSettings] = None,
        *,
        store: Optional[SecureStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "AuthClient":
        settings = settings or ClientSettings.from_env()
        store = store or _store_from_settings(settings)
        client = httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=settings.request_timeout_seconds,
            transport=transport,
        )
        coordinator = RefreshCoordinator.from_settings(
            store, HttpTokenExchanger(client), settings
        )
        return cls(RequestGateway(client, store, coordinator), store)

    @property
    def coordinator(self) -> RefreshCoordinator:
        return self.gateway.coordinator

    @property
    def is_authenticated(self) -> bool:
        return self.store.load() is not None

    async def _public(self, path: str, payload: Dict[str, Any]) -> Any:
        return unwrap(await self.gateway.post(path, json=payload, authenticated=False))

    async def register(self, email: str, password: str) -> Dict[str, Any]:
        return await self._public("/v1/auth/register", {"email": email, "password": password})

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """Submit credentials; the returned challenge carries ``user_id`` for ``verify_otp``."""
        return await self._public("/v1/auth/login", {"email": email, "password": password})

    async def verify_otp(self, user_id: str, code: str) -> TokenPair:
        data = await self._public("/v1/auth/otp/verify", {"user_id": user_id, "code": code})
        pair = HttpTokenExchanger.pair_from_data(data)
        await asyncio.to_thread(self.store.save, pair)
        logger.info("client_authenticated", user_id=pair.subject_id)
        return pair

    async def resend_otp(self, email: str, purpose: str = "VERIFICATION") -> Dict[str, Any]:
        return await self._public("/v1/auth/otp/resend", {"email": email, "purpose": purpose})

    async def forgot_password(self, email: str) -> Dict[str, Any]:
        return await self._public("/v1/auth/password/forgot", {"email": email})

    async def reset_password(self, email: str, code: str, new_password: str) -> Dict[str, Any]:
        return await self._public(
            "/v1/auth/password/reset",
            {"email": email, "code": code, "new_password": new_password},
        )

    async def me(self) -> Dict[str, Any]:
        return unwrap(await self.gateway.get("/v1/me"))

    async def logout(self) -> None:
        """Revoke server-side when possible; local credentials are dropped regardless."""
        try:
            if await asyncio.to_thread(self.store.load) is not None:
                unwrap(await self.gateway.post("/v1/auth/logout"))
        except ServiceError as exc:
            logger.warning("logout_remote_failed", error_code=exc.error_code)
        finally:
            await asyncio.to_thread(self.store.clear)

    async def aclose(self) -> None:
        await self.coordinator.aclose()
        await self.gateway.client.aclose()

    async def __aenter__(self) -> "AuthClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
