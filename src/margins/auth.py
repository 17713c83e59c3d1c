from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import httpx

from .errors import AuthExpiredError
from .models import Credential, Identity

logger = logging.getLogger(__name__)

TOKEN_URL = "https://securetoken.googleapis.com/v1/token"

AuthListener = Callable[[Identity | None], None]


@dataclass(slots=True, frozen=True)
class Unconfigured:
    """Stands in for a collaborator that could not be set up at startup."""

    reason: str

    def __bool__(self) -> bool:
        return False


class AuthProvider(Protocol):
    def is_authenticated(self) -> bool: ...

    def current_identity(self) -> Identity | None: ...

    def credential(self) -> Credential | None: ...

    def on_auth_change(self, callback: AuthListener) -> Callable[[], None]: ...

    async def refresh_token(self) -> Credential: ...


class EnvTokenAuth:
    """Bearer-token identity supplied from the environment, refreshable via the secure-token API."""

    def __init__(
        self,
        *,
        api_key: str = "",
        identity: Identity | None = None,
        credential: Credential | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._identity = identity
        self._credential = credential
        self._listeners: list[AuthListener] = []
        self._client = client

    def is_authenticated(self) -> bool:
        return self._identity is not None and self._credential is not None

    def current_identity(self) -> Identity | None:
        return self._identity

    def credential(self) -> Credential | None:
        return self._credential

    def on_auth_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def _emit(self) -> None:
        for listener in list(self._listeners):
            listener(self._identity)

    def sign_in(self, identity: Identity, credential: Credential) -> None:
        self._identity = identity
        self._credential = credential
        self._emit()

    def sign_out(self) -> None:
        if self._identity is None and self._credential is None:
            return
        self._identity = None
        self._credential = None
        self._emit()

    async def refresh_token(self) -> Credential:
        current = self._credential
        if current is None or not current.refresh_token:
            raise AuthExpiredError("no refresh token available")
        if not self._api_key:
            raise AuthExpiredError("no API key configured for token refresh")

        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))
        try:
            response = await client.post(
                TOKEN_URL,
                params={"key": self._api_key},
                data={"grant_type": "refresh_token", "refresh_token": current.refresh_token},
            )
        except httpx.HTTPError as exc:
            raise AuthExpiredError(f"token refresh failed: {exc}") from exc
        finally:
            if owns_client:
                await client.aclose()

        if response.status_code != 200:
            logger.warning("Token refresh rejected with status %s", response.status_code)
            raise AuthExpiredError(f"token refresh rejected ({response.status_code})", status=response.status_code)
        try:
            data = response.json()
            refreshed = Credential(
                id_token=str(data["id_token"]),
                refresh_token=str(data.get("refresh_token") or current.refresh_token),
                expires_at=time.time() + float(data.get("expires_in") or 3600),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Token refresh returned an unreadable body: %s", exc)
            raise AuthExpiredError(f"token refresh returned a malformed response: {exc}") from exc
        self._credential = refreshed
        logger.debug("Refreshed bearer token, expires in %ss", data.get("expires_in"))
        return refreshed


__all__ = ["AuthProvider", "EnvTokenAuth", "Unconfigured", "TOKEN_URL"]
