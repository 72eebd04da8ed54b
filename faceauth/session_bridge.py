"""
Session Bridge

Converts a successful biometric verification into an authenticated session.

The identity provider exposes a "face login" endpoint: given a verified user
id it returns {"success": true, "session": {"access_token", "refresh_token",
"user"}}. The bridge posts the user id, validates the response and installs
the tokens into the caller's AmbientSession. No matching logic lives here.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from faceauth.config import read_secret
from faceauth.errors import SessionExchangeError

logger = logging.getLogger(__name__)


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str
    user: Dict[str, Any] = field(default_factory=dict)


class AmbientSession:
    """Holds the tokens used by subsequent authenticated calls."""

    def __init__(self):
        self.tokens: Optional[SessionTokens] = None

    @property
    def is_authenticated(self) -> bool:
        return self.tokens is not None

    def install(self, tokens: SessionTokens) -> None:
        self.tokens = tokens

    def clear(self) -> None:
        self.tokens = None

    def auth_headers(self) -> Dict[str, str]:
        if self.tokens is None:
            return {}
        return {"Authorization": f"Bearer {self.tokens.access_token}"}


class SessionBridge:
    """
    Exchange a verified user id for session tokens.

    Args:
        exchange_url: Identity provider face-login endpoint.
        api_key: Key identifying this service to the provider.
        client: Shared httpx.AsyncClient.
    """

    def __init__(self, exchange_url: str, api_key: Optional[str], client: httpx.AsyncClient):
        self.exchange_url = exchange_url
        self.api_key = api_key
        self.client = client

    @classmethod
    def from_config(
        cls, config: Dict[str, Any], client: Optional[httpx.AsyncClient] = None
    ) -> "SessionBridge":
        if client is None:
            client = httpx.AsyncClient(timeout=config.get("timeout_sec", 10.0))
        api_key = read_secret(config.get("api_key_env"), required=False)
        return cls(config["exchange_url"], api_key, client)

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}", "apikey": self.api_key}

    async def exchange(self, user_id: str, session: AmbientSession) -> SessionTokens:
        """
        Obtain tokens for user_id and install them into session.

        Raises:
            SessionExchangeError: On transport failure, a non-2xx response or
                                  a response without both tokens.
        """
        try:
            response = await self.client.post(
                self.exchange_url, json={"userId": user_id}, headers=self._headers()
            )
        except httpx.HTTPError as e:
            logger.error(f"Session exchange request failed: {e}")
            raise SessionExchangeError(detail=str(e)) from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400 or not payload.get("success", False):
            error = payload.get("error") or f"HTTP {response.status_code}"
            logger.error(f"Session exchange rejected for {user_id}: {error}")
            raise SessionExchangeError(detail=error)

        data = payload.get("session") or {}
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not access_token or not refresh_token:
            logger.error("Session exchange response is missing tokens")
            raise SessionExchangeError(detail="tokens missing from response")

        tokens = SessionTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            user=data.get("user") or {},
        )
        session.install(tokens)
        logger.info(f"Session issued for {user_id}")
        return tokens

    async def aclose(self) -> None:
        await self.client.aclose()
