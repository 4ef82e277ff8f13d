"""OAuth2 client-credentials token cache for the Management Portal."""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from redcap_integration.core.errors import TargetTransportError

logger = logging.getLogger(__name__)

# Refresh this many seconds before the portal says the token expires
EXPIRY_MARGIN_SECONDS = 30.0


class TokenRequestError(Exception):
    """The portal refused to issue an access token."""


@dataclass(frozen=True)
class AccessToken:
    """An issued bearer token and the monotonic time it stops being usable."""

    value: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class OAuthTokenProvider:
    """Issues and caches Management Portal access tokens.

    Concurrent callers share one refresh: whoever takes the lock first
    requests a token, the others find it valid and return immediately.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_url: str,
        client_id: str,
        client_secret: str,
        scopes: tuple[str, ...] = ("SUBJECT.READ", "SUBJECT.CREATE", "SUBJECT.UPDATE", "PROJECT.READ"),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scopes = scopes
        self._clock = clock
        self._token: AccessToken | None = None
        self._lock = asyncio.Lock()

    async def get_token(self) -> str:
        """Return a valid access token, refreshing it when expired.

        Raises:
            TokenRequestError: If the portal rejects the client credentials.
            TargetTransportError: If the portal cannot be reached.
        """
        token = self._token
        if token is not None and not token.is_expired(self._clock()):
            return token.value

        async with self._lock:
            token = self._token
            if token is not None and not token.is_expired(self._clock()):
                return token.value
            self._token = await self._request_token()
            return self._token.value

    def invalidate(self) -> None:
        """Drop the cached token so the next call requests a new one."""
        self._token = None

    async def _request_token(self) -> AccessToken:
        try:
            response = await self.client.post(
                self.token_url,
                data={"grant_type": "client_credentials", "scope": " ".join(self.scopes)},
                auth=(self.client_id, self.client_secret),
            )
        except httpx.RequestError as e:
            raise TargetTransportError(f"Error requesting Management Portal token: {e}") from e

        if response.is_error:
            raise TokenRequestError(
                f"Management Portal refused token request: {response.status_code}"
            )

        try:
            body = response.json()
            value = str(body["access_token"])
            expires_in = float(body.get("expires_in", 0))
        except (ValueError, KeyError, TypeError) as e:
            raise TokenRequestError("Management Portal returned an invalid token response") from e

        issued_at = self._clock()
        logger.info(f"Refreshed Management Portal token, valid for {expires_in:.0f}s")
        return AccessToken(
            value=value,
            expires_at=issued_at + max(expires_in - EXPIRY_MARGIN_SECONDS, 0.0),
        )
