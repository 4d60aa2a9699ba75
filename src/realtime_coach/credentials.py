"""Short-lived session credential exchange.

Fetches an ephemeral realtime credential from the token endpoint. The
credential authorizes one realtime session and is held in memory only.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

import aiohttp

from realtime_coach.config import TokenEndpointConfig
from realtime_coach.errors import CredentialUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Bearer secret for one realtime session.

    Attributes:
        value: Bearer token value
        expires_at: Expiry as epoch seconds, if the endpoint reported one
    """

    value: str = field(repr=False)
    expires_at: float | None = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and time.time() >= self.expires_at

    @property
    def authorization_header(self) -> str:
        return f"Bearer {self.value}"


class CredentialClient:
    """Requests session credentials from the token endpoint.

    Makes exactly one request per acquire_credential() call; retry policy
    belongs to the caller.
    """

    def __init__(
        self,
        config: TokenEndpointConfig,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize credential client.

        Args:
            config: Token endpoint configuration
            session: Optional shared aiohttp session (one is created per call otherwise)
        """
        self.config = config
        self._session = session

    async def acquire_credential(self) -> Credential:
        """Fetch a fresh session credential.

        Returns:
            Credential carrying ``client_secret.value``

        Raises:
            CredentialUnavailable: If the endpoint is unreachable, returns a
                non-success status, or the body lacks the secret
        """
        logger.info("Requesting session credential", extra={"url": self.config.url})

        try:
            if self._session is not None:
                data = await self._fetch(self._session)
            else:
                timeout = aiohttp.ClientTimeout(total=self.config.timeout_s)
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    data = await self._fetch(session)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(
                "Token endpoint unreachable",
                extra={"url": self.config.url, "error": f"{type(e).__name__}: {e}"},
            )
            raise CredentialUnavailable(f"Failed to get token: {type(e).__name__}: {e}") from e

        credential = parse_credential(data)
        logger.info(
            "Session credential acquired",
            extra={"expires_at": credential.expires_at},
        )
        return credential

    async def _fetch(self, session: aiohttp.ClientSession) -> object:
        async with session.get(self.config.url) as resp:
            if resp.status < 200 or resp.status >= 300:
                body = await resp.text()
                logger.error(
                    "Token endpoint returned error status",
                    extra={"url": self.config.url, "status": resp.status, "body": body[:200]},
                )
                raise CredentialUnavailable(f"Failed to get token: HTTP {resp.status}")
            try:
                return await resp.json(content_type=None)
            except ValueError as e:
                raise CredentialUnavailable(f"Invalid token response: {e}") from e


def parse_credential(data: object) -> Credential:
    """Extract the credential from a token endpoint response body.

    Raises:
        CredentialUnavailable: If ``client_secret.value`` is missing or empty
    """
    secret = data.get("client_secret") if isinstance(data, dict) else None
    value = secret.get("value") if isinstance(secret, dict) else None
    if not isinstance(value, str) or not value:
        raise CredentialUnavailable("Invalid token response: missing client_secret.value")

    expires_at = secret.get("expires_at")
    if not isinstance(expires_at, int | float) or isinstance(expires_at, bool):
        expires_at = None

    return Credential(value=value, expires_at=float(expires_at) if expires_at is not None else None)
