"""Bearer-token validation against an external identity service.

The validator never raises on transport problems: a timeout, connection
error, or non-2xx answer from the identity service means the token is not
valid, and the request is treated as unauthenticated.
"""

import logging

import httpx

from streamdrop.config import AuthConfig

logger = logging.getLogger(__name__)


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token from an ``Authorization: Bearer <token>`` value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class IdentityValidator:
    """Checks bearer tokens with the configured identity service.

    When ``identity_url`` is empty, any well-formed bearer token is
    accepted.

    Attributes:
        config: The auth configuration section.
    """

    def __init__(self, config: AuthConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None

    async def init(self) -> None:
        if self._client is None and self.config.identity_url:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds),
                follow_redirects=False,
            )
            logger.info("Identity validator using %s", self.config.identity_url)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def validate(self, token: str | None) -> bool:
        """Return True if ``token`` is accepted by the identity service."""
        if not token:
            return False
        if not self.config.identity_url:
            return True

        if self._client is None:
            await self.init()
        assert self._client is not None

        try:
            response = await self._client.get(
                self.config.identity_url,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Identity service unreachable: %s", exc)
            return False

        if response.is_success:
            return True
        logger.info("Identity service rejected token (status %d)", response.status_code)
        return False
