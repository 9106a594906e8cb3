"""HTTP client for the credential-exchange (authify) service.

Fetches login URLs and streaming session tokens on behalf of a user. Every
command re-fetches; nothing is cached and nothing is retried.
"""

import asyncio
import logging

import aiohttp

from groover.config import CredentialServiceConfig
from groover.errors import CredentialRelayError

logger = logging.getLogger(__name__)


class CredentialRelay:
    """Credential service client.

    The aiohttp session is created lazily on first use and shared across
    requests until close().
    """

    def __init__(self, config: CredentialServiceConfig) -> None:
        """Initialize relay with credential service configuration.

        Args:
            config: Credential service configuration

        Raises:
            ValueError: If the service URL is not configured
        """
        if not config.url:
            raise ValueError("Credential service URL is required")
        self.config = config
        self._session: aiohttp.ClientSession | None = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close aiohttp session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get(self, endpoint: str, user_id: str) -> str:
        session = self._ensure_session()
        url = f"{self.config.url}/{endpoint}"
        headers = {}
        if self.config.auth_key:
            headers["Authorization"] = self.config.auth_key

        try:
            async with session.get(url, params={"id": user_id}, headers=headers) as resp:
                body = await resp.text()
                if resp.status < 200 or resp.status >= 300:
                    raise CredentialRelayError(
                        f"Credential service returned {resp.status} for /{endpoint}"
                    )
                return body
        except aiohttp.ClientError as e:
            raise CredentialRelayError(f"Credential service request to /{endpoint} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise CredentialRelayError(f"Credential service request to /{endpoint} timed out") from e

    async def fetch_login_url(self, user_id: str) -> str:
        """Fetch the account-linking URL for a user.

        Args:
            user_id: User requesting to log in

        Returns:
            Login URL (raw response body)

        Raises:
            CredentialRelayError: On non-2xx status, transport error, or timeout
        """
        url = await self._get("url", user_id)
        logger.debug(f"Fetched login URL for user {user_id}")
        return url

    async def fetch_session_token(self, user_id: str) -> str:
        """Fetch the streaming session token handed to a new worker.

        Args:
            user_id: User the worker streams for

        Returns:
            Session token (raw response body)

        Raises:
            CredentialRelayError: On non-2xx status, transport error, or timeout
        """
        token = await self._get("token", user_id)
        logger.debug(f"Fetched session token for user {user_id}")
        return token
