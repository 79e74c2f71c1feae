"""
HTTP client for the Sophi authentication API.

Handles:
- Exchanging username/password for a bearer token (POST /token)
- Fetching the user profile for a token (GET /user/info)
"""

import asyncio
import logging
import platform
from typing import Any

import aiohttp

from sophi_chat.version import __version__

logger = logging.getLogger(__name__)


class AuthFailure(Exception):
    """Raised when login or profile retrieval fails."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class SessionExpiredError(AuthFailure):
    """Raised when the server rejects a stored token (HTTP 401)."""


class AuthClient:
    """
    HTTP client for the token and profile endpoints.
    """

    def __init__(self, base_url: str, timeout: int = 30):
        """
        Initialize the auth client.

        Args:
            base_url: Server base URL, e.g. http://localhost:8000
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None
        self._session_loop: asyncio.AbstractEventLoop | None = None

        logger.info(f"Auth client initialized: {self.base_url}")

    def _get_headers(self, token: str | None = None) -> dict[str, str]:
        """Get request headers including auth token and client identification."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"SophiChat-Client/{__version__} ({platform.system()})",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session bound to the running event loop."""
        loop = asyncio.get_running_loop()
        if self._session is not None and self._session_loop is not loop:
            # Sessions cannot be shared across event loops
            if not self._session.closed:
                await self._session.close()
            self._session = None

        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._session_loop = loop
            logger.debug("New aiohttp session created")

        return self._session

    async def close(self) -> None:
        """Close the client session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._session_loop = None

    @staticmethod
    async def _error_message(resp: aiohttp.ClientResponse, fallback: str) -> str:
        """Extract a human-readable error from a failed response."""
        try:
            data = await resp.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            return f"{fallback} (HTTP {resp.status})"

        if isinstance(data, dict):
            for key in ("detail", "message", "error"):
                value = data.get(key)
                if isinstance(value, str) and value:
                    return value
        return f"{fallback} (HTTP {resp.status})"

    async def login(self, username: str, password: str) -> str:
        """
        Exchange credentials for a bearer token.

        Returns:
            The access token

        Raises:
            AuthFailure: On non-2xx responses, malformed replies or network errors
        """
        url = f"{self.base_url}/token"
        try:
            session = await self._get_session()
            async with session.post(
                url,
                json={"username": username, "password": password},
                headers=self._get_headers(),
            ) as resp:
                if not 200 <= resp.status < 300:
                    message = await self._error_message(resp, "Authentication failed")
                    logger.warning(f"Login rejected for {username!r}: {message}")
                    raise AuthFailure(message, status=resp.status)

                data = await resp.json(content_type=None)

        except aiohttp.ClientError as e:
            logger.error(f"Login request failed: {type(e).__name__}: {e}")
            raise AuthFailure(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error(f"Login request timed out after {self.timeout}s")
            raise AuthFailure("Request timeout") from e
        except ValueError as e:
            logger.error(f"Malformed response from {url}: {e}")
            raise AuthFailure("Malformed response from server") from e

        token = data.get("access") if isinstance(data, dict) else None
        if not token:
            raise AuthFailure("Authentication response did not contain a token")

        logger.info(f"Token obtained for user {username!r}")
        return str(token)

    async def get_user_info(self, token: str) -> dict[str, Any]:
        """
        Fetch the profile of the token's owner.

        Raises:
            SessionExpiredError: When the server answers 401
            AuthFailure: On other failures
        """
        url = f"{self.base_url}/user/info"
        try:
            session = await self._get_session()
            async with session.get(url, headers=self._get_headers(token)) as resp:
                if resp.status == 401:
                    raise SessionExpiredError("Session expired", status=401)
                if not 200 <= resp.status < 300:
                    message = await self._error_message(resp, "Profile request failed")
                    raise AuthFailure(message, status=resp.status)

                data = await resp.json(content_type=None)

        except aiohttp.ClientError as e:
            logger.error(f"Profile request failed: {type(e).__name__}: {e}")
            raise AuthFailure(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error(f"Profile request timed out after {self.timeout}s")
            raise AuthFailure("Request timeout") from e
        except ValueError as e:
            logger.error(f"Malformed response from {url}: {e}")
            raise AuthFailure("Malformed response from server") from e

        if not isinstance(data, dict):
            raise AuthFailure("Profile response was not an object")
        return data
