"""Base Kavita Remote API Client.

Provides common HTTP functionality, bearer token attachment, and the
refresh-and-retry-once recovery from authorization failures shared by all
Kavita API operations.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from ..remote.credential_store import (
    API_KEY,
    REFRESH_TOKEN_KEY,
    TOKEN_KEY,
    CredentialStore,
    namespaced_key,
)
from .network_error_handler import (
    APIClientError,
    AuthenticationError,
    DNSResolutionError,
    ErrorKind,
    ForbiddenError,
    MalformedResponseError,
    NetworkConnectionError,
    NetworkError,
    NetworkErrorHandler,
    NetworkTimeoutError,
    NoRefreshTokenError,
    NotFoundError,
    ServerError,
    SSLCertificateError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

__all__ = [
    "APIClientError",
    "AuthenticationError",
    "DNSResolutionError",
    "ErrorKind",
    "ForbiddenError",
    "KavitaRemoteAPIClient",
    "MalformedResponseError",
    "NetworkConnectionError",
    "NetworkError",
    "NetworkTimeoutError",
    "NoRefreshTokenError",
    "NotFoundError",
    "RequestState",
    "SSLCertificateError",
    "ServerError",
]


class RequestState(Enum):
    """Lifecycle of a single logical request.

    SENT -> (401) AWAITING_REFRESH -> RETRIED, or -> FAILED when the refresh
    cannot be completed. A request in RETRIED never goes back to
    AWAITING_REFRESH, which caps recovery at one retry.
    """

    SENT = "sent"
    AWAITING_REFRESH = "awaiting_refresh"
    RETRIED = "retried"
    FAILED = "failed"


class KavitaRemoteAPIClient:
    """Base API client with session credentials and common HTTP functionality."""

    REFRESH_ENDPOINT = "/api/Account/refresh-token"

    def __init__(
        self,
        server_url: str,
        store: CredentialStore,
        key_prefix: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize base API client.

        Args:
            server_url: Base URL of the Kavita server
            store: Durable key-value store holding the session secrets
            key_prefix: Namespace for this server's keys in the store
            timeout: Wall-clock deadline in seconds for every request
            transport: Optional httpx transport (tests inject a mock transport)
        """
        self.server_url = server_url.rstrip("/")
        self.store = store
        self.key_prefix = key_prefix
        self.timeout = timeout
        self._transport = transport
        self._session: Optional[httpx.AsyncClient] = None

        self._token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._api_key: Optional[str] = None
        self._refresh_task: Optional["asyncio.Task[str]"] = None

        self._network_error_handler = NetworkErrorHandler()

    @property
    def session(self) -> httpx.AsyncClient:
        """Get or create the HTTP session."""
        if self._session is None or self._session.is_closed:
            self._session = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"Content-Type": "application/json"},
                follow_redirects=True,
                transport=self._transport,
            )
        return self._session

    @property
    def base_url(self) -> str:
        return self.server_url

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._refresh_token

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key

    def _key(self, key: str) -> str:
        return namespaced_key(self.key_prefix, key)

    async def load_credentials(self) -> None:
        """Recover any session secrets missing from memory out of the store.

        The in-memory copy is authoritative once set; the store only fills gaps.
        """
        if self._token is None:
            self._token = await self.store.get(self._key(TOKEN_KEY))
        if self._refresh_token is None:
            self._refresh_token = await self.store.get(self._key(REFRESH_TOKEN_KEY))
        if self._api_key is None:
            self._api_key = await self.store.get(self._key(API_KEY))

    async def _set_credentials(self, token: str, refresh_token: str, api_key: str) -> None:
        """Set all three session secrets in memory and in the store."""
        self._token = token
        self._refresh_token = refresh_token
        self._api_key = api_key
        await self.store.set(self._key(TOKEN_KEY), token)
        await self.store.set(self._key(REFRESH_TOKEN_KEY), refresh_token)
        await self.store.set(self._key(API_KEY), api_key)

    async def clear_credentials(self) -> None:
        """Drop all three session secrets from memory and from the store."""
        self._token = None
        self._refresh_token = None
        self._api_key = None
        await self.store.remove(self._key(TOKEN_KEY))
        await self.store.remove(self._key(REFRESH_TOKEN_KEY))
        await self.store.remove(self._key(API_KEY))

    async def _get_access_token(self) -> Optional[str]:
        if not self._token:
            await self.load_credentials()
        return self._token

    async def _send(
        self,
        method: str,
        url: str,
        token: Optional[str],
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Issue one HTTP request under the fixed deadline.

        Raises:
            NetworkTimeoutError: If the deadline passes
            NetworkConnectionError: If the server cannot be reached or the
                redirects loop
            MalformedResponseError: If the response body cannot be decoded
        """
        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            return await asyncio.wait_for(
                self.session.request(
                    method, url, headers=headers, json=json, params=params
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise NetworkTimeoutError(
                f"Request timed out after {self.timeout:g} seconds"
            ) from e
        except httpx.RequestError as e:
            self._network_error_handler.classify_network_error(e)

    async def request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        retry_on_unauthorized: bool = True,
    ) -> httpx.Response:
        """Make an HTTP request with the current bearer token.

        A 401 answer triggers one token refresh and one retry of the original
        request; a 401 on the retry is surfaced as is.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint path
            json: Optional JSON body
            params: Optional query parameters
            retry_on_unauthorized: Set to False for endpoints where a 401 means
                bad input rather than an expired session (login)

        Returns:
            HTTP response object with a status below 400

        Raises:
            AuthenticationError: If the server rejects the session and refresh fails
            ForbiddenError: On 403
            NotFoundError: On 404
            ServerError: On 5xx
            NetworkTimeoutError: If the request exceeds the deadline
            NetworkConnectionError: If the server cannot be reached
            APIClientError: On any other error status
        """
        url = f"{self.server_url}{endpoint}"
        token = await self._get_access_token()
        state = RequestState.SENT

        while True:
            response = await self._send(method, url, token, json=json, params=params)

            if (
                response.status_code != 401
                or not retry_on_unauthorized
                or state is RequestState.RETRIED
            ):
                break

            state = RequestState.AWAITING_REFRESH
            logger.debug(f"Received 401 for {method} {endpoint}, refreshing token")
            try:
                token = await self.refresh_access_token()
            except APIClientError as refresh_error:
                state = RequestState.FAILED
                logger.warning(
                    f"Token refresh failed for {self.server_url}: {refresh_error}"
                )
                raise AuthenticationError(
                    "Unauthorized. Please log in again.", 401
                ) from refresh_error
            state = RequestState.RETRIED

        if response.status_code >= 400:
            self._network_error_handler.classify_status(response)

        return response

    async def get(self, endpoint: str, **kwargs) -> httpx.Response:
        """Make a GET request through :meth:`request`."""
        return await self.request("GET", endpoint, **kwargs)

    async def post(self, endpoint: str, **kwargs) -> httpx.Response:
        """Make a POST request through :meth:`request`."""
        return await self.request("POST", endpoint, **kwargs)

    async def refresh_access_token(self) -> str:
        """Mint a new access token from the refresh token.

        Concurrent callers share one in-flight refresh.

        Returns:
            The new access token

        Raises:
            NoRefreshTokenError: If no refresh token is available
            AuthenticationError: If the refresh call fails for any reason
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._perform_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _perform_refresh(self) -> str:
        if not self._refresh_token:
            self._refresh_token = await self.store.get(self._key(REFRESH_TOKEN_KEY))

        if not self._refresh_token:
            await self.clear_credentials()
            raise NoRefreshTokenError("No refresh token available")

        payload = {"token": self._token, "refreshToken": self._refresh_token}
        try:
            response = await self._send(
                "POST",
                f"{self.server_url}{self.REFRESH_ENDPOINT}",
                self._token,
                json=payload,
            )
            if response.status_code >= 400:
                self._network_error_handler.classify_status(response)

            data = self._decode_json(response)
            new_token = data.get("token") if isinstance(data, dict) else None
            if not isinstance(new_token, str) or not new_token:
                raise MalformedResponseError("No valid access token in refresh response")
        except APIClientError as e:
            await self.clear_credentials()
            raise AuthenticationError(f"Token refresh failed: {e}", 401) from e

        self._token = new_token
        await self.store.set(self._key(TOKEN_KEY), new_token)

        rotated = data.get("refreshToken")
        if isinstance(rotated, str) and rotated and rotated != self._refresh_token:
            self._refresh_token = rotated
            await self.store.set(self._key(REFRESH_TOKEN_KEY), rotated)
            logger.debug("Server rotated the refresh token")

        logger.debug(f"Access token refreshed for {self.server_url}")
        return new_token

    @staticmethod
    def _decode_json(response: httpx.Response) -> Any:
        """Decode a JSON body.

        Raises:
            MalformedResponseError: If the body is not valid JSON
        """
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise MalformedResponseError(
                f"Invalid JSON in response from {response.request.url.path}: {e}",
                response.status_code,
            )

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session and not self._session.is_closed:
            await self._session.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
