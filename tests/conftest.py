"""
Shared pytest fixtures for kavita-client tests.

Provides an in-process fake Kavita server served through
``httpx.MockTransport``, in-memory credential stores and JWT helpers.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import jwt
import pytest

from kavita_client.api_clients.kavita_client import KavitaAPIClient
from kavita_client.remote.credential_cipher import CredentialCipher
from kavita_client.remote.credential_store import InMemoryCredentialStore

Handler = Callable[[httpx.Request], Any]
Route = Union[httpx.Response, Handler]


def make_jwt(username: str = "alice", expires_in_minutes: int = 60) -> str:
    """Build an HS256 access token shaped like the ones Kavita issues."""
    now = datetime.now(timezone.utc)
    payload = {
        "unique_name": username,
        "nameid": username,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_in_minutes)).timestamp()),
    }
    return jwt.encode(payload, "kavita-test-secret", algorithm="HS256")


class FakeKavitaServer:
    """Routes requests to canned responses or handlers and records them.

    Routes are keyed by ``(METHOD, path)``. A route is either a fixed
    ``httpx.Response``, a list of responses served in order (the last one
    repeats), or a callable taking the request. Unrouted requests get 404.

    The fake also models Kavita's session endpoints: ``access_token`` is the
    only bearer token accepted by :meth:`authed` routes, and the refresh
    endpoint trades ``refresh_token`` for a fresh access token.
    """

    def __init__(self, base_url: str = "http://kavita.test"):
        self.base_url = base_url
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.requests: List[httpx.Request] = []
        self.access_token = "access-1"
        self.refresh_token = "refresh-1"
        self.rotate_refresh_token = False
        self.refresh_delay = 0.0
        self.refresh_status = 200
        self._issued = 1

        self.route("POST", "/api/Account/refresh-token", self._refresh)

    def route(self, method: str, path: str, response: Any) -> None:
        self.routes[(method.upper(), path)] = response

    def authed(self, method: str, path: str, payload: Any, status_code: int = 200) -> None:
        """Serve ``payload`` only to requests bearing the current access token."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.headers.get("Authorization") != f"Bearer {self.access_token}":
                return httpx.Response(401)
            return httpx.Response(status_code, json=payload)

        self.route(method, path, handler)

    def expire_access_token(self) -> None:
        """Invalidate the current access token, as the server does on expiry."""
        self._issued += 1
        self.access_token = f"access-{self._issued}"

    async def _refresh(self, request: httpx.Request) -> httpx.Response:
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_status != 200:
            return httpx.Response(self.refresh_status, json={"message": "refresh rejected"})

        body = json.loads(request.content)
        if body.get("refreshToken") != self.refresh_token:
            return httpx.Response(401, json={"message": "invalid refresh token"})

        result = {"token": self.access_token, "refreshToken": self.refresh_token}
        if self.rotate_refresh_token:
            self.refresh_token = f"{self.refresh_token}-rotated"
            result["refreshToken"] = self.refresh_token
        return httpx.Response(200, json=result)

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": f"No route for {request.url.path}"})
        if isinstance(route, httpx.Response):
            return route
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]

        result = route(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r for r in self.requests if r.method == method.upper() and r.url.path == path
        ]

    def client(
        self,
        store: Optional[InMemoryCredentialStore] = None,
        key_prefix: str = "",
        timeout: float = 5.0,
        enrichment_concurrency: int = 8,
    ) -> KavitaAPIClient:
        return KavitaAPIClient(
            self.base_url,
            store if store is not None else InMemoryCredentialStore(),
            key_prefix=key_prefix,
            timeout=timeout,
            transport=self.transport(),
            enrichment_concurrency=enrichment_concurrency,
        )


@pytest.fixture
def kavita_server() -> FakeKavitaServer:
    """A fresh fake Kavita server."""
    return FakeKavitaServer()


@pytest.fixture
def make_kavita_server() -> Callable[[str], FakeKavitaServer]:
    """Factory for additional fake servers with distinct base URLs."""
    return FakeKavitaServer


@pytest.fixture
def memory_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def logged_in_store(kavita_server) -> InMemoryCredentialStore:
    """Store holding a valid session for ``kavita_server``."""
    return InMemoryCredentialStore(
        {
            "kavita_token": kavita_server.access_token,
            "kavita_refresh_token": kavita_server.refresh_token,
            "kavita_api_key": "api-key-1",
        }
    )


@pytest.fixture
def fast_cipher() -> CredentialCipher:
    """Cipher with a low iteration count to keep file store tests quick."""
    return CredentialCipher(identity="tester:/tmp/store.json", iterations=1_000)


@pytest.fixture
def jwt_factory() -> Callable[..., str]:
    return make_jwt
