"""Registry of configured Kavita servers and their API clients.

The registry owns the server list, the primary server pointer and one cached
:class:`KavitaAPIClient` per server id. Registrations and the primary pointer
are persisted in the credential store; clients are built lazily.
"""

import asyncio
import json
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..api_clients.kavita_client import KavitaAPIClient
from ..api_clients.models import SeriesMatch, ServerKind, ServerRegistration
from ..api_clients.network_error_handler import APIClientError
from ..config import ClientConfig
from .credential_store import PRIMARY_SERVER_KEY, SERVERS_KEY, CredentialStore
from .exceptions import ServerNotFoundError
from .url_validator import validate_and_normalize_server_url

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ServerRegistration], KavitaAPIClient]

_PATCHABLE_FIELDS = {"name", "base_url", "kind", "last_sync"}


class ServerRegistry:
    """Holds registered servers and mediates access to their clients."""

    def __init__(
        self,
        store: CredentialStore,
        client_factory: Optional[ClientFactory] = None,
        config: Optional[ClientConfig] = None,
    ):
        """Initialize the registry.

        Args:
            store: Store used for registrations and, by default clients, for sessions
            client_factory: Builds a client for a registration; defaults to a
                KavitaAPIClient whose session keys are namespaced by server id
            config: Client tunables passed to default clients
        """
        self.store = store
        self.config = config or ClientConfig()
        self._client_factory = client_factory or self._default_client_factory
        self._servers: List[ServerRegistration] = []
        self._primary_server_id: Optional[str] = None
        self._clients: Dict[str, KavitaAPIClient] = {}

    def _default_client_factory(self, server: ServerRegistration) -> KavitaAPIClient:
        return KavitaAPIClient(
            server.base_url,
            self.store,
            key_prefix=server.id,
            timeout=self.config.timeout,
            enrichment_concurrency=self.config.enrichment_concurrency,
        )

    @property
    def servers(self) -> List[ServerRegistration]:
        return list(self._servers)

    @property
    def primary_server_id(self) -> Optional[str]:
        return self._primary_server_id

    def get_server(self, server_id: str) -> Optional[ServerRegistration]:
        for server in self._servers:
            if server.id == server_id:
                return server
        return None

    def _require_server(self, server_id: str) -> ServerRegistration:
        server = self.get_server(server_id)
        if server is None:
            raise ServerNotFoundError(server_id)
        return server

    def _generate_id(self) -> str:
        existing = {s.id for s in self._servers}
        candidate = time.time_ns()
        while str(candidate) in existing:
            candidate += 1
        return str(candidate)

    async def load(self) -> None:
        """Restore registrations and the primary pointer from the store.

        A stored list that cannot be parsed is discarded and the registry
        starts empty.
        """
        raw_servers = await self.store.get(SERVERS_KEY)
        primary_id = await self.store.get(PRIMARY_SERVER_KEY)

        servers: List[ServerRegistration] = []
        if raw_servers:
            try:
                data = json.loads(raw_servers)
                if not isinstance(data, list):
                    raise ValueError(f"expected a list, got {type(data).__name__}")
                servers = [ServerRegistration.model_validate(item) for item in data]
            except (ValueError, ValidationError) as e:
                logger.warning(f"Stored server list is unreadable, resetting it: {e}")
                servers = []
                primary_id = None

        await self._evict_all()
        self._servers = servers
        if primary_id is not None and self.get_server(primary_id) is None:
            logger.warning(f"Stored primary server '{primary_id}' is not registered")
            primary_id = None
        self._primary_server_id = primary_id

        if raw_servers and not servers:
            await self._persist()

    async def _persist(self) -> None:
        payload = json.dumps([s.model_dump(mode="json") for s in self._servers])
        await self.store.set(SERVERS_KEY, payload)
        if self._primary_server_id is None:
            await self.store.remove(PRIMARY_SERVER_KEY)
        else:
            await self.store.set(PRIMARY_SERVER_KEY, self._primary_server_id)

    async def _evict(self, server_id: str) -> None:
        client = self._clients.pop(server_id, None)
        if client is not None:
            await client.close()

    async def _evict_all(self) -> None:
        for server_id in list(self._clients):
            await self._evict(server_id)

    async def add_server(
        self,
        name: str,
        url: str,
        kind: ServerKind = ServerKind.KAVITA,
        is_primary: bool = False,
    ) -> ServerRegistration:
        """Register a server.

        The first registered server becomes primary, as does any server
        added with ``is_primary=True``.

        Raises:
            URLValidationError: If the URL is not a usable http(s) URL
        """
        server = ServerRegistration(
            id=self._generate_id(),
            name=name,
            base_url=validate_and_normalize_server_url(url),
            kind=kind,
            is_primary=is_primary,
        )
        self._servers.append(server)
        if len(self._servers) == 1 or is_primary:
            self._primary_server_id = server.id

        await self._persist()
        logger.info(f"Registered server '{server.name}' ({server.base_url}) as {server.id}")
        return server

    async def remove_server(self, server_id: str) -> None:
        """Remove a server and its cached client.

        If it was primary, the first remaining server is promoted.

        Raises:
            ServerNotFoundError: If the id is not registered
        """
        self._require_server(server_id)
        await self._evict(server_id)
        self._servers = [s for s in self._servers if s.id != server_id]

        if self._primary_server_id == server_id:
            self._primary_server_id = self._servers[0].id if self._servers else None

        await self._persist()
        logger.info(f"Removed server {server_id}")

    async def update_server(self, server_id: str, **changes) -> ServerRegistration:
        """Apply settings changes and evict the cached client.

        Accepts ``name``, ``base_url``, ``kind`` and ``last_sync``.

        Raises:
            ServerNotFoundError: If the id is not registered
            ValueError: If a change names an unknown or read-only field
        """
        server = self._require_server(server_id)

        unknown = set(changes) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update server fields: {', '.join(sorted(unknown))}")

        if "base_url" in changes:
            changes["base_url"] = validate_and_normalize_server_url(changes["base_url"])

        updated = ServerRegistration.model_validate({**server.model_dump(), **changes})
        self._servers = [updated if s.id == server_id else s for s in self._servers]
        await self._evict(server_id)

        await self._persist()
        return updated

    async def set_primary(self, server_id: str) -> None:
        """Point the primary designation at a registered server.

        Raises:
            ServerNotFoundError: If the id is not registered
        """
        self._require_server(server_id)
        self._primary_server_id = server_id
        await self._persist()

    def get_client(self, server_id: str) -> Optional[KavitaAPIClient]:
        """Return the cached client for a server, building it on first access."""
        client = self._clients.get(server_id)
        if client is not None:
            return client

        server = self.get_server(server_id)
        if server is None:
            return None

        client = self._client_factory(server)
        self._clients[server_id] = client
        return client

    def get_primary_client(self) -> Optional[KavitaAPIClient]:
        """Client of the primary server, or of the first server when none is set."""
        server_id = self._primary_server_id
        if server_id is None and self._servers:
            server_id = self._servers[0].id
        if server_id is None:
            return None
        return self.get_client(server_id)

    def get_active_client(self) -> Optional[KavitaAPIClient]:
        return self.get_primary_client()

    def list_all_clients(self) -> List[Tuple[str, KavitaAPIClient, ServerRegistration]]:
        result = []
        for server in self._servers:
            client = self.get_client(server.id)
            if client is not None:
                result.append((server.id, client, server))
        return result

    async def _search_server(
        self,
        client: KavitaAPIClient,
        server: ServerRegistration,
        needle: str,
        page_size: int,
    ) -> List[SeriesMatch]:
        matches: List[SeriesMatch] = []
        for library in await client.list_libraries():
            for series in await client.list_series(library.id, 0, page_size):
                if needle not in (series.name or "").lower():
                    continue
                matches.append(
                    SeriesMatch.model_validate(
                        {
                            **series.model_dump(),
                            "server_id": server.id,
                            "server_name": server.name,
                            "server_url": server.base_url,
                            "library_id": library.id,
                            "library_name": library.name,
                        }
                    )
                )
        return matches

    async def _search_server_isolated(
        self,
        client: KavitaAPIClient,
        server: ServerRegistration,
        needle: str,
        page_size: int,
    ) -> List[SeriesMatch]:
        try:
            return await self._search_server(client, server, needle, page_size)
        except APIClientError as e:
            logger.warning(f"Failed to search server {server.name}: {e}")
            return []

    async def search_across_servers(
        self, query: str, page_size: Optional[int] = None
    ) -> List[SeriesMatch]:
        """Find series whose name contains ``query`` on every registered server.

        Servers are searched concurrently. A server that fails is logged and
        contributes no matches. Results keep registry order, then library
        order, then listing order.
        """
        needle = query.lower()
        size = page_size or self.config.search_page_size

        searches = []
        for _, client, server in self.list_all_clients():
            if server.kind is not ServerKind.KAVITA:
                logger.debug(f"Skipping {server.kind.value} server {server.name} in search")
                continue
            searches.append(self._search_server_isolated(client, server, needle, size))

        results = await asyncio.gather(*searches)
        return [match for server_matches in results for match in server_matches]

    async def get_servers_with_series(self, query: str) -> List[str]:
        """Ids of the servers holding at least one series matching ``query``."""
        server_ids: List[str] = []
        for match in await self.search_across_servers(query):
            if match.server_id not in server_ids:
                server_ids.append(match.server_id)
        return server_ids

    async def aclose(self) -> None:
        """Close every cached client."""
        await self._evict_all()
