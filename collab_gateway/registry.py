"""
Client Registry Module

Owns every live ParticipantClient, keyed by participant identity. This
module handles:
- Lookup-or-spawn with single-flight creation (concurrent callers for the same
  identity share one spawn + handshake)
- Automatic removal of records once their client is torn down
- Shutdown of every record with a deadline and SIGKILL fallback

There is exactly one record per identity at a time; a replacement is only
spawned after the previous record has reached a terminal state.

Author: Collaborative Gateway Project
License: MIT
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from .client import ParticipantClient, SpawnSpec
from .errors import RegistryClosed, UnknownParticipant

logger = logging.getLogger(__name__)

__all__ = [
    'SpawnSpecProvider',
    'ClientFactory',
    'ClientRegistry',
]

SpawnSpecProvider = Callable[[str], SpawnSpec]
ClientFactory = Callable[..., ParticipantClient]


class ClientRegistry:
    """
    Identity -> ParticipantClient map shared by every collaboration session.

    Args:
        spec_provider: Resolves an identity to its SpawnSpec; raises KeyError
            for identities it does not know
        client_factory: Builds a client (identity, spec, on_terminated=...);
            injectable for tests
    """

    def __init__(self, spec_provider: SpawnSpecProvider,
                 client_factory: ClientFactory = ParticipantClient):
        self._spec_provider = spec_provider
        self._client_factory = client_factory
        self._clients: Dict[str, ParticipantClient] = {}
        self._creating: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._spawn_counts: Counter = Counter()
        self._closed = False

    def __contains__(self, identity: str) -> bool:
        return identity in self._clients

    def __len__(self) -> int:
        return len(self._clients)

    def get(self, identity: str) -> Optional[ParticipantClient]:
        return self._clients.get(identity)

    def spawn_count(self, identity: str) -> int:
        """Number of processes ever spawned for identity."""
        return self._spawn_counts[identity]

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {identity: client.info() for identity, client in self._clients.items()}

    # ------------------------------------------------------------------
    # Lookup / creation
    # ------------------------------------------------------------------

    async def get_or_create(self, identity: str, spawn_spec: Optional[SpawnSpec] = None) -> ParticipantClient:
        """
        Return a live client for identity, spawning one if needed.

        Args:
            identity: Participant identity
            spawn_spec: Overrides the provider's spec when a new client is spawned

        Returns:
            A client in READY or IN_USE state

        Raises:
            UnknownParticipant: The provider has no spec for identity
            RegistryClosed: close_all() has been called
            SpawnError / HandshakeTimeout / TransportError / RemoteError:
                Creation failed (every concurrent waiter sees the same error)
        """
        async with self._lock:
            if self._closed:
                raise RegistryClosed("Registry is shut down", identity)

            client = self._clients.get(identity)
            if client is not None and client.is_live:
                return client

            task = self._creating.get(identity)
            if task is None:
                if spawn_spec is None:
                    try:
                        spawn_spec = self._spec_provider(identity)
                    except KeyError:
                        raise UnknownParticipant(f"Unknown participant: {identity}", identity) from None
                task = asyncio.ensure_future(self._create(identity, spawn_spec, client))
                self._creating[identity] = task
                task.add_done_callback(lambda t, i=identity: self._creation_done(i, t))

        return await asyncio.shield(task)

    async def _create(self, identity: str, spec: SpawnSpec,
                      previous: Optional[ParticipantClient]) -> ParticipantClient:
        if previous is not None and not previous.is_terminal:
            logger.info(f"Waiting for previous {identity} client ({previous.state.value}) to finish teardown")
            await previous.wait_closed()

        client = self._client_factory(identity, spec, on_terminated=self._on_client_terminated)
        self._clients[identity] = client
        self._spawn_counts[identity] += 1
        try:
            await client.start()
        except BaseException:
            self.remove(identity, client)
            raise
        return client

    def _creation_done(self, identity: str, task: asyncio.Task) -> None:
        if self._creating.get(identity) is task:
            del self._creating[identity]
        # Retrieve the exception so an abandoned creation does not warn
        if not task.cancelled():
            task.exception()

    def _on_client_terminated(self, client: ParticipantClient) -> None:
        self.remove(client.identity, client)

    def remove(self, identity: str, client: Optional[ParticipantClient] = None) -> bool:
        """
        Drop the record for identity.

        When client is given, only that exact record is dropped; a newer record
        registered under the same identity is left alone.

        Returns:
            True if a record was removed
        """
        current = self._clients.get(identity)
        if current is None or (client is not None and current is not client):
            return False
        del self._clients[identity]
        logger.debug(f"Registry: removed {identity} ({current.state.value})")
        return True

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close_all(self, deadline: Optional[float] = None) -> Dict[str, List[str]]:
        """
        Tear down every client.

        Pending creations are cancelled first, then every record is closed
        concurrently. Clients still running when the deadline elapses are
        SIGKILLed.

        Args:
            deadline: Seconds to allow for graceful teardown (None waits for
                each client's own grace period)

        Returns:
            {"closed": [identities closed gracefully], "killed": [identities force-killed]}
        """
        async with self._lock:
            self._closed = True
            creating = list(self._creating.values())
            clients = list(self._clients.values())

        for task in creating:
            task.cancel()
        if creating:
            await asyncio.gather(*creating, return_exceptions=True)

        # Creations cancelled above may have registered clients of their own
        for client in list(self._clients.values()):
            if client not in clients:
                clients.append(client)

        if not clients:
            return {"closed": [], "killed": []}

        logger.info(f"Registry: closing {len(clients)} participant(s)")
        closers = {client: asyncio.ensure_future(client.close()) for client in clients}
        done, pending = await asyncio.wait(list(closers.values()), timeout=deadline)

        killed: List[str] = []
        for client, closer in closers.items():
            if closer in pending:
                logger.warning(f"Registry: {client.identity} missed the shutdown deadline, killing")
                killed.append(client.identity)
        if killed:
            await asyncio.gather(
                *(client.kill() for client in clients if client.identity in killed),
                return_exceptions=True,
            )
            await asyncio.gather(*pending, return_exceptions=True)

        for closer in done:
            if not closer.cancelled() and closer.exception() is not None:
                logger.error(f"Registry: error during close: {closer.exception()}")

        closed = [client.identity for client in clients if client.identity not in killed]
        self._clients.clear()
        return {"closed": closed, "killed": killed}

