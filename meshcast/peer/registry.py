"""Connection registry: the single owner of live connections.

One slot holds the uplink connection to the server; a map keyed by
participant id holds mesh connections. Retrieval is idempotent: asking for a
key that already has a live connection returns that exact instance.

Removal always closes the transport first and only then drops the entry,
cascading to the connection's buffered candidates and remote media.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set

from aiortc import RTCPeerConnection

from meshcast.peer.candidates import CandidateBuffer
from meshcast.peer.connection import Connection, ConnectionKey, Role

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], RTCPeerConnection]


class ConnectionRegistry:
    """Creates, tracks and tears down uplink and mesh connections.

    Attributes:
        candidates: Candidate buffer whose entries are cleared on removal.
        on_created: Hook invoked with every newly created Connection, used to
            wire transport events.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        candidates: CandidateBuffer,
        on_created: Optional[Callable[[Connection], None]] = None,
    ):
        self._transport_factory = transport_factory
        self.candidates = candidates
        self.on_created = on_created

        self._uplink: Optional[Connection] = None
        self._mesh: Dict[str, Connection] = {}
        self._locks: Dict[ConnectionKey, asyncio.Lock] = {}
        # Keys whose connection was torn down and not re-created since
        self._retired: Set[ConnectionKey] = set()

    # ===== Retrieval =====

    def get_uplink(self) -> Optional[Connection]:
        if self._uplink is not None and not self._uplink.closed:
            return self._uplink
        return None

    def get_mesh(self, peer_id: str) -> Optional[Connection]:
        connection = self._mesh.get(peer_id)
        if connection is not None and not connection.closed:
            return connection
        return None

    def get(self, key: ConnectionKey) -> Optional[Connection]:
        if key.role is Role.UPLINK:
            return self.get_uplink()
        return self.get_mesh(key.remote_id)

    def is_live(self, connection: Connection) -> bool:
        """True if ``connection`` is still the registry's instance for its key."""
        return self.get(connection.key) is connection

    def is_retired(self, key: ConnectionKey) -> bool:
        """True if the last connection for ``key`` was removed and none replaced it."""
        return key in self._retired

    def all(self) -> List[Connection]:
        connections = [self._uplink] if self.get_uplink() else []
        connections.extend(c for c in self._mesh.values() if not c.closed)
        return connections

    def mesh_connections(self) -> List[Connection]:
        return [c for c in self._mesh.values() if not c.closed]

    def lock(self, key: ConnectionKey) -> asyncio.Lock:
        """Per-key lock serializing negotiation steps for one connection.

        Locks outlive the connections they guard, so a replacement connection
        for the same key is serialized with its predecessor's handlers.
        """
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    # ===== Creation =====

    def get_or_create_uplink(self) -> Connection:
        connection = self.get_uplink()
        if connection is None:
            connection = self._create(Role.UPLINK, None)
            self._uplink = connection
        return connection

    def get_or_create_mesh(self, peer_id: str) -> Connection:
        if not peer_id:
            raise ValueError("Mesh connections require a peer id")
        connection = self.get_mesh(peer_id)
        if connection is None:
            connection = self._create(Role.MESH, peer_id)
            self._mesh[peer_id] = connection
        return connection

    def _create(self, role: Role, remote_id: Optional[str]) -> Connection:
        connection = Connection(role, remote_id, self._transport_factory())
        self._retired.discard(connection.key)
        logger.info(f"Created {connection.key} connection")
        if self.on_created:
            self.on_created(connection)
        return connection

    # ===== Teardown =====

    async def remove_uplink(self):
        if self._uplink is not None:
            await self.remove(self._uplink)

    async def remove_mesh(self, peer_id: str):
        connection = self._mesh.get(peer_id)
        if connection is not None:
            await self.remove(connection)

    async def remove(self, connection: Connection) -> bool:
        """Close ``connection`` and drop it along with its buffered state.

        A connection that has already been replaced for its key is still
        closed, but its successor's entry and candidates are left untouched.

        Returns:
            True if the connection was the live instance for its key.
        """
        was_live = self.is_live(connection)
        registered = await self._discard(connection, clear_candidates=was_live)
        if was_live and registered:
            self._retired.add(connection.key)
            logger.info(f"Removed {connection.key} connection")
        return was_live

    async def recycle(self, connection: Connection) -> Connection:
        """Replace a connection's transport with a fresh one.

        Buffered candidates for the key are kept, since they belong to the
        remote end rather than to the discarded transport.

        Returns:
            The new Connection now registered under the same key.
        """
        key = connection.key
        await self._discard(connection, clear_candidates=False)
        logger.info(f"Recycled {key} connection")
        if key.role is Role.UPLINK:
            return self.get_or_create_uplink()
        return self.get_or_create_mesh(key.remote_id)

    async def close_all(self):
        """Close every connection (session end).

        Entries whose transport was already closed but not yet dropped (an
        interrupted removal) are swept as well.
        """
        entries = [self._uplink] if self._uplink is not None else []
        entries.extend(self._mesh.values())
        for connection in entries:
            await self.remove(connection)
        self.candidates.clear()
        self._locks.clear()

    async def _discard(self, connection: Connection, clear_candidates: bool) -> bool:
        key = connection.key
        # Transport is released before the entry disappears
        await connection.close()

        registered = False
        if key.role is Role.UPLINK:
            if self._uplink is connection:
                self._uplink = None
                registered = True
        elif self._mesh.get(key.remote_id) is connection:
            del self._mesh[key.remote_id]
            registered = True

        if connection.remote_media is not None:
            connection.remote_media.tracks.clear()
        # A successor created while the transport was closing owns the queue
        if clear_candidates and registered:
            self.candidates.discard(key)
        return registered

    def __len__(self) -> int:
        return len(self.all())
