"""Per-session orchestration of the uplink and mesh connections.

The orchestrator reacts to three kinds of events and sequences the registry,
negotiation engine, candidate buffer and track router:

- signaling messages from the relay (one task per message, serialized per
  connection key by the registry's locks),
- local media changes (camera start, screen share start/stop),
- transport ICE state changes (terminal states tear the connection down).

Session end closes every connection, then the signaling channel, then the
local media, in that order.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from aiortc import MediaStreamTrack

from meshcast import protocol
from meshcast.exceptions import MalformedMessageError, NegotiationError
from meshcast.media import LocalMedia, LocalMediaSource
from meshcast.peer.candidates import CandidateBuffer
from meshcast.peer.connection import (
    TERMINAL_ICE_STATES,
    UPLINK_KEY,
    Connection,
    RemoteMediaBundle,
    mesh_key,
)
from meshcast.peer.negotiation import NegotiationEngine
from meshcast.peer.registry import ConnectionRegistry, TransportFactory
from meshcast.peer.track_router import TrackRouter
from meshcast.signaling import SignalingChannel

logger = logging.getLogger(__name__)


@dataclass
class SessionStatus:
    """Snapshot of the session as seen by a UI or log consumer."""

    participant_id: str
    signaling_connected: bool = False
    uplink_active: bool = False
    mesh_connections: int = 0
    screen_sharing: bool = False
    local_media_active: bool = False
    remote_media: Dict[str, RemoteMediaBundle] = field(default_factory=dict)

    @property
    def participant_count(self) -> int:
        """Participants with media on screen, including this one."""
        return 1 + sum(1 for bundle in self.remote_media.values() if len(bundle))

    @property
    def composite_ready(self) -> bool:
        return self.participant_count >= 2 and self.uplink_active


StatusListener = Callable[[SessionStatus], None]


class Orchestrator:
    """Owns one participant's connections for the lifetime of a session.

    Attributes:
        participant_id: Random id announced to the relay; stable per session.
        channel: Signaling channel to the relay.
        media: Local media manager providing the active source.
        candidates: Buffer of remote candidates awaiting a remote description.
        registry: Live uplink and mesh connections.
        engine: Offer/answer driver.
        router: Outgoing track synchronization.
        signaling_connected: True while the relay connection is up.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        media: LocalMedia,
        transport_factory: TransportFactory,
        participant_id: Optional[str] = None,
    ):
        self.participant_id = participant_id or str(uuid.uuid4())
        self.channel = channel
        self.media = media

        self.candidates = CandidateBuffer()
        self.registry = ConnectionRegistry(
            transport_factory, self.candidates, on_created=self._wire
        )
        self.engine = NegotiationEngine(
            self.participant_id,
            self.registry,
            self.candidates,
            send=self.channel.send,
            prepare=self._attach_local_tracks,
        )
        self.router = TrackRouter()

        self.signaling_connected = False
        self._listeners: List[StatusListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False

    @property
    def short_id(self) -> str:
        return self.participant_id[:8]

    # ===== Status projection =====

    def status(self) -> SessionStatus:
        uplink = self.registry.get_uplink()
        mesh = self.registry.mesh_connections()
        return SessionStatus(
            participant_id=self.participant_id,
            signaling_connected=self.signaling_connected,
            uplink_active=uplink is not None and uplink.is_connected,
            mesh_connections=len(mesh),
            screen_sharing=self.media.screen_sharing,
            local_media_active=self.media.active is not None,
            remote_media={c.remote_id: c.remote_media.snapshot() for c in mesh},
        )

    def add_status_listener(self, listener: StatusListener):
        self._listeners.append(listener)

    def _notify(self):
        if not self._listeners:
            return
        snapshot = self.status()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Status listener failed: {e}")

    # ===== Transport wiring =====

    def _wire(self, connection: Connection):
        """Register transport event handlers on a newly created connection."""
        transport = connection.transport

        @transport.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange():
            await self.on_transport_state_changed(connection)

        @transport.on("track")
        def on_track(track: MediaStreamTrack):
            logger.info(f"Received remote {track.kind} track on {connection.key}")
            if connection.remote_media is None or not self.registry.is_live(connection):
                return
            connection.remote_media.add(track)
            self._notify()

    async def _attach_local_tracks(self, connection: Connection):
        """Put the active local tracks on ``connection`` without offering."""
        added = await self.router.sync_connection(connection, self.media.active)
        if added and connection.signaling_state == "have-local-offer":
            connection.needs_offer = True

    # ===== Signaling =====

    async def on_signaling_connected(self):
        self.signaling_connected = True
        logger.info(f"Signaling connected as {self.short_id}")
        await self.channel.send(protocol.peer_announce(self.participant_id))
        if self.media.active is not None:
            await self.on_local_media_changed()
        else:
            self._notify()

    def on_signaling_closed(self):
        if self.signaling_connected:
            logger.info("Signaling disconnected")
        self.signaling_connected = False
        self._notify()

    async def handle_message(self, data: Any):
        """Dispatch one decoded relay message. Never raises."""
        try:
            message = protocol.parse_signaling_message(data)
        except MalformedMessageError as e:
            logger.warning(f"Dropping malformed signaling message: {e}")
            return

        if message.from_peer_id == self.participant_id:
            logger.debug(f"Dropping self-originated {message.type}")
            return
        if message.to_peer_id and message.to_peer_id != self.participant_id:
            logger.debug(f"Dropping {message.type} addressed to {message.to_peer_id[:8]}")
            return

        if message.type == protocol.MSG_PEER_ANNOUNCE or message.is_mesh:
            key = mesh_key(message.from_peer_id)
        else:
            key = UPLINK_KEY

        async with self.registry.lock(key):
            if self._closing:
                return
            try:
                await self._dispatch(message)
            except NegotiationError as e:
                logger.warning(f"Negotiation failed: {e}")
            except Exception as e:
                logger.error(f"Error handling {message.type} for {key}: {e}")
        self._notify()

    async def on_peer_announce(self, message: protocol.SignalingMessage):
        peer_id = message.from_peer_id
        if self.registry.get_mesh(peer_id) is not None:
            logger.debug(f"Peer {peer_id[:8]} already known")
            return

        logger.info(f"Discovered peer {peer_id[:8]}")
        connection = self.registry.get_or_create_mesh(peer_id)
        if await self.router.sync_connection(connection, self.media.active):
            await self.engine.offer(connection)
        else:
            logger.info(f"No local media yet, deferring offer to {peer_id[:8]}")

    async def on_mesh_offer(self, message: protocol.SignalingMessage):
        connection = self.registry.get_or_create_mesh(message.from_peer_id)
        await self._attach_local_tracks(connection)
        await self.engine.accept_offer(connection, message.sdp)

    async def on_mesh_answer(self, message: protocol.SignalingMessage):
        connection = self.registry.get_mesh(message.from_peer_id)
        if connection is None:
            logger.debug(f"No connection for answer from {message.from_peer_id[:8]}")
            return
        await self.engine.accept_answer(connection, message.sdp)

    async def on_mesh_candidate(self, message: protocol.SignalingMessage):
        await self.engine.add_remote_candidate(
            mesh_key(message.from_peer_id), message.candidate
        )

    async def on_uplink_offer(self, message: protocol.SignalingMessage):
        connection = self.registry.get_or_create_uplink()
        await self._attach_local_tracks(connection)
        await self.engine.accept_offer(connection, message.sdp)

    async def on_uplink_answer(self, message: protocol.SignalingMessage):
        connection = self.registry.get_uplink()
        if connection is None:
            logger.debug("No uplink connection for answer")
            return
        await self.engine.accept_answer(connection, message.sdp)

    async def on_uplink_candidate(self, message: protocol.SignalingMessage):
        await self.engine.add_remote_candidate(UPLINK_KEY, message.candidate)

    async def _dispatch(self, message: protocol.SignalingMessage):
        msg_type = message.type
        if msg_type == protocol.MSG_PEER_ANNOUNCE:
            await self.on_peer_announce(message)
        elif msg_type == protocol.MSG_MESH_OFFER:
            await self.on_mesh_offer(message)
        elif msg_type == protocol.MSG_MESH_ANSWER:
            await self.on_mesh_answer(message)
        elif msg_type == protocol.MSG_MESH_CANDIDATE:
            await self.on_mesh_candidate(message)
        elif msg_type == protocol.MSG_UPLINK_OFFER:
            await self.on_uplink_offer(message)
        elif msg_type == protocol.MSG_UPLINK_ANSWER:
            await self.on_uplink_answer(message)
        elif msg_type == protocol.MSG_UPLINK_CANDIDATE:
            await self.on_uplink_candidate(message)

    # ===== Local media =====

    async def on_local_media_changed(self):
        """Re-point outgoing tracks on every connection and offer where needed."""
        if self._closing:
            return
        if self.signaling_connected and self.media.active is not None:
            self.registry.get_or_create_uplink()

        connections = self.registry.all()
        await asyncio.gather(*(self._sync_connection(c) for c in connections))
        self._notify()

    async def _sync_connection(self, connection: Connection):
        async with self.registry.lock(connection.key):
            if not self.registry.is_live(connection):
                return
            try:
                if await self.router.sync_connection(connection, self.media.active):
                    await self.engine.offer(connection)
            except Exception as e:
                logger.error(f"Failed to update tracks on {connection.key}: {e}")

    async def start_camera(self) -> LocalMediaSource:
        """Acquire camera/microphone and route them to every connection.

        Raises:
            MediaAcquisitionError: If capture could not be opened. Existing
                connections are left untouched.
        """
        source = await self.media.start_camera()
        await self.on_local_media_changed()
        return source

    async def start_screen_share(self) -> LocalMediaSource:
        """Swap outgoing video to a screen capture.

        Raises:
            MediaAcquisitionError: If screen capture could not be opened.
        """

        def on_ended():
            # Also fires when the capture is stopped by stop_screen_share
            if not self._closing and self.media.screen_sharing:
                logger.info("Screen capture ended, reverting to camera")
                self._spawn(self.stop_screen_share())

        source = await self.media.start_screen_share(on_ended=on_ended)
        await self.on_local_media_changed()
        return source

    async def stop_screen_share(self) -> bool:
        if not self.media.stop_screen_share():
            return False
        await self.on_local_media_changed()
        return True

    # ===== Transport state =====

    async def on_transport_state_changed(self, connection: Connection):
        state = connection.ice_connection_state
        logger.info(f"ICE state on {connection.key}: {state}")
        if state in TERMINAL_ICE_STATES and self.registry.is_live(connection):
            # Not under the key lock: closing mid-handshake makes it moot
            await self.registry.remove(connection)
        self._notify()

    # ===== Lifecycle =====

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Session task failed: {task.exception()}")

    async def run(self):
        """Connect to the relay and process messages until it disconnects."""
        await self.channel.connect()
        try:
            await self.on_signaling_connected()
            async for data in self.channel.receive():
                if self._closing:
                    break
                self._spawn(self.handle_message(data))
        finally:
            self.on_signaling_closed()

    async def close(self):
        """End the session: connections, then signaling, then local media."""
        if self._closing:
            return
        self._closing = True
        logger.info(f"Closing session {self.short_id}")

        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self.registry.close_all()
        await self.channel.close()
        self.media.release()
        self.signaling_connected = False
        self._notify()
