"""Connection records wrapping one aiortc RTCPeerConnection each."""

import logging
from enum import Enum
from typing import Dict, List, NamedTuple, Optional

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCRtpSender

logger = logging.getLogger(__name__)

# ICE states after which a connection is torn down and never reused
TERMINAL_ICE_STATES = ("failed", "disconnected", "closed")
CONNECTED_ICE_STATES = ("connected", "completed")


class Role(str, Enum):
    UPLINK = "uplink"
    MESH = "mesh"


class ConnectionKey(NamedTuple):
    """Registry key: at most one live connection exists per key."""

    role: Role
    remote_id: Optional[str] = None

    def __str__(self):
        if self.role is Role.UPLINK:
            return "uplink"
        return f"mesh:{self.remote_id[:8]}"


UPLINK_KEY = ConnectionKey(Role.UPLINK)


def mesh_key(peer_id: str) -> ConnectionKey:
    return ConnectionKey(Role.MESH, peer_id)


class RemoteMediaBundle:
    """Tracks received from one mesh peer, in arrival order."""

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.tracks: List[MediaStreamTrack] = []

    def add(self, track: MediaStreamTrack):
        self.tracks.append(track)

    def snapshot(self) -> "RemoteMediaBundle":
        """Copy of the bundle that later arrivals or teardown leave unchanged."""
        copy = RemoteMediaBundle(self.peer_id)
        copy.tracks = list(self.tracks)
        return copy

    @property
    def kinds(self) -> List[str]:
        return [track.kind for track in self.tracks]

    def __len__(self) -> int:
        return len(self.tracks)

    def __repr__(self):
        return f"RemoteMediaBundle({self.peer_id[:8]}, kinds={self.kinds})"


class Connection:
    """One real-time media session with the server or with a mesh peer.

    The transport is exclusively owned by this record and is closed by
    ``close()``; the registry drops the record only after that.

    Attributes:
        role: Uplink or mesh.
        remote_id: Peer participant id (None for the uplink).
        transport: The underlying RTCPeerConnection.
        senders: Track kind ("audio"/"video") -> sender carrying that kind.
        remote_media: Tracks received from the peer (mesh only).
        needs_offer: Set when renegotiation was requested while the connection
            was not in the stable state; the engine offers once it is stable.
    """

    def __init__(self, role: Role, remote_id: Optional[str], transport: RTCPeerConnection):
        self.role = role
        self.remote_id = remote_id
        self.transport = transport
        self.senders: Dict[str, RTCRtpSender] = {}
        self.remote_media: Optional[RemoteMediaBundle] = (
            RemoteMediaBundle(remote_id) if role is Role.MESH else None
        )
        self.needs_offer = False
        self.closed = False

    @property
    def key(self) -> ConnectionKey:
        return ConnectionKey(self.role, self.remote_id)

    @property
    def signaling_state(self) -> str:
        if self.closed:
            return "closed"
        return self.transport.signalingState

    @property
    def ice_connection_state(self) -> str:
        if self.closed:
            return "closed"
        return self.transport.iceConnectionState

    @property
    def has_remote_description(self) -> bool:
        return self.transport.remoteDescription is not None

    @property
    def is_connected(self) -> bool:
        return self.ice_connection_state in CONNECTED_ICE_STATES

    async def close(self):
        """Close the transport. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        self.needs_offer = False
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport for {self.key}: {e}")

    def __repr__(self):
        return f"Connection({self.key}, signaling={self.signaling_state}, ice={self.ice_connection_state})"
