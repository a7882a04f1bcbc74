"""Shared fakes for meshcast tests.

FakeTransport follows the parts of aiortc's RTCPeerConnection that meshcast
uses: the signaling state transitions of the offer/answer handshake, event
registration with ``on`` and synchronous ``addTrack``/``replaceTrack``.
"""

import asyncio
import inspect
import itertools
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiortc import RTCSessionDescription

from meshcast.config import MediaConfig
from meshcast.media import LocalMedia, LocalMediaSource

_ids = itertools.count(1)


class FakeEmitter:
    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}

    def on(self, event: str, handler: Optional[Callable] = None):
        if handler is None:

            def decorator(f):
                self._handlers.setdefault(event, []).append(f)
                return f

            return decorator
        self._handlers.setdefault(event, []).append(handler)
        return handler

    async def emit(self, event: str, *args):
        for handler in list(self._handlers.get(event, [])):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

    def emit_sync(self, event: str, *args):
        for handler in list(self._handlers.get(event, [])):
            handler(*args)


class FakeTrack(FakeEmitter):
    def __init__(self, kind: str, label: str = ""):
        super().__init__()
        self.kind = kind
        self.id = f"{label or kind}-{next(_ids)}"
        self.stopped = False

    def stop(self):
        if self.stopped:
            return
        self.stopped = True
        self.emit_sync("ended")

    def __repr__(self):
        return f"FakeTrack({self.id})"


class FakeSender:
    def __init__(self, track):
        self.track = track
        self.replaced: List[Any] = []

    def replaceTrack(self, track):
        self.replaced.append(track)
        self.track = track


class FakeTransport(FakeEmitter):
    """In-memory stand-in for RTCPeerConnection.

    Attributes:
        remote_gate: When set to an unset asyncio.Event, setRemoteDescription
            waits on it before applying, so tests can interleave a close.
        local_candidates: Candidate lines embedded in created descriptions,
            the way aiortc gathers them before setLocalDescription returns.
        fail_answer: When True, createAnswer raises.
    """

    def __init__(self):
        super().__init__()
        self.signalingState = "stable"
        self.iceConnectionState = "new"
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.senders: List[FakeSender] = []
        self.added_candidates: List[Any] = []
        self.offers_created = 0
        self.closed = False
        self.remote_gate: Optional[asyncio.Event] = None
        self.fail_remote = False
        self.fail_answer = False
        self.local_candidates: List[str] = []

    def _sdp(self, head: str) -> str:
        if not self.local_candidates:
            return head
        lines = [head, "m=audio 9 UDP/TLS/RTP/SAVPF 96", "a=mid:0"]
        lines += [f"a={line}" for line in self.local_candidates]
        lines += ["a=end-of-candidates", "a=ice-ufrag:abcd"]
        return "\r\n".join(lines) + "\r\n"

    async def createOffer(self):
        self.offers_created += 1
        sdp = self._sdp(f"v=0 offer {self.offers_created}")
        return RTCSessionDescription(sdp=sdp, type="offer")

    async def createAnswer(self):
        if self.fail_answer:
            raise RuntimeError("Failed to create answer")
        if self.signalingState != "have-remote-offer":
            raise RuntimeError(f"Cannot create answer in {self.signalingState}")
        return RTCSessionDescription(sdp=self._sdp("v=0 answer"), type="answer")

    async def setLocalDescription(self, description):
        if description.type == "offer":
            self.signalingState = "have-local-offer"
        else:
            self.signalingState = "stable"
        self.localDescription = description

    async def setRemoteDescription(self, description):
        if self.remote_gate is not None:
            await self.remote_gate.wait()
        if self.fail_remote:
            raise ValueError("Invalid remote description")
        if description.type == "offer":
            if self.signalingState == "have-local-offer":
                raise RuntimeError("Cannot handle offer in signaling state have-local-offer")
            self.signalingState = "have-remote-offer"
        else:
            if self.signalingState != "have-local-offer":
                raise RuntimeError(f"Cannot handle answer in {self.signalingState}")
            self.signalingState = "stable"
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        self.added_candidates.append(candidate)

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    async def close(self):
        self.closed = True
        self.signalingState = "closed"
        self.iceConnectionState = "closed"


class FakeTransportFactory:
    """Callable transport factory remembering every transport it built."""

    def __init__(self):
        self.created: List[FakeTransport] = []
        self.local_candidates: List[str] = []

    def __call__(self) -> FakeTransport:
        transport = FakeTransport()
        transport.local_candidates = list(self.local_candidates)
        self.created.append(transport)
        return transport


class FakeChannel:
    """Signaling channel that records sent messages and replays a queue."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.connected = False
        self.closed = False
        self.events: List[str] = []

    async def connect(self):
        self.connected = True

    async def send(self, message: Dict[str, Any]):
        if self.connected:
            self.sent.append(message)

    async def receive(self):
        while True:
            data = await self.incoming.get()
            if data is None:
                return
            yield data

    async def close(self):
        self.events.append("channel-closed")
        self.connected = False
        self.closed = True

    def of_type(self, msg_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["type"] == msg_type]


def make_candidate(host: int = 2, sdp_mid: str = "0") -> Dict[str, Any]:
    """A browser-style candidate payload aiortc can parse."""
    return {
        "candidate": (
            f"candidate:842163049 1 udp 1677729535 192.168.1.{host} 54321 "
            "typ srflx raddr 0.0.0.0 rport 0"
        ),
        "sdpMid": sdp_mid,
        "sdpMLineIndex": 0,
    }


def make_source(label: str = "camera", kinds=("audio", "video")) -> LocalMediaSource:
    return LocalMediaSource([FakeTrack(kind, label) for kind in kinds], label=label)


def make_media(camera_kinds=("audio", "video")) -> LocalMedia:
    """LocalMedia whose openers return fake tracks instead of capture devices."""
    return LocalMedia(
        MediaConfig.platform_default("Linux"),
        camera_opener=lambda config: make_source("camera", camera_kinds),
        screen_opener=lambda config: make_source("screen", ("video",)),
    )


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()
