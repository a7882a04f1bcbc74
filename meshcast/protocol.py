"""Signaling message protocol for meshcast.

This module defines the JSON messages exchanged over the signaling relay and
the conversions between wire payloads and aiortc objects.

Message Protocol Overview
-------------------------

Every message is a JSON object discriminated by its ``type`` field. A message
carries either a session description (``sdp``) or a single ICE candidate
(``candidate``), never both. Candidates always travel in their own messages
(trickle ICE), after the offer or answer they belong to.

Message Types
-------------

**peer-announce{clientId}**
    Sent by: every participant once connected to the relay
    Purpose: Makes the sender known to the other participants
    Example: {"type": "peer-announce", "clientId": "3f2a..."}

**uplink-offer{sdp}** / **uplink-answer{sdp}**
    Sent by: participant (offer) / server (answer)
    Purpose: Negotiates the uplink connection used for composition
    Example: {"type": "uplink-offer", "sdp": {"type": "offer", "sdp": "v=0..."}}

**uplink-candidate{candidate}**
    Sent by: either end of the uplink
    Example: {"type": "uplink-candidate",
              "candidate": {"candidate": "candidate:1 1 udp ...",
                            "sdpMid": "0", "sdpMLineIndex": 0}}

**mesh-offer{sdp,toPeerId,fromPeerId}** / **mesh-answer{sdp,toPeerId,fromPeerId}**
    Sent by: participants, addressed to one other participant
    Purpose: Negotiates a direct participant-to-participant connection

**mesh-candidate{candidate,toPeerId,fromPeerId}**
    Sent by: participants, addressed to one other participant

Message Flow Example
--------------------

1. X -> relay: peer-announce{clientId: X}
2. Y -> relay: peer-announce{clientId: Y} (relayed to X)
3. X (has camera) -> Y: mesh-offer
4. Y -> X: mesh-answer
5. X <-> Y: mesh-candidate (any number, any time after step 3)
6. X -> server: uplink-offer, server -> X: uplink-answer, uplink-candidate...
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from meshcast.exceptions import MalformedMessageError

# Discovery
MSG_PEER_ANNOUNCE = "peer-announce"

# Uplink (participant <-> server)
MSG_UPLINK_OFFER = "uplink-offer"
MSG_UPLINK_ANSWER = "uplink-answer"
MSG_UPLINK_CANDIDATE = "uplink-candidate"

# Mesh (participant <-> participant)
MSG_MESH_OFFER = "mesh-offer"
MSG_MESH_ANSWER = "mesh-answer"
MSG_MESH_CANDIDATE = "mesh-candidate"

UPLINK_TYPES = {MSG_UPLINK_OFFER, MSG_UPLINK_ANSWER, MSG_UPLINK_CANDIDATE}
MESH_TYPES = {MSG_MESH_OFFER, MSG_MESH_ANSWER, MSG_MESH_CANDIDATE}
DESCRIPTION_TYPES = {
    MSG_UPLINK_OFFER,
    MSG_UPLINK_ANSWER,
    MSG_MESH_OFFER,
    MSG_MESH_ANSWER,
}
CANDIDATE_TYPES = {MSG_UPLINK_CANDIDATE, MSG_MESH_CANDIDATE}
MESSAGE_TYPES = {MSG_PEER_ANNOUNCE} | UPLINK_TYPES | MESH_TYPES

CANDIDATE_PREFIX = "candidate:"


@dataclass
class SignalingMessage:
    """A parsed signaling message.

    Attributes:
        type: One of the MSG_* constants.
        sdp: Session description payload ({"type", "sdp"}) for offers/answers.
        candidate: ICE candidate payload for *-candidate messages.
        to_peer_id: Addressee of a mesh message.
        from_peer_id: Sender of a mesh message (or announcer of peer-announce).
    """

    type: str
    sdp: Optional[Dict[str, Any]] = None
    candidate: Optional[Dict[str, Any]] = None
    to_peer_id: Optional[str] = None
    from_peer_id: Optional[str] = None

    @property
    def is_mesh(self) -> bool:
        return self.type in MESH_TYPES

    @property
    def is_uplink(self) -> bool:
        return self.type in UPLINK_TYPES

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the wire format."""
        data: Dict[str, Any] = {"type": self.type}
        if self.type == MSG_PEER_ANNOUNCE:
            data["clientId"] = self.from_peer_id
            return data
        if self.sdp is not None:
            data["sdp"] = self.sdp
        if self.candidate is not None:
            data["candidate"] = self.candidate
        if self.is_mesh:
            data["toPeerId"] = self.to_peer_id
            data["fromPeerId"] = self.from_peer_id
        return data


def parse_signaling_message(data: Any) -> SignalingMessage:
    """Validate a decoded JSON object and turn it into a SignalingMessage.

    Args:
        data: Object decoded from a relay frame.

    Returns:
        The parsed message.

    Raises:
        MalformedMessageError: If the type is unknown or a required field is
            missing.
    """
    if not isinstance(data, dict):
        raise MalformedMessageError(f"Expected a JSON object, got {type(data).__name__}")

    msg_type = data.get("type")
    if msg_type not in MESSAGE_TYPES:
        raise MalformedMessageError(f"Unknown message type: {msg_type!r}")

    if msg_type == MSG_PEER_ANNOUNCE:
        announcer = data.get("clientId") or data.get("fromPeerId")
        if not announcer:
            raise MalformedMessageError("peer-announce missing clientId")
        return SignalingMessage(type=msg_type, from_peer_id=announcer)

    message = SignalingMessage(type=msg_type)

    if msg_type in DESCRIPTION_TYPES:
        sdp = data.get("sdp")
        if not isinstance(sdp, dict) or not sdp.get("sdp") or not sdp.get("type"):
            raise MalformedMessageError(f"{msg_type} missing sdp")
        if data.get("candidate") is not None:
            raise MalformedMessageError(f"{msg_type} carries both sdp and candidate")
        message.sdp = {"type": sdp["type"], "sdp": sdp["sdp"]}
    else:
        candidate = data.get("candidate")
        if not isinstance(candidate, dict) or "candidate" not in candidate:
            raise MalformedMessageError(f"{msg_type} missing candidate")
        if data.get("sdp") is not None:
            raise MalformedMessageError(f"{msg_type} carries both sdp and candidate")
        message.candidate = candidate

    if msg_type in MESH_TYPES:
        message.from_peer_id = data.get("fromPeerId")
        message.to_peer_id = data.get("toPeerId")
        if not message.from_peer_id:
            raise MalformedMessageError(f"{msg_type} missing fromPeerId")

    return message


# =============================================================================
# Message builders
# =============================================================================


def peer_announce(client_id: str) -> Dict[str, Any]:
    return SignalingMessage(type=MSG_PEER_ANNOUNCE, from_peer_id=client_id).to_dict()


def description_message(
    description: RTCSessionDescription,
    to_peer_id: Optional[str] = None,
    from_peer_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build an offer/answer message for the uplink or a mesh peer.

    A message addressed to a peer (``to_peer_id`` set) becomes a mesh-*
    message; otherwise it is an uplink-* message.
    """
    if description.type not in ("offer", "answer"):
        raise ValueError(f"Cannot signal description of type {description.type!r}")

    scope = "mesh" if to_peer_id else "uplink"
    return SignalingMessage(
        type=f"{scope}-{description.type}",
        sdp=description_to_dict(description),
        to_peer_id=to_peer_id,
        from_peer_id=from_peer_id if to_peer_id else None,
    ).to_dict()


def candidate_message(
    candidate: Union[RTCIceCandidate, Dict[str, Any]],
    to_peer_id: Optional[str] = None,
    from_peer_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a trickle ICE message for the uplink or a mesh peer.

    ``candidate`` is either an aiortc candidate or an already formatted
    ``{"candidate", "sdpMid", "sdpMLineIndex"}`` payload.
    """
    if isinstance(candidate, RTCIceCandidate):
        candidate = candidate_to_dict(candidate)
    msg_type = MSG_MESH_CANDIDATE if to_peer_id else MSG_UPLINK_CANDIDATE
    return SignalingMessage(
        type=msg_type,
        candidate=candidate,
        to_peer_id=to_peer_id,
        from_peer_id=from_peer_id if to_peer_id else None,
    ).to_dict()


# =============================================================================
# aiortc conversions
# =============================================================================


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(data: Dict[str, Any]) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=data["sdp"], type=data["type"])


def split_candidates(
    description: RTCSessionDescription,
) -> Tuple[RTCSessionDescription, List[Dict[str, Any]]]:
    """Pull the ICE candidates out of a local session description.

    Candidate and end-of-candidates lines are removed from the SDP; every
    other line is kept as is. Each distinct candidate is returned once, tagged
    with the mid and m-line index of the first media section carrying it
    (bundled sections repeat the same candidates).

    Returns:
        The description without candidates, and the candidate payloads in
        SDP order. A description without candidate lines is returned as is.
    """
    if "a=candidate:" not in description.sdp:
        return description, []

    sections: List[List[str]] = [[]]
    for line in description.sdp.splitlines():
        if line.startswith("m="):
            sections.append([])
        sections[-1].append(line)

    kept = list(sections[0])
    candidates: List[Dict[str, Any]] = []
    seen = set()
    for index, section in enumerate(sections[1:]):
        mid = next(
            (line[len("a=mid:") :] for line in section if line.startswith("a=mid:")),
            None,
        )
        for line in section:
            if line.startswith("a=candidate:"):
                value = line[len("a=") :]
                if value not in seen:
                    seen.add(value)
                    candidates.append(
                        {"candidate": value, "sdpMid": mid, "sdpMLineIndex": index}
                    )
            elif line != "a=end-of-candidates":
                kept.append(line)

    stripped = RTCSessionDescription(sdp="\r\n".join(kept) + "\r\n", type=description.type)
    return stripped, candidates


def candidate_to_dict(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: Dict[str, Any]) -> Optional[RTCIceCandidate]:
    """Parse a browser-style candidate payload.

    Returns:
        The candidate, or None for an end-of-candidates marker (empty string).

    Raises:
        MalformedMessageError: If the candidate line cannot be parsed.
    """
    line = (data.get("candidate") or "").strip()
    if not line:
        return None
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX) :]

    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, ValueError, IndexError) as e:
        raise MalformedMessageError(f"Invalid ICE candidate {line!r}: {e}")

    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate
