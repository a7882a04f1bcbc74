"""Offer/answer negotiation for a single connection.

State machine (per connection)::

    offerer:   stable -> have-local-offer  -> stable
    answerer:  stable -> have-remote-offer -> stable
    closed is terminal and reachable from any state

Callers serialize calls for one connection with the registry's per-key lock.
Every await is a suspension point during which the connection may be closed
or replaced; results are only applied while the connection is still the
registry's live instance for its key.

Glare (both sides offering at once) is resolved by comparing participant ids:
the side with the greater id keeps its offer and ignores the remote one; the
other side recycles its transport (dropping its pending offer) and answers.
The uplink never yields, since the server only answers.

aiortc gathers every local candidate during setLocalDescription and emits no
per-candidate event, so the engine trickles them itself: the description goes
out without its candidate lines, followed by one candidate message each.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from meshcast import protocol
from meshcast.exceptions import MalformedMessageError, NegotiationError
from meshcast.peer.candidates import CandidateBuffer
from meshcast.peer.connection import Connection, ConnectionKey, Role
from meshcast.peer.registry import ConnectionRegistry

logger = logging.getLogger(__name__)

SendFunc = Callable[[Dict[str, Any]], Awaitable[None]]
PrepareFunc = Callable[[Connection], Awaitable[None]]


class NegotiationEngine:
    """Drives the SDP handshake and candidate application for connections.

    Attributes:
        local_id: This participant's id (used as fromPeerId and for glare).
    """

    def __init__(
        self,
        local_id: str,
        registry: ConnectionRegistry,
        candidates: CandidateBuffer,
        send: SendFunc,
        prepare: Optional[PrepareFunc] = None,
    ):
        """Initialize NegotiationEngine.

        Args:
            local_id: This participant's id.
            registry: Registry used for liveness checks and glare recycling.
            candidates: Buffer for candidates that cannot be applied yet.
            send: Coroutine that transmits one signaling message.
            prepare: Coroutine attaching local tracks to a recycled connection
                before it answers.
        """
        self.local_id = local_id
        self._registry = registry
        self._candidates = candidates
        self._send = send
        self._prepare = prepare

    # ===== Offerer path =====

    async def offer(self, connection: Connection) -> bool:
        """Create, apply and send an offer.

        An offer requested while the connection is mid-handshake is deferred
        until the connection is stable again.

        Returns:
            True if an offer was sent.
        """
        if not self._registry.is_live(connection):
            logger.debug(f"Skipping offer on dead connection {connection.key}")
            return False

        if connection.signaling_state != "stable":
            connection.needs_offer = True
            logger.info(
                f"Deferring offer on {connection.key}: state is {connection.signaling_state}"
            )
            return False

        connection.needs_offer = False
        transport = connection.transport

        offer = await self._step(connection, "createOffer", transport.createOffer())
        if not self._still_live(connection, "createOffer"):
            return False

        await self._step(
            connection, "setLocalDescription", transport.setLocalDescription(offer)
        )
        if not self._still_live(connection, "setLocalDescription(offer)"):
            return False

        await self._send_local_description(connection)
        logger.info(f"Sent offer on {connection.key}")
        return True

    async def accept_answer(self, connection: Connection, sdp: Dict[str, Any]) -> bool:
        """Apply a remote answer to a connection that has a local offer out.

        Returns:
            True if the answer was applied.
        """
        if connection.signaling_state != "have-local-offer":
            logger.warning(
                f"Ignoring answer on {connection.key}: state is {connection.signaling_state}"
            )
            return False

        await self._set_remote(connection, sdp)
        if not self._still_live(connection, "setRemoteDescription(answer)"):
            return False

        await self.flush_candidates(connection)
        logger.info(f"Answer applied on {connection.key}")

        await self._offer_if_needed(connection)
        return True

    # ===== Answerer path =====

    async def accept_offer(
        self, connection: Connection, sdp: Dict[str, Any]
    ) -> Optional[Connection]:
        """Answer a remote offer.

        Returns:
            The connection that answered (a fresh instance if glare forced a
            recycle), or None if the offer was ignored or became moot.
        """
        state = connection.signaling_state
        if state == "have-local-offer":
            if self._wins_glare(connection):
                logger.info(f"Offer collision on {connection.key}: keeping our offer")
                return None
            logger.info(f"Offer collision on {connection.key}: yielding to remote offer")
            connection = await self._registry.recycle(connection)
            if self._prepare is not None:
                await self._prepare(connection)
            # The fresh transport has only the recycled senders; our offer is
            # superseded by answering the remote one
            connection.needs_offer = False
        elif state != "stable":
            logger.warning(f"Ignoring offer on {connection.key}: state is {state}")
            return None

        transport = connection.transport

        await self._set_remote(connection, sdp)
        if not self._still_live(connection, "setRemoteDescription(offer)"):
            return None

        await self.flush_candidates(connection)
        if not self._still_live(connection, "candidate flush"):
            return None

        answer = await self._step(connection, "createAnswer", transport.createAnswer())
        if not self._still_live(connection, "createAnswer"):
            return None

        await self._step(
            connection, "setLocalDescription", transport.setLocalDescription(answer)
        )
        if not self._still_live(connection, "setLocalDescription(answer)"):
            return None

        await self._send_local_description(connection)
        logger.info(f"Sent answer on {connection.key}")

        await self._offer_if_needed(connection)
        return connection

    # ===== ICE candidates =====

    async def add_remote_candidate(
        self, key: ConnectionKey, candidate: Dict[str, Any]
    ) -> bool:
        """Apply a remote candidate now, or buffer it until it can be applied.

        Returns:
            True if applied immediately, False if buffered or dropped.
        """
        if not (candidate.get("candidate") or "").strip():
            logger.debug(f"End of remote candidates for {key}")
            return False

        connection = self._registry.get(key)
        if connection is None:
            if self._registry.is_retired(key):
                logger.debug(f"Dropping candidate for closed connection {key}")
                return False
            # The offer that creates this connection may still be in flight
            self._candidates.add(key, candidate)
            return False

        if not connection.has_remote_description:
            self._candidates.add(key, candidate)
            return False

        await self._apply_candidate(connection, candidate)
        return True

    async def flush_candidates(self, connection: Connection) -> int:
        """Apply every buffered candidate for the connection, in receipt order.

        Returns:
            Number of candidates drained.
        """
        pending = self._candidates.drain(connection.key)
        for candidate in pending:
            if not self._registry.is_live(connection):
                break
            await self._apply_candidate(connection, candidate)

        if pending:
            logger.debug(f"Flushed {len(pending)} buffered candidates on {connection.key}")
        return len(pending)

    async def _apply_candidate(self, connection: Connection, candidate: Dict[str, Any]):
        try:
            parsed = protocol.candidate_from_dict(candidate)
        except MalformedMessageError as e:
            logger.warning(f"Dropping malformed candidate on {connection.key}: {e}")
            return
        if parsed is None:
            logger.debug(f"End of remote candidates on {connection.key}")
            return
        try:
            await connection.transport.addIceCandidate(parsed)
        except Exception as e:
            # A single bad candidate must not stop the rest from applying
            logger.warning(f"Failed to add ICE candidate on {connection.key}: {e}")

    # ===== Helpers =====

    async def _set_remote(self, connection: Connection, sdp: Dict[str, Any]):
        await self._step(
            connection,
            "setRemoteDescription",
            connection.transport.setRemoteDescription(protocol.description_from_dict(sdp)),
        )

    async def _step(self, connection: Connection, step: str, awaitable: Awaitable[Any]) -> Any:
        """Await one handshake step, tearing the connection down if it fails.

        aiortc cannot roll a description back, so a connection whose step
        failed outside ``stable`` could never negotiate again. It is removed
        instead, which lets the next offer or announce from the peer start
        over on a fresh connection. A failure while still ``stable`` leaves
        the connection as it was.

        Raises:
            NegotiationError: If the step failed.
        """
        try:
            return await awaitable
        except Exception as e:
            if connection.signaling_state not in ("stable", "closed"):
                logger.warning(
                    f"{step} failed on {connection.key} in state "
                    f"{connection.signaling_state}; tearing the connection down"
                )
                await self._registry.remove(connection)
            raise NegotiationError(connection.key, step, str(e)) from e

    async def _send_local_description(self, connection: Connection):
        """Send the local description, then each of its candidates on its own."""
        description, candidates = protocol.split_candidates(
            connection.transport.localDescription
        )
        await self._send(self._description_message(connection, description))
        for candidate in candidates:
            await self._send(self._candidate_message(connection, candidate))
        if candidates:
            logger.debug(f"Trickled {len(candidates)} local candidates on {connection.key}")

    async def _offer_if_needed(self, connection: Connection):
        if connection.needs_offer and self._registry.is_live(connection):
            logger.info(f"Sending deferred offer on {connection.key}")
            await self.offer(connection)

    def _still_live(self, connection: Connection, step: str) -> bool:
        if self._registry.is_live(connection):
            return True
        logger.info(f"Connection {connection.key} closed during {step}; result discarded")
        return False

    def _wins_glare(self, connection: Connection) -> bool:
        if connection.role is Role.UPLINK:
            return True
        return self.local_id > connection.remote_id

    def _description_message(self, connection: Connection, description) -> Dict[str, Any]:
        if connection.role is Role.UPLINK:
            return protocol.description_message(description)
        return protocol.description_message(
            description, to_peer_id=connection.remote_id, from_peer_id=self.local_id
        )

    def _candidate_message(
        self, connection: Connection, candidate: Dict[str, Any]
    ) -> Dict[str, Any]:
        if connection.role is Role.UPLINK:
            return protocol.candidate_message(candidate)
        return protocol.candidate_message(
            candidate, to_peer_id=connection.remote_id, from_peer_id=self.local_id
        )
