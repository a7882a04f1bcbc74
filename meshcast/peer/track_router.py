"""Routing of local media tracks onto connection senders.

For every track of the active local source the router either re-points the
existing sender of the same kind (replace in place: the SDP already
advertises that media kind, so no renegotiation is needed) or adds a new
sender (first-time addition: an offer/answer round is required).
"""

import inspect
import logging
from typing import Optional

from meshcast.media import LocalMediaSource
from meshcast.peer.connection import Connection

logger = logging.getLogger(__name__)


class TrackRouter:
    """Keeps each connection's outgoing senders in line with the local source."""

    async def sync_connection(
        self, connection: Connection, source: Optional[LocalMediaSource]
    ) -> bool:
        """Attach or replace outgoing tracks on ``connection``.

        Args:
            connection: Uplink or mesh connection to update.
            source: Active local source, or None when no media is available.

        Returns:
            True if a sender was added and the connection needs a new offer.
        """
        if source is None or connection.closed:
            return False

        needs_offer = False
        for track in source.get_tracks():
            sender = connection.senders.get(track.kind)
            if sender is None:
                connection.senders[track.kind] = connection.transport.addTrack(track)
                needs_offer = True
                logger.debug(f"Added {track.kind} sender on {connection.key}")
            elif sender.track is not track:
                # aiortc replaces synchronously, other senders may return an awaitable
                result = sender.replaceTrack(track)
                if inspect.isawaitable(result):
                    await result
                logger.debug(f"Replaced {track.kind} track on {connection.key}")

        return needs_offer
