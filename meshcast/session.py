"""Entry point for a meshcast session."""

import asyncio
import uuid
from typing import Optional

from aiortc import RTCPeerConnection
from loguru import logger

from meshcast.config import Config, get_config
from meshcast.exceptions import MediaAcquisitionError
from meshcast.media import LocalMedia
from meshcast.peer.orchestrator import Orchestrator, SessionStatus
from meshcast.signaling import SignalingChannel


def build_orchestrator(
    config: Config, url: Optional[str] = None, participant_id: Optional[str] = None
) -> Orchestrator:
    """Wire a channel, local media and an aiortc transport factory together."""
    participant_id = participant_id or str(uuid.uuid4())
    channel = SignalingChannel(config.get_websocket_url(participant_id, base_url=url))
    media = LocalMedia(config.media)

    def transport_factory() -> RTCPeerConnection:
        return RTCPeerConnection(configuration=config.rtc_configuration())

    return Orchestrator(
        channel=channel,
        media=media,
        transport_factory=transport_factory,
        participant_id=participant_id,
    )


class StatusLogger:
    """Logs a status line whenever the session status changes."""

    def __init__(self):
        self._last = None

    def __call__(self, status: SessionStatus):
        line = (
            f"signaling={'up' if status.signaling_connected else 'down'} "
            f"uplink={'streaming' if status.uplink_active else 'idle'} "
            f"participants={status.participant_count}/2 "
            f"mesh={status.mesh_connections} "
            f"screen={'on' if status.screen_sharing else 'off'}"
        )
        if line == self._last:
            return
        self._last = line
        logger.info(f"Status: {line}")
        if status.composite_ready:
            logger.info("Both participants are streaming to the server")


async def _run(orchestrator: Orchestrator, camera: bool, share_screen: bool):
    orchestrator.add_status_listener(StatusLogger())
    try:
        if camera:
            try:
                await orchestrator.start_camera()
            except MediaAcquisitionError as e:
                logger.error(f"Camera unavailable, joining without media: {e}")
        if share_screen:
            try:
                await orchestrator.start_screen_share()
            except MediaAcquisitionError as e:
                logger.error(f"Screen sharing unavailable: {e}")

        await orchestrator.run()
        logger.warning("Signaling relay closed the connection")
    finally:
        await orchestrator.close()


def run_session(
    url: Optional[str] = None,
    camera: bool = True,
    share_screen: bool = False,
    participant_id: Optional[str] = None,
) -> None:
    """Main entry point for a session.

    Runs until the relay disconnects or the user interrupts it.

    Args:
        url: Signaling relay URL overriding the configured one.
        camera: Acquire camera and microphone on start.
        share_screen: Share the screen instead of the camera video on start.
        participant_id: Fixed participant id (a random one by default).

    Returns:
        None
    """
    config = get_config()
    orchestrator = build_orchestrator(config, url=url, participant_id=participant_id)
    logger.info(f"Joining as {orchestrator.participant_id}")
    logger.info(f"Signaling relay: {orchestrator.channel.url}")

    try:
        asyncio.run(_run(orchestrator, camera=camera, share_screen=share_screen))
    except KeyboardInterrupt:
        logger.info("Session interrupted by user. Shutting down...")
    except Exception as e:
        logger.error(f"Session error: {e}")
        raise

    logger.info("Session ended")
