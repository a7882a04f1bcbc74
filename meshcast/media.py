"""Local media sources: camera/microphone capture and screen sharing.

Capture goes through aiortc's ``MediaPlayer`` (ffmpeg inputs such as v4l2,
pulse, x11grab or avfoundation). The rest of meshcast only sees a
``LocalMediaSource``: an ordered list of audio/video tracks.

Only one source is active at a time. Screen sharing swaps in a source made of
the screen video plus the camera source's audio; stopping it releases the
screen capture and restores the camera source object as it was.
"""

import asyncio
import logging
from typing import Callable, Iterable, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from meshcast.config import MediaConfig
from meshcast.exceptions import MediaAcquisitionError

logger = logging.getLogger(__name__)

SourceOpener = Callable[[MediaConfig], "LocalMediaSource"]


class LocalMediaSource:
    """An ordered set of local tracks.

    Attributes:
        label: "camera" or "screen".
        released: True once ``release()`` has run.
    """

    def __init__(
        self,
        tracks: Iterable[MediaStreamTrack],
        label: str = "camera",
        owned_tracks: Optional[Iterable[MediaStreamTrack]] = None,
        players: Iterable[MediaPlayer] = (),
    ):
        self.label = label
        self._tracks: List[MediaStreamTrack] = list(tracks)
        # Tracks borrowed from another source are not stopped on release
        self._owned: List[MediaStreamTrack] = (
            list(self._tracks) if owned_tracks is None else list(owned_tracks)
        )
        self._players = list(players)
        self.released = False

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def track(self, kind: str) -> Optional[MediaStreamTrack]:
        for track in self._tracks:
            if track.kind == kind:
                return track
        return None

    @property
    def kinds(self) -> List[str]:
        return [track.kind for track in self._tracks]

    @property
    def players(self) -> List[MediaPlayer]:
        return list(self._players)

    def release(self):
        """Stop every track this source owns."""
        if self.released:
            return
        self.released = True
        for track in self._owned:
            try:
                track.stop()
            except Exception as e:
                logger.warning(f"Failed to stop {track.kind} track {track.id}: {e}")
        self._players.clear()
        logger.info(f"Released {self.label} source")

    def __repr__(self):
        return f"LocalMediaSource({self.label}, kinds={self.kinds})"


def open_camera(config: MediaConfig) -> LocalMediaSource:
    """Open the camera and (optionally) the microphone.

    Raises:
        MediaAcquisitionError: If the camera cannot be opened or yields no video.
    """
    players = []
    try:
        camera = MediaPlayer(
            config.camera_device,
            format=config.camera_format,
            options=config.capture_options(),
        )
        players.append(camera)
        if camera.video is None:
            raise MediaAcquisitionError(f"Camera {config.camera_device} has no video stream")

        tracks = []
        if config.microphone_device:
            microphone = MediaPlayer(
                config.microphone_device, format=config.microphone_format
            )
            players.append(microphone)
            if microphone.audio is not None:
                tracks.append(microphone.audio)
            else:
                logger.warning(f"Microphone {config.microphone_device} has no audio stream")
        tracks.append(camera.video)
    except MediaAcquisitionError:
        _stop_players(players)
        raise
    except Exception as e:
        _stop_players(players)
        raise MediaAcquisitionError(f"Could not access camera/microphone: {e}") from e

    return LocalMediaSource(tracks, label="camera", players=players)


def open_screen(config: MediaConfig) -> LocalMediaSource:
    """Open a screen capture.

    Raises:
        MediaAcquisitionError: If screen capture is unavailable.
    """
    try:
        screen = MediaPlayer(
            config.screen_device,
            format=config.screen_format,
            options=config.capture_options(),
        )
    except Exception as e:
        raise MediaAcquisitionError(f"Could not start screen sharing: {e}") from e

    if screen.video is None:
        _stop_players([screen])
        raise MediaAcquisitionError(f"Screen {config.screen_device} has no video stream")
    return LocalMediaSource([screen.video], label="screen", players=[screen])


def _stop_players(players: List[MediaPlayer]):
    for player in players:
        for track in (player.audio, player.video):
            if track is not None:
                track.stop()


class LocalMedia:
    """Holds the active local source and performs camera/screen swaps.

    Attributes:
        active: The source currently routed to connections (None before
            capture starts).
    """

    def __init__(
        self,
        config: MediaConfig,
        camera_opener: SourceOpener = open_camera,
        screen_opener: SourceOpener = open_screen,
    ):
        self._config = config
        self._camera_opener = camera_opener
        self._screen_opener = screen_opener

        self.active: Optional[LocalMediaSource] = None
        self._camera: Optional[LocalMediaSource] = None
        self._screen: Optional[LocalMediaSource] = None

    @property
    def screen_sharing(self) -> bool:
        return self._screen is not None

    @property
    def camera(self) -> Optional[LocalMediaSource]:
        return self._camera

    async def start_camera(self) -> LocalMediaSource:
        """Acquire camera and microphone; becomes active unless sharing the screen."""
        if self._camera is not None:
            return self._camera

        # ffmpeg device probing blocks, keep it off the event loop
        loop = asyncio.get_running_loop()
        source = await loop.run_in_executor(None, self._camera_opener, self._config)
        self._camera = source
        if self._screen is None:
            self.active = source
        logger.info(f"Camera source started: {source.kinds}")
        return source

    async def start_screen_share(
        self, on_ended: Optional[Callable[[], None]] = None
    ) -> LocalMediaSource:
        """Swap the active source to the screen capture plus camera audio.

        Args:
            on_ended: Called when the screen capture ends on its own (e.g. the
                captured display goes away).
        """
        if self._screen is not None:
            return self._screen

        loop = asyncio.get_running_loop()
        capture = await loop.run_in_executor(None, self._screen_opener, self._config)

        audio = [t for t in (self._camera.get_tracks() if self._camera else []) if t.kind == "audio"]
        screen_tracks = capture.get_tracks()
        source = LocalMediaSource(
            audio + screen_tracks,
            label="screen",
            owned_tracks=screen_tracks,
            players=capture.players,
        )

        if on_ended is not None:
            for track in screen_tracks:
                if track.kind == "video" and hasattr(track, "on"):
                    track.on("ended", on_ended)

        self._screen = source
        self.active = source
        logger.info("Screen sharing started")
        return source

    def stop_screen_share(self) -> bool:
        """Release the screen capture and restore the camera source.

        Screen sharing started without a camera keeps running, since there is
        no source to restore.

        Returns:
            True if screen sharing was stopped.
        """
        if self._screen is None:
            return False
        if self._camera is None:
            logger.warning("No camera to restore, screen sharing continues")
            return False

        screen, self._screen = self._screen, None
        screen.release()
        self.active = self._camera
        logger.info("Screen sharing stopped")
        return True

    def release(self):
        """Stop every local track (session end)."""
        if self._screen is not None:
            self._screen.release()
            self._screen = None
        if self._camera is not None:
            self._camera.release()
            self._camera = None
        self.active = None
