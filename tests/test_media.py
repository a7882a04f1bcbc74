"""Tests for local media sources and camera/screen swapping."""

from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeTrack, make_media
from meshcast.config import MediaConfig
from meshcast.exceptions import MediaAcquisitionError
from meshcast.media import LocalMedia, LocalMediaSource, open_camera, open_screen


class TestLocalMediaSource:
    def test_tracks_in_order(self):
        audio, video = FakeTrack("audio"), FakeTrack("video")
        source = LocalMediaSource([audio, video])
        assert source.get_tracks() == [audio, video]
        assert source.kinds == ["audio", "video"]
        assert source.track("video") is video
        assert source.track("data") is None

    def test_release_stops_only_owned_tracks(self):
        borrowed, owned = FakeTrack("audio"), FakeTrack("video")
        source = LocalMediaSource([borrowed, owned], label="screen", owned_tracks=[owned])

        source.release()
        source.release()

        assert owned.stopped
        assert not borrowed.stopped
        assert source.released


class TestLocalMedia:
    @pytest.mark.asyncio
    async def test_start_camera_is_idempotent(self):
        media = make_media()
        first = await media.start_camera()
        assert await media.start_camera() is first
        assert media.active is first
        assert not media.screen_sharing

    @pytest.mark.asyncio
    async def test_screen_share_uses_camera_audio(self):
        media = make_media()
        camera = await media.start_camera()

        screen = await media.start_screen_share()

        assert media.active is screen
        assert media.screen_sharing
        assert screen.track("audio") is camera.track("audio")
        assert screen.track("video") is not camera.track("video")

    @pytest.mark.asyncio
    async def test_stop_restores_camera_and_stops_screen(self):
        media = make_media()
        camera = await media.start_camera()
        screen = await media.start_screen_share()
        screen_video = screen.track("video")

        assert media.stop_screen_share() is True

        assert media.active is camera
        assert screen_video.stopped
        assert not camera.track("audio").stopped
        assert not camera.track("video").stopped
        assert media.stop_screen_share() is False

    @pytest.mark.asyncio
    async def test_stop_without_camera_keeps_screen(self):
        media = make_media()
        screen = await media.start_screen_share()

        assert media.stop_screen_share() is False

        assert media.active is screen
        assert media.screen_sharing
        assert not screen.track("video").stopped

    @pytest.mark.asyncio
    async def test_ended_screen_capture_invokes_callback(self):
        media = make_media()
        await media.start_camera()
        ended = []
        screen = await media.start_screen_share(on_ended=lambda: ended.append(True))

        screen.track("video").stop()

        assert ended == [True]

    @pytest.mark.asyncio
    async def test_acquisition_failure_propagates(self):
        def broken(config):
            raise MediaAcquisitionError("no camera")

        media = LocalMedia(MediaConfig.platform_default("Linux"), camera_opener=broken)
        with pytest.raises(MediaAcquisitionError):
            await media.start_camera()
        assert media.active is None

    @pytest.mark.asyncio
    async def test_release_stops_everything(self):
        media = make_media()
        camera = await media.start_camera()
        screen = await media.start_screen_share()

        media.release()

        assert media.active is None
        assert all(t.stopped for t in camera.get_tracks())
        assert all(t.stopped for t in screen.get_tracks())


class TestOpeners:
    """open_camera/open_screen wrap aiortc MediaPlayer."""

    def make_player(self, audio=None, video=None):
        player = MagicMock()
        player.audio = audio
        player.video = video
        return player

    def test_open_camera_with_microphone(self):
        config = MediaConfig.platform_default("Linux")
        camera = self.make_player(video=FakeTrack("video"))
        microphone = self.make_player(audio=FakeTrack("audio"))

        with patch("meshcast.media.MediaPlayer", side_effect=[camera, microphone]) as player_cls:
            source = open_camera(config)

        assert source.kinds == ["audio", "video"]
        first_call = player_cls.call_args_list[0]
        assert first_call.args == ("/dev/video0",)
        assert first_call.kwargs["format"] == "v4l2"
        assert first_call.kwargs["options"] == {"video_size": "640x480", "framerate": "30"}

    def test_open_camera_without_microphone(self):
        config = MediaConfig.platform_default("Linux")
        config.microphone_device = None
        camera = self.make_player(video=FakeTrack("video"))

        with patch("meshcast.media.MediaPlayer", return_value=camera):
            source = open_camera(config)

        assert source.kinds == ["video"]

    def test_open_camera_failure_is_wrapped(self):
        config = MediaConfig.platform_default("Linux")
        with patch("meshcast.media.MediaPlayer", side_effect=OSError("No such device")):
            with pytest.raises(MediaAcquisitionError, match="No such device"):
                open_camera(config)

    def test_camera_without_video_stream(self):
        config = MediaConfig.platform_default("Linux")
        camera = self.make_player(audio=FakeTrack("audio"))
        with patch("meshcast.media.MediaPlayer", return_value=camera):
            with pytest.raises(MediaAcquisitionError, match="no video"):
                open_camera(config)
        assert camera.audio.stopped

    def test_open_screen(self):
        config = MediaConfig.platform_default("Linux")
        screen = self.make_player(video=FakeTrack("video"))
        with patch("meshcast.media.MediaPlayer", return_value=screen) as player_cls:
            source = open_screen(config)

        assert source.label == "screen"
        assert source.kinds == ["video"]
        assert player_cls.call_args.kwargs["format"] == "x11grab"
