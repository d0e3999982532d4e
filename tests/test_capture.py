"""Tests for capture providers."""

from unittest import mock

import pytest

from conftest import FakeTrack
from relay_rtc.client.capture import CaptureStream, MediaPlayerCaptureProvider
from relay_rtc.exceptions import CaptureError


def fake_player(video=True, audio=False):
    player = mock.Mock()
    player.video = FakeTrack("video") if video else None
    player.audio = FakeTrack("audio") if audio else None
    return player


class TestMediaPlayerCaptureProvider:
    """Tests for MediaPlayerCaptureProvider.acquire."""

    @pytest.mark.asyncio
    async def test_acquires_video(self):
        player = fake_player(audio=True)
        with mock.patch(
            "relay_rtc.client.capture.MediaPlayer", return_value=player
        ) as media_player:
            provider = MediaPlayerCaptureProvider(
                ":0.0", format="x11grab", options={"video_size": "1280x720"}
            )
            stream = await provider.acquire()

        media_player.assert_called_once_with(
            ":0.0", format="x11grab", options={"video_size": "1280x720"}
        )
        assert stream.tracks == [player.video]
        assert stream.video_track is player.video
        assert stream.source is player

    @pytest.mark.asyncio
    async def test_includes_audio_when_requested(self):
        player = fake_player(audio=True)
        with mock.patch("relay_rtc.client.capture.MediaPlayer", return_value=player):
            stream = await MediaPlayerCaptureProvider("demo.mp4", audio=True).acquire()

        assert [t.kind for t in stream.tracks] == ["video", "audio"]

    @pytest.mark.asyncio
    async def test_open_failure(self):
        with mock.patch(
            "relay_rtc.client.capture.MediaPlayer",
            side_effect=FileNotFoundError("no such device"),
        ):
            with pytest.raises(CaptureError) as exc_info:
                await MediaPlayerCaptureProvider("/dev/nothing").acquire()

        assert exc_info.value.details["source"] == "/dev/nothing"

    @pytest.mark.asyncio
    async def test_no_tracks(self):
        with mock.patch(
            "relay_rtc.client.capture.MediaPlayer",
            return_value=fake_player(video=False, audio=True),
        ):
            with pytest.raises(CaptureError):
                await MediaPlayerCaptureProvider("audio.wav").acquire()

    @pytest.mark.asyncio
    async def test_release_stops_tracks(self):
        player = fake_player()
        with mock.patch("relay_rtc.client.capture.MediaPlayer", return_value=player):
            provider = MediaPlayerCaptureProvider("demo.mp4")
            stream = await provider.acquire()

        await provider.release(stream)

        assert player.video.stopped is True


class TestCaptureStream:
    def test_video_track_absent(self):
        assert CaptureStream(tracks=[FakeTrack("audio")]).video_track is None
