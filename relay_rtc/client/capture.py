"""Local capture sources for screen sharing.

The negotiator only attaches and detaches tracks; acquiring them is the job
of a ``CaptureProvider``. ``MediaPlayerCaptureProvider`` covers desktop
grabbing (``x11grab``, ``gdigrab``, ``avfoundation``) and plain media files
through aiortc's ``MediaPlayer``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av.error import FFmpegError

from relay_rtc.exceptions import CaptureError

logger = logging.getLogger(__name__)


@dataclass
class CaptureStream:
    """Tracks acquired from one capture source.

    Attributes:
        tracks: Local media tracks to attach to the peer connection.
        source: Provider-specific object backing the tracks.
    """

    tracks: List[MediaStreamTrack] = field(default_factory=list)
    source: Any = None

    @property
    def video_track(self) -> Optional[MediaStreamTrack]:
        for track in self.tracks:
            if track.kind == "video":
                return track
        return None

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


class CaptureProvider:
    """Acquires and releases local capture streams."""

    async def acquire(self) -> CaptureStream:
        """Acquire a capture stream.

        Raises:
            CaptureError: The source is unavailable or access was denied.
        """
        raise NotImplementedError

    async def release(self, stream: CaptureStream) -> None:
        stream.stop()


class MediaPlayerCaptureProvider(CaptureProvider):
    """Capture provider backed by ``aiortc.contrib.media.MediaPlayer``.

    Examples::

        MediaPlayerCaptureProvider(":0.0", format="x11grab", options={"video_size": "1280x720"})
        MediaPlayerCaptureProvider("desktop", format="gdigrab", options={"framerate": "30"})
        MediaPlayerCaptureProvider("demo.mp4")
    """

    def __init__(
        self,
        source: str,
        format: Optional[str] = None,
        options: Optional[Dict[str, str]] = None,
        audio: bool = False,
    ):
        self.source = source
        self.format = format
        self.options = options or {}
        self.audio = audio

    async def acquire(self) -> CaptureStream:
        logger.info(f"Requesting display media from {self.source}")
        try:
            player = MediaPlayer(self.source, format=self.format, options=self.options)
        except (OSError, ValueError, FFmpegError) as e:
            raise CaptureError(
                "Failed to open capture source",
                {"source": self.source, "error": str(e)},
            ) from e

        tracks = []
        if player.video is not None:
            tracks.append(player.video)
        if self.audio and player.audio is not None:
            tracks.append(player.audio)

        if not tracks:
            raise CaptureError("Capture source has no usable tracks", {"source": self.source})

        logger.info(f"Display media stream acquired ({len(tracks)} track(s))")
        return CaptureStream(tracks=tracks, source=player)
