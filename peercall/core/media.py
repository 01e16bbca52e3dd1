import asyncio
import fractions
import logging
import time
import uuid
from typing import Iterable, List, Optional

from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame
from av.error import FFmpegError

from ..config import Settings
from ..errors import DeviceError, MediaPermissionError

logger = logging.getLogger(__name__)


class SilentAudioTrack(MediaStreamTrack):
    """20 ms frames of mono silence, paced in real time like aiortc's AudioStreamTrack."""

    kind = "audio"

    def __init__(self, sample_rate: int = 48000, samples: int = 960):
        super().__init__()
        self.sample_rate = sample_rate
        self.samples = samples
        self._start: Optional[float] = None
        self._timestamp = 0

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError

        if self._start is None:
            self._start = time.time()
        else:
            self._timestamp += self.samples
            wait = self._start + self._timestamp / self.sample_rate - time.time()
            if wait > 0:
                await asyncio.sleep(wait)

        frame = AudioFrame(format="s16", layout="mono", samples=self.samples)
        for p in frame.planes:
            p.update(bytes(p.buffer_size))
        frame.pts = self._timestamp
        frame.sample_rate = self.sample_rate
        frame.time_base = fractions.Fraction(1, self.sample_rate)
        return frame



class MediaStream:
    """A set of tracks, local (from capture) or remote (from the peer connection)."""

    def __init__(self, tracks: Iterable[MediaStreamTrack] = (), stream_id: Optional[str] = None):
        self.id = stream_id or str(uuid.uuid4())
        self._tracks: List[MediaStreamTrack] = []
        for track in tracks:
            self.add_track(track)

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def stop(self) -> None:
        for track in self._tracks:
            track.stop()

    def __len__(self):
        return len(self._tracks)

    def __repr__(self):
        kinds = ",".join(t.kind for t in self._tracks)
        return f"MediaStream(id={self.id[:8]}, tracks=[{kinds}])"


class MediaCapture:
    """Acquires the local stream from a device, a media file, or a synthetic source."""

    def __init__(self, settings: Settings):
        self.source = settings.capture_source
        self.format = settings.capture_format
        self._player: Optional[MediaPlayer] = None

    def get_local_stream(self) -> MediaStream:
        if self.source == "synthetic":
            logger.info("[Capture] Using synthetic audio/video source")
            return MediaStream([SilentAudioTrack(), VideoStreamTrack()])

        try:
            self._player = MediaPlayer(self.source, format=self.format)
        except PermissionError as e:
            raise MediaPermissionError(f"capture denied for {self.source}: {e}") from e
        except (FFmpegError, OSError) as e:
            raise DeviceError(f"cannot open capture source {self.source}: {e}") from e

        tracks = [t for t in (self._player.audio, self._player.video) if t is not None]
        if not tracks:
            raise DeviceError(f"capture source {self.source} has no audio or video")
        logger.info(f"[Capture] Opened {self.source} ({', '.join(t.kind for t in tracks)})")
        return MediaStream(tracks)
