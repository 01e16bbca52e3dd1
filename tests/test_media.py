from fractions import Fraction

import pytest
from aiortc.mediastreams import MediaStreamError

from conftest import FakeTrack
from peercall.config import Settings
from peercall.core import media
from peercall.core.media import MediaCapture, MediaStream, SilentAudioTrack
from peercall.errors import DeviceError, MediaPermissionError


class TestMediaStream:
    def test_tracks_are_unique_and_ordered(self):
        audio, video = FakeTrack("audio"), FakeTrack("video")
        stream = MediaStream([audio, video, audio])

        assert stream.get_tracks() == [audio, video]
        assert len(stream) == 2
        assert "audio,video" in repr(stream)

    def test_stop_ends_every_track(self):
        stream = MediaStream([FakeTrack("audio"), FakeTrack("video")])

        stream.stop()

        assert all(t.readyState == "ended" for t in stream.get_tracks())


class TestMediaCapture:
    def test_synthetic_source(self):
        stream = MediaCapture(Settings(capture_source="synthetic")).get_local_stream()

        assert sorted(t.kind for t in stream.get_tracks()) == ["audio", "video"]

    @pytest.mark.asyncio
    async def test_silent_audio_frames_are_timestamped(self):
        track = SilentAudioTrack()

        frames = [await track.recv() for _ in range(3)]

        assert [f.pts for f in frames] == [0, 960, 1920]
        assert all(f.time_base == Fraction(1, 48000) for f in frames)
        assert all(f.samples == 960 and f.sample_rate == 48000 for f in frames)

    @pytest.mark.asyncio
    async def test_stopped_silent_track_ends(self):
        track = SilentAudioTrack()
        track.stop()

        with pytest.raises(MediaStreamError):
            await track.recv()

    def test_missing_file_is_device_error(self, tmp_path):
        capture = MediaCapture(Settings(capture_source=str(tmp_path / "missing.mp4")))

        with pytest.raises(DeviceError):
            capture.get_local_stream()

    def test_permission_denied(self, monkeypatch):
        def denied(source, format=None):
            raise PermissionError(13, "Permission denied", source)

        monkeypatch.setattr(media, "MediaPlayer", denied)
        capture = MediaCapture(Settings(capture_source="/dev/video0", capture_format="v4l2"))

        with pytest.raises(MediaPermissionError):
            capture.get_local_stream()

    def test_source_without_tracks(self, monkeypatch):
        class EmptyPlayer:
            def __init__(self, source, format=None):
                self.audio = None
                self.video = None

        monkeypatch.setattr(media, "MediaPlayer", EmptyPlayer)

        with pytest.raises(DeviceError):
            MediaCapture(Settings(capture_source="empty.wav")).get_local_stream()

    def test_player_tracks_become_local_stream(self, monkeypatch):
        class Player:
            def __init__(self, source, format=None):
                self.format = format
                self.audio = FakeTrack("audio")
                self.video = None

        monkeypatch.setattr(media, "MediaPlayer", Player)

        stream = MediaCapture(Settings(capture_source="hw:0", capture_format="alsa")).get_local_stream()

        assert [t.kind for t in stream.get_tracks()] == ["audio"]
