from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import FakeTrack
from peercall.config import Settings
from peercall.core.media import MediaStream
from peercall.main import RemoteSink, main, run_participant


class TestCommandLine:
    def test_flags_override_environment(self, monkeypatch):
        monkeypatch.setenv("PEERCALL_ROOM", "env-room")
        monkeypatch.setenv("PEERCALL_SIGNALING_URL", "ws://env-relay/ws")

        with patch("peercall.main.run_participant", new=AsyncMock(return_value=0)) as run:
            code = main(["--room", "r1", "--source", "/dev/video0", "--format", "v4l2", "--log-level", "debug"])

        assert code == 0
        room, settings = run.await_args.args
        assert room == "r1"
        assert settings.signaling_url == "ws://env-relay/ws"
        assert settings.capture_source == "/dev/video0"
        assert settings.capture_format == "v4l2"
        assert settings.log_level == "DEBUG"

    def test_room_falls_back_to_environment(self, monkeypatch):
        monkeypatch.setenv("PEERCALL_ROOM", "env-room")

        with patch("peercall.main.run_participant", new=AsyncMock(return_value=0)) as run:
            main(["--server", "ws://cli-relay/ws"])

        room, settings = run.await_args.args
        assert room == "env-room"
        assert settings.signaling_url == "ws://cli-relay/ws"


class TestRunParticipant:
    @pytest.mark.asyncio
    async def test_failed_join_exits_with_error(self):
        session = MagicMock()
        session.join = AsyncMock(return_value=False)
        session.close = AsyncMock()
        session.status = "idle [TransportError]"

        with patch("peercall.main.RoomSession", return_value=session):
            code = await run_participant("r1", Settings())

        assert code == 1
        session.join.assert_awaited_once_with("r1")
        session.close.assert_awaited_once()


class TestRemoteSink:
    @pytest.mark.asyncio
    async def test_starts_only_for_new_tracks(self):
        sink = RemoteSink()
        stream = MediaStream([FakeTrack("audio")])

        sink.update(stream)
        sink.update(stream)
        assert len(sink._tasks) == 1

        stream.add_track(FakeTrack("video"))
        sink.update(stream)
        assert len(sink._tasks) == 2

        await sink.stop()
        assert not sink._tasks

    @pytest.mark.asyncio
    async def test_cleared_stream_stops_previous_sink(self):
        sink = RemoteSink()
        sink.update(MediaStream([FakeTrack("audio")]))

        sink.update(None)
        await sink.stop()

        assert not sink._tasks
        assert sink._seen == set()
