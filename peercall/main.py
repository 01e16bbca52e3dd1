import argparse
import asyncio
import logging
import os

from aiortc.contrib.media import MediaBlackhole

from .config import Settings
from .room_session import RoomSession

logger = logging.getLogger(__name__)


class RemoteSink:
    """Drains remote tracks so media keeps flowing while nothing renders it."""

    def __init__(self):
        self._blackhole = MediaBlackhole()
        self._seen = set()
        self._tasks = set()

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def update(self, stream) -> None:
        if stream is None:
            old, self._blackhole = self._blackhole, MediaBlackhole()
            self._seen.clear()
            self._spawn(old.stop())
            return
        added = False
        for track in stream.get_tracks():
            if track.id not in self._seen:
                self._seen.add(track.id)
                self._blackhole.addTrack(track)
                added = True
        if added:
            self._spawn(self._blackhole.start())

    async def stop(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks)
        await self._blackhole.stop()


async def run_participant(room: str, settings: Settings) -> int:
    sink = RemoteSink()
    session = RoomSession(settings, on_remote_stream=sink.update)
    try:
        if not await session.join(room):
            logger.error(f"[peercall] Could not join '{room}': {session.status}")
            return 1
        while True:
            await asyncio.sleep(1)
    finally:
        await session.close()
        await sink.stop()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Join a two-party WebRTC room")
    parser.add_argument("--room", required=False, help="Room to join")
    parser.add_argument("--server", default=None, help="Relay WebSocket URL")
    parser.add_argument("--source", default=None, help="'synthetic', a capture device or a media file")
    parser.add_argument("--format", default=None, help="ffmpeg input format for --source (e.g. v4l2)")
    parser.add_argument("--stun", default=None, help="STUN server URL")
    parser.add_argument("--log-level", default=None, help="Logging level")
    args = parser.parse_args(argv)

    # Fallback to environment variables if not provided as args
    room = args.room or os.getenv("PEERCALL_ROOM", "test-room")
    settings = Settings.from_env().override(
        signaling_url=args.server,
        capture_source=args.source,
        capture_format=args.format,
        stun_server_url=args.stun,
        log_level=args.log_level.upper() if args.log_level else None,
    )
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.info(f"[peercall] Joining room '{room}' via {settings.signaling_url}")

    try:
        return asyncio.run(run_participant(room, settings))
    except KeyboardInterrupt:
        logger.info("[peercall] Shutting down.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
