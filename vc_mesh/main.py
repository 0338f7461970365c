from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import uuid

from aiortc.contrib.media import MediaBlackhole

from .config import MediaConstraints, build_rtc_configuration
from .logging_config import setup_logging
from .net.signaling_client import SignalingClient
from .rtc.errors import MediaAcquisitionError
from .rtc.media import MediaCapture
from .rtc.orchestrator import SessionOrchestrator
from .rtc.tracks import RemoteStream


logger = logging.getLogger(__name__)


class RemoteSinks:
	"""Consumes remote tracks so their receive queues drain.

	Playback belongs to a UI; headless runs discard the media.
	"""

	def __init__(self) -> None:
		self._sinks: dict[str, MediaBlackhole] = {}
		self._attached: set[int] = set()

	async def on_remote_stream(self, stream: RemoteStream, participant_id: str) -> None:
		sink = self._sinks.get(participant_id)
		if sink is None:
			sink = self._sinks[participant_id] = MediaBlackhole()
		for track in stream.tracks():
			if id(track) in self._attached:
				continue
			self._attached.add(id(track))
			sink.addTrack(track)
		await sink.start()

	async def on_participant_left(self, record) -> None:
		sink = self._sinks.pop(record.participant_id, None)
		if sink is not None:
			await sink.stop()

	async def stop(self) -> None:
		for sink in self._sinks.values():
			await sink.stop()
		self._sinks.clear()


async def run(args: argparse.Namespace) -> int:
	signaling = SignalingClient(args.server_url, user_id=args.user_id, name=args.name or None)
	orchestrator = SessionOrchestrator(
		media=MediaCapture(constraints=MediaConstraints.from_env()),
		rtc_config=build_rtc_configuration(),
	)
	sinks = RemoteSinks()
	orchestrator.on("remotestream", sinks.on_remote_stream)
	orchestrator.on("participantleft", sinks.on_participant_left)
	orchestrator.on("participantjoined", lambda record: logger.info("participant joined %s", record.label))
	orchestrator.on("peerstatechange", lambda pid, state: logger.info("peer %s state=%s", pid, state.value))

	stop = asyncio.Event()
	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		try:
			loop.add_signal_handler(sig, stop.set)
		except NotImplementedError:
			# Windows event loops have no signal handlers; Ctrl-C raises instead.
			pass

	try:
		await signaling.connect()
		await orchestrator.initialize(args.room, args.user_id, signaling)
		try:
			await orchestrator.start_local_media(audio_wanted=args.audio, video_wanted=args.video)
		except MediaAcquisitionError as e:
			logger.error("local media unavailable: %s", e)
			return 1
		await signaling.join(args.room)
		await stop.wait()
	finally:
		await orchestrator.cleanup()
		await sinks.stop()
		try:
			await signaling.leave()
		except Exception:
			logger.debug("leave failed", exc_info=True)
		await signaling.disconnect()
	return 0


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(description="vc-mesh headless client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use VC_MESH_LOG_LEVEL or VC_LOG_LEVEL.",
	)
	parser.add_argument(
		"--server-url",
		default=os.environ.get("VC_SERVER_URL", "ws://127.0.0.1:8765/ws"),
		help="WebSocket signaling URL",
	)
	parser.add_argument(
		"--room",
		default=os.environ.get("VC_ROOM", "default"),
		help="Room to join",
	)
	parser.add_argument(
		"--user-id",
		default=os.environ.get("VC_USER_ID", uuid.uuid4().hex),
		help="Participant id, unique within the room",
	)
	parser.add_argument(
		"--name",
		default=os.environ.get("VC_NAME", os.environ.get("USER", "")),
		help="Display name",
	)
	parser.add_argument("--no-audio", dest="audio", action="store_false", help="Do not capture the microphone")
	parser.add_argument("--video", action="store_true", help="Capture the camera as well")
	args = parser.parse_args(argv)

	setup_logging(args.log_level)

	try:
		return asyncio.run(run(args))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
