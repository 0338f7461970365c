"""Local capture: acquire, mute, replace and release the local track bundle.

Device access goes through a `MediaDevices` object so the capture policy
(constraints, busy-camera fallback, bundle ownership) does not depend on which
ffmpeg input backend is available on the host.
"""

from __future__ import annotations

import errno
import logging
import sys
from dataclasses import dataclass
from typing import List, Optional, Tuple

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from ..config import AudioConstraints, MediaConstraints, VideoConstraints
from .errors import DeviceBusyError, MediaAcquisitionError
from .tracks import TrackBundle, TrackKind


logger = logging.getLogger(__name__)


def _is_busy(exc: BaseException) -> bool:
	# PyAV raises OSError subclasses carrying the ffmpeg errno.
	return isinstance(exc, OSError) and exc.errno == errno.EBUSY


@dataclass(frozen=True)
class MediaState:
	mic_enabled: bool
	camera_enabled: bool


class MediaDevices:
	"""Capture capability: open devices and hand back raw tracks."""

	async def get_user_media(
		self,
		audio: Optional[AudioConstraints],
		video: Optional[VideoConstraints],
	) -> TrackBundle:
		raise NotImplementedError


class PlayerMediaDevices(MediaDevices):
	"""Opens capture devices through ffmpeg via aiortc's MediaPlayer."""

	def __init__(self, platform: Optional[str] = None):
		self._platform = platform or sys.platform

	def _audio_candidates(self, constraints: AudioConstraints) -> List[Tuple[str, str]]:
		candidates: List[Tuple[str, str]] = []
		if self._platform == "darwin":
			candidates.append((f"none:{constraints.device or 'default'}", "avfoundation"))
		elif self._platform.startswith("win"):
			if constraints.device:
				candidates.append((f"audio={constraints.device}", "dshow"))
		else:
			if constraints.device:
				candidates.append((constraints.device, "pulse"))
			# PulseAudio is typical on desktop Linux, ALSA is the fallback.
			candidates.append(("default", "pulse"))
			candidates.append(("default", "alsa"))
		return candidates

	def _video_candidates(self, constraints: VideoConstraints) -> List[Tuple[str, str]]:
		if self._platform == "darwin":
			return [(f"{constraints.device or 'default'}:none", "avfoundation")]
		if self._platform.startswith("win"):
			return [(f"video={constraints.device}", "dshow")] if constraints.device else []
		return [(constraints.device or "/dev/video0", "v4l2")]

	def _open(self, kind: TrackKind, candidates: List[Tuple[str, str]], options: Optional[dict]) -> MediaStreamTrack:
		last_error: Optional[BaseException] = None
		for device, backend in candidates:
			try:
				player = MediaPlayer(device, format=backend, options=options)
			except Exception as e:
				if _is_busy(e):
					raise DeviceBusyError(kind.value, f"{kind.value} device {device} busy") from e
				logger.debug("media open failed kind=%s backend=%s device=%s err=%s", kind.value, backend, device, e)
				last_error = e
				continue
			track = player.audio if kind is TrackKind.AUDIO else player.video
			if track is None:
				last_error = MediaAcquisitionError(f"{backend}:{device} has no {kind.value} stream")
				continue
			logger.info("media opened kind=%s backend=%s device=%s", kind.value, backend, device)
			return track
		raise MediaAcquisitionError(f"no usable {kind.value} capture device") from last_error

	async def get_user_media(
		self,
		audio: Optional[AudioConstraints],
		video: Optional[VideoConstraints],
	) -> TrackBundle:
		video_track: Optional[MediaStreamTrack] = None
		audio_track: Optional[MediaStreamTrack] = None
		if video is not None:
			video_track = self._open(TrackKind.VIDEO, self._video_candidates(video), video.player_options())
		try:
			if audio is not None:
				logger.debug(
					"media audio constraints echo_cancellation=%s noise_suppression=%s auto_gain=%s",
					audio.echo_cancellation,
					audio.noise_suppression,
					audio.auto_gain_control,
				)
				audio_track = self._open(TrackKind.AUDIO, self._audio_candidates(audio), None)
		except BaseException:
			if video_track is not None:
				video_track.stop()
			raise
		return TrackBundle.of(audio=audio_track, video=video_track)


class MediaCapture:
	"""Owns the local track bundle."""

	def __init__(self, devices: Optional[MediaDevices] = None, constraints: Optional[MediaConstraints] = None):
		self._devices = devices or PlayerMediaDevices()
		self._constraints = constraints or MediaConstraints.from_env()
		self._bundle: Optional[TrackBundle] = None

	async def acquire(self, audio_wanted: bool = True, video_wanted: bool = False) -> TrackBundle:
		if not audio_wanted and not video_wanted:
			raise MediaAcquisitionError("at least one of audio or video must be requested")

		logger.info("media acquire audio=%s video=%s", audio_wanted, video_wanted)
		audio = self._constraints.audio if audio_wanted else None
		video = self._constraints.video if video_wanted else None
		try:
			bundle = await self._devices.get_user_media(audio, video)
		except DeviceBusyError as e:
			if not (video_wanted and audio_wanted and e.kind == TrackKind.VIDEO.value):
				raise
			logger.warning("media video device busy, falling back to audio only")
			try:
				bundle = await self._devices.get_user_media(audio, None)
			except MediaAcquisitionError:
				raise
			except Exception as e2:
				raise MediaAcquisitionError(f"audio-only fallback failed: {e2}") from e2
		except MediaAcquisitionError:
			raise
		except Exception as e:
			raise MediaAcquisitionError(f"media acquisition failed: {e}") from e

		logger.info("media acquired audio=%s video=%s", bundle.audio is not None, bundle.video is not None)
		self.replace(bundle)
		return bundle

	def release(self) -> None:
		bundle = self._bundle
		self._bundle = None
		if bundle is None:
			return
		logger.info("media release tracks=%s", len(bundle))
		bundle.stop()

	def set_track_enabled(self, kind: TrackKind, enabled: bool) -> None:
		if self._bundle is None:
			logger.warning("media cannot toggle kind=%s, no local bundle", TrackKind(kind).value)
			return
		track = self._bundle.get(kind)
		if track is None:
			logger.debug("media toggle kind=%s skipped, no track", TrackKind(kind).value)
			return
		track.enabled = enabled
		logger.info("media toggle kind=%s enabled=%s", track.kind, enabled)

	def replace(self, bundle: TrackBundle) -> None:
		previous = self._bundle
		self._bundle = bundle
		if previous is not None and previous is not bundle:
			previous.stop(keep=bundle)

	def is_enabled(self, kind: TrackKind) -> bool:
		if self._bundle is None:
			return False
		track = self._bundle.get(kind)
		return track is not None and track.enabled

	def current(self) -> Optional[TrackBundle]:
		return self._bundle

	def media_state(self) -> MediaState:
		return MediaState(
			mic_enabled=self.is_enabled(TrackKind.AUDIO),
			camera_enabled=self.is_enabled(TrackKind.VIDEO),
		)
