"""Local and remote track containers.

`LocalTrack` is a pass-through wrapper around a capture track that can be
muted without being stopped: while disabled it keeps the source's timing but
replaces the payload with silence (audio) or a blank picture (video).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional

import av
from aiortc import MediaStreamTrack


logger = logging.getLogger(__name__)


class TrackKind(str, Enum):
	AUDIO = "audio"
	VIDEO = "video"


def _silence_like(frame: av.AudioFrame) -> av.AudioFrame:
	silent = av.AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
	for p in silent.planes:
		p.update(bytes(p.buffer_size))
	silent.pts = frame.pts
	silent.sample_rate = frame.sample_rate
	silent.time_base = frame.time_base
	return silent


def _blank_like(frame: av.VideoFrame) -> av.VideoFrame:
	blank = av.VideoFrame(width=frame.width, height=frame.height, format=frame.format.name)
	for i, p in enumerate(blank.planes):
		# Chroma planes at 0x80 give black instead of green for planar YUV.
		fill = b"\x80" if i > 0 and frame.format.name.startswith("yuv") else b"\x00"
		p.update(fill * p.buffer_size)
	blank.pts = frame.pts
	blank.time_base = frame.time_base
	return blank


class LocalTrack(MediaStreamTrack):
	"""Mute-able pass-through for a captured track."""

	def __init__(self, source: MediaStreamTrack):
		super().__init__()
		self.kind = source.kind
		self._source = source
		self._enabled = True

	@property
	def source(self) -> MediaStreamTrack:
		return self._source

	@property
	def enabled(self) -> bool:
		return self._enabled

	@enabled.setter
	def enabled(self, value: bool) -> None:
		value = bool(value)
		if value != self._enabled:
			logger.debug("track enabled kind=%s id=%s enabled=%s", self.kind, self.id, value)
		self._enabled = value

	async def recv(self):  # type: ignore[override]
		frame = await self._source.recv()
		if self._enabled:
			return frame
		if isinstance(frame, av.AudioFrame):
			return _silence_like(frame)
		if isinstance(frame, av.VideoFrame):
			return _blank_like(frame)
		return frame

	def stop(self) -> None:  # type: ignore[override]
		try:
			self._source.stop()
		finally:
			super().stop()


def _as_local(track: Optional[MediaStreamTrack], kind: TrackKind) -> Optional[LocalTrack]:
	if track is None:
		return None
	if track.kind != kind.value:
		raise ValueError(f"expected {kind.value} track, got {track.kind}")
	if isinstance(track, LocalTrack):
		return track
	return LocalTrack(track)


@dataclass(frozen=True)
class TrackBundle:
	"""The local tracks available for sending: at most one per kind."""

	audio: Optional[LocalTrack] = None
	video: Optional[LocalTrack] = None

	@classmethod
	def of(cls, audio: Optional[MediaStreamTrack] = None, video: Optional[MediaStreamTrack] = None) -> "TrackBundle":
		return cls(audio=_as_local(audio, TrackKind.AUDIO), video=_as_local(video, TrackKind.VIDEO))

	def get(self, kind: TrackKind) -> Optional[LocalTrack]:
		return self.audio if TrackKind(kind) is TrackKind.AUDIO else self.video

	def tracks(self) -> List[LocalTrack]:
		return [t for t in (self.audio, self.video) if t is not None]

	def kinds(self) -> List[TrackKind]:
		return [TrackKind(t.kind) for t in self.tracks()]

	def __iter__(self) -> Iterator[LocalTrack]:
		return iter(self.tracks())

	def __len__(self) -> int:
		return len(self.tracks())

	def stop(self, keep: Optional["TrackBundle"] = None) -> None:
		keep_ids = {id(t) for t in keep.tracks()} if keep is not None else set()
		for track in self.tracks():
			if id(track) in keep_ids:
				continue
			logger.debug("track stop kind=%s id=%s", track.kind, track.id)
			track.stop()


class RemoteStream:
	"""Inbound tracks from one peer, presented as a single stream."""

	def __init__(self, participant_id: str):
		self.id = str(uuid.uuid4())
		self.participant_id = participant_id
		self._tracks: List[MediaStreamTrack] = []

	def add_track(self, track: MediaStreamTrack) -> bool:
		if any(t is track for t in self._tracks):
			return False
		self._tracks.append(track)
		return True

	def tracks(self) -> List[MediaStreamTrack]:
		return list(self._tracks)

	@property
	def active(self) -> bool:
		return any(t.readyState == "live" for t in self._tracks)

	def stop(self) -> None:
		for track in self._tracks:
			track.stop()

	def __len__(self) -> int:
		return len(self._tracks)
