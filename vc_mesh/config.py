"""Static configuration: ICE servers and capture constraints.

Everything here is read once from the environment; nothing is negotiated at
runtime.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer


DEFAULT_STUN_URLS = ("stun:stun.l.google.com:19302",)


def _env_str(name: str) -> Optional[str]:
	v = os.environ.get(name, "").strip()
	return v or None


def _env_int(name: str, default: int) -> int:
	v = os.environ.get(name)
	if v is None:
		return default
	try:
		return int(v)
	except Exception:
		return default


def _env_truthy(name: str, default: bool) -> bool:
	v = os.environ.get(name)
	if v is None:
		return default
	return v.strip().casefold() in {"1", "true", "yes", "on"}


@dataclass
class IceServerConfig:
	"""Relay/reflexive servers handed to every new peer connection."""

	stun_urls: List[str] = field(default_factory=lambda: list(DEFAULT_STUN_URLS))
	turn_url: Optional[str] = None
	turn_username: Optional[str] = None
	turn_credential: Optional[str] = None

	@classmethod
	def from_env(cls) -> "IceServerConfig":
		raw = os.environ.get("VC_STUN_URLS")
		if raw is None:
			stun_urls = list(DEFAULT_STUN_URLS)
		else:
			stun_urls = [u.strip() for u in raw.split(",") if u.strip()]
		return cls(
			stun_urls=stun_urls,
			turn_url=_env_str("VC_TURN_URL"),
			turn_username=_env_str("VC_TURN_USERNAME"),
			turn_credential=_env_str("VC_TURN_CREDENTIAL"),
		)

	def ice_servers(self) -> List[RTCIceServer]:
		servers: List[RTCIceServer] = []
		if self.stun_urls:
			servers.append(RTCIceServer(urls=list(self.stun_urls)))
		if self.turn_url:
			servers.append(
				RTCIceServer(
					urls=self.turn_url,
					username=self.turn_username,
					credential=self.turn_credential,
				)
			)
		return servers


def build_rtc_configuration(ice: Optional[IceServerConfig] = None) -> RTCConfiguration:
	ice = ice or IceServerConfig.from_env()
	return RTCConfiguration(iceServers=ice.ice_servers())


@dataclass
class AudioConstraints:
	echo_cancellation: bool = True
	noise_suppression: bool = True
	auto_gain_control: bool = True
	device: Optional[str] = None


@dataclass
class VideoConstraints:
	width: int = 1280
	height: int = 720
	frame_rate: int = 30
	device: Optional[str] = None

	def player_options(self) -> dict:
		"""ffmpeg input options understood by v4l2/avfoundation/dshow."""
		return {
			"video_size": f"{self.width}x{self.height}",
			"framerate": str(self.frame_rate),
		}


@dataclass
class MediaConstraints:
	audio: AudioConstraints = field(default_factory=AudioConstraints)
	video: VideoConstraints = field(default_factory=VideoConstraints)

	@classmethod
	def from_env(cls) -> "MediaConstraints":
		return cls(
			audio=AudioConstraints(
				echo_cancellation=_env_truthy("VC_AUDIO_ECHO_CANCELLATION", True),
				noise_suppression=_env_truthy("VC_AUDIO_NOISE_SUPPRESSION", True),
				auto_gain_control=_env_truthy("VC_AUDIO_AUTO_GAIN", True),
				device=_env_str("VC_AUDIO_DEVICE"),
			),
			video=VideoConstraints(
				width=_env_int("VC_VIDEO_WIDTH", 1280),
				height=_env_int("VC_VIDEO_HEIGHT", 720),
				frame_rate=_env_int("VC_VIDEO_FPS", 30),
				device=_env_str("VC_VIDEO_DEVICE"),
			),
		)
