"""Native connection adapter (aiortc).

The negotiation layer only needs a handful of operations from the native
engine. `PeerConnection` exposes exactly those over `RTCPeerConnection` and
re-emits the engine's notifications as plain events:

- ``icecandidate(candidate: dict)``
- ``track(track: MediaStreamTrack)``
- ``connectionstatechange(state: str)``
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack, RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.rtcrtpsender import RTCRtpSender
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pyee.asyncio import AsyncIOEventEmitter


logger = logging.getLogger(__name__)


def candidate_to_json(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def candidate_from_json(obj: Dict[str, Any]) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


def _drop_pending_offer(pc: RTCPeerConnection) -> None:
    # aiortc keeps these private; this mirrors a W3C rollback of a local offer.
    # Current descriptions stay, mids handed out by the dropped offer are freed.
    pc._RTCPeerConnection__pendingLocalDescription = None
    kept = set()
    for description in (
        pc._RTCPeerConnection__currentLocalDescription,
        pc._RTCPeerConnection__currentRemoteDescription,
    ):
        if description is not None:
            kept.update(media.rtp.muxId for media in description.media)
    for transceiver in pc.getTransceivers():
        if transceiver.mid is not None and transceiver.mid not in kept:
            transceiver._RTCRtpTransceiver__mid = None
            transceiver._RTCRtpTransceiver__mline_index = None
    pc._RTCPeerConnection__setSignalingState("stable")


class PeerConnection(AsyncIOEventEmitter):
    """One native connection to one peer."""

    def __init__(self, participant_id: str, rtc_config: Optional[RTCConfiguration] = None):
        super().__init__()
        self.participant_id = participant_id
        self._rtc_config = rtc_config
        self._local_tracks: List[MediaStreamTrack] = []
        self._closed = False
        self._pc = self._build()

    def _build(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self._rtc_config)

        @pc.on("icecandidate")
        def on_icecandidate(event) -> None:
            candidate = getattr(event, "candidate", event)
            if candidate is None:
                return
            self.emit("icecandidate", candidate_to_json(candidate))

        @pc.on("connectionstatechange")
        def on_connectionstatechange() -> None:
            logger.debug("pc[%s] connectionState=%s", self.participant_id, pc.connectionState)
            self.emit("connectionstatechange", pc.connectionState)

        @pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            logger.debug("pc[%s] remote track kind=%s", self.participant_id, track.kind)
            self.emit("track", track)

        for track in self._local_tracks:
            pc.addTrack(track)
        return pc

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def senders(self) -> List[RTCRtpSender]:
        return self._pc.getSenders()

    def add_track(self, track: MediaStreamTrack) -> RTCRtpSender:
        sender = self._pc.addTrack(track)
        self._local_tracks.append(track)
        return sender

    def replace_track(self, track: MediaStreamTrack) -> bool:
        """Swap the outbound track of the same kind; False if there is none."""
        for sender in self._pc.getSenders():
            current = sender.track
            if current is not None and current.kind == track.kind:
                sender.replaceTrack(track)
                self._local_tracks = [track if t is current else t for t in self._local_tracks]
                current.stop()
                return True
        return False

    async def create_offer(self, receive_audio: bool = True, receive_video: bool = True) -> str:
        kinds = {t.kind for t in self._pc.getTransceivers()}
        if receive_audio and "audio" not in kinds:
            self._pc.addTransceiver("audio", direction="recvonly")
        if receive_video and "video" not in kinds:
            self._pc.addTransceiver("video", direction="recvonly")
        offer = await self._pc.createOffer()
        return offer.sdp

    async def create_answer(self) -> str:
        answer = await self._pc.createAnswer()
        return answer.sdp

    async def set_local_description(self, type_: str, sdp: str) -> str:
        """Apply a local description; returns the SDP with gathered candidates."""
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=sdp, type=type_))
        description = self._pc.localDescription
        if description is None:
            raise RuntimeError(f"pc[{self.participant_id}] has no local description after setLocalDescription")
        return description.sdp

    async def set_remote_description(self, type_: str, sdp: str) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=type_))

    async def rollback(self) -> None:
        """Discard a pending local offer.

        aiortc has no rollback description type. Once a remote description has
        been applied the connection carries live ICE and DTLS transports, so
        the pending offer is dropped in place and the transports are kept.
        Before that, the connection is rebuilt with the same outbound tracks.
        Listeners on this adapter are unaffected either way.
        """
        if self._pc.signalingState != "have-local-offer":
            logger.debug("pc[%s] rollback skipped state=%s", self.participant_id, self._pc.signalingState)
            return
        if self._pc.remoteDescription is not None:
            _drop_pending_offer(self._pc)
            return
        old = self._pc
        old.remove_all_listeners()
        self._pc = self._build()
        await old.close()

    async def add_ice_candidate(self, candidate_obj: Any) -> None:
        if not candidate_obj:
            return
        if not isinstance(candidate_obj, dict):
            raise ValueError(f"unexpected candidate payload {type(candidate_obj).__name__}")
        await self._pc.addIceCandidate(candidate_from_json(candidate_obj))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pc.close()


ConnectionFactory = Callable[[str], PeerConnection]


def aiortc_connection_factory(rtc_config: Optional[RTCConfiguration] = None) -> ConnectionFactory:
    def factory(participant_id: str) -> PeerConnection:
        return PeerConnection(participant_id, rtc_config=rtc_config)

    return factory
