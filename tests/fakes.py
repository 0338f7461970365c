"""In-memory stand-ins for the native engine, the relay and capture devices.

`FakeConnection` follows browser signaling rules closely enough to exercise
negotiation: descriptions are only accepted in the states a real engine
accepts them in, and a pair reports connected once an answer lands.
"""

import asyncio
from typing import Dict, List, Optional, Set, Tuple

from aiortc import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from pyee.asyncio import AsyncIOEventEmitter

from vc_mesh.net import transport as transport_events
from vc_mesh.net.protocol import ParticipantRecord, SignalingEnvelope
from vc_mesh.rtc.errors import DeviceBusyError
from vc_mesh.rtc.media import MediaDevices
from vc_mesh.rtc.tracks import TrackBundle


class InvalidStateError(Exception):
    pass


class InjectedFailure(Exception):
    pass


class FakeSender:
    def __init__(self, track: MediaStreamTrack):
        self.track = track


def _kinds_of(sdp: str) -> List[str]:
    for part in sdp.split():
        if part.startswith("kinds="):
            return [k for k in part[len("kinds="):].split(",") if k]
    return []


class FakeConnection(AsyncIOEventEmitter):
    def __init__(self, network: "FakeNetwork", owner_id: str, participant_id: str):
        super().__init__()
        self.network = network
        self.owner_id = owner_id
        self.participant_id = participant_id
        self.signaling_state = "stable"
        self.connection_state = "new"
        self._senders: List[FakeSender] = []
        self._remote_kinds: Dict[str, MediaStreamTrack] = {}
        self._offers = 0
        self.rollbacks = 0
        self.close_calls = 0
        self.remote_descriptions: List[Tuple[str, str]] = []
        self.candidates: List[dict] = []
        # Operation names that raise InjectedFailure when called.
        self.fail: Set[str] = set()

    # Tracks

    def senders(self) -> List[FakeSender]:
        return list(self._senders)

    def add_track(self, track: MediaStreamTrack) -> FakeSender:
        self._maybe_fail("add_track")
        sender = FakeSender(track)
        self._senders.append(sender)
        return sender

    def replace_track(self, track: MediaStreamTrack) -> bool:
        self._maybe_fail("replace_track")
        for sender in self._senders:
            if sender.track is not None and sender.track.kind == track.kind:
                sender.track.stop()
                sender.track = track
                return True
        return False

    # Descriptions

    def _describe(self, type_: str) -> str:
        self._offers += 1
        kinds = ",".join(s.track.kind for s in self._senders)
        return f"v=0 {type_} from={self.owner_id} kinds={kinds} n={self._offers}"

    async def create_offer(self, receive_audio: bool = True, receive_video: bool = True) -> str:
        self._maybe_fail("create_offer")
        self._check_open()
        return self._describe("offer")

    async def create_answer(self) -> str:
        self._check_open()
        if self.signaling_state != "have-remote-offer":
            raise InvalidStateError(f"createAnswer in {self.signaling_state}")
        return self._describe("answer")

    async def set_local_description(self, type_: str, sdp: str) -> str:
        self._maybe_fail("set_local_description")
        self._check_open()
        if type_ == "offer" and self.signaling_state in ("stable", "have-local-offer"):
            self.signaling_state = "have-local-offer"
        elif type_ == "answer" and self.signaling_state == "have-remote-offer":
            self.signaling_state = "stable"
        else:
            raise InvalidStateError(f"setLocalDescription({type_}) in {self.signaling_state}")
        return sdp

    async def set_remote_description(self, type_: str, sdp: str) -> None:
        self._maybe_fail("set_remote_description")
        self._check_open()
        if type_ == "offer" and self.signaling_state in ("stable", "have-remote-offer"):
            self.signaling_state = "have-remote-offer"
        elif type_ == "answer" and self.signaling_state == "have-local-offer":
            self.signaling_state = "stable"
        else:
            raise InvalidStateError(f"setRemoteDescription({type_}) in {self.signaling_state}")
        self.remote_descriptions.append((type_, sdp))
        for kind in _kinds_of(sdp):
            if kind not in self._remote_kinds:
                track = AudioStreamTrack() if kind == "audio" else VideoStreamTrack()
                self._remote_kinds[kind] = track
                self.emit("track", track)
        if type_ == "answer":
            self.network.answered(self.owner_id, self.participant_id)

    async def rollback(self) -> None:
        self.rollbacks += 1
        self.signaling_state = "stable"

    async def add_ice_candidate(self, candidate: Optional[dict]) -> None:
        if not candidate:
            return
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.close_calls += 1
        if self.signaling_state == "closed":
            return
        self.signaling_state = "closed"
        self.set_connection_state("closed")

    # Test controls

    def emit_candidate(self, candidate: Optional[dict] = None) -> None:
        self.emit(
            "icecandidate",
            candidate or {"candidate": "candidate:1 1 udp 2122260223 10.0.0.1 50000 typ host", "sdpMid": "0", "sdpMLineIndex": 0},
        )

    def set_connection_state(self, state: str) -> None:
        if state == self.connection_state:
            return
        self.connection_state = state
        self.emit("connectionstatechange", state)

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail:
            raise InjectedFailure(op)

    def _check_open(self) -> None:
        if self.signaling_state == "closed":
            raise InvalidStateError("connection closed")


class FakeNetwork:
    """Creates fake connections and links the two ends of each pair."""

    def __init__(self):
        self.connections: Dict[Tuple[str, str], FakeConnection] = {}
        self.created: List[FakeConnection] = []

    def factory(self, owner_id: str):
        def create(participant_id: str) -> FakeConnection:
            connection = FakeConnection(self, owner_id, participant_id)
            self.connections[(owner_id, participant_id)] = connection
            self.created.append(connection)
            return connection

        return create

    def connection(self, owner_id: str, participant_id: str) -> FakeConnection:
        return self.connections[(owner_id, participant_id)]

    def answered(self, owner_id: str, participant_id: str) -> None:
        for key in ((owner_id, participant_id), (participant_id, owner_id)):
            connection = self.connections.get(key)
            if connection is None or connection.signaling_state != "stable":
                continue
            if connection.connection_state in ("new", "connecting"):
                connection.set_connection_state("connecting")
                connection.set_connection_state("connected")


class FakeTransport(AsyncIOEventEmitter):
    def __init__(self, relay: "FakeRelay", user_id: str):
        super().__init__()
        self.relay = relay
        self.user_id = user_id
        self.sent: List[SignalingEnvelope] = []

    @property
    def room_id(self) -> Optional[str]:
        return self.relay.room_id

    @property
    def is_connected(self) -> bool:
        return True

    async def send(self, envelope: SignalingEnvelope) -> None:
        self.sent.append(envelope)
        self.relay.pending.append(envelope)


class FakeRelay:
    """Room relay with an explicit delivery step."""

    def __init__(self, room_id: str = "room-1"):
        self.room_id = room_id
        self.members: Dict[str, FakeTransport] = {}
        self.pending: List[SignalingEnvelope] = []
        self.dropped: List[SignalingEnvelope] = []

    def transport(self, user_id: str) -> FakeTransport:
        return FakeTransport(self, user_id)

    def join(self, transport: FakeTransport) -> None:
        self.members[transport.user_id] = transport
        roster = [ParticipantRecord(participant_id=uid) for uid in self.members]
        transport.emit(transport_events.ROSTER, roster)
        for uid, other in self.members.items():
            if uid != transport.user_id:
                other.emit(transport_events.PARTICIPANT_JOINED, ParticipantRecord(participant_id=transport.user_id))

    def leave(self, transport: FakeTransport) -> None:
        self.members.pop(transport.user_id, None)
        for other in self.members.values():
            other.emit(transport_events.PARTICIPANT_LEFT, ParticipantRecord(participant_id=transport.user_id))

    def flush(self) -> int:
        envelopes, self.pending = self.pending, []
        for envelope in envelopes:
            target = self.members.get(envelope.target_id)
            if target is None:
                self.dropped.append(envelope)
                continue
            target.emit(transport_events.ENVELOPE, envelope)
        return len(envelopes)


async def pump(relay: FakeRelay, *orchestrators, rounds: int = 20) -> None:
    """Deliver envelopes and let every orchestrator settle until quiet."""
    for _ in range(rounds):
        for orchestrator in orchestrators:
            await orchestrator.settle()
        if not relay.pending:
            return
        relay.flush()
        await asyncio.sleep(0)
    raise AssertionError("signaling did not quiesce")


class FakeDevices(MediaDevices):
    def __init__(self, busy: Tuple[str, ...] = ()):
        self.busy = set(busy)
        self.calls: List[Tuple[bool, bool]] = []

    async def get_user_media(self, audio, video) -> TrackBundle:
        self.calls.append((audio is not None, video is not None))
        if video is not None and "video" in self.busy:
            raise DeviceBusyError("video")
        if audio is not None and "audio" in self.busy:
            raise DeviceBusyError("audio")
        return TrackBundle.of(
            audio=AudioStreamTrack() if audio is not None else None,
            video=VideoStreamTrack() if video is not None else None,
        )
