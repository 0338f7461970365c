"""Signaling protocol helpers.

The relay speaks JSON objects over a single WebSocket, one room per
connection. Outbound messages carry the target participant; the relay rewrites
them with the sender's id before delivery.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# Message type constants
JOIN_ROOM = "join_room"
LEAVE_ROOM = "leave_room"

USERS_ONLINE = "usersOnline"
USER_JOINED = "user_joined"
# The relay has used several names for the same departure event.
USER_LEFT_TYPES = ("user_left", "userLeft", "userDisconnected")

OFFER = "webrtc_offer"
ANSWER = "webrtc_answer"
ICE_CANDIDATE = "webrtc_ice_candidate"

PING = "ping"
PONG = "pong"
ERROR = "error"


class EnvelopeKind(str, Enum):
	OFFER = "offer"
	ANSWER = "answer"
	ICE_CANDIDATE = "ice_candidate"


_WIRE_TYPES = {
	EnvelopeKind.OFFER: OFFER,
	EnvelopeKind.ANSWER: ANSWER,
	EnvelopeKind.ICE_CANDIDATE: ICE_CANDIDATE,
}
_KIND_BY_WIRE = {v: k for k, v in _WIRE_TYPES.items()}


@dataclass(frozen=True)
class ProtocolError(Exception):
	message: str


@dataclass(frozen=True)
class SignalingEnvelope:
	"""One offer, answer or candidate addressed room x sender x target."""

	kind: EnvelopeKind
	room_id: str
	sender_id: str
	target_id: str
	sdp: Optional[str] = None
	candidate: Optional[Dict[str, Any]] = None

	@classmethod
	def offer(cls, room_id: str, sender_id: str, target_id: str, sdp: str) -> "SignalingEnvelope":
		return cls(EnvelopeKind.OFFER, room_id, sender_id, target_id, sdp=sdp)

	@classmethod
	def answer(cls, room_id: str, sender_id: str, target_id: str, sdp: str) -> "SignalingEnvelope":
		return cls(EnvelopeKind.ANSWER, room_id, sender_id, target_id, sdp=sdp)

	@classmethod
	def ice_candidate(
		cls, room_id: str, sender_id: str, target_id: str, candidate: Dict[str, Any]
	) -> "SignalingEnvelope":
		return cls(EnvelopeKind.ICE_CANDIDATE, room_id, sender_id, target_id, candidate=candidate)

	@property
	def wire_type(self) -> str:
		return _WIRE_TYPES[self.kind]


@dataclass(frozen=True)
class ParticipantRecord:
	participant_id: str
	display_name: Optional[str] = None
	email: Optional[str] = None
	extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

	@classmethod
	def from_payload(cls, payload: Any) -> "ParticipantRecord":
		"""Parse the relay's user object.

		Accepts ``{"userId": ...}``, ``{"id": ...}``, a nested ``{"user": {...}}``
		or a bare id string.
		"""
		if isinstance(payload, str) and payload:
			return cls(participant_id=payload)
		if not isinstance(payload, dict):
			raise ProtocolError(f"invalid participant payload: {payload!r}")

		nested = payload.get("user") if isinstance(payload.get("user"), dict) else {}
		pid = payload.get("userId") or payload.get("id") or nested.get("userId") or nested.get("id")
		if not pid:
			raise ProtocolError("participant payload without id")
		name = (
			payload.get("displayName")
			or payload.get("nickname")
			or nested.get("displayName")
			or nested.get("nickname")
			or payload.get("name")
		)
		email = payload.get("email") or nested.get("email")
		return cls(
			participant_id=str(pid),
			display_name=str(name) if name else None,
			email=str(email) if email else None,
			extra=dict(payload),
		)

	@property
	def label(self) -> str:
		name = self.display_name or self.email
		return f"{name} ({self.participant_id})" if name else self.participant_id


def make_join(room: str, user_id: str, name: Optional[str] = None) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"type": JOIN_ROOM, "roomId": room, "userId": user_id}
	if name:
		msg["name"] = name
	return msg


def make_leave(room: str) -> Dict[str, Any]:
	return {"type": LEAVE_ROOM, "roomId": room}


def make_pong(ts: Optional[int] = None) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"type": PONG}
	if ts is not None:
		msg["ts"] = ts
	return msg


def encode_envelope(envelope: SignalingEnvelope) -> Dict[str, Any]:
	msg: Dict[str, Any] = {
		"type": envelope.wire_type,
		"roomId": envelope.room_id,
		"senderId": envelope.sender_id,
		"targetUserId": envelope.target_id,
	}
	if envelope.kind is EnvelopeKind.ICE_CANDIDATE:
		msg["candidate"] = envelope.candidate
	else:
		msg["sdp"] = {"type": envelope.kind.value, "sdp": envelope.sdp}
	return msg


def _sdp_text(value: Any) -> str:
	if isinstance(value, str):
		return value
	if isinstance(value, dict) and isinstance(value.get("sdp"), str):
		return value["sdp"]
	raise ProtocolError("missing sdp")


def is_envelope_type(mtype: str) -> bool:
	return mtype in _KIND_BY_WIRE


def decode_envelope(msg: Dict[str, Any], room_id: str, local_id: str) -> SignalingEnvelope:
	"""Build an inbound envelope from a relay message addressed to us."""
	kind = _KIND_BY_WIRE.get(str(msg.get("type", "")))
	if kind is None:
		raise ProtocolError(f"not a signaling message: {msg.get('type')!r}")
	sender = msg.get("senderId")
	if not isinstance(sender, str) or not sender:
		raise ProtocolError("missing senderId")
	room = str(msg.get("roomId") or room_id)
	target = str(msg.get("targetUserId") or local_id)

	if kind is EnvelopeKind.ICE_CANDIDATE:
		candidate = msg.get("candidate")
		if candidate is not None and not isinstance(candidate, dict):
			raise ProtocolError("candidate must be an object")
		return SignalingEnvelope.ice_candidate(room, sender, target, candidate or {})
	return SignalingEnvelope(kind, room, sender, target, sdp=_sdp_text(msg.get("sdp")))


def parse_roster(msg: Dict[str, Any]) -> List[ParticipantRecord]:
	users = msg.get("users", msg.get("payload"))
	if not isinstance(users, list):
		raise ProtocolError("usersOnline without user list")
	return [ParticipantRecord.from_payload(u) for u in users]


def parse_participant(msg: Dict[str, Any]) -> ParticipantRecord:
	return ParticipantRecord.from_payload(msg)
