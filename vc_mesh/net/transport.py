"""The relay capability the rtc layer depends on.

A transport is an event emitter scoped to one room. It emits:

- ``envelope(envelope: SignalingEnvelope)`` for offers, answers and candidates
  addressed to the local participant, in the order the relay delivered them;
- ``roster(participants: list[ParticipantRecord])`` once after joining;
- ``participantjoined(record: ParticipantRecord)``;
- ``participantleft(record: ParticipantRecord)`` for every departure synonym;
- ``signalingerror(error: str, payload: dict)``.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol

from .protocol import SignalingEnvelope


ENVELOPE = "envelope"
ROSTER = "roster"
PARTICIPANT_JOINED = "participantjoined"
PARTICIPANT_LEFT = "participantleft"
SIGNALING_ERROR = "signalingerror"


class SignalingTransport(Protocol):
	@property
	def room_id(self) -> Optional[str]: ...

	@property
	def is_connected(self) -> bool: ...

	async def send(self, envelope: SignalingEnvelope) -> None: ...

	def on(self, event: str, f: Callable[..., Any]) -> Any: ...

	def remove_listener(self, event: str, f: Callable[..., Any]) -> None: ...
