"""Per-peer session and its explicit state machines.

The native connection reports its own states, but the coordinator never reads
them to make decisions. `PeerSession` keeps the signaling and connection state
it owns, moved only through `apply_signaling` and `apply_connection_state`.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Dict, Tuple

from aiortc import MediaStreamTrack

from .connection import PeerConnection
from .errors import SignalingStateError
from .tracks import RemoteStream


logger = logging.getLogger(__name__)


class SignalingState(str, Enum):
    STABLE = "stable"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    CLOSED = "closed"


class SignalingEvent(str, Enum):
    SET_LOCAL_OFFER = "set-local-offer"
    SET_LOCAL_ANSWER = "set-local-answer"
    SET_REMOTE_OFFER = "set-remote-offer"
    SET_REMOTE_ANSWER = "set-remote-answer"
    ROLLBACK = "rollback"
    CLOSE = "close"


class ConnectionState(str, Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def terminal(self) -> bool:
        return self in (ConnectionState.FAILED, ConnectionState.CLOSED)


_S = SignalingState
_E = SignalingEvent

SIGNALING_TRANSITIONS: Dict[Tuple[SignalingState, SignalingEvent], SignalingState] = {
    (_S.STABLE, _E.SET_LOCAL_OFFER): _S.HAVE_LOCAL_OFFER,
    (_S.HAVE_LOCAL_OFFER, _E.SET_LOCAL_OFFER): _S.HAVE_LOCAL_OFFER,
    (_S.STABLE, _E.SET_REMOTE_OFFER): _S.HAVE_REMOTE_OFFER,
    (_S.HAVE_REMOTE_OFFER, _E.SET_REMOTE_OFFER): _S.HAVE_REMOTE_OFFER,
    (_S.HAVE_REMOTE_OFFER, _E.SET_LOCAL_ANSWER): _S.STABLE,
    (_S.HAVE_LOCAL_OFFER, _E.SET_REMOTE_ANSWER): _S.STABLE,
    (_S.HAVE_LOCAL_OFFER, _E.ROLLBACK): _S.STABLE,
    (_S.HAVE_REMOTE_OFFER, _E.ROLLBACK): _S.STABLE,
}


class PeerSession:
    """Everything held for one remote participant."""

    def __init__(self, participant_id: str, connection: PeerConnection):
        self.participant_id = participant_id
        self.connection = connection
        self.remote_stream = RemoteStream(participant_id)
        # kind -> (local source, relay subscription sent on this connection)
        self.outbound: Dict[str, Tuple[MediaStreamTrack, MediaStreamTrack]] = {}
        self.lock = asyncio.Lock()
        self._signaling_state = SignalingState.STABLE
        self._connection_state = ConnectionState.NEW

    @property
    def signaling_state(self) -> SignalingState:
        return self._signaling_state

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    @property
    def closed(self) -> bool:
        return self._signaling_state is SignalingState.CLOSED

    def can_apply(self, event: SignalingEvent) -> bool:
        if event is SignalingEvent.CLOSE:
            return True
        return (self._signaling_state, event) in SIGNALING_TRANSITIONS

    def apply_signaling(self, event: SignalingEvent) -> SignalingState:
        event = SignalingEvent(event)
        if event is SignalingEvent.CLOSE:
            new_state = SignalingState.CLOSED
        else:
            try:
                new_state = SIGNALING_TRANSITIONS[(self._signaling_state, event)]
            except KeyError:
                raise SignalingStateError(self.participant_id, self._signaling_state.value, event.value) from None
        if new_state is not self._signaling_state:
            logger.debug(
                "session signaling peer_id=%s %s -> %s (%s)",
                self.participant_id,
                self._signaling_state.value,
                new_state.value,
                event.value,
            )
        self._signaling_state = new_state
        return new_state

    def apply_connection_state(self, value: str) -> bool:
        """Feed a native connection-state notification; True if it changed."""
        try:
            state = ConnectionState(value)
        except ValueError:
            logger.debug("session ignoring unknown connection state peer_id=%s state=%s", self.participant_id, value)
            return False
        if self._connection_state is ConnectionState.CLOSED or state is self._connection_state:
            return False
        logger.debug(
            "session connection peer_id=%s %s -> %s",
            self.participant_id,
            self._connection_state.value,
            state.value,
        )
        self._connection_state = state
        return True

    def mark_closed(self) -> None:
        self.apply_signaling(SignalingEvent.CLOSE)
        self._connection_state = ConnectionState.CLOSED

    def __repr__(self) -> str:
        return (
            f"PeerSession({self.participant_id!r}, signaling={self._signaling_state.value}, "
            f"connection={self._connection_state.value})"
        )
