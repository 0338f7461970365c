"""Perfect negotiation.

Either side may offer at any time. When both offer at once, the side whose id
sorts first is polite: it rolls back its own offer, answers the other one,
then offers again. The impolite side ignores the colliding offer and waits
for its answer.
Both sides reach the same verdict from ids they already know.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..net import transport as transport_events
from ..net.protocol import EnvelopeKind, SignalingEnvelope
from ..net.transport import SignalingTransport
from .dispatch import SerialDispatcher
from .errors import NegotiationError, SignalingStateError
from .registry import ConnectionRegistry
from .session import PeerSession, SignalingEvent, SignalingState


logger = logging.getLogger(__name__)


def is_polite(local_id: str, remote_id: str) -> bool:
    return local_id < remote_id


def _require(session: PeerSession, event: SignalingEvent) -> None:
    if not session.can_apply(event):
        raise SignalingStateError(session.participant_id, session.signaling_state.value, event.value)


class NegotiationCoordinator:
    def __init__(self, room_id: str, local_id: str, registry: ConnectionRegistry, transport: SignalingTransport):
        self.room_id = room_id
        self.local_id = local_id
        self._registry = registry
        self._transport = transport
        self._inbox = SerialDispatcher("negotiation")
        self._started = False

    def polite_toward(self, participant_id: str) -> bool:
        return is_polite(self.local_id, participant_id)

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._inbox.reopen()
        self._transport.on(transport_events.ENVELOPE, self._on_envelope)
        self._registry.on("localcandidate", self._on_local_candidate)
        logger.debug("negotiation listening room=%s local_id=%s", self.room_id, self.local_id)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self._transport.remove_listener(transport_events.ENVELOPE, self._on_envelope)
        self._registry.remove_listener("localcandidate", self._on_local_candidate)
        await self._inbox.close()
        logger.debug("negotiation stopped room=%s", self.room_id)

    async def join(self) -> None:
        await self._inbox.join()

    @property
    def idle(self) -> bool:
        return self._inbox.idle

    # Inbound, one queue per sender so a peer's envelopes apply in order.

    def _on_envelope(self, envelope: SignalingEnvelope) -> None:
        if envelope.target_id and envelope.target_id != self.local_id:
            logger.debug("negotiation envelope for other target=%s", envelope.target_id)
            return
        self._inbox.submit(envelope.sender_id, self.handle_envelope, envelope)

    def _on_local_candidate(self, participant_id: str, candidate: Dict[str, Any]) -> None:
        self._inbox.submit(participant_id, self.on_local_candidate_discovered, participant_id, candidate)

    async def handle_envelope(self, envelope: SignalingEnvelope) -> None:
        if envelope.kind is EnvelopeKind.OFFER:
            await self.on_offer_received(envelope.sender_id, envelope.sdp or "")
        elif envelope.kind is EnvelopeKind.ANSWER:
            await self.on_answer_received(envelope.sender_id, envelope.sdp or "")
        else:
            await self.on_candidate_received(envelope.sender_id, envelope.candidate)

    def _current(self, participant_id: str, session: PeerSession) -> bool:
        return self._registry.session(participant_id) is session

    async def _transmit(self, envelope: SignalingEnvelope) -> None:
        await self._transport.send(envelope)

    async def initiate_offer(self, participant_id: str) -> None:
        if participant_id == self.local_id:
            raise NegotiationError(participant_id, "cannot negotiate with self")
        session = self._registry.ensure_session(participant_id)
        async with session.lock:
            if not self._current(participant_id, session):
                raise NegotiationError(participant_id, "session closed before offer")
            if not session.can_apply(SignalingEvent.SET_LOCAL_OFFER):
                raise NegotiationError(participant_id, f"cannot offer in state {session.signaling_state.value}")
            logger.info("rtc creating offer to=%s", participant_id)
            try:
                offer = await session.connection.create_offer(receive_audio=True, receive_video=True)
                if not self._current(participant_id, session):
                    raise NegotiationError(participant_id, "session closed during offer")
                sdp = await session.connection.set_local_description("offer", offer)
                session.apply_signaling(SignalingEvent.SET_LOCAL_OFFER)
                if not self._current(participant_id, session):
                    raise NegotiationError(participant_id, "session closed during offer")
                await self._transmit(SignalingEnvelope.offer(self.room_id, self.local_id, participant_id, sdp))
            except NegotiationError:
                raise
            except Exception as e:
                raise NegotiationError(participant_id, f"offer failed: {e}") from e
        logger.info("rtc offer sent to=%s sdp_len=%s", participant_id, len(sdp))

    async def on_offer_received(self, sender_id: str, sdp: str) -> None:
        logger.info("rtc offer received from=%s sdp_len=%s", sender_id, len(sdp))
        session = self._registry.ensure_session(sender_id)
        yielded = False
        async with session.lock:
            try:
                yielded = await self._accept_offer(session, sender_id, sdp)
            except Exception:
                logger.exception("rtc offer handling failed from=%s", sender_id)
        if yielded and self._current(sender_id, session):
            # The rolled back offer never reached agreement; send it again.
            try:
                await self.initiate_offer(sender_id)
            except NegotiationError:
                logger.warning("rtc re-offer after collision failed to=%s", sender_id, exc_info=True)

    async def _accept_offer(self, session: PeerSession, sender_id: str, sdp: str) -> bool:
        """Answer an offer; True if a local offer was rolled back for it."""
        yielded = False
        if not self._current(sender_id, session):
            logger.info("rtc offer dropped, session gone from=%s", sender_id)
            return False

        if session.signaling_state is SignalingState.HAVE_LOCAL_OFFER:
            if not self.polite_toward(sender_id):
                logger.info("rtc offer collision from=%s, impolite side keeps its offer", sender_id)
                return False
            logger.info("rtc offer collision from=%s, polite side rolls back", sender_id)
            await session.connection.rollback()
            session.apply_signaling(SignalingEvent.ROLLBACK)
            yielded = True

        _require(session, SignalingEvent.SET_REMOTE_OFFER)
        await session.connection.set_remote_description("offer", sdp)
        session.apply_signaling(SignalingEvent.SET_REMOTE_OFFER)
        if not self._current(sender_id, session):
            return False
        answer = await session.connection.create_answer()
        local_sdp = await session.connection.set_local_description("answer", answer)
        session.apply_signaling(SignalingEvent.SET_LOCAL_ANSWER)
        if not self._current(sender_id, session):
            return False
        await self._transmit(SignalingEnvelope.answer(self.room_id, self.local_id, sender_id, local_sdp))
        logger.info("rtc answer sent to=%s sdp_len=%s", sender_id, len(local_sdp))
        return yielded

    async def on_answer_received(self, sender_id: str, sdp: str) -> None:
        session = self._registry.session(sender_id)
        if session is None:
            logger.info("rtc answer dropped, no session from=%s", sender_id)
            return
        async with session.lock:
            if not self._current(sender_id, session):
                return
            if session.signaling_state is not SignalingState.HAVE_LOCAL_OFFER:
                logger.info(
                    "rtc stale answer ignored from=%s state=%s",
                    sender_id,
                    session.signaling_state.value,
                )
                return
            logger.info("rtc answer received from=%s sdp_len=%s", sender_id, len(sdp))
            try:
                await session.connection.set_remote_description("answer", sdp)
                session.apply_signaling(SignalingEvent.SET_REMOTE_ANSWER)
            except Exception:
                logger.exception("rtc answer handling failed from=%s", sender_id)

    async def on_candidate_received(self, sender_id: str, candidate: Optional[Dict[str, Any]]) -> None:
        session = self._registry.session(sender_id)
        if session is None:
            # No buffering: candidates that beat the offer are lost.
            logger.warning("rtc ice dropped, no session from=%s", sender_id)
            return
        logger.debug("rtc ice received from=%s has_candidate=%s", sender_id, bool(candidate))
        try:
            await session.connection.add_ice_candidate(candidate)
        except Exception:
            logger.warning("rtc ice rejected from=%s", sender_id, exc_info=True)

    async def on_local_candidate_discovered(self, participant_id: str, candidate: Dict[str, Any]) -> None:
        logger.debug("rtc local ice peer_id=%s", participant_id)
        try:
            await self._transmit(SignalingEnvelope.ice_candidate(self.room_id, self.local_id, participant_id, candidate))
        except Exception:
            logger.warning("rtc local ice send failed peer_id=%s", participant_id, exc_info=True)
