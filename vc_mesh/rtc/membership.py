"""Room membership: who is here, and when to start negotiating with them."""

from __future__ import annotations

import logging
from typing import List

from pyee.asyncio import AsyncIOEventEmitter

from ..net import transport as transport_events
from ..net.protocol import ParticipantRecord
from ..net.transport import SignalingTransport
from .dispatch import SerialDispatcher
from .negotiation import NegotiationCoordinator


logger = logging.getLogger(__name__)


class MembershipCoordinator(AsyncIOEventEmitter):
    """Turns roster/join/leave events into offers once local media is ready.

    Events: ``roster(participants)``, ``participantjoined(record)``,
    ``participantleft(record)``.
    """

    def __init__(self, local_id: str, negotiation: NegotiationCoordinator, transport: SignalingTransport):
        super().__init__()
        self.local_id = local_id
        self._negotiation = negotiation
        self._transport = transport
        self._ready = False
        self._started = False
        # Membership events keep their relative order.
        self._inbox = SerialDispatcher("membership")

    @property
    def ready(self) -> bool:
        return self._ready

    def mark_ready(self) -> None:
        if not self._ready:
            logger.info("membership ready to send offers")
        self._ready = True

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._inbox.reopen()
        self._transport.on(transport_events.ROSTER, self._on_roster)
        self._transport.on(transport_events.PARTICIPANT_JOINED, self._on_joined)
        self._transport.on(transport_events.PARTICIPANT_LEFT, self._on_left)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self._transport.remove_listener(transport_events.ROSTER, self._on_roster)
        self._transport.remove_listener(transport_events.PARTICIPANT_JOINED, self._on_joined)
        self._transport.remove_listener(transport_events.PARTICIPANT_LEFT, self._on_left)
        await self._inbox.close()

    async def join(self) -> None:
        await self._inbox.join()

    @property
    def idle(self) -> bool:
        return self._inbox.idle

    def _on_roster(self, participants: List[ParticipantRecord]) -> None:
        self._inbox.submit("membership", self.on_roster_snapshot, participants)

    def _on_joined(self, record: ParticipantRecord) -> None:
        self._inbox.submit("membership", self.on_participant_joined, record)

    def _on_left(self, record: ParticipantRecord) -> None:
        self._inbox.submit("membership", self.on_participant_left, record)

    async def on_roster_snapshot(self, participants: List[ParticipantRecord]) -> None:
        others = [p for p in participants if p.participant_id != self.local_id]
        logger.info("membership roster participants=%s others=%s", len(participants), len(others))
        self.emit("roster", list(participants))

        if not self._ready:
            logger.info("membership not ready, skipping offers to %s participants", len(others))
            return

        for record in others:
            try:
                await self._negotiation.initiate_offer(record.participant_id)
            except Exception:
                logger.exception("membership offer failed participant_id=%s", record.participant_id)

    async def on_participant_joined(self, record: ParticipantRecord) -> None:
        if record.participant_id == self.local_id:
            logger.debug("membership ignoring self join")
            return
        logger.info("membership participant joined %s", record.label)
        self.emit("participantjoined", record)

        if not self._ready:
            logger.info("membership not ready, skipping offer to participant_id=%s", record.participant_id)
            return
        try:
            await self._negotiation.initiate_offer(record.participant_id)
        except Exception:
            logger.exception("membership offer failed participant_id=%s", record.participant_id)

    async def on_participant_left(self, record: ParticipantRecord) -> None:
        logger.info("membership participant left participant_id=%s", record.participant_id)
        self.emit("participantleft", record)
