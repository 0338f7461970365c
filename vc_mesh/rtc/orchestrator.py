"""Session orchestrator: the public face of the rtc layer.

Construct one per room; nothing here is process global.

Events (subscribe with ``orchestrator.on(name, handler)``):

- ``remotestream(stream, participant_id)``
- ``roster(participants)``
- ``participantjoined(record)``
- ``participantleft(record)``
- ``peerstatechange(participant_id, state)``
- ``mediastatechange(participant_id, media_state)`` for the local participant
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from aiortc.rtcconfiguration import RTCConfiguration
from pyee.asyncio import AsyncIOEventEmitter

from ..net.protocol import ParticipantRecord
from ..net.transport import SignalingTransport
from .connection import ConnectionFactory, aiortc_connection_factory
from .errors import NegotiationError
from .media import MediaCapture
from .membership import MembershipCoordinator
from .negotiation import NegotiationCoordinator
from .registry import ConnectionRegistry
from .session import ConnectionState
from .tracks import RemoteStream, TrackBundle, TrackKind


logger = logging.getLogger(__name__)


class SessionOrchestrator(AsyncIOEventEmitter):
    def __init__(
        self,
        media: Optional[MediaCapture] = None,
        rtc_config: Optional[RTCConfiguration] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        super().__init__()
        self.media = media or MediaCapture()
        self._connection_factory = connection_factory or aiortc_connection_factory(rtc_config)

        self.room_id: Optional[str] = None
        self.local_id: Optional[str] = None
        self.registry: Optional[ConnectionRegistry] = None
        self.negotiation: Optional[NegotiationCoordinator] = None
        self.membership: Optional[MembershipCoordinator] = None

    @property
    def initialized(self) -> bool:
        return self.registry is not None

    async def initialize(self, room_id: str, local_id: str, transport: SignalingTransport) -> None:
        if self.initialized:
            logger.info("orchestrator already initialized room=%s", self.room_id)
            return

        logger.info("orchestrator initialize room=%s local_id=%s connected=%s", room_id, local_id, transport.is_connected)
        self.room_id = room_id
        self.local_id = local_id

        registry = ConnectionRegistry(self._connection_factory)
        registry.set_local_bundle(self.media.current())
        registry.on("remotestream", self._on_remote_stream)
        registry.on("connectionstatechange", self._on_peer_state)

        negotiation = NegotiationCoordinator(room_id, local_id, registry, transport)
        membership = MembershipCoordinator(local_id, negotiation, transport)
        membership.on("roster", self._on_roster)
        membership.on("participantjoined", self._on_participant_joined)
        membership.on("participantleft", self._on_participant_left)

        self.registry = registry
        self.negotiation = negotiation
        self.membership = membership
        negotiation.start()
        membership.start()

    # Observers

    def _on_remote_stream(self, stream: RemoteStream, participant_id: str) -> None:
        self.emit("remotestream", stream, participant_id)

    def _on_peer_state(self, participant_id: str, state: ConnectionState) -> None:
        self.emit("peerstatechange", participant_id, state)

    def _on_roster(self, participants: List[ParticipantRecord]) -> None:
        self.emit("roster", participants)

    def _on_participant_joined(self, record: ParticipantRecord) -> None:
        self.emit("participantjoined", record)

    def _on_participant_left(self, record: ParticipantRecord) -> None:
        if self.registry is not None:
            self.registry.discard(record.participant_id)
        self.emit("participantleft", record)

    # Local media

    async def _offer_each(self, participant_ids: Iterable[str]) -> None:
        assert self.negotiation is not None
        for participant_id in participant_ids:
            try:
                await self.negotiation.initiate_offer(participant_id)
            except NegotiationError:
                logger.exception("orchestrator renegotiation failed participant_id=%s", participant_id)

    async def start_local_media(self, audio_wanted: bool = True, video_wanted: bool = False) -> TrackBundle:
        logger.info("orchestrator start local media audio=%s video=%s", audio_wanted, video_wanted)
        bundle = await self.media.acquire(audio_wanted, video_wanted)

        if self.registry is not None:
            existing = self.registry.participants()
            if existing:
                # Sessions created from offers that arrived before local media was ready.
                logger.info("orchestrator updating %s existing sessions with local media", len(existing))
                self.registry.reconcile_local_tracks(bundle)
                await self._offer_each(existing)
            else:
                self.registry.set_local_bundle(bundle)

        if self.membership is not None:
            self.membership.mark_ready()
        self._emit_media_state()
        return bundle

    def stop_local_media(self) -> None:
        logger.info("orchestrator stop local media")
        self.media.release()
        if self.registry is not None:
            self.registry.set_local_bundle(None)
        self._emit_media_state()

    def toggle_audio(self, enabled: bool) -> None:
        self.media.set_track_enabled(TrackKind.AUDIO, enabled)
        self._emit_media_state()

    def toggle_video(self, enabled: bool) -> None:
        self.media.set_track_enabled(TrackKind.VIDEO, enabled)
        self._emit_media_state()

    async def update_local_media(self, bundle: TrackBundle) -> None:
        logger.info("orchestrator update local media audio=%s video=%s", bundle.audio is not None, bundle.video is not None)
        needs_offer: List[str] = []
        if self.registry is not None:
            # Senders move to the new tracks before the old ones are stopped.
            needs_offer = sorted(self.registry.reconcile_local_tracks(bundle))
        self.media.replace(bundle)
        if needs_offer:
            await self._offer_each(needs_offer)
        self._emit_media_state()

    def local_bundle(self) -> Optional[TrackBundle]:
        return self.media.current()

    def _emit_media_state(self) -> None:
        self.emit("mediastatechange", self.local_id, self.media.media_state())

    # Peers

    async def send_offer_to(self, participant_id: str) -> None:
        if self.negotiation is None:
            raise NegotiationError(participant_id, "orchestrator not initialized")
        await self.negotiation.initiate_offer(participant_id)

    def get_active_peers(self) -> List[str]:
        if self.registry is None:
            return []
        return self.registry.participants()

    async def settle(self) -> None:
        """Wait until queued membership and signaling work has run."""
        while True:
            if self.membership is not None:
                await self.membership.join()
            if self.negotiation is not None:
                await self.negotiation.join()
            if self.registry is not None:
                await self.registry.wait_closed()
            busy = (self.membership is not None and not self.membership.idle) or (
                self.negotiation is not None and not self.negotiation.idle
            )
            if not busy:
                return

    async def cleanup(self) -> None:
        logger.info("orchestrator cleanup room=%s", self.room_id)
        membership, negotiation, registry = self.membership, self.negotiation, self.registry
        self.membership = None
        self.negotiation = None
        self.registry = None

        if membership is not None:
            await membership.stop()
            membership.remove_all_listeners()
        if negotiation is not None:
            await negotiation.stop()
        if registry is not None:
            await registry.teardown_all()
            registry.remove_all_listeners()
        self.media.release()

        self.room_id = None
        self.local_id = None
