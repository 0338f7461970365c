"""Connection registry (full mesh, one session per remote participant)."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Set

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay
from pyee.asyncio import AsyncIOEventEmitter

from .connection import ConnectionFactory, aiortc_connection_factory
from .session import PeerSession
from .tracks import TrackBundle


logger = logging.getLogger(__name__)


class ConnectionRegistry(AsyncIOEventEmitter):
    """Owns the participant -> session map.

    Events:

    - ``localcandidate(participant_id, candidate)``
    - ``remotestream(stream, participant_id)``
    - ``connectionstatechange(participant_id, state)``
    - ``sessionclosed(participant_id)``
    """

    def __init__(self, connection_factory: Optional[ConnectionFactory] = None):
        super().__init__()
        self._connection_factory = connection_factory or aiortc_connection_factory()
        self._sessions: Dict[str, PeerSession] = {}
        self._local_bundle: Optional[TrackBundle] = None
        # One local source feeds many connections through relay subscriptions.
        self._relay = MediaRelay()
        self._closing: Set[asyncio.Task[None]] = set()

    @property
    def local_bundle(self) -> Optional[TrackBundle]:
        return self._local_bundle

    def set_local_bundle(self, bundle: Optional[TrackBundle]) -> None:
        self._local_bundle = bundle

    def session(self, participant_id: str) -> Optional[PeerSession]:
        return self._sessions.get(participant_id)

    def participants(self) -> List[str]:
        return list(self._sessions.keys())

    def __len__(self) -> int:
        return len(self._sessions)

    def _attach(self, session: PeerSession, track: MediaStreamTrack) -> None:
        proxy = self._relay.subscribe(track)
        try:
            session.connection.add_track(proxy)
        except Exception:
            proxy.stop()
            raise
        session.outbound[track.kind] = (track, proxy)

    def _replace(self, session: PeerSession, track: MediaStreamTrack) -> bool:
        """Move the sender of `track.kind` onto `track`; False if there is no such sender."""
        proxy = self._relay.subscribe(track)
        try:
            replaced = session.connection.replace_track(proxy)
        except Exception:
            proxy.stop()
            raise
        if not replaced:
            proxy.stop()
            return False
        session.outbound[track.kind] = (track, proxy)
        return True

    @staticmethod
    def _release_outbound(session: PeerSession) -> None:
        for _, proxy in session.outbound.values():
            proxy.stop()
        session.outbound.clear()

    def ensure_session(self, participant_id: str) -> PeerSession:
        existing = self._sessions.get(participant_id)
        if existing is not None:
            return existing

        connection = self._connection_factory(participant_id)
        session = PeerSession(participant_id, connection)

        def on_local_candidate(candidate: dict) -> None:
            if self._sessions.get(participant_id) is session:
                self.emit("localcandidate", participant_id, candidate)

        def on_track(track: MediaStreamTrack) -> None:
            if self._sessions.get(participant_id) is not session:
                track.stop()
                return
            if session.remote_stream.add_track(track):
                logger.info("rtc remote track peer_id=%s kind=%s tracks=%s", participant_id, track.kind, len(session.remote_stream))
            self.emit("remotestream", session.remote_stream, participant_id)

        def on_connection_state(state: str) -> None:
            if self._sessions.get(participant_id) is not session:
                return
            if not session.apply_connection_state(state):
                return
            logger.info("rtc connection state peer_id=%s state=%s", participant_id, session.connection_state.value)
            self.emit("connectionstatechange", participant_id, session.connection_state)
            if session.connection_state.terminal:
                self.discard(participant_id)

        connection.on("icecandidate", on_local_candidate)
        connection.on("track", on_track)
        connection.on("connectionstatechange", on_connection_state)

        bundle = self._local_bundle
        if bundle is not None:
            for track in bundle:
                logger.debug("rtc attach local track peer_id=%s kind=%s", participant_id, track.kind)
                try:
                    self._attach(session, track)
                except Exception:
                    logger.exception("rtc attach failed peer_id=%s kind=%s", participant_id, track.kind)
        else:
            logger.debug("rtc no local bundle for new session peer_id=%s", participant_id)

        self._sessions[participant_id] = session
        logger.info("rtc created session peer_id=%s sessions=%s", participant_id, len(self._sessions))
        return session

    def _detach(self, participant_id: str) -> Optional[PeerSession]:
        session = self._sessions.pop(participant_id, None)
        if session is None:
            return None
        logger.info("rtc closing session peer_id=%s", participant_id)
        session.remote_stream.stop()
        self._release_outbound(session)
        session.mark_closed()
        self.emit("sessionclosed", participant_id)
        return session

    async def _close_connection(self, session: PeerSession) -> None:
        try:
            await session.connection.close()
        except Exception:
            logger.exception("rtc connection close failed peer_id=%s", session.participant_id)
        session.connection.remove_all_listeners()

    def discard(self, participant_id: str) -> None:
        """Remove a session now; the native close finishes in the background."""
        session = self._detach(participant_id)
        if session is None:
            return
        task = asyncio.get_running_loop().create_task(
            self._close_connection(session), name=f"rtc-close-{participant_id}"
        )
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def teardown(self, participant_id: str) -> None:
        session = self._detach(participant_id)
        if session is not None:
            await self._close_connection(session)

    async def teardown_all(self) -> None:
        for participant_id in list(self._sessions.keys()):
            await self.teardown(participant_id)
        await self.wait_closed()

    async def wait_closed(self) -> None:
        while self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    def reconcile_local_tracks(self, bundle: TrackBundle) -> Set[str]:
        """Push `bundle` into every session; returns ids that gained a sender."""
        self._local_bundle = bundle
        needs_offer: Set[str] = set()
        for participant_id, session in list(self._sessions.items()):
            for track in bundle:
                current = session.outbound.get(track.kind)
                if current is not None and current[0] is track:
                    continue
                try:
                    if self._replace(session, track):
                        logger.info("rtc replaced track peer_id=%s kind=%s", participant_id, track.kind)
                    else:
                        self._attach(session, track)
                        needs_offer.add(participant_id)
                        logger.info("rtc added track peer_id=%s kind=%s", participant_id, track.kind)
                except Exception:
                    logger.exception("rtc track update failed peer_id=%s kind=%s", participant_id, track.kind)
        return needs_offer
