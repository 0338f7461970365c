import unittest

from aiortc import VideoStreamTrack

from tests.fakes import FakeDevices, FakeNetwork, FakeRelay, pump
from vc_mesh.net.protocol import SignalingEnvelope
from vc_mesh.rtc.media import MediaCapture, MediaState
from vc_mesh.rtc.orchestrator import SessionOrchestrator
from vc_mesh.rtc.session import ConnectionState, SignalingState
from vc_mesh.rtc.tracks import LocalTrack, TrackBundle, TrackKind


class Participant:
    def __init__(self, relay, network, user_id, devices=None):
        self.user_id = user_id
        self.relay = relay
        self.transport = relay.transport(user_id)
        self.orchestrator = SessionOrchestrator(
            media=MediaCapture(devices=devices or FakeDevices()),
            connection_factory=network.factory(user_id),
        )
        self.events = []
        for name in ("remotestream", "participantjoined", "participantleft", "peerstatechange", "mediastatechange"):
            self.orchestrator.on(name, self._recorder(name))

    def _recorder(self, name):
        def record(*args):
            self.events.append((name,) + args)

        return record

    def of(self, name):
        return [e[1:] for e in self.events if e[0] == name]

    async def enter(self, video=False):
        await self.orchestrator.initialize(self.relay.room_id, self.user_id, self.transport)
        await self.orchestrator.start_local_media(audio_wanted=True, video_wanted=video)
        self.relay.join(self.transport)

    async def settle(self):
        await self.orchestrator.settle()


class TestSessionOrchestrator(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.relay = FakeRelay("room-1")
        self.network = FakeNetwork()
        self.p1 = Participant(self.relay, self.network, "p1")
        self.p2 = Participant(self.relay, self.network, "p2")

    async def asyncTearDown(self):
        await self.p1.orchestrator.cleanup()
        await self.p2.orchestrator.cleanup()

    async def test_two_participants_connect_and_part(self):
        await self.p1.enter()
        await pump(self.relay, self.p1)
        await self.p2.enter()
        await pump(self.relay, self.p1, self.p2)

        assert self.p1.orchestrator.get_active_peers() == ["p2"]
        assert self.p2.orchestrator.get_active_peers() == ["p1"]
        assert ("p2", ConnectionState.CONNECTED) in self.p1.of("peerstatechange")
        assert ("p1", ConnectionState.CONNECTED) in self.p2.of("peerstatechange")

        stream, pid = self.p1.of("remotestream")[-1]
        assert pid == "p2"
        assert [t.kind for t in stream.tracks()] == ["audio"]
        assert [r.participant_id for (r,) in self.p1.of("participantjoined")] == ["p2"]

        self.relay.leave(self.p2.transport)
        await pump(self.relay, self.p1)

        assert self.p1.orchestrator.get_active_peers() == []
        assert not stream.active
        assert [r.participant_id for (r,) in self.p1.of("participantleft")] == ["p2"]

    async def test_three_way_mesh(self):
        p3 = Participant(self.relay, self.network, "p3")
        try:
            for p in (self.p1, self.p2, p3):
                await p.enter()
                await pump(self.relay, self.p1, self.p2, p3)

            assert sorted(self.p1.orchestrator.get_active_peers()) == ["p2", "p3"]
            assert sorted(self.p2.orchestrator.get_active_peers()) == ["p1", "p3"]
            assert sorted(p3.orchestrator.get_active_peers()) == ["p1", "p2"]
            for owner in ("p1", "p2", "p3"):
                for peer in ("p1", "p2", "p3"):
                    if owner != peer:
                        assert self.network.connection(owner, peer).connection_state == "connected"
        finally:
            await p3.orchestrator.cleanup()

    async def test_offer_before_local_media_is_answered_then_renegotiated(self):
        await self.p1.orchestrator.initialize(self.relay.room_id, "p1", self.p1.transport)
        self.relay.join(self.p1.transport)
        await self.p2.enter()
        await pump(self.relay, self.p1, self.p2)

        p1_conn = self.network.connection("p1", "p2")
        assert p1_conn.senders() == []
        assert not self.p1.orchestrator.membership.ready

        await self.p1.orchestrator.start_local_media()
        await pump(self.relay, self.p1, self.p2)

        assert [s.track.kind for s in p1_conn.senders()] == ["audio"]
        p2_stream = self.p2.orchestrator.registry.session("p1").remote_stream
        assert [t.kind for t in p2_stream.tracks()] == ["audio"]
        assert self.p1.orchestrator.registry.session("p2").signaling_state is SignalingState.STABLE

    async def test_adding_camera_renegotiates(self):
        await self.p1.enter()
        await self.p2.enter()
        await pump(self.relay, self.p1, self.p2)

        current = self.p1.orchestrator.local_bundle()
        await self.p1.orchestrator.update_local_media(
            TrackBundle(audio=current.audio, video=LocalTrack(VideoStreamTrack()))
        )
        await pump(self.relay, self.p1, self.p2)

        p2_stream = self.p2.orchestrator.registry.session("p1").remote_stream
        assert sorted(t.kind for t in p2_stream.tracks()) == ["audio", "video"]
        assert current.audio.readyState == "live"
        assert self.p1.of("mediastatechange")[-1] == ("p1", MediaState(mic_enabled=True, camera_enabled=True))

    async def test_toggle_reports_media_state(self):
        await self.p1.enter(video=True)

        self.p1.orchestrator.toggle_audio(False)
        self.p1.orchestrator.toggle_video(False)

        assert self.p1.of("mediastatechange")[-1] == ("p1", MediaState(mic_enabled=False, camera_enabled=False))
        assert not self.p1.orchestrator.media.is_enabled(TrackKind.AUDIO)

    async def test_not_ready_skips_roster_offers(self):
        await self.p2.enter()
        await self.p1.orchestrator.initialize(self.relay.room_id, "p1", self.p1.transport)
        self.relay.join(self.p1.transport)
        await pump(self.relay, self.p1, self.p2)

        # p2 offered on the join notice; p1 only answered.
        assert [e.kind.value for e in self.p1.transport.sent] == ["answer"]

    async def test_initialize_twice_keeps_components(self):
        await self.p1.orchestrator.initialize("room-1", "p1", self.p1.transport)
        registry = self.p1.orchestrator.registry
        await self.p1.orchestrator.initialize("room-2", "p1", self.p1.transport)

        assert self.p1.orchestrator.registry is registry
        assert self.p1.orchestrator.room_id == "room-1"

    async def test_cleanup_before_initialize(self):
        orchestrator = SessionOrchestrator(media=MediaCapture(devices=FakeDevices()))
        await orchestrator.cleanup()
        await orchestrator.cleanup()
        assert orchestrator.get_active_peers() == []

    async def test_cleanup_closes_everything_and_stops_listening(self):
        await self.p1.enter()
        await self.p2.enter()
        await pump(self.relay, self.p1, self.p2)
        bundle = self.p1.orchestrator.local_bundle()

        await self.p1.orchestrator.cleanup()

        assert self.network.connection("p1", "p2").close_calls == 1
        assert bundle.audio.readyState == "ended"
        assert not self.p1.orchestrator.initialized

        self.p1.transport.emit("envelope", SignalingEnvelope.offer("room-1", "p2", "p1", "v=0 offer kinds=audio"))
        assert self.p1.orchestrator.get_active_peers() == []
