"""Full-mesh audio/video sessions over aiortc with perfect negotiation."""

from .rtc.errors import DeviceBusyError, MediaAcquisitionError, NegotiationError, SignalingStateError
from .rtc.media import MediaCapture
from .rtc.orchestrator import SessionOrchestrator
from .rtc.tracks import LocalTrack, RemoteStream, TrackBundle, TrackKind

__all__ = [
    "DeviceBusyError",
    "LocalTrack",
    "MediaAcquisitionError",
    "MediaCapture",
    "NegotiationError",
    "RemoteStream",
    "SessionOrchestrator",
    "SignalingStateError",
    "TrackBundle",
    "TrackKind",
]
