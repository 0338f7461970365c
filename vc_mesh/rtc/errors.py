"""Exception types raised by the rtc layer."""

from __future__ import annotations

from typing import Optional


class MediaAcquisitionError(Exception):
    """Local capture devices could not be opened."""


class DeviceBusyError(MediaAcquisitionError):
    """The device exists but another process holds it."""

    def __init__(self, kind: str, message: Optional[str] = None):
        super().__init__(message or f"{kind} device busy")
        self.kind = kind


class NegotiationError(Exception):
    """An offer/answer step failed for one peer."""

    def __init__(self, participant_id: str, message: str):
        super().__init__(f"{participant_id}: {message}")
        self.participant_id = participant_id


class SignalingStateError(NegotiationError):
    """A description was applied in a signaling state that does not accept it."""

    def __init__(self, participant_id: str, state: str, event: str):
        super().__init__(participant_id, f"cannot {event} in signaling state {state}")
        self.state = state
        self.event = event
