"""
Error taxonomy for the voice session core.

Errors raised from caller-initiated operations (join, play) reach the caller
after the registry has rolled back any partial state. Errors that happen after
a stream has started are never raised to callers; they travel as events to the
reconciler instead.
"""

from typing import Optional


class VoiceSessionError(Exception):
    """Base class for all voice session failures."""

    def __init__(self, message: str, *, tenant_id: Optional[str] = None):
        super().__init__(message)
        self.tenant_id = tenant_id


class ConnectionTimeout(VoiceSessionError):
    """The transport did not become ready within the join window."""


class ConnectionAborted(VoiceSessionError):
    """The transport was destroyed while a caller was waiting on it."""


class PermissionDenied(VoiceSessionError):
    """The target channel does not grant the permissions needed to speak."""


class InvalidChannel(VoiceSessionError):
    """The target channel does not exist or is not voice-capable."""


class SubprocessSpawnFailure(VoiceSessionError):
    """The external transcoder could not be started."""


class EngineFatalError(VoiceSessionError):
    """The playback engine failed after a stream had started."""


class NoActiveSession(VoiceSessionError):
    """A playback operation needs a joined session and there is none."""


class InvalidOperation(VoiceSessionError):
    """A state transition was requested that the state machine does not allow."""
