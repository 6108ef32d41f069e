"""
Error taxonomy for the session service.

Local, recoverable conditions (buffer overflow, adapter failures) and
session-fatal conditions (transport loss, bad configuration) share one root
so callers can tell service errors apart from programming errors.

Adapter failures never escape the runtime: worker tasks convert them into
*Failed events and the reducer turns those into a client-visible error.
"""

from __future__ import annotations


class VoiceAgentError(Exception):
    """Base class for all service errors."""


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------

class BufferOverflow(VoiceAgentError):
    """
    Raised by AudioFrameBuffer.push when a frame would exceed a cap.

    Local and non-fatal: the gateway recovers with drop-oldest.
    """

    def __init__(
        self,
        *,
        backlog_frames: int,
        backlog_bytes: int,
        max_frames: int,
        max_bytes: int,
    ) -> None:
        super().__init__(
            f"frame buffer full ({backlog_frames}/{max_frames} frames, "
            f"{backlog_bytes}/{max_bytes} bytes)"
        )
        self.backlog_frames = backlog_frames
        self.backlog_bytes = backlog_bytes
        self.max_frames = max_frames
        self.max_bytes = max_bytes


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------

class WorkerFailure(VoiceAgentError):
    """Failure reported by an external engine adapter."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TranscriptionFailure(WorkerFailure):
    """The transcription engine or its network failed."""


class GenerationFailure(WorkerFailure):
    """The language model failed before or after the first chunk."""


class SynthesisFailure(WorkerFailure):
    """The speech synthesis engine failed."""


# ---------------------------------------------------------------------------
# Session-fatal
# ---------------------------------------------------------------------------

class TransportDisconnect(VoiceAgentError):
    """The client connection dropped or could no longer be written to."""


class ConfigurationError(VoiceAgentError):
    """Invalid deployment configuration; fatal at startup."""
