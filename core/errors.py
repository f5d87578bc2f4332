"""
Error taxonomy for the voice relay.

Configuration errors are fatal at startup; protocol and collaborator errors are
reported to the originating client and leave the session usable.
"""
from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors."""


class ConfigurationError(RelayError):
    """Required provider configuration missing or invalid. Raised at construction."""


class ProtocolError(RelayError):
    """Client sent a malformed command or one the current state cannot accept."""


class SessionNotFoundError(ProtocolError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class CollaboratorError(RelayError):
    """An STT/LLM/TTS call failed; `stage` names the pipeline stage that aborted."""

    def __init__(self, stage: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{stage} failed: {message}")
        self.stage = stage
        self.message = message
        self.cause = cause
