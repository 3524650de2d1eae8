"""Engine-level exceptions."""
from __future__ import annotations


class ContinuumError(Exception):
    """Base class for continuation engine failures."""


class ChainNotFoundError(ContinuumError):
    """Requested session or root is not present in the session index."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionIndexUnavailableError(ContinuumError):
    """The session index itself cannot be read; callers get a hard failure."""
