"""Session tracking."""

from keygate_core.sessions.tracker import SessionTracker

__all__ = ["SessionTracker"]
