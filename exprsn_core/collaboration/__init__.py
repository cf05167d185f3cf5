"""
Collaboration sessions: presence, change log and locks.
"""

from exprsn_core.collaboration.manager import (
    ChangeRecord,
    CollaborationManager,
    CollaborationSession,
    Participant,
    ResourceLock,
)

__all__ = [
    "ChangeRecord",
    "CollaborationManager",
    "CollaborationSession",
    "Participant",
    "ResourceLock",
]
