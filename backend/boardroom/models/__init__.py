"""
数据模型
Data Models
"""

from boardroom.models.discussion import (
    USER_SPEAKER_KEY,
    Discussion,
    DiscussionCreate,
    DiscussionSnapshot,
    DiscussionStatus,
    ModelConfig,
    Participant,
    ParticipantRole,
    ParticipantCreate,
    ParticipantView,
    Persona,
    PersonaCreate,
    Turn,
    TurnCursor,
    TurnKind,
)

__all__ = [
    "USER_SPEAKER_KEY",
    "Discussion",
    "DiscussionCreate",
    "DiscussionSnapshot",
    "DiscussionStatus",
    "ModelConfig",
    "Participant",
    "ParticipantRole",
    "ParticipantCreate",
    "ParticipantView",
    "Persona",
    "PersonaCreate",
    "Turn",
    "TurnCursor",
    "TurnKind",
]
