"""
仓储层
Repository Layer
"""

from boardroom.repositories.discussion_repository import (
    DiscussionRepository,
    InMemoryDiscussionRepository,
    FileDiscussionRepository,
)
from boardroom.repositories.persona_repository import (
    PersonaRepository,
    InMemoryPersonaRepository,
    FilePersonaRepository,
)

__all__ = [
    "DiscussionRepository",
    "InMemoryDiscussionRepository",
    "FileDiscussionRepository",
    "PersonaRepository",
    "InMemoryPersonaRepository",
    "FilePersonaRepository",
]
