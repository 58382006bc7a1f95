"""
业务服务层
Business Services

Use lazy export to avoid importing the language-model stack at package import time.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "DiscussionService",
    "discussion_service",
    "PersonaService",
    "persona_service",
    "TurnSequencer",
    "ContributionGenerator",
    "CompletionHandler",
]


def __getattr__(name: str) -> Any:
    service_module_map = {
        "DiscussionService": "boardroom.services.discussion_service",
        "discussion_service": "boardroom.services.discussion_service",
        "PersonaService": "boardroom.services.persona_service",
        "persona_service": "boardroom.services.persona_service",
        "TurnSequencer": "boardroom.services.turn_sequencer",
        "ContributionGenerator": "boardroom.services.contribution_generator",
        "CompletionHandler": "boardroom.services.completion_handler",
    }
    module_path = service_module_map.get(name)
    if not module_path:
        raise AttributeError(f"module 'boardroom.services' has no attribute {name!r}")
    mod = import_module(module_path)
    return getattr(mod, name)
