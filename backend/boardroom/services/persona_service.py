"""
Persona 服务
Persona Service
"""

import uuid
from typing import List, Optional

import structlog

from boardroom.config import settings
from boardroom.models.discussion import Persona, PersonaCreate
from boardroom.repositories.persona_repository import (
    FilePersonaRepository,
    InMemoryPersonaRepository,
    PersonaRepository,
)

logger = structlog.get_logger()


class PersonaService:
    """Persona 注册表；讨论引擎只读"""

    def __init__(self, repository: Optional[PersonaRepository] = None):
        self._repository = repository or (
            FilePersonaRepository()
            if settings.LOCAL_STORE_BACKEND == "file"
            else InMemoryPersonaRepository()
        )

    @property
    def repository(self) -> PersonaRepository:
        return self._repository

    async def create_persona(self, data: PersonaCreate) -> Persona:
        persona = Persona(
            id=f"per_{uuid.uuid4().hex[:8]}",
            name=data.name.strip(),
            system_prompt=data.system_prompt,
            ai_model_config=data.ai_model_config,
            organization_id=data.organization_id,
        )
        await self._repository.save(persona)
        logger.info(
            "persona_created",
            persona_id=persona.id,
            provider=persona.ai_model_config.provider,
            model=persona.ai_model_config.model,
        )
        return persona

    async def get_persona(self, persona_id: str) -> Optional[Persona]:
        return await self._repository.get(persona_id)

    async def list_personas(self, organization_id: Optional[str] = None) -> List[Persona]:
        personas = await self._repository.list()
        if organization_id:
            personas = [p for p in personas if p.organization_id == organization_id]
        return sorted(personas, key=lambda p: p.created_at)


persona_service = PersonaService()
