"""
Persona 仓储
Persona Repository
"""

from abc import ABC, abstractmethod
import asyncio
import json
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from boardroom.config import settings
from boardroom.core.exceptions import PersistenceError
from boardroom.models.discussion import Persona

logger = structlog.get_logger()


class PersonaRepository(ABC):
    """Persona 仓储接口"""

    @abstractmethod
    async def save(self, persona: Persona) -> Persona:
        pass

    @abstractmethod
    async def get(self, persona_id: str) -> Optional[Persona]:
        pass

    @abstractmethod
    async def list(self) -> List[Persona]:
        pass


class InMemoryPersonaRepository(PersonaRepository):
    """基于内存的 Persona 仓储"""

    def __init__(self):
        self._personas: Dict[str, Persona] = {}

    async def save(self, persona: Persona) -> Persona:
        self._personas[persona.id] = persona
        return persona

    async def get(self, persona_id: str) -> Optional[Persona]:
        return self._personas.get(persona_id)

    async def list(self) -> List[Persona]:
        return list(self._personas.values())


class FilePersonaRepository(PersonaRepository):
    """基于本地 JSON 文件的 Persona 仓储"""

    def __init__(self, base_dir: Optional[str] = None):
        root = Path(base_dir or settings.LOCAL_STORE_DIR)
        root.mkdir(parents=True, exist_ok=True)
        self._file = root / "personas.json"
        self._lock = asyncio.Lock()
        self._personas: Dict[str, Persona] = {}
        self._load_from_disk()

    async def save(self, persona: Persona) -> Persona:
        async with self._lock:
            previous = self._personas.get(persona.id)
            self._personas[persona.id] = persona
            try:
                self._persist_to_disk()
            except PersistenceError:
                if previous is None:
                    self._personas.pop(persona.id, None)
                else:
                    self._personas[persona.id] = previous
                raise
            return persona

    async def get(self, persona_id: str) -> Optional[Persona]:
        async with self._lock:
            return self._personas.get(persona_id)

    async def list(self) -> List[Persona]:
        async with self._lock:
            return list(self._personas.values())

    def _load_from_disk(self) -> None:
        if not self._file.exists():
            return
        try:
            payload = json.loads(self._file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("persona_store_load_failed", file=str(self._file), error=str(exc))
            return
        rows = payload.get("personas", []) if isinstance(payload, dict) else []
        for row in rows:
            try:
                item = Persona.model_validate(row)
            except ValueError:
                continue
            self._personas[item.id] = item

    def _persist_to_disk(self) -> None:
        payload = {"personas": [item.model_dump(mode="json") for item in self._personas.values()]}
        tmp = self._file.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp.replace(self._file)
        except OSError as exc:
            raise PersistenceError(f"Could not write persona store: {exc}") from exc
