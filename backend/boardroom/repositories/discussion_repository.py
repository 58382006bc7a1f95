"""
讨论仓储
Discussion Repository

Discussions, participants, the turn cursor and the append-only turn log.
"""

from abc import ABC, abstractmethod
import asyncio
from datetime import datetime
import json
from pathlib import Path
from typing import Awaitable, Dict, List, Optional, TypeVar

import structlog

from boardroom.config import settings
from boardroom.core.exceptions import ConcurrencyConflictError, PersistenceError
from boardroom.models.discussion import Discussion, Participant, Turn, TurnCursor

logger = structlog.get_logger()

T = TypeVar("T")


class DiscussionRepository(ABC):
    """讨论仓储接口"""

    @abstractmethod
    async def save_discussion(self, discussion: Discussion) -> Discussion:
        pass

    @abstractmethod
    async def get_discussion(self, discussion_id: str) -> Optional[Discussion]:
        pass

    @abstractmethod
    async def list_discussions(self) -> List[Discussion]:
        pass

    @abstractmethod
    async def save_participants(
        self, discussion_id: str, participants: List[Participant]
    ) -> List[Participant]:
        pass

    @abstractmethod
    async def list_participants(self, discussion_id: str) -> List[Participant]:
        """Participants ordered by seat position."""

    @abstractmethod
    async def create_cursor(self, cursor: TurnCursor) -> TurnCursor:
        pass

    @abstractmethod
    async def get_cursor(self, discussion_id: str) -> Optional[TurnCursor]:
        pass

    @abstractmethod
    async def update_cursor(self, cursor: TurnCursor, expected_version: int) -> TurnCursor:
        """Compare-and-set on ``version``; raises ConcurrencyConflictError on mismatch."""

    @abstractmethod
    async def append_turn(self, turn: Turn) -> Turn:
        """Append-only; a duplicate ``sequence`` raises ConcurrencyConflictError."""

    @abstractmethod
    async def list_turns(self, discussion_id: str) -> List[Turn]:
        """Turns ordered by sequence."""


class InMemoryDiscussionRepository(DiscussionRepository):
    """基于内存的讨论仓储"""

    def __init__(self):
        self._discussions: Dict[str, Discussion] = {}
        self._participants: Dict[str, List[Participant]] = {}
        self._cursors: Dict[str, TurnCursor] = {}
        self._turns: Dict[str, List[Turn]] = {}

    async def save_discussion(self, discussion: Discussion) -> Discussion:
        self._discussions[discussion.id] = discussion.model_copy(deep=True)
        return discussion

    async def get_discussion(self, discussion_id: str) -> Optional[Discussion]:
        item = self._discussions.get(discussion_id)
        return item.model_copy(deep=True) if item else None

    async def list_discussions(self) -> List[Discussion]:
        return [item.model_copy(deep=True) for item in self._discussions.values()]

    async def save_participants(
        self, discussion_id: str, participants: List[Participant]
    ) -> List[Participant]:
        self._participants[discussion_id] = [p.model_copy(deep=True) for p in participants]
        return participants

    async def list_participants(self, discussion_id: str) -> List[Participant]:
        rows = self._participants.get(discussion_id, [])
        return sorted((p.model_copy(deep=True) for p in rows), key=lambda p: p.position)

    async def create_cursor(self, cursor: TurnCursor) -> TurnCursor:
        if cursor.discussion_id in self._cursors:
            raise ConcurrencyConflictError(
                f"Cursor for discussion {cursor.discussion_id} already exists"
            )
        self._cursors[cursor.discussion_id] = cursor.model_copy(deep=True)
        return cursor

    async def get_cursor(self, discussion_id: str) -> Optional[TurnCursor]:
        item = self._cursors.get(discussion_id)
        return item.model_copy(deep=True) if item else None

    async def update_cursor(self, cursor: TurnCursor, expected_version: int) -> TurnCursor:
        current = self._cursors.get(cursor.discussion_id)
        if current is None:
            raise ConcurrencyConflictError(
                f"Cursor for discussion {cursor.discussion_id} does not exist"
            )
        if current.version != expected_version:
            raise ConcurrencyConflictError(
                f"Cursor for discussion {cursor.discussion_id} moved "
                f"(expected version {expected_version}, found {current.version})"
            )
        updated = cursor.model_copy(
            update={"version": expected_version + 1, "updated_at": datetime.utcnow()},
            deep=True,
        )
        self._cursors[cursor.discussion_id] = updated
        return updated.model_copy(deep=True)

    async def append_turn(self, turn: Turn) -> Turn:
        rows = self._turns.setdefault(turn.discussion_id, [])
        if any(existing.sequence == turn.sequence for existing in rows):
            raise ConcurrencyConflictError(
                f"Turn {turn.sequence} already written for discussion {turn.discussion_id}"
            )
        rows.append(turn.model_copy(deep=True))
        return turn

    async def list_turns(self, discussion_id: str) -> List[Turn]:
        rows = self._turns.get(discussion_id, [])
        return sorted((t.model_copy(deep=True) for t in rows), key=lambda t: t.sequence)


class FileDiscussionRepository(InMemoryDiscussionRepository):
    """基于本地 JSON 文件的讨论仓储"""

    def __init__(self, base_dir: Optional[str] = None):
        super().__init__()
        root = Path(base_dir or settings.LOCAL_STORE_DIR)
        root.mkdir(parents=True, exist_ok=True)
        self._file = root / "discussions.json"
        self._lock = asyncio.Lock()
        self._load_from_disk()

    async def save_discussion(self, discussion: Discussion) -> Discussion:
        async with self._lock:
            return await self._write_through(super().save_discussion(discussion))

    async def get_discussion(self, discussion_id: str) -> Optional[Discussion]:
        async with self._lock:
            return await super().get_discussion(discussion_id)

    async def list_discussions(self) -> List[Discussion]:
        async with self._lock:
            return await super().list_discussions()

    async def save_participants(
        self, discussion_id: str, participants: List[Participant]
    ) -> List[Participant]:
        async with self._lock:
            return await self._write_through(super().save_participants(discussion_id, participants))

    async def list_participants(self, discussion_id: str) -> List[Participant]:
        async with self._lock:
            return await super().list_participants(discussion_id)

    async def create_cursor(self, cursor: TurnCursor) -> TurnCursor:
        async with self._lock:
            return await self._write_through(super().create_cursor(cursor))

    async def get_cursor(self, discussion_id: str) -> Optional[TurnCursor]:
        async with self._lock:
            return await super().get_cursor(discussion_id)

    async def update_cursor(self, cursor: TurnCursor, expected_version: int) -> TurnCursor:
        async with self._lock:
            return await self._write_through(super().update_cursor(cursor, expected_version))

    async def append_turn(self, turn: Turn) -> Turn:
        async with self._lock:
            return await self._write_through(super().append_turn(turn))

    async def list_turns(self, discussion_id: str) -> List[Turn]:
        async with self._lock:
            return await super().list_turns(discussion_id)

    async def _write_through(self, operation: Awaitable[T]) -> T:
        """Apply an in-memory write and persist it; a failed disk write is undone in memory."""
        backup = (
            dict(self._discussions),
            dict(self._participants),
            dict(self._cursors),
            {key: list(rows) for key, rows in self._turns.items()},
        )
        result = await operation
        try:
            self._persist_to_disk()
        except PersistenceError:
            self._discussions, self._participants, self._cursors, self._turns = backup
            raise
        return result

    def _load_from_disk(self) -> None:
        if not self._file.exists():
            return
        try:
            payload = json.loads(self._file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("discussion_store_load_failed", file=str(self._file), error=str(exc))
            return
        if not isinstance(payload, dict):
            return

        for row in payload.get("discussions", []):
            try:
                item = Discussion.model_validate(row)
            except ValueError:
                continue
            self._discussions[item.id] = item

        for discussion_id, rows in (payload.get("participants") or {}).items():
            parsed: List[Participant] = []
            for row in rows or []:
                try:
                    parsed.append(Participant.model_validate(row))
                except ValueError:
                    continue
            self._participants[discussion_id] = parsed

        for row in payload.get("cursors", []):
            try:
                cursor = TurnCursor.model_validate(row)
            except ValueError:
                continue
            self._cursors[cursor.discussion_id] = cursor

        for discussion_id, rows in (payload.get("turns") or {}).items():
            parsed_turns: List[Turn] = []
            for row in rows or []:
                try:
                    parsed_turns.append(Turn.model_validate(row))
                except ValueError:
                    continue
            self._turns[discussion_id] = parsed_turns

    def _persist_to_disk(self) -> None:
        payload = {
            "discussions": [item.model_dump(mode="json") for item in self._discussions.values()],
            "participants": {
                key: [p.model_dump(mode="json") for p in rows]
                for key, rows in self._participants.items()
            },
            "cursors": [item.model_dump(mode="json") for item in self._cursors.values()],
            "turns": {
                key: [t.model_dump(mode="json") for t in rows]
                for key, rows in self._turns.items()
            },
        }
        tmp = self._file.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp.replace(self._file)
        except OSError as exc:
            raise PersistenceError(f"Could not write discussion store: {exc}") from exc
