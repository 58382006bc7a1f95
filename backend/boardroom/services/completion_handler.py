"""Completion & summary handler.

Detects the end of a discussion, asks the manager persona for a closing
synthesis and flips the discussion into its terminal state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

import structlog

from boardroom.models.discussion import (
    Discussion,
    DiscussionStatus,
    Participant,
    Persona,
    Turn,
    TurnCursor,
    TurnKind,
)
from boardroom.repositories.discussion_repository import DiscussionRepository
from boardroom.services.contribution_generator import ContributionGenerator
from boardroom.services.turn_sequencer import CursorPosition, TurnSequencer

logger = structlog.get_logger()


@dataclass
class CompletionResult:
    discussion: Discussion
    cursor: TurnCursor
    summary: Optional[Turn] = None


class CompletionHandler:
    """active -> completed, exactly once."""

    def __init__(
        self,
        generator: ContributionGenerator,
        repository: DiscussionRepository,
    ):
        self.generator = generator
        self.repository = repository

    @staticmethod
    def should_complete(
        sequencer: TurnSequencer,
        order: List[Participant],
        speech_counts: Dict[str, int],
        round_number: int,
    ) -> bool:
        return sequencer.is_complete(order, speech_counts, round_number)

    async def compose_summary(
        self,
        *,
        discussion: Discussion,
        order: List[Participant],
        personas: Dict[str, Persona],
        turns: List[Turn],
        position: CursorPosition,
        sequence: int,
        actor_id: Optional[str] = None,
    ) -> Optional[Turn]:
        """Generate (but do not persist) the summary turn; None without a manager persona."""
        manager = TurnSequencer.find_manager(order)
        if manager is None:
            logger.warning("discussion_summary_skipped_no_manager", discussion_id=discussion.id)
            return None
        seat_index, participant = manager
        persona = personas.get(participant.persona_id or "")
        if persona is None:
            logger.warning(
                "discussion_summary_skipped_no_persona",
                discussion_id=discussion.id,
                participant_id=participant.id,
            )
            return None

        contribution = await self.generator.generate_summary(persona, turns, discussion.rules)
        return Turn(
            id=f"trn_{uuid4().hex[:12]}",
            discussion_id=discussion.id,
            kind=TurnKind.SUMMARY,
            sequence=sequence,
            seat_index=seat_index,
            round_number=position.round_number,
            speaker_key=participant.key,
            speaker_name=persona.name,
            speaker_role=participant.role,
            persona_id=persona.id,
            actor_id=actor_id,
            content=contribution.text,
            is_fallback=contribution.is_fallback,
            model=contribution.model,
        )

    async def finalize(
        self,
        *,
        discussion: Discussion,
        cursor: TurnCursor,
        position: CursorPosition,
        summary: Optional[Turn] = None,
    ) -> CompletionResult:
        if summary is not None:
            await self.repository.append_turn(summary)

        next_cursor = cursor.model_copy(
            update={
                "turn_index": position.turn_index,
                "round_number": position.round_number,
                "is_active": False,
                "sequence": summary.sequence + 1 if summary is not None else cursor.sequence,
            }
        )
        saved_cursor = await self.repository.update_cursor(next_cursor, expected_version=cursor.version)

        now = datetime.utcnow()
        completed = discussion.model_copy(
            update={
                "status": DiscussionStatus.COMPLETED,
                "completed_at": now,
                "updated_at": now,
            }
        )
        await self.repository.save_discussion(completed)

        logger.info(
            "discussion_completed",
            discussion_id=discussion.id,
            round_number=position.round_number,
            summary_written=summary is not None,
            summary_fallback=bool(summary and summary.is_fallback),
        )
        return CompletionResult(discussion=completed, cursor=saved_cursor, summary=summary)
