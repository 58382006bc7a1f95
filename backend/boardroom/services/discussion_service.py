"""
讨论服务
Discussion Service

Discussion orchestrator: ties the turn sequencer, the contribution generator
and the completion handler together behind a per-discussion lock. Entry points
are ``advance`` (a user message), ``resume`` (continue without a message) and
``handle_turn_notification`` (at-least-once insert webhooks).
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from boardroom.config import settings
from boardroom.core.exceptions import (
    ConcurrencyConflictError,
    InvalidStateError,
    NotFoundError,
)
from boardroom.core.llm_client import llm_backend
from boardroom.core.locks import DiscussionLockRegistry, discussion_locks
from boardroom.core.observability import metrics_store
from boardroom.models.discussion import (
    USER_SPEAKER_KEY,
    Discussion,
    DiscussionCreate,
    DiscussionSnapshot,
    DiscussionStatus,
    Participant,
    ParticipantRole,
    ParticipantView,
    Persona,
    Turn,
    TurnCursor,
    TurnKind,
)
from boardroom.repositories.discussion_repository import (
    DiscussionRepository,
    FileDiscussionRepository,
    InMemoryDiscussionRepository,
)
from boardroom.repositories.persona_repository import PersonaRepository
from boardroom.services.completion_handler import CompletionHandler
from boardroom.services.contribution_generator import (
    ContributionGenerator,
    normalize_contribution,
)
from boardroom.services.persona_service import persona_service
from boardroom.services.turn_sequencer import (
    CursorPosition,
    TurnSequencer,
    build_speech_counts,
    normalize_index,
)

logger = structlog.get_logger()

USER_DISPLAY_NAME = "User"


@dataclass
class _LoopState:
    """Mutable working set of one advance/resume call."""

    discussion: Discussion
    order: List[Participant]
    personas: Dict[str, Persona]
    cursor: TurnCursor
    turns: List[Turn]
    counts: Dict[str, int]
    sequencer: TurnSequencer
    deadline: float
    actor_id: Optional[str] = None
    timed_out: bool = False
    message_recorded: Optional[bool] = None
    iterations: int = 0

    @property
    def position(self) -> CursorPosition:
        return CursorPosition(self.cursor.turn_index, self.cursor.round_number)

    def remaining(self) -> float:
        return self.deadline - asyncio.get_running_loop().time()


class DiscussionService:
    """讨论编排服务"""

    def __init__(
        self,
        repository: Optional[DiscussionRepository] = None,
        persona_repository: Optional[PersonaRepository] = None,
        generator: Optional[ContributionGenerator] = None,
        locks: Optional[DiscussionLockRegistry] = None,
        sequencer: Optional[TurnSequencer] = None,
    ):
        self._repository = repository or (
            FileDiscussionRepository()
            if settings.LOCAL_STORE_BACKEND == "file"
            else InMemoryDiscussionRepository()
        )
        self._persona_repository = persona_repository
        self._generator = generator or ContributionGenerator(llm_backend)
        self._locks = locks or discussion_locks
        self._sequencer = sequencer or TurnSequencer()

    @property
    def personas(self) -> PersonaRepository:
        return self._persona_repository or persona_service.repository

    # ==================== 创建与查询 ====================

    async def create_discussion(self, data: DiscussionCreate) -> Discussion:
        for spec in data.participants:
            if spec.role == ParticipantRole.USER:
                continue
            if not spec.persona_id:
                raise InvalidStateError(f"A {spec.role.value} seat needs a persona_id")
            if await self.personas.get(spec.persona_id) is None:
                raise NotFoundError(f"Persona not found: {spec.persona_id}")

        discussion = Discussion(
            id=f"dsc_{uuid.uuid4().hex[:8]}",
            organization_id=data.organization_id,
            name=data.name.strip(),
            rules=data.rules,
            max_rounds=data.max_rounds,
        )
        participants = [
            Participant(
                id=f"prt_{uuid.uuid4().hex[:8]}",
                discussion_id=discussion.id,
                role=spec.role,
                position=position,
                persona_id=None if spec.role == ParticipantRole.USER else spec.persona_id,
            )
            for position, spec in enumerate(data.participants)
        ]

        await self._repository.save_discussion(discussion)
        await self._repository.save_participants(discussion.id, participants)
        await self._repository.create_cursor(TurnCursor(discussion_id=discussion.id))

        logger.info(
            "discussion_created",
            discussion_id=discussion.id,
            organization_id=discussion.organization_id,
            participant_count=len(participants),
            max_rounds=discussion.max_rounds,
        )
        return discussion

    async def get_discussion(self, discussion_id: str) -> Optional[Discussion]:
        return await self._repository.get_discussion(discussion_id)

    async def list_discussions(
        self,
        organization_id: Optional[str] = None,
        status: Optional[DiscussionStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        discussions = await self._repository.list_discussions()
        if organization_id:
            discussions = [d for d in discussions if d.organization_id == organization_id]
        if status:
            discussions = [d for d in discussions if d.status == status]
        discussions.sort(key=lambda d: d.created_at, reverse=True)

        total = len(discussions)
        start = (page - 1) * page_size
        return {
            "items": discussions[start:start + page_size],
            "total": total,
            "page": page,
            "page_size": page_size,
        }

    async def get_state(self, discussion_id: str) -> DiscussionSnapshot:
        """Read-only snapshot; never writes, not even a missing cursor."""
        discussion = await self._require_discussion(discussion_id)
        order = await self._repository.list_participants(discussion_id)
        turns = await self._repository.list_turns(discussion_id)
        cursor = await self._repository.get_cursor(discussion_id) or TurnCursor(
            discussion_id=discussion_id,
            is_active=not discussion.is_completed,
            sequence=turns[-1].sequence + 1 if turns else 0,
        )
        return self._snapshot(discussion, order, turns, cursor)

    async def list_participant_views(self, discussion_id: str) -> List[ParticipantView]:
        await self._require_discussion(discussion_id)
        views: List[ParticipantView] = []
        for participant in await self._repository.list_participants(discussion_id):
            persona = (
                await self.personas.get(participant.persona_id)
                if participant.persona_id
                else None
            )
            if participant.is_user:
                name = USER_DISPLAY_NAME
            elif persona is not None:
                name = persona.name
            else:
                name = participant.persona_id or participant.id
            views.append(
                ParticipantView(
                    id=participant.id,
                    role=participant.role,
                    position=participant.position,
                    key=participant.key,
                    name=name,
                    persona_id=participant.persona_id,
                    provider=persona.ai_model_config.provider if persona else None,
                    model=persona.ai_model_config.model if persona else None,
                )
            )
        return views

    # ==================== 推进 ====================

    async def advance(
        self,
        discussion_id: str,
        message: str,
        actor_id: str,
        timeout: Optional[float] = None,
    ) -> DiscussionSnapshot:
        """Record the user's message, then let agents speak until the user is up again."""
        text = (message or "").strip()
        if not text:
            raise InvalidStateError("Message must not be empty")
        if not (actor_id or "").strip():
            raise InvalidStateError("actor_id must not be empty")
        return await self._run_locked(
            discussion_id, timeout, actor_id=actor_id.strip(), message=text
        )

    async def resume(
        self,
        discussion_id: str,
        timeout: Optional[float] = None,
    ) -> DiscussionSnapshot:
        """Continue the turn loop without a new message (webhook deliveries, timed-out advances)."""
        return await self._run_locked(discussion_id, timeout)

    async def handle_turn_notification(self, discussion_id: str, sequence: int) -> Dict[str, Any]:
        """Idempotent adapter for at-least-once "turn inserted" deliveries."""
        if sequence < 0:
            return self._ignored(discussion_id, sequence, "system_record")

        discussion = await self._require_discussion(discussion_id)
        if discussion.is_completed:
            return self._ignored(discussion_id, sequence, "completed")

        cursor = await self._repository.get_cursor(discussion_id)
        if cursor is not None:
            if not cursor.is_active:
                return self._ignored(discussion_id, sequence, "inactive")
            if sequence < cursor.sequence - 1:
                return self._ignored(discussion_id, sequence, "stale")

        snapshot = await self.resume(discussion_id)
        return {"status": "processed", "snapshot": snapshot}

    # ==================== 内部实现 ====================

    async def _run_locked(
        self,
        discussion_id: str,
        timeout: Optional[float],
        actor_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> DiscussionSnapshot:
        started = time.perf_counter()
        budget = settings.DISCUSSION_ADVANCE_TIMEOUT if timeout is None else timeout
        try:
            async with self._locks.hold(discussion_id):
                logger.info(
                    "discussion_advance_started",
                    discussion_id=discussion_id,
                    actor_id=actor_id,
                    with_message=message is not None,
                )
                state = await self._load_state(discussion_id, budget, actor_id)
                if message is not None:
                    await self._record_user_turn(state, message)
                else:
                    await self._apply_opening_override(state)
                if not state.timed_out:
                    await self._run_turn_loop(state)
                await self._complete_if_due(state)
        except ConcurrencyConflictError:
            metrics_store.record_busy()
            raise

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        metrics_store.record_advance(
            latency_ms=elapsed_ms,
            completed=state.discussion.is_completed,
            timeout=state.timed_out,
        )
        logger.info(
            "discussion_advance_finished",
            discussion_id=discussion_id,
            status=state.discussion.status.value,
            turn_count=len(state.turns),
            timed_out=state.timed_out,
            latency_ms=elapsed_ms,
        )
        snapshot = self._snapshot(
            state.discussion, state.order, state.turns, state.cursor, timed_out=state.timed_out
        )
        snapshot.message_recorded = state.message_recorded
        return snapshot

    async def _load_state(
        self,
        discussion_id: str,
        budget: float,
        actor_id: Optional[str],
    ) -> _LoopState:
        discussion = await self._require_discussion(discussion_id)
        cursor = await self._repository.get_cursor(discussion_id)
        if discussion.is_completed or (cursor is not None and not cursor.is_active):
            raise InvalidStateError(f"Discussion {discussion_id} is already finished")

        order = await self._repository.list_participants(discussion_id)
        if not order:
            raise InvalidStateError(f"Discussion {discussion_id} has no participants configured")

        personas: Dict[str, Persona] = {}
        for participant in order:
            if participant.is_user:
                continue
            persona = (
                await self.personas.get(participant.persona_id)
                if participant.persona_id
                else None
            )
            if persona is None:
                raise NotFoundError(
                    f"Persona not found for seat {participant.position}: {participant.persona_id}"
                )
            personas[persona.id] = persona

        turns = await self._repository.list_turns(discussion_id)
        if cursor is None:
            cursor = await self._repository.create_cursor(
                TurnCursor(discussion_id=discussion_id)
            )

        state = _LoopState(
            discussion=discussion,
            order=order,
            personas=personas,
            cursor=cursor,
            turns=turns,
            counts=build_speech_counts(order, turns),
            sequencer=self._sequencer.with_max_rounds(discussion.max_rounds),
            deadline=asyncio.get_running_loop().time() + budget,
            actor_id=actor_id,
        )
        await self._absorb_external_turns(state)
        return state

    async def _absorb_external_turns(self, state: _LoopState) -> None:
        """Move the cursor past turns another producer wrote behind its back."""
        pending = [t for t in state.turns if t.sequence >= state.cursor.sequence]
        if not pending:
            return
        last = pending[-1]
        if last.speaker_key == USER_SPEAKER_KEY:
            position = state.sequencer.position_after_user_turn(
                state.order, state.counts, state.position
            )
        else:
            position = state.sequencer.advance_past(
                CursorPosition(state.cursor.turn_index, max(1, last.round_number)),
                last.seat_index,
                len(state.order),
            )
        state.cursor = await self._repository.update_cursor(
            state.cursor.model_copy(
                update={
                    "turn_index": position.turn_index,
                    "round_number": position.round_number,
                    "sequence": last.sequence + 1,
                }
            ),
            expected_version=state.cursor.version,
        )
        logger.info(
            "discussion_external_turns_absorbed",
            discussion_id=state.discussion.id,
            absorbed=len(pending),
            next_sequence=state.cursor.sequence,
        )

    async def _record_user_turn(self, state: _LoopState, message: str) -> None:
        sequencer = state.sequencer
        state.message_recorded = False
        if sequencer.is_complete(state.order, state.counts, state.cursor.round_number):
            # Nothing left to discuss; the call only closes the discussion.
            return
        if sequencer.user_quota_exhausted(state.counts):
            raise InvalidStateError("User speech quota exhausted for this discussion")

        user_seat = sequencer.find_user_seat(state.order)
        if user_seat is not None and state.turns:
            # Seats left pending by an interrupted call speak before the user.
            await self._run_turn_loop(state)
            if (
                state.timed_out
                or state.cursor.turn_index != user_seat
                or sequencer.is_complete(state.order, state.counts, state.cursor.round_number)
            ):
                logger.info(
                    "discussion_user_message_not_recorded",
                    discussion_id=state.discussion.id,
                    timed_out=state.timed_out,
                    turn_index=state.cursor.turn_index,
                    round_number=state.cursor.round_number,
                )
                return

        turn = Turn(
            id=f"trn_{uuid.uuid4().hex[:12]}",
            discussion_id=state.discussion.id,
            kind=TurnKind.REGULAR,
            sequence=state.cursor.sequence,
            seat_index=(
                user_seat
                if user_seat is not None
                else normalize_index(state.cursor.turn_index, len(state.order))
            ),
            round_number=state.cursor.round_number,
            speaker_key=USER_SPEAKER_KEY,
            speaker_name=USER_DISPLAY_NAME,
            speaker_role=ParticipantRole.USER,
            actor_id=state.actor_id,
            content=normalize_contribution(message, self._generator.max_lines),
        )
        state.counts[USER_SPEAKER_KEY] = state.counts.get(USER_SPEAKER_KEY, 0) + 1
        position = sequencer.position_after_user_turn(state.order, state.counts, state.position)
        await self._commit_turn(state, turn, position)
        state.message_recorded = True

    async def _apply_opening_override(self, state: _LoopState) -> None:
        opening = state.sequencer.opening_position(state.order, state.counts, state.position)
        if opening is not None and opening != state.position:
            await self._move_cursor(state, opening)

    async def _run_turn_loop(self, state: _LoopState) -> None:
        sequencer = state.sequencer
        manager = sequencer.find_manager(state.order)
        speaker_names = self._speaker_names(state.order, state.personas)

        while state.iterations < settings.DISCUSSION_MAX_TURN_ITERATIONS:
            state.iterations += 1
            step = sequencer.next_step(state.order, state.position, state.counts)
            if step.action != "speak":
                if step.position != state.position:
                    await self._move_cursor(state, step.position)
                logger.debug(
                    "discussion_turn_loop_stopped",
                    discussion_id=state.discussion.id,
                    reason=step.action,
                )
                return

            participant = step.participant
            persona = state.personas[participant.persona_id]
            remaining = state.remaining()
            if remaining <= 0:
                self._mark_timed_out(state)
                return
            opening = (
                manager is not None
                and manager[0] == step.index
                and state.counts.get(participant.key, 0) == 0
            )
            try:
                contribution = await asyncio.wait_for(
                    self._generator.generate(
                        persona,
                        state.turns,
                        state.discussion.rules,
                        speaker_order=speaker_names,
                        opening=opening,
                    ),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                self._mark_timed_out(state)
                return

            turn = Turn(
                id=f"trn_{uuid.uuid4().hex[:12]}",
                discussion_id=state.discussion.id,
                kind=TurnKind.REGULAR,
                sequence=state.cursor.sequence,
                seat_index=step.index,
                round_number=step.position.round_number,
                speaker_key=participant.key,
                speaker_name=persona.name,
                speaker_role=participant.role,
                persona_id=persona.id,
                actor_id=state.actor_id,
                content=contribution.text,
                is_fallback=contribution.is_fallback,
                model=contribution.model,
            )
            state.counts[participant.key] = state.counts.get(participant.key, 0) + 1
            next_position = sequencer.advance_past(step.position, step.index, len(state.order))
            await self._commit_turn(state, turn, next_position)
            metrics_store.record_turn(is_fallback=contribution.is_fallback)

        logger.warning(
            "discussion_iteration_ceiling_reached",
            discussion_id=state.discussion.id,
            ceiling=settings.DISCUSSION_MAX_TURN_ITERATIONS,
        )

    async def _complete_if_due(self, state: _LoopState) -> None:
        if state.timed_out:
            return
        if not CompletionHandler.should_complete(
            state.sequencer, state.order, state.counts, state.cursor.round_number
        ):
            return

        handler = CompletionHandler(self._generator, self._repository)
        remaining = state.remaining()
        if remaining <= 0:
            self._mark_timed_out(state)
            return
        try:
            summary = await asyncio.wait_for(
                handler.compose_summary(
                    discussion=state.discussion,
                    order=state.order,
                    personas=state.personas,
                    turns=state.turns,
                    position=state.position,
                    sequence=state.cursor.sequence,
                    actor_id=state.actor_id,
                ),
                timeout=remaining,
            )
        except asyncio.TimeoutError:
            self._mark_timed_out(state)
            return

        result = await asyncio.shield(
            handler.finalize(
                discussion=state.discussion,
                cursor=state.cursor,
                position=state.position,
                summary=summary,
            )
        )
        state.discussion = result.discussion
        state.cursor = result.cursor
        if result.summary is not None:
            state.turns.append(result.summary)
            metrics_store.record_turn(is_fallback=result.summary.is_fallback, summary=True)

    async def _commit_turn(self, state: _LoopState, turn: Turn, position: CursorPosition) -> None:
        """Append the turn and move the cursor; both writes survive caller cancellation."""
        state.cursor = await asyncio.shield(self._write_turn(state.cursor, turn, position))
        state.turns.append(turn)
        logger.info(
            "discussion_turn_committed",
            discussion_id=turn.discussion_id,
            sequence=turn.sequence,
            speaker_key=turn.speaker_key,
            round_number=turn.round_number,
            is_fallback=turn.is_fallback,
        )

    async def _write_turn(
        self, cursor: TurnCursor, turn: Turn, position: CursorPosition
    ) -> TurnCursor:
        await self._repository.append_turn(turn)
        return await self._repository.update_cursor(
            cursor.model_copy(
                update={
                    "turn_index": position.turn_index,
                    "round_number": position.round_number,
                    "sequence": turn.sequence + 1,
                }
            ),
            expected_version=cursor.version,
        )

    async def _move_cursor(self, state: _LoopState, position: CursorPosition) -> None:
        state.cursor = await self._repository.update_cursor(
            state.cursor.model_copy(
                update={
                    "turn_index": position.turn_index,
                    "round_number": position.round_number,
                }
            ),
            expected_version=state.cursor.version,
        )

    def _mark_timed_out(self, state: _LoopState) -> None:
        state.timed_out = True
        logger.warning(
            "discussion_advance_timeout",
            discussion_id=state.discussion.id,
            next_sequence=state.cursor.sequence,
            turn_index=state.cursor.turn_index,
            round_number=state.cursor.round_number,
        )

    def _snapshot(
        self,
        discussion: Discussion,
        order: List[Participant],
        turns: List[Turn],
        cursor: TurnCursor,
        timed_out: bool = False,
    ) -> DiscussionSnapshot:
        counts = build_speech_counts(order, turns)
        next_speaker = None
        if not discussion.is_completed and cursor.is_active and order:
            # Past the round limit only the summary is left, so nobody is up next.
            step = self._sequencer.with_max_rounds(discussion.max_rounds).next_step(
                order, CursorPosition(cursor.turn_index, cursor.round_number), counts
            )
            if step.participant is not None:
                next_speaker = step.participant.key
        return DiscussionSnapshot(
            discussion=discussion,
            turns=turns,
            speech_counts=counts,
            speaker_order=[participant.key for participant in order],
            next_speaker=next_speaker,
            cursor=cursor,
            timed_out=timed_out,
        )

    @staticmethod
    def _speaker_names(order: List[Participant], personas: Dict[str, Persona]) -> List[str]:
        names = []
        for participant in order:
            persona = personas.get(participant.persona_id or "")
            if participant.is_user:
                names.append(USER_DISPLAY_NAME)
            else:
                names.append(persona.name if persona else participant.id)
        return names

    async def _require_discussion(self, discussion_id: str) -> Discussion:
        discussion = await self._repository.get_discussion(discussion_id)
        if discussion is None:
            raise NotFoundError(f"Discussion not found: {discussion_id}")
        return discussion

    @staticmethod
    def _ignored(discussion_id: str, sequence: int, reason: str) -> Dict[str, Any]:
        logger.info(
            "turn_notification_ignored",
            discussion_id=discussion_id,
            sequence=sequence,
            reason=reason,
        )
        return {"status": "ignored", "reason": reason}


discussion_service = DiscussionService()
