"""Turn sequencer.

Owns the seat order and the (seat, round) cursor arithmetic: who speaks next,
per-seat speech quotas, the round limit and the manager opening override.
Everything here is pure and deterministic for identical inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Tuple

from boardroom.config import settings
from boardroom.models.discussion import (
    USER_SPEAKER_KEY,
    Participant,
    ParticipantRole,
    Turn,
    TurnKind,
)


@dataclass(frozen=True)
class CursorPosition:
    turn_index: int
    round_number: int


@dataclass(frozen=True)
class SequencerStep:
    """Outcome of one sequencing decision.

    ``action`` is one of ``speak``, ``wait_for_user``, ``exhausted`` or
    ``round_limit``.
    """

    action: str
    position: CursorPosition
    index: Optional[int] = None
    participant: Optional[Participant] = None


def normalize_index(index: int, order_length: int) -> int:
    if order_length <= 0:
        return 0
    return int(index) % order_length


def pick_next_eligible_speaker(
    order: List[Participant],
    cursor_index: int,
    speech_counts: Dict[str, int],
    quota: int,
) -> Optional[Tuple[int, Participant]]:
    """Scan seats circularly from ``cursor_index``; first seat under quota wins."""
    if not order:
        return None
    start = normalize_index(cursor_index, len(order))
    for offset in range(len(order)):
        index = (start + offset) % len(order)
        participant = order[index]
        if speech_counts.get(participant.key, 0) < quota:
            return index, participant
    return None


def build_speech_counts(order: Iterable[Participant], turns: Iterable[Turn]) -> Dict[str, int]:
    counts: Dict[str, int] = {participant.key: 0 for participant in order}
    for turn in turns:
        if turn.kind != TurnKind.REGULAR:
            continue
        counts[turn.speaker_key] = counts.get(turn.speaker_key, 0) + 1
    return counts


def all_quotas_exhausted(order: List[Participant], speech_counts: Dict[str, int], quota: int) -> bool:
    return bool(order) and all(speech_counts.get(p.key, 0) >= quota for p in order)


class TurnSequencer:
    """Seat/round bookkeeping with speech quota and round limit."""

    def __init__(self, quota: Optional[int] = None, max_rounds: Optional[int] = None):
        self.quota = quota if quota is not None else settings.DISCUSSION_MAX_SPEECHES_PER_PARTICIPANT
        self.max_rounds = max_rounds if max_rounds is not None else settings.DISCUSSION_MAX_ROUNDS

    def with_max_rounds(self, max_rounds: Optional[int]) -> "TurnSequencer":
        if max_rounds is None or max_rounds == self.max_rounds:
            return self
        return TurnSequencer(quota=self.quota, max_rounds=max_rounds)

    @staticmethod
    def find_manager(order: List[Participant]) -> Optional[Tuple[int, Participant]]:
        """Manager seat, or the first persona seat when nobody holds the manager role."""
        for index, participant in enumerate(order):
            if participant.role == ParticipantRole.MANAGER:
                return index, participant
        for index, participant in enumerate(order):
            if not participant.is_user:
                return index, participant
        return None

    @staticmethod
    def find_user_seat(order: List[Participant]) -> Optional[int]:
        for index, participant in enumerate(order):
            if participant.is_user:
                return index
        return None

    @staticmethod
    def advance_past(position: CursorPosition, seat_index: int, order_length: int) -> CursorPosition:
        """Move the cursor to the seat after ``seat_index``; wrapping starts a new round."""
        next_index = seat_index + 1
        if next_index >= order_length:
            return CursorPosition(turn_index=0, round_number=position.round_number + 1)
        return CursorPosition(turn_index=next_index, round_number=position.round_number)

    def user_quota_exhausted(self, speech_counts: Dict[str, int]) -> bool:
        return speech_counts.get(USER_SPEAKER_KEY, 0) >= self.quota

    def is_complete(
        self,
        order: List[Participant],
        speech_counts: Dict[str, int],
        round_number: int,
    ) -> bool:
        return round_number > self.max_rounds or all_quotas_exhausted(order, speech_counts, self.quota)

    def opening_position(
        self,
        order: List[Participant],
        speech_counts: Dict[str, int],
        position: CursorPosition,
    ) -> Optional[CursorPosition]:
        """Manager seat while the manager has not spoken yet, else None."""
        manager = self.find_manager(order)
        if manager is None:
            return None
        index, participant = manager
        if speech_counts.get(participant.key, 0) > 0:
            return None
        return replace(position, turn_index=index)

    def position_after_user_turn(
        self,
        order: List[Participant],
        speech_counts: Dict[str, int],
        position: CursorPosition,
    ) -> CursorPosition:
        opening = self.opening_position(order, speech_counts, position)
        if opening is not None:
            return opening
        user_index = self.find_user_seat(order)
        if user_index is None:
            return replace(position, turn_index=normalize_index(position.turn_index, len(order)))
        return self.advance_past(position, user_index, len(order))

    def next_step(
        self,
        order: List[Participant],
        position: CursorPosition,
        speech_counts: Dict[str, int],
    ) -> SequencerStep:
        if position.round_number > self.max_rounds:
            return SequencerStep(action="round_limit", position=position)

        start = normalize_index(position.turn_index, len(order))
        pick = pick_next_eligible_speaker(order, start, speech_counts, self.quota)
        if pick is None:
            return SequencerStep(action="exhausted", position=replace(position, turn_index=start))

        index, participant = pick
        round_number = position.round_number + (1 if index < start else 0)
        moved = CursorPosition(turn_index=index, round_number=round_number)
        if round_number > self.max_rounds:
            return SequencerStep(action="round_limit", position=moved)
        if participant.is_user:
            return SequencerStep(
                action="wait_for_user", position=moved, index=index, participant=participant
            )
        return SequencerStep(action="speak", position=moved, index=index, participant=participant)
