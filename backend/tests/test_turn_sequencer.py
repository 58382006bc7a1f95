from boardroom.models.discussion import Participant, ParticipantRole, Turn, TurnKind
from boardroom.services.turn_sequencer import (
    CursorPosition,
    TurnSequencer,
    all_quotas_exhausted,
    build_speech_counts,
    pick_next_eligible_speaker,
)


def _order(*roles: str):
    return [
        Participant(
            id=f"p{index}",
            discussion_id="dsc_test",
            role=ParticipantRole(role),
            position=index,
            persona_id=None if role == "user" else f"per_{index}",
        )
        for index, role in enumerate(roles)
    ]


def _turn(sequence: int, speaker_key: str, kind: TurnKind = TurnKind.REGULAR) -> Turn:
    return Turn(
        id=f"t{sequence}",
        discussion_id="dsc_test",
        kind=kind,
        sequence=sequence,
        seat_index=0,
        round_number=1,
        speaker_key=speaker_key,
        speaker_name=speaker_key,
        speaker_role=ParticipantRole.EXPERT,
        content="x",
    )


def test_pick_next_eligible_speaker_scans_circularly_from_cursor():
    order = _order("manager", "expert", "expert", "user")
    counts = {"p0": 0, "p1": 2, "p2": 2, "user": 0}

    index, participant = pick_next_eligible_speaker(order, 1, counts, quota=2)

    assert index == 3
    assert participant.key == "user"

    index, participant = pick_next_eligible_speaker(order, 5, {"p0": 2, "p1": 0}, quota=2)
    assert index == 1


def test_pick_next_eligible_speaker_returns_none_when_everyone_is_at_quota():
    order = _order("manager", "user")
    assert pick_next_eligible_speaker(order, 0, {"p0": 2, "user": 2}, quota=2) is None
    assert pick_next_eligible_speaker([], 0, {}, quota=2) is None


def test_build_speech_counts_ignores_summary_turns_and_keys_every_seat():
    order = _order("manager", "expert", "user")
    turns = [
        _turn(0, "user"),
        _turn(1, "p0"),
        _turn(2, "p0", kind=TurnKind.SUMMARY),
    ]

    counts = build_speech_counts(order, turns)

    assert counts == {"p0": 1, "p1": 0, "user": 1}
    assert not all_quotas_exhausted(order, counts, quota=1)


def test_find_manager_falls_back_to_first_persona_seat():
    order = _order("user", "expert", "expert")
    index, participant = TurnSequencer.find_manager(order)
    assert index == 1
    assert participant.id == "p1"
    assert TurnSequencer.find_manager(_order("user")) is None


def test_position_after_user_turn_opens_with_manager_until_manager_has_spoken():
    sequencer = TurnSequencer(quota=2, max_rounds=3)
    order = _order("expert", "manager", "user")
    position = CursorPosition(turn_index=2, round_number=1)

    opening = sequencer.position_after_user_turn(order, {"p0": 0, "p1": 0, "user": 1}, position)
    assert opening == CursorPosition(turn_index=1, round_number=1)

    after = sequencer.position_after_user_turn(order, {"p0": 1, "p1": 1, "user": 2}, position)
    assert after == CursorPosition(turn_index=0, round_number=2)


def test_next_step_waits_for_user_and_increments_round_on_wrap():
    sequencer = TurnSequencer(quota=2, max_rounds=3)
    order = _order("manager", "expert", "user")

    step = sequencer.next_step(order, CursorPosition(2, 1), {"p0": 1, "p1": 1, "user": 1})
    assert step.action == "wait_for_user"
    assert step.position == CursorPosition(2, 1)

    step = sequencer.next_step(order, CursorPosition(2, 1), {"p0": 1, "p1": 1, "user": 2})
    assert step.action == "speak"
    assert step.index == 0
    assert step.position == CursorPosition(0, 2)


def test_next_step_reports_round_limit_and_exhaustion():
    sequencer = TurnSequencer(quota=2, max_rounds=1)
    order = _order("manager", "expert", "user")

    assert sequencer.next_step(order, CursorPosition(0, 2), {}).action == "round_limit"

    wrapped = sequencer.next_step(order, CursorPosition(2, 1), {"p0": 1, "p1": 1, "user": 2})
    assert wrapped.action == "round_limit"
    assert wrapped.position.round_number == 2

    exhausted = sequencer.next_step(order, CursorPosition(1, 1), {"p0": 2, "p1": 2, "user": 2})
    assert exhausted.action == "exhausted"


def test_is_complete_and_max_rounds_override():
    sequencer = TurnSequencer(quota=2, max_rounds=3)
    order = _order("manager", "user")

    assert sequencer.is_complete(order, {"p0": 2, "user": 2}, 1)
    assert sequencer.is_complete(order, {"p0": 0, "user": 0}, 4)
    assert not sequencer.is_complete(order, {"p0": 1, "user": 2}, 3)

    assert sequencer.with_max_rounds(None) is sequencer
    assert sequencer.with_max_rounds(1).is_complete(order, {}, 2)


def test_sequencing_is_deterministic_for_identical_inputs():
    sequencer = TurnSequencer(quota=2, max_rounds=3)
    order = _order("manager", "expert", "expert", "user")
    counts = {"p0": 1, "p1": 2, "p2": 0, "user": 1}

    steps = [sequencer.next_step(order, CursorPosition(1, 2), dict(counts)) for _ in range(5)]

    assert all(step == steps[0] for step in steps)
    assert steps[0].index == 2
