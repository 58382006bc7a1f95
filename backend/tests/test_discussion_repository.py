import pytest

from boardroom.core.exceptions import ConcurrencyConflictError, PersistenceError
from boardroom.models.discussion import (
    Discussion,
    Participant,
    ParticipantRole,
    Persona,
    Turn,
    TurnCursor,
    TurnKind,
)
from boardroom.repositories.discussion_repository import (
    FileDiscussionRepository,
    InMemoryDiscussionRepository,
)
from boardroom.repositories.persona_repository import FilePersonaRepository


def _turn(sequence: int, kind: TurnKind = TurnKind.REGULAR) -> Turn:
    return Turn(
        id=f"trn_{sequence}",
        discussion_id="dsc_1",
        kind=kind,
        sequence=sequence,
        seat_index=0,
        round_number=1,
        speaker_key="user",
        speaker_name="User",
        speaker_role=ParticipantRole.USER,
        content=f"turn {sequence}",
    )


@pytest.mark.asyncio
async def test_update_cursor_is_compare_and_set():
    repo = InMemoryDiscussionRepository()
    created = await repo.create_cursor(TurnCursor(discussion_id="dsc_1"))

    moved = await repo.update_cursor(
        created.model_copy(update={"turn_index": 2}), expected_version=created.version
    )
    assert moved.version == 1
    assert moved.turn_index == 2

    with pytest.raises(ConcurrencyConflictError):
        await repo.update_cursor(created.model_copy(update={"turn_index": 3}), expected_version=0)

    stored = await repo.get_cursor("dsc_1")
    assert stored.turn_index == 2


@pytest.mark.asyncio
async def test_update_cursor_without_existing_cursor_conflicts():
    repo = InMemoryDiscussionRepository()
    with pytest.raises(ConcurrencyConflictError):
        await repo.update_cursor(TurnCursor(discussion_id="missing"), expected_version=0)


@pytest.mark.asyncio
async def test_turns_are_append_only_and_ordered_by_sequence():
    repo = InMemoryDiscussionRepository()
    await repo.append_turn(_turn(1))
    await repo.append_turn(_turn(0))

    with pytest.raises(ConcurrencyConflictError):
        await repo.append_turn(_turn(1))

    turns = await repo.list_turns("dsc_1")
    assert [t.sequence for t in turns] == [0, 1]


@pytest.mark.asyncio
async def test_in_memory_repository_returns_copies():
    repo = InMemoryDiscussionRepository()
    await repo.save_discussion(Discussion(id="dsc_1", name="Fees"))

    loaded = await repo.get_discussion("dsc_1")
    loaded.name = "changed"

    assert (await repo.get_discussion("dsc_1")).name == "Fees"


@pytest.mark.asyncio
async def test_file_repository_round_trips_all_records(tmp_path):
    repo = FileDiscussionRepository(base_dir=str(tmp_path))
    await repo.save_discussion(Discussion(id="dsc_1", name="Fees", rules="Stay short\nNo pitches"))
    await repo.save_participants(
        "dsc_1",
        [
            Participant(id="p1", discussion_id="dsc_1", role=ParticipantRole.USER, position=1),
            Participant(
                id="p0",
                discussion_id="dsc_1",
                role=ParticipantRole.MANAGER,
                position=0,
                persona_id="per_1",
            ),
        ],
    )
    cursor = await repo.create_cursor(TurnCursor(discussion_id="dsc_1"))
    await repo.append_turn(_turn(0))
    await repo.append_turn(_turn(1, kind=TurnKind.SUMMARY))
    await repo.update_cursor(
        cursor.model_copy(update={"is_active": False, "sequence": 2}), expected_version=0
    )

    reloaded = FileDiscussionRepository(base_dir=str(tmp_path))

    discussion = await reloaded.get_discussion("dsc_1")
    assert discussion.rules == ["Stay short", "No pitches"]
    participants = await reloaded.list_participants("dsc_1")
    assert [p.id for p in participants] == ["p0", "p1"]
    turns = await reloaded.list_turns("dsc_1")
    assert [t.kind for t in turns] == [TurnKind.REGULAR, TurnKind.SUMMARY]
    stored_cursor = await reloaded.get_cursor("dsc_1")
    assert stored_cursor.is_active is False
    assert stored_cursor.version == 1


@pytest.mark.asyncio
async def test_file_repository_wraps_disk_errors(tmp_path, monkeypatch):
    repo = FileDiscussionRepository(base_dir=str(tmp_path))

    def _fail(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("pathlib.Path.write_text", _fail)

    with pytest.raises(PersistenceError):
        await repo.append_turn(_turn(0))

    assert await repo.list_turns("dsc_1") == []


@pytest.mark.asyncio
async def test_file_repository_failed_cursor_write_leaves_previous_cursor(tmp_path, monkeypatch):
    repo = FileDiscussionRepository(base_dir=str(tmp_path))
    cursor = await repo.create_cursor(TurnCursor(discussion_id="dsc_1"))
    await repo.append_turn(_turn(0))

    def _fail(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("pathlib.Path.write_text", _fail)

    with pytest.raises(PersistenceError):
        await repo.update_cursor(
            cursor.model_copy(update={"turn_index": 2, "sequence": 1}), expected_version=0
        )
    with pytest.raises(PersistenceError):
        await repo.append_turn(_turn(1))

    stored = await repo.get_cursor("dsc_1")
    assert (stored.turn_index, stored.sequence, stored.version) == (0, 0, 0)
    assert [t.sequence for t in await repo.list_turns("dsc_1")] == [0]

    monkeypatch.undo()
    reloaded = FileDiscussionRepository(base_dir=str(tmp_path))
    assert [t.sequence for t in await reloaded.list_turns("dsc_1")] == [0]


@pytest.mark.asyncio
async def test_file_persona_repository_failed_write_is_not_visible(tmp_path, monkeypatch):
    repo = FilePersonaRepository(base_dir=str(tmp_path))

    def _fail(*args, **kwargs):
        raise OSError("read-only file system")

    monkeypatch.setattr("pathlib.Path.write_text", _fail)

    with pytest.raises(PersistenceError):
        await repo.save(Persona(id="per_1", name="CFO"))

    assert await repo.get("per_1") is None
    assert await repo.list() == []


@pytest.mark.asyncio
async def test_file_persona_repository_round_trip(tmp_path):
    repo = FilePersonaRepository(base_dir=str(tmp_path))
    await repo.save(
        Persona(
            id="per_1",
            name="CFO",
            system_prompt="Cost first.",
            ai_model_config={"provider": "openai", "model": "gpt-4o-mini", "maxTokens": "200"},
        )
    )

    reloaded = FilePersonaRepository(base_dir=str(tmp_path))
    persona = await reloaded.get("per_1")

    assert persona.name == "CFO"
    assert persona.ai_model_config.max_tokens == 200
    assert [p.id for p in await reloaded.list()] == ["per_1"]
