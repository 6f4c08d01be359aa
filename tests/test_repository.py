from __future__ import annotations

import sqlite3

import pytest

from shala.config import AppConfig
from shala.services.storage import CourseRepository, SiblingScope


def test_repository_crud_cycle(temp_config: AppConfig) -> None:
    repository = CourseRepository(temp_config)

    standard_id = repository.add_standard("Class 10", "Secondary")
    subject_id = repository.add_subject(standard_id, "Science")
    chapter_id = repository.add_chapter(subject_id, "Light")

    standard = repository.get_standard(standard_id)
    assert standard is not None
    assert standard.name == "Class 10"
    assert standard.position == 1

    subjects = repository.list_subjects(standard_id)
    assert [subject.name for subject in subjects] == ["Science"]

    chapter = repository.get_chapter(chapter_id)
    assert chapter is not None and chapter.subject_id == subject_id

    repository.remove_chapter(chapter_id)
    assert repository.get_chapter(chapter_id) is None

    repository.remove_standard(standard_id)
    assert repository.get_standard(standard_id) is None
    assert repository.get_subject(subject_id) is None


def test_positions_are_appended_per_scope(temp_config: AppConfig) -> None:
    repository = CourseRepository(temp_config)

    first = repository.add_standard("Class 1")
    second = repository.add_standard("Class 2")
    maths = repository.add_subject(first, "Maths")
    english = repository.add_subject(first, "English")
    other = repository.add_subject(second, "Maths")

    assert repository.list_positions(SiblingScope.standards()) == [(first, 1), (second, 2)]
    assert repository.list_positions(SiblingScope.subjects(first)) == [(maths, 1), (english, 2)]
    assert repository.list_positions(SiblingScope.subjects(second)) == [(other, 1)]


def test_explicit_duplicate_position_is_rejected(temp_config: AppConfig) -> None:
    repository = CourseRepository(temp_config)
    repository.add_standard("Class 1", position=5)

    with pytest.raises(sqlite3.IntegrityError):
        repository.add_standard("Class 2", position=5)


def test_transaction_rolls_back_on_error(temp_config: AppConfig) -> None:
    repository = CourseRepository(temp_config)
    first = repository.add_standard("Class 1")
    repository.add_standard("Class 2")
    scope = SiblingScope.standards()

    with pytest.raises(RuntimeError):
        with repository.transaction() as connection:
            repository.set_position(connection, scope, first, 10)
            raise RuntimeError("abort")

    assert repository.get_standard(first).position == 1


def test_set_position_respects_scope(temp_config: AppConfig) -> None:
    repository = CourseRepository(temp_config)
    first = repository.add_standard("Class 1")
    second = repository.add_standard("Class 2")
    subject = repository.add_subject(first, "Maths")

    with repository.transaction() as connection:
        assert repository.set_position(connection, SiblingScope.subjects(second), subject, 4) == 0
        assert repository.set_position(connection, SiblingScope.subjects(first), subject, 4) == 1

    assert repository.get_subject(subject).position == 4


def test_scope_validates_table_and_parent() -> None:
    with pytest.raises(ValueError):
        SiblingScope("lectures")
    with pytest.raises(ValueError):
        SiblingScope("subjects")
    assert SiblingScope.chapters(3).describe() == "chapters[subject_id=3]"


def test_repository_emits_db_events(temp_config: AppConfig) -> None:
    events = []

    def emitter(event_type, action, **kwargs):
        events.append((event_type, action, kwargs))

    repository = CourseRepository(temp_config, event_emitter=emitter)
    repository.add_standard("Class 1")

    actions = [action for _, action, _ in events]
    assert "standards.insert" in actions
    assert "add_standards" in actions
    assert all(event_type == "DB_QUERY" for event_type, _, _ in events)
    insert_event = next(kwargs for _, action, kwargs in events if action == "standards.insert")
    assert insert_event["payload"]["status"] == "ok"
    assert "duration_ms" in insert_event
