"""Tests for EntityRepository.

Every test in this module runs against both the native SQLite backend and
the emulated key-value backend (see the ``backend`` fixture in conftest).
"""

from datetime import datetime, timedelta, timezone

import pytest

from db.backends import Backend, BackendError, MemoryKeyValueStore
from db.codec import format_datetime
from db.repository import (
    ChangeEvent,
    EntityRepository,
    InvalidFieldError,
    NotFoundError,
    NotReadyError,
    RepositoryError,
    open_store,
)
from db.schema import CALENDAR_EVENT, SUBTASK, TASK, USER

DUE = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _task_fields(**overrides) -> dict:
    fields = {
        "userId": "u1",
        "title": "Write report",
        "priority": "high",
        "dueDate": DUE,
        "checkInFrequency": "daily",
        "completed": False,
    }
    fields.update(overrides)
    return fields


async def _create_subtask(
    repo: EntityRepository, task_id: str, order_index: int, **overrides
) -> dict:
    fields = {
        "taskId": task_id,
        "title": f"Step {order_index}",
        "completed": False,
        "orderIndex": order_index,
    }
    fields.update(overrides)
    return await repo.create(SUBTASK, fields)


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


# ── Create / read ─────────────────────────────────────────


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_task(self, repo: EntityRepository) -> None:
        task = await repo.create(TASK, _task_fields())

        assert len(task["_id"]) >= 36
        assert task["completed"] is False
        assert task["dueDate"] == DUE
        assert format_datetime(task["dueDate"]) == "2024-06-01T00:00:00.000000Z"

        fetched = await repo.get_by_id(TASK, task["_id"])
        assert fetched == task
        assert fetched["completed"] is False
        assert fetched["createdAt"] == fetched["updatedAt"]

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, repo: EntityRepository) -> None:
        ids = {(await repo.create(TASK, _task_fields()))["_id"] for _ in range(20)}
        assert len(ids) == 20

    @pytest.mark.asyncio
    async def test_supplied_id_is_kept(self, repo: EntityRepository) -> None:
        task = await repo.create(TASK, _task_fields(_id="task-1"))
        assert task["_id"] == "task-1"
        assert (await repo.get_by_id(TASK, "task-1"))["title"] == "Write report"

    @pytest.mark.asyncio
    async def test_duplicate_id_fails(self, repo: EntityRepository) -> None:
        await repo.create(TASK, _task_fields(_id="task-1"))
        with pytest.raises(BackendError):
            await repo.create(TASK, _task_fields(_id="task-1"))

    @pytest.mark.asyncio
    async def test_optional_fields_default_to_none(self, repo: EntityRepository) -> None:
        task = await repo.create(TASK, _task_fields())
        assert task["description"] is None

    @pytest.mark.asyncio
    async def test_calendar_event_keyword_columns(self, repo: EntityRepository) -> None:
        event = await repo.create(
            CALENDAR_EVENT,
            {
                "userId": "u1",
                "title": "Standup",
                "start": DUE,
                "end": DUE + timedelta(minutes=15),
                "allDay": False,
                "category": "work",
                "color": "#4285F4",
            },
        )
        fetched = await repo.get_by_id(CALENDAR_EVENT, event["_id"])
        assert fetched["end"] - fetched["start"] == timedelta(minutes=15)
        assert fetched["allDay"] is False

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, repo: EntityRepository) -> None:
        assert await repo.get_by_id(TASK, "missing") is None


class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_field(self, repo: EntityRepository) -> None:
        with pytest.raises(InvalidFieldError, match="Unknown field 'colour'"):
            await repo.create(TASK, _task_fields(colour="red"))

    @pytest.mark.asyncio
    async def test_invalid_choice(self, repo: EntityRepository) -> None:
        with pytest.raises(InvalidFieldError, match="priority"):
            await repo.create(TASK, _task_fields(priority="urgent"))

    @pytest.mark.asyncio
    async def test_missing_required(self, repo: EntityRepository) -> None:
        fields = _task_fields()
        del fields["title"]
        with pytest.raises(InvalidFieldError, match="title"):
            await repo.create(TASK, fields)

    @pytest.mark.asyncio
    async def test_timestamps_are_store_managed(self, repo: EntityRepository) -> None:
        with pytest.raises(InvalidFieldError, match="createdAt"):
            await repo.create(TASK, _task_fields(createdAt=DUE))

    @pytest.mark.asyncio
    async def test_unknown_table(self, repo: EntityRepository) -> None:
        with pytest.raises(InvalidFieldError, match="Unknown table"):
            await repo.get_all("Tasks")

    @pytest.mark.asyncio
    async def test_subtask_needs_existing_task(self, repo: EntityRepository) -> None:
        with pytest.raises(BackendError, match="FOREIGN KEY"):
            await _create_subtask(repo, "no-such-task", 0)
        assert await repo.count(SUBTASK) == 0

    @pytest.mark.asyncio
    async def test_subtask_cannot_move_to_missing_task(self, repo: EntityRepository) -> None:
        task = await repo.create(TASK, _task_fields())
        subtask = await _create_subtask(repo, task["_id"], 0)
        with pytest.raises(BackendError, match="FOREIGN KEY"):
            await repo.update(SUBTASK, subtask["_id"], {"taskId": "no-such-task"})
        assert (await repo.get_by_id(SUBTASK, subtask["_id"]))["taskId"] == task["_id"]

    @pytest.mark.asyncio
    async def test_nothing_written_on_failure(self, repo: EntityRepository) -> None:
        with pytest.raises(InvalidFieldError):
            await repo.create(TASK, _task_fields(priority="urgent"))
        assert await repo.count(TASK) == 0


# ── Update ────────────────────────────────────────────────


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_completed(self, repo: EntityRepository) -> None:
        task = await repo.create(TASK, _task_fields())
        await repo.update(TASK, task["_id"], {"completed": True})

        fetched = await repo.get_by_id(TASK, task["_id"])
        assert fetched["completed"] is True
        for key in ("_id", "userId", "title", "priority", "dueDate", "createdAt"):
            assert fetched[key] == task[key]

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, repo: EntityRepository) -> None:
        with pytest.raises(NotFoundError, match="missing"):
            await repo.update(TASK, "missing", {"completed": True})

    @pytest.mark.asyncio
    async def test_protected_fields(self, repo: EntityRepository) -> None:
        task = await repo.create(TASK, _task_fields())
        for name in ("_id", "createdAt", "updatedAt"):
            with pytest.raises(InvalidFieldError):
                await repo.update(TASK, task["_id"], {name: "x"})

    @pytest.mark.asyncio
    async def test_required_field_cannot_be_cleared(self, repo: EntityRepository) -> None:
        task = await repo.create(TASK, _task_fields())
        with pytest.raises(InvalidFieldError, match="title"):
            await repo.update(TASK, task["_id"], {"title": None})

    @pytest.mark.asyncio
    async def test_updated_at_advances_with_the_clock(self, backend: Backend) -> None:
        clock = FrozenClock(DUE)
        repo = await EntityRepository(backend, clock=clock).initialize()
        task = await repo.create(TASK, _task_fields())

        clock.now = DUE + timedelta(hours=1)
        updated = await repo.update(TASK, task["_id"], {"title": "Later"})
        await repo.close()

        assert updated["updatedAt"] == DUE + timedelta(hours=1)
        assert updated["createdAt"] == DUE

    @pytest.mark.asyncio
    async def test_updated_at_strictly_increases(self, backend: Backend) -> None:
        clock = FrozenClock(DUE)
        repo = await EntityRepository(backend, clock=clock).initialize()
        task = await repo.create(TASK, _task_fields())

        first = await repo.update(TASK, task["_id"], {"title": "A"})
        second = await repo.update(TASK, task["_id"], {"title": "B"})
        await repo.close()

        assert task["updatedAt"] < first["updatedAt"] < second["updatedAt"]
        assert second["createdAt"] == DUE

    @pytest.mark.asyncio
    async def test_naive_clock_is_utc(self, backend: Backend) -> None:
        repo = await EntityRepository(
            backend, clock=lambda: datetime(2024, 6, 1), id_factory=lambda: "fixed"
        ).initialize()
        task = await repo.create(TASK, _task_fields())
        await repo.close()
        assert task["_id"] == "fixed"
        assert task["createdAt"] == DUE


# ── Delete ────────────────────────────────────────────────


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete(self, repo: EntityRepository) -> None:
        task = await repo.create(TASK, _task_fields())
        await repo.delete(TASK, task["_id"])
        assert await repo.get_by_id(TASK, task["_id"]) is None

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, repo: EntityRepository) -> None:
        await repo.delete(TASK, "missing")
        await repo.delete(TASK, "missing")

    @pytest.mark.asyncio
    async def test_delete_cascades_to_subtasks(self, repo: EntityRepository) -> None:
        task = await repo.create(TASK, _task_fields())
        other = await repo.create(TASK, _task_fields(title="Other"))
        for i in range(3):
            await _create_subtask(repo, task["_id"], i)
        await _create_subtask(repo, other["_id"], 0)

        await repo.delete(TASK, task["_id"])

        assert await repo.get_subtasks_of(task["_id"]) == []
        assert len(await repo.get_subtasks_of(other["_id"])) == 1
        assert await repo.count(SUBTASK) == 1

    @pytest.mark.asyncio
    async def test_cascade_notifies_for_each_subtask(self, repo: EntityRepository) -> None:
        task = await repo.create(TASK, _task_fields())
        subtasks = [await _create_subtask(repo, task["_id"], i) for i in range(2)]
        events: list[ChangeEvent] = []
        repo.subscribe(events.append)

        await repo.delete(TASK, task["_id"])

        assert {(e.table, e.entity_id) for e in events[:-1]} == {
            (SUBTASK, s["_id"]) for s in subtasks
        }
        assert events[-1] == ChangeEvent("deleted", TASK, task["_id"])
        assert all(e.action == "deleted" for e in events)


# ── Queries ───────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio
    async def test_subtasks_ordered_by_index(self, repo: EntityRepository) -> None:
        task = await repo.create(TASK, _task_fields())
        for i in (2, 0, 1):
            await _create_subtask(repo, task["_id"], i)

        subtasks = await repo.get_subtasks_of(task["_id"])
        assert [s["orderIndex"] for s in subtasks] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_filter_returns_exactly_matching(self, repo: EntityRepository) -> None:
        await repo.create(TASK, _task_fields(userId="u1", completed=True))
        await repo.create(TASK, _task_fields(userId="u1"))
        await repo.create(TASK, _task_fields(userId="u2", completed=True))

        done = await repo.get_by_filter(TASK, "completed", True)
        assert len(done) == 2
        assert all(t["completed"] is True for t in done)

        mine = await repo.get_by_filter(TASK, "userId", "u1")
        assert {t["userId"] for t in mine} == {"u1"}
        assert len(mine) == 2

    @pytest.mark.asyncio
    async def test_filter_by_datetime(self, repo: EntityRepository) -> None:
        await repo.create(TASK, _task_fields())
        await repo.create(TASK, _task_fields(dueDate=DUE + timedelta(days=1)))
        assert len(await repo.get_by_filter(TASK, "dueDate", DUE)) == 1

    @pytest.mark.asyncio
    async def test_filter_by_none_matches_null(self, repo: EntityRepository) -> None:
        await repo.create(TASK, _task_fields())
        await repo.create(TASK, _task_fields(description="Details"))

        empty = await repo.get_by_filter(TASK, "description", None)
        assert len(empty) == 1
        assert empty[0]["description"] is None

    @pytest.mark.asyncio
    async def test_raw_literal_follows_column_type(self, repo: EntityRepository) -> None:
        await repo.create(TASK, _task_fields(completed=True))
        await repo.create(TASK, _task_fields())
        rows = await repo.query("SELECT * FROM Task WHERE completed = '1'", table=TASK)
        assert [t["completed"] for t in rows] == [True]

    @pytest.mark.asyncio
    async def test_filter_unknown_key(self, repo: EntityRepository) -> None:
        with pytest.raises(InvalidFieldError):
            await repo.get_by_filter(TASK, "owner", "u1")

    @pytest.mark.asyncio
    async def test_get_owned(self, repo: EntityRepository) -> None:
        await repo.create(TASK, _task_fields(userId="u1"))
        await repo.create(TASK, _task_fields(userId="u2"))
        owned = await repo.get_owned(TASK)
        assert [t["userId"] for t in owned] == ["u1"]

    @pytest.mark.asyncio
    async def test_get_owned_requires_user(self, backend: Backend) -> None:
        repo = await EntityRepository(backend).initialize()
        with pytest.raises(RepositoryError, match="No current user"):
            await repo.get_owned(TASK)
        await repo.close()

    @pytest.mark.asyncio
    async def test_raw_query(self, repo: EntityRepository) -> None:
        await repo.create(TASK, _task_fields(userId="u1"))
        await repo.create(TASK, _task_fields(userId="u2"))

        raw = await repo.query("SELECT * FROM Task WHERE userId = ?", ["u1"])
        assert len(raw) == 1
        assert raw[0]["completed"] == 0
        assert raw[0]["dueDate"] == "2024-06-01T00:00:00.000000Z"

        decoded = await repo.query("SELECT * FROM Task WHERE userId = ?", ["u1"], table=TASK)
        assert decoded[0]["completed"] is False
        assert decoded[0]["dueDate"] == DUE

    @pytest.mark.asyncio
    async def test_get_all_and_count(self, repo: EntityRepository) -> None:
        await repo.create(USER, {
            "userId": "u1",
            "email": "a@example.com",
            "name": "A",
            "provider": "email",
        })
        assert len(await repo.get_all(USER)) == 1
        assert await repo.count(USER) == 1
        assert await repo.count(TASK) == 0


# ── Lifecycle and notifications ───────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_not_ready_before_initialize(self, backend: Backend) -> None:
        repo = EntityRepository(backend)
        assert repo.is_ready is False
        assert repo.schema_state == "uninitialized"
        with pytest.raises(NotReadyError):
            await repo.create(TASK, _task_fields())
        with pytest.raises(NotReadyError):
            await repo.get_all(TASK)
        with pytest.raises(NotReadyError):
            await repo.query("SELECT * FROM Task")
        await backend.close()

    @pytest.mark.asyncio
    async def test_ready_after_initialize(self, repo: EntityRepository) -> None:
        assert repo.is_ready is True
        assert repo.schema_state == "current"

    @pytest.mark.asyncio
    async def test_not_ready_after_close(self, backend: Backend) -> None:
        repo = await EntityRepository(backend).initialize()
        await repo.close()
        with pytest.raises(NotReadyError):
            await repo.get_all(TASK)

    @pytest.mark.asyncio
    async def test_listeners_receive_changes(self, repo: EntityRepository) -> None:
        events: list[ChangeEvent] = []
        unsubscribe = repo.subscribe(events.append)

        task = await repo.create(TASK, _task_fields())
        await repo.update(TASK, task["_id"], {"completed": True})
        await repo.delete(TASK, task["_id"])
        await repo.delete(TASK, task["_id"])
        unsubscribe()
        await repo.create(TASK, _task_fields())

        assert [(e.action, e.table, e.entity_id) for e in events] == [
            ("created", TASK, task["_id"]),
            ("updated", TASK, task["_id"]),
            ("deleted", TASK, task["_id"]),
        ]

    @pytest.mark.asyncio
    async def test_async_listener_and_failing_listener(self, repo: EntityRepository) -> None:
        seen: list[str] = []

        def broken(event: ChangeEvent) -> None:
            raise RuntimeError("boom")

        async def recorder(event: ChangeEvent) -> None:
            seen.append(event.action)

        repo.subscribe(broken)
        repo.subscribe(recorder)
        await repo.create(TASK, _task_fields())
        assert seen == ["created"]

    @pytest.mark.asyncio
    async def test_ready_event(self, backend: Backend) -> None:
        repo = EntityRepository(backend)
        events: list[ChangeEvent] = []
        repo.subscribe(events.append)
        await repo.initialize()
        await repo.close()
        assert events == [ChangeEvent("ready")]


class TestExecuteMany:
    @pytest.mark.asyncio
    async def test_runs_statements_in_order(self, tmp_path) -> None:
        repo = await open_store(backend="native", db_path=tmp_path / "store.db")
        task = await repo.create(TASK, _task_fields())
        await repo.execute_many([
            ("UPDATE Task SET title = ? WHERE _id = ?", ("First", task["_id"])),
            ("UPDATE Task SET title = title || ? WHERE _id = ?", ("+", task["_id"])),
        ])
        assert (await repo.get_by_id(TASK, task["_id"]))["title"] == "First+"
        await repo.close()

    @pytest.mark.asyncio
    async def test_requires_ready_store(self, backend: Backend) -> None:
        repo = EntityRepository(backend)
        with pytest.raises(NotReadyError):
            await repo.execute_many([])
        await backend.close()


class TestOpenStore:
    @pytest.mark.asyncio
    async def test_emulated_store_survives_reopen(self) -> None:
        kv = MemoryKeyValueStore()
        repo = await open_store(backend="emulated", kv_store=kv, user_id="u1")
        task = await repo.create(TASK, _task_fields())
        await _create_subtask(repo, task["_id"], 0)
        await repo.close()

        reopened = await open_store(backend="emulated", kv_store=kv)
        assert reopened.backend.kind == "emulated"
        fetched = await reopened.get_by_id(TASK, task["_id"])
        assert fetched["dueDate"] == DUE
        assert len(await reopened.get_subtasks_of(task["_id"])) == 1
        await reopened.close()

    @pytest.mark.asyncio
    async def test_native_store(self, tmp_path) -> None:
        repo = await open_store(backend="native", db_path=tmp_path / "store.db")
        assert repo.backend.kind == "native"
        assert repo.is_ready
        await repo.close()
