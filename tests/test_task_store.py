"""
Contract tests shared by InMemoryTaskStore and SqliteTaskStore.
"""

import asyncio
import threading

import pytest

from a2a_engine.a2a.models import Artifact, TaskState, TaskStatus, TextPart
from a2a_engine.database import SqliteTaskStore
from a2a_engine.errors import AlreadyExists, DuplicateMessage, InvalidParams, NotFound

from factories import make_message


def _status(state: TaskState) -> TaskStatus:
    return TaskStatus(state=state, timestamp="2025-01-01T00:00:00+00:00")


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_starts_submitted_with_message(self, store):
        message = make_message("hi", "msg-1")

        task = await store.create(message, metadata={"source": "test"})

        assert task.status.state is TaskState.SUBMITTED
        assert task.contextId
        assert len(task.history) == 1
        assert task.history[0].taskId == task.id
        assert task.history[0].contextId == task.contextId
        assert task.metadata == {"source": "test"}

    @pytest.mark.asyncio
    async def test_create_uses_message_context(self, store):
        task = await store.create(make_message(context_id="ctx-42"))

        assert task.contextId == "ctx-42"

    @pytest.mark.asyncio
    async def test_duplicate_task_id_rejected(self, store):
        await store.create(make_message(), task_id="task-1")

        with pytest.raises(AlreadyExists):
            await store.create(make_message(), task_id="task-1")

    @pytest.mark.asyncio
    async def test_message_id_is_claimed_once_per_context(self, store):
        first = await store.create(make_message("hi", "msg-1", context_id="ctx-1"))

        with pytest.raises(DuplicateMessage) as exc_info:
            await store.create(make_message("hi", "msg-1", context_id="ctx-1"))
        other_context = await store.create(make_message("hi", "msg-1", context_id="ctx-2"))

        assert exc_info.value.task_id == first.id
        assert other_context.id != first.id
        assert len(await store.list_tasks(context_id="ctx-1")) == 1

    @pytest.mark.asyncio
    async def test_returned_task_is_a_copy(self, store):
        task = await store.create(make_message())
        task.history.clear()

        stored = await store.get(task.id)
        assert len(stored.history) == 1


class TestReads:
    @pytest.mark.asyncio
    async def test_get_unknown_task(self, store):
        with pytest.raises(NotFound):
            await store.get("missing")

    @pytest.mark.asyncio
    async def test_snapshot_starts_at_zero(self, store):
        task = await store.create(make_message())

        snapshot = await store.snapshot(task.id)

        assert snapshot.sequence == 0
        assert snapshot.task.id == task.id

    @pytest.mark.asyncio
    async def test_find_message(self, store):
        task = await store.create(make_message("hi", "msg-1", context_id="ctx-1"))
        await store.append_history(task.id, make_message("more", "msg-2"))

        assert await store.find_message("ctx-1", "msg-1") == task.id
        assert await store.find_message("ctx-1", "msg-2") == task.id
        assert await store.find_message("ctx-2", "msg-1") is None

    @pytest.mark.asyncio
    async def test_list_tasks_filters_and_order(self, store):
        first = await store.create(make_message(context_id="ctx-a"))
        second = await store.create(make_message(context_id="ctx-b"))
        third = await store.create(make_message(context_id="ctx-a"))
        await store.compare_and_set_status(
            third.id, third.status, _status(TaskState.WORKING)
        )

        assert [t.id for t in await store.list_tasks()] == [first.id, second.id, third.id]
        assert [t.id for t in await store.list_tasks(context_id="ctx-a")] == [first.id, third.id]
        assert [t.id for t in await store.list_tasks(state=TaskState.WORKING)] == [third.id]
        assert await store.list_tasks(context_id="ctx-b", state=TaskState.WORKING) == []


class TestMutations:
    @pytest.mark.asyncio
    async def test_append_history_preserves_order(self, store):
        task = await store.create(make_message("one", "msg-1"))
        await store.append_history(task.id, make_message("two", "msg-2", role="agent"))
        updated = await store.append_history(task.id, make_message("three", "msg-3"))

        assert [m.messageId for m in updated.history] == ["msg-1", "msg-2", "msg-3"]
        assert all(m.contextId == task.contextId for m in updated.history)

    @pytest.mark.asyncio
    async def test_append_artifact(self, store):
        task = await store.create(make_message())
        artifact = Artifact(artifactId="art-1", parts=[TextPart(text="part one")])

        await store.append_artifact(task.id, artifact)
        updated = await store.append_artifact(
            task.id,
            Artifact(artifactId="art-1", parts=[TextPart(text="part two")]),
            append=True,
        )

        assert len(updated.artifacts) == 1
        assert [p.text for p in updated.artifacts[0].parts] == ["part one", "part two"]

    @pytest.mark.asyncio
    async def test_duplicate_artifact_without_append(self, store):
        task = await store.create(make_message())
        artifact = Artifact(artifactId="art-1", parts=[TextPart(text="x")])
        await store.append_artifact(task.id, artifact)

        with pytest.raises(InvalidParams):
            await store.append_artifact(task.id, artifact)

    @pytest.mark.asyncio
    async def test_append_history_rejects_known_message(self, store):
        task = await store.create(make_message("one", "msg-1"))
        await store.append_history(task.id, make_message("two", "msg-2"))

        with pytest.raises(DuplicateMessage) as exc_info:
            await store.append_history(task.id, make_message("two again", "msg-2"))

        assert exc_info.value.task_id == task.id
        assert [m.messageId for m in (await store.get(task.id)).history] == ["msg-1", "msg-2"]

    @pytest.mark.asyncio
    async def test_finished_task_rejects_artifacts(self, store):
        task = await store.create(make_message())
        await store.compare_and_set_status(task.id, task.status, _status(TaskState.COMPLETED))

        with pytest.raises(InvalidParams):
            await store.append_artifact(task.id, Artifact(artifactId="late", parts=[TextPart(text="x")]))

        assert (await store.get(task.id)).artifacts == []

    @pytest.mark.asyncio
    async def test_compare_and_set_status(self, store):
        task = await store.create(make_message())
        working = _status(TaskState.WORKING)

        assert await store.compare_and_set_status(task.id, task.status, working) is True

        snapshot = await store.snapshot(task.id)
        assert snapshot.task.status == working
        assert snapshot.sequence == 1
        assert await store.terminal_since(task.id) is None

    @pytest.mark.asyncio
    async def test_compare_and_set_rejects_stale_expectation(self, store):
        task = await store.create(make_message())
        await store.compare_and_set_status(task.id, task.status, _status(TaskState.WORKING))

        applied = await store.compare_and_set_status(
            task.id, task.status, _status(TaskState.CANCELED)
        )

        assert applied is False
        snapshot = await store.snapshot(task.id)
        assert snapshot.task.status.state is TaskState.WORKING
        assert snapshot.sequence == 1

    @pytest.mark.asyncio
    async def test_compare_and_set_checks_sequence(self, store):
        task = await store.create(make_message())

        applied = await store.compare_and_set_status(
            task.id, task.status, _status(TaskState.WORKING), expected_sequence=5
        )

        assert applied is False

    @pytest.mark.asyncio
    async def test_terminal_since_recorded(self, store):
        task = await store.create(make_message())
        await store.compare_and_set_status(task.id, task.status, _status(TaskState.CANCELED))

        assert await store.terminal_since(task.id) is not None

    @pytest.mark.asyncio
    async def test_delete(self, store):
        task = await store.create(make_message("hi", "msg-1", context_id="ctx-1"))

        assert await store.delete(task.id) is True
        assert await store.delete(task.id) is False
        assert await store.find_message("ctx-1", "msg-1") is None
        with pytest.raises(NotFound):
            await store.get(task.id)


class TestConcurrency:
    def test_compare_and_set_from_threads_has_one_winner(self, store):
        task = asyncio.run(store.create(make_message()))
        results = []
        barrier = threading.Barrier(8)

        def race(state: TaskState) -> None:
            barrier.wait()
            results.append(
                asyncio.run(store.compare_and_set_status(task.id, task.status, _status(state)))
            )

        states = [TaskState.WORKING, TaskState.CANCELED, TaskState.FAILED, TaskState.REJECTED] * 2
        threads = [threading.Thread(target=race, args=(state,)) for state in states]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert asyncio.run(store.snapshot(task.id)).sequence == 1

    def test_same_message_from_threads_creates_one_task(self, store):
        created, duplicates = [], []
        barrier = threading.Barrier(4)

        def race() -> None:
            barrier.wait()
            try:
                task = asyncio.run(store.create(make_message("hi", "msg-1", context_id="ctx-1")))
                created.append(task.id)
            except DuplicateMessage as e:
                duplicates.append(e.task_id)

        threads = [threading.Thread(target=race) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(created) == 1
        assert duplicates == created * 3
        assert len(asyncio.run(store.list_tasks())) == 1


class TestSqlitePersistence:
    @pytest.mark.asyncio
    async def test_task_survives_reopen(self, tmp_path):
        db_path = tmp_path / "nested" / "tasks.db"
        first = SqliteTaskStore(db_path)
        task = await first.create(make_message("persist me", "msg-1"))
        await first.append_artifact(task.id, Artifact(artifactId="a", parts=[TextPart(text="out")]))
        await first.compare_and_set_status(task.id, task.status, _status(TaskState.COMPLETED))
        first.close()

        second = SqliteTaskStore(db_path)
        try:
            snapshot = await second.snapshot(task.id)
            assert snapshot.sequence == 1
            assert snapshot.task.status.state is TaskState.COMPLETED
            assert snapshot.task.history[0].parts[0].text == "persist me"
            assert snapshot.task.artifacts[0].artifactId == "a"
            assert await second.find_message(task.contextId, "msg-1") == task.id
        finally:
            second.close()
