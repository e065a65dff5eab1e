import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agman.config import AgmanPaths
from agman.state import JsonRecordStore, PersistenceError, Task, TaskNotFoundError, TaskStatus


def _paths(tmp_path: Path) -> AgmanPaths:
    paths = AgmanPaths(tmp_path / "home")
    paths.ensure_dirs()
    return paths


def _create(paths: AgmanPaths, repo: str = "repo", branch: str = "feat/x", **kwargs) -> Task:
    worktree = paths.home.parent / "worktrees" / f"{repo}-{branch.replace('/', '-')}"
    worktree.mkdir(parents=True, exist_ok=True)
    return Task.create(paths, repo, branch, "Build the thing", worktree, **kwargs)


def test_record_store_envelope_and_revisions(tmp_path: Path) -> None:
    store = JsonRecordStore(tmp_path / "meta.json")

    assert store.write({"count": 1}) == 1
    assert store.write({"count": 2}) == 2

    envelope = json.loads((tmp_path / "meta.json").read_text(encoding="utf-8"))
    assert envelope["schema_version"] == JsonRecordStore.SCHEMA_VERSION
    assert envelope["revision"] == 2
    assert envelope["data"] == {"count": 2}
    assert store.read() == {"count": 2}
    assert not store.lock_file.exists()


def test_record_store_rejects_stale_revision(tmp_path: Path) -> None:
    store = JsonRecordStore(tmp_path / "meta.json")
    store.write({"count": 1})

    with pytest.raises(PersistenceError, match="Concurrent state update detected"):
        store.write({"count": 5}, expected_revision=0)
    assert store.read() == {"count": 1}


def test_record_store_update_applies_to_latest_data(tmp_path: Path) -> None:
    store = JsonRecordStore(tmp_path / "meta.json")
    store.write({"items": ["a"]})

    updated = store.update(lambda data: {"items": [*data["items"], "b"]})

    assert updated == {"items": ["a", "b"]}
    assert store.get_envelope()["revision"] == 2


def test_record_store_reads_legacy_bare_record(tmp_path: Path) -> None:
    path = tmp_path / "meta.json"
    path.write_text(json.dumps({"legacy": True}), encoding="utf-8")
    store = JsonRecordStore(path)

    assert store.read() == {"legacy": True}
    store.update(lambda data: {**data, "legacy": False})
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["data"] == {"legacy": False}
    assert on_disk["revision"] == 1


def test_record_store_errors(tmp_path: Path) -> None:
    missing = JsonRecordStore(tmp_path / "missing.json")
    with pytest.raises(PersistenceError, match="not found"):
        missing.read()

    corrupt_path = tmp_path / "corrupt.json"
    corrupt_path.write_text("{not json", encoding="utf-8")
    with pytest.raises(PersistenceError, match="Corrupt"):
        JsonRecordStore(corrupt_path).read()

    locked = JsonRecordStore(tmp_path / "locked.json", lock_timeout_seconds=0.05)
    locked.lock_file.write_text("12345", encoding="utf-8")
    with pytest.raises(PersistenceError, match="Timed out"):
        locked.write({"x": 1})


def test_task_create_and_load(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    task = _create(paths, review_after=True)

    assert task.id == "repo--feat-x"
    assert task.status is TaskStatus.STOPPED
    assert task.read_task() == "Build the thing"
    assert (task.dir / "notes.md").exists()
    assert task.transcript_path.exists()

    loaded = Task.load(paths, "repo", "feat/x")
    assert loaded.record == task.record
    assert loaded.record.review_after is True
    assert Task.load_by_id(paths, "repo--feat-x").id == task.id

    with pytest.raises(PersistenceError, match="already exists"):
        _create(paths)
    with pytest.raises(TaskNotFoundError):
        Task.load(paths, "repo", "other")


def test_load_by_id_accepts_unique_bare_branch(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    _create(paths, "alpha", "shared")
    _create(paths, "beta", "shared")
    _create(paths, "alpha", "solo")

    assert Task.load_by_id(paths, "solo").id == "alpha--solo"
    with pytest.raises(TaskNotFoundError, match="Ambiguous"):
        Task.load_by_id(paths, "shared")
    with pytest.raises(TaskNotFoundError, match="not found"):
        Task.load_by_id(paths, "nowhere")


def test_set_flow_resets_step_and_mutations_refresh_updated_at(tmp_path: Path) -> None:
    task = _create(_paths(tmp_path))
    created = task.record.updated_at

    task.advance_flow_step()
    task.advance_flow_step()
    assert task.record.flow_step == 2
    assert task.record.updated_at >= created

    task.set_flow("continue")
    assert task.record.flow_name == "continue"
    assert task.record.flow_step == 0

    with pytest.raises(ValueError):
        task.set_flow_step(-1)


def test_stale_copy_does_not_clobber_queued_feedback(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    executor_copy = _create(paths)
    ui_copy = Task.load_by_id(paths, executor_copy.id)

    assert ui_copy.queue_feedback("first") == 1
    executor_copy.update_status(TaskStatus.RUNNING)
    executor_copy.update_agent("coder")

    reloaded = Task.load_by_id(paths, executor_copy.id)
    assert reloaded.feedback_queue == ["first"]
    assert reloaded.status is TaskStatus.RUNNING
    assert reloaded.record.current_agent == "coder"


def test_settle_only_moves_running_tasks(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    task = _create(paths)
    task.update_status(TaskStatus.RUNNING)
    task.update_agent("coder")

    assert task.settle(TaskStatus.INPUT_NEEDED) is True
    assert task.status is TaskStatus.INPUT_NEEDED
    assert task.record.current_agent is None

    task.update_agent("coder")
    Task.load_by_id(paths, task.id).update_status(TaskStatus.ON_HOLD)

    assert task.settle(TaskStatus.STOPPED) is False
    reloaded = task.reload()
    assert reloaded.status is TaskStatus.ON_HOLD
    assert reloaded.record.current_agent is None


def test_feedback_queue_operations(tmp_path: Path) -> None:
    task = _create(_paths(tmp_path))
    task.queue_feedback("one")
    task.queue_feedback("two")
    assert task.queue_feedback("three") == 3

    assert task.remove_feedback_queue_item(1) is True
    assert task.remove_feedback_queue_item(9) is False
    assert task.feedback_queue == ["one", "three"]
    assert task.pop_feedback_queue() == "one"
    task.clear_feedback_queue()
    assert task.pop_feedback_queue() is None
    assert task.reload().feedback_queue == []


def test_feedback_artifact_and_transcript(tmp_path: Path) -> None:
    task = _create(_paths(tmp_path))

    assert task.read_feedback() == ""
    task.write_feedback("please rename the helper")
    assert task.read_feedback() == "please rename the helper"
    task.clear_feedback()
    task.clear_feedback()
    assert task.read_feedback() == ""

    task.append_transcript("line one")
    task.append_feedback_to_transcript("use snake_case")
    transcript = task.read_transcript()
    assert "line one" in transcript
    assert "--- User feedback at " in transcript
    assert "use snake_case\n--- End user feedback ---" in transcript
    assert task.read_transcript_tail(2) == ["--- End user feedback ---", ""]
    assert task.read_transcript_tail(0) == []


def test_list_all_orders_by_status_then_recency(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    held = _create(paths, "r", "held")
    _create(paths, "r", "old")
    waiting = _create(paths, "r", "waiting")
    running = _create(paths, "r", "running")
    new_stopped = _create(paths, "r", "new")

    held.update_status(TaskStatus.ON_HOLD)
    waiting.update_status(TaskStatus.INPUT_NEEDED)
    running.update_status(TaskStatus.RUNNING)
    new_stopped.update_agent(None)

    broken = paths.task_dir("r--broken")
    broken.mkdir()
    (broken / "meta.json").write_text("{oops", encoding="utf-8")

    ordered = [task.id for task in Task.list_all(paths)]
    assert ordered == ["r--running", "r--waiting", "r--new", "r--old", "r--held"]


def test_time_since_update_buckets(tmp_path: Path) -> None:
    task = _create(_paths(tmp_path))
    updated = task.record.updated_at

    assert task.time_since_update(updated + timedelta(seconds=30)) == "just now"
    assert task.time_since_update(updated + timedelta(minutes=5)) == "5m ago"
    assert task.time_since_update(updated + timedelta(hours=3)) == "3h ago"
    assert task.time_since_update(updated + timedelta(days=2, hours=1)) == "2d ago"
    assert task.record.updated_at.tzinfo == UTC
    assert task.record.created_at <= datetime.now(UTC)


def test_linked_pr_and_review_tracking(tmp_path: Path) -> None:
    task = _create(_paths(tmp_path))
    task.set_linked_pr(42, "https://example.com/pr/42")
    task.set_last_review_count(3)
    task.set_review_addressed(True)

    reloaded = task.reload().record
    assert reloaded.linked_pr is not None
    assert reloaded.linked_pr.number == 42
    assert reloaded.last_review_count == 3
    assert reloaded.review_addressed is True

    task.clear_linked_pr()
    assert task.record.linked_pr is None
    assert task.record.last_review_count is None
    assert task.record.review_addressed is False


def test_delete_removes_task_directory(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    task = _create(paths)

    task.delete()

    assert not task.dir.exists()
    assert Task.list_all(paths) == []
