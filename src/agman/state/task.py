from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from agman.config import AgmanPaths, parse_task_id, task_id
from agman.state.store import JsonRecordStore, PersistenceError

logger = logging.getLogger(__name__)

META_FILE = "meta.json"
TASK_FILE = "TASK.md"
PLAN_FILE = "PLAN.md"
PROGRESS_FILE = "progress.md"
CONTEXT_FILE = "context.md"
FEEDBACK_FILE = "FEEDBACK.md"
NOTES_FILE = "notes.md"
TRANSCRIPT_FILE = "agent.log"

MAX_DIFF_CHARS = 10_000


class TaskNotFoundError(PersistenceError):
    """Raised when no stored task matches an identifier."""


class TaskStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    INPUT_NEEDED = "input_needed"
    ON_HOLD = "on_hold"

    def __str__(self) -> str:
        return self.value


STATUS_ORDER = {
    TaskStatus.RUNNING: 0,
    TaskStatus.INPUT_NEEDED: 1,
    TaskStatus.STOPPED: 2,
    TaskStatus.ON_HOLD: 3,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return _utcnow()


@dataclass(slots=True)
class LinkedPr:
    number: int
    url: str

    def to_dict(self) -> dict[str, Any]:
        return {"number": self.number, "url": self.url}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LinkedPr:
        return cls(number=int(data["number"]), url=str(data.get("url", "")))


@dataclass(slots=True)
class TaskRecord:
    repo_name: str
    branch_name: str
    worktree_path: str
    status: TaskStatus = TaskStatus.STOPPED
    flow_name: str = "new"
    flow_step: int = 0
    current_agent: str | None = None
    feedback_queue: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    last_review_count: int | None = None
    review_addressed: bool = False
    linked_pr: LinkedPr | None = None
    review_after: bool = False
    command_arg: str | None = None

    @property
    def id(self) -> str:
        return task_id(self.repo_name, self.branch_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo_name": self.repo_name,
            "branch_name": self.branch_name,
            "worktree_path": self.worktree_path,
            "status": self.status.value,
            "flow_name": self.flow_name,
            "flow_step": self.flow_step,
            "current_agent": self.current_agent,
            "feedback_queue": list(self.feedback_queue),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_review_count": self.last_review_count,
            "review_addressed": self.review_addressed,
            "linked_pr": self.linked_pr.to_dict() if self.linked_pr else None,
            "review_after": self.review_after,
            "command_arg": self.command_arg,
        }

    @classmethod
    def from_dict(cls, data: Any) -> TaskRecord:
        if not isinstance(data, dict):
            raise PersistenceError("Task record must be a JSON object.")
        try:
            linked = data.get("linked_pr")
            last_review_count = data.get("last_review_count")
            return cls(
                repo_name=str(data["repo_name"]),
                branch_name=str(data["branch_name"]),
                worktree_path=str(data.get("worktree_path", "")),
                status=TaskStatus(data.get("status", TaskStatus.STOPPED.value)),
                flow_name=str(data.get("flow_name", "new")),
                flow_step=int(data.get("flow_step", 0)),
                current_agent=data.get("current_agent"),
                feedback_queue=[str(item) for item in data.get("feedback_queue") or []],
                created_at=_parse_timestamp(data.get("created_at")),
                updated_at=_parse_timestamp(data.get("updated_at")),
                last_review_count=None if last_review_count is None else int(last_review_count),
                review_addressed=bool(data.get("review_addressed", False)),
                linked_pr=LinkedPr.from_dict(linked) if isinstance(linked, dict) else None,
                review_after=bool(data.get("review_after", False)),
                command_arg=data.get("command_arg"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Invalid task record: {exc}") from exc


class Task:
    """A task record plus its directory of artifacts; every mutation is persisted immediately."""

    def __init__(self, paths: AgmanPaths, record: TaskRecord) -> None:
        self.paths = paths
        self.record = record
        self.dir = paths.task_dir(record.id)
        self.store = JsonRecordStore(self.dir / META_FILE)

    def __repr__(self) -> str:
        return f"Task({self.id!r}, status={self.record.status.value!r}, step={self.record.flow_step})"

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def status(self) -> TaskStatus:
        return self.record.status

    @property
    def worktree(self) -> Path:
        return Path(self.record.worktree_path)

    # -- loading -------------------------------------------------------

    @classmethod
    def create(
        cls,
        paths: AgmanPaths,
        repo_name: str,
        branch_name: str,
        description: str,
        worktree_path: Path,
        flow_name: str = "new",
        *,
        review_after: bool = False,
        command_arg: str | None = None,
        status: TaskStatus = TaskStatus.STOPPED,
    ) -> Task:
        record = TaskRecord(
            repo_name=repo_name,
            branch_name=branch_name,
            worktree_path=str(worktree_path),
            status=status,
            flow_name=flow_name,
            review_after=review_after,
            command_arg=command_arg,
        )
        task = cls(paths, record)
        if task.store.exists():
            raise PersistenceError(f"Task '{task.id}' already exists.")
        task.dir.mkdir(parents=True, exist_ok=True)
        for name in (NOTES_FILE, TRANSCRIPT_FILE):
            artifact = task.dir / name
            if not artifact.exists():
                artifact.write_text("", encoding="utf-8")
        task.write_task(description)
        task.store.write(record.to_dict())
        logger.info("created task %s (flow=%s)", task.id, flow_name)
        return task

    @classmethod
    def load(cls, paths: AgmanPaths, repo_name: str, branch_name: str) -> Task:
        identifier = task_id(repo_name, branch_name)
        store = JsonRecordStore(paths.task_dir(identifier) / META_FILE)
        if not store.exists():
            raise TaskNotFoundError(f"Task '{identifier}' not found.")
        return cls(paths, TaskRecord.from_dict(store.read()))

    @classmethod
    def load_by_id(cls, paths: AgmanPaths, identifier: str) -> Task:
        parsed = parse_task_id(identifier)
        if parsed is not None:
            return cls.load(paths, *parsed)
        matching = [task for task in cls.list_all(paths) if task.record.branch_name == identifier]
        if not matching:
            raise TaskNotFoundError(f"Task '{identifier}' not found.")
        if len(matching) > 1:
            raise TaskNotFoundError(
                f"Ambiguous task '{identifier}' - found in multiple repos. Use repo--branch format."
            )
        return matching[0]

    @classmethod
    def list_all(cls, paths: AgmanPaths) -> list[Task]:
        tasks: list[Task] = []
        if not paths.tasks_dir.exists():
            return tasks
        for entry in sorted(paths.tasks_dir.iterdir()):
            if not entry.is_dir() or not (entry / META_FILE).exists():
                continue
            try:
                record = TaskRecord.from_dict(JsonRecordStore(entry / META_FILE).read())
            except PersistenceError as exc:
                logger.warning("failed to load task %s: %s", entry.name, exc)
                continue
            tasks.append(cls(paths, record))
        tasks.sort(key=lambda task: -task.record.updated_at.timestamp())
        tasks.sort(key=lambda task: STATUS_ORDER[task.record.status])
        return tasks

    def reload(self) -> Task:
        self.record = TaskRecord.from_dict(self.store.read())
        return self

    def delete(self) -> None:
        logger.info("deleting task %s", self.id)
        if self.dir.exists():
            shutil.rmtree(self.dir)

    # -- record mutations ------------------------------------------------

    def _mutate(self, change: Callable[[TaskRecord], None]) -> TaskRecord:
        def _updater(data: Any) -> dict[str, Any]:
            record = TaskRecord.from_dict(data)
            change(record)
            record.updated_at = _utcnow()
            return record.to_dict()

        self.record = TaskRecord.from_dict(self.store.update(_updater))
        return self.record

    def update_status(self, status: TaskStatus) -> None:
        previous = self.record.status

        def _change(record: TaskRecord) -> None:
            record.status = status

        self._mutate(_change)
        if previous != status:
            logger.info("task %s status %s -> %s", self.id, previous.value, status.value)

    def settle(self, status: TaskStatus) -> bool:
        """Clear ``current_agent`` and move a still-running task to ``status``.

        A status changed by someone else while the run was in flight is kept.
        Returns whether ``status`` was applied.
        """
        applied = False

        def _change(record: TaskRecord) -> None:
            nonlocal applied
            record.current_agent = None
            applied = record.status is TaskStatus.RUNNING
            if applied:
                record.status = status

        self._mutate(_change)
        if applied:
            logger.info("task %s status running -> %s", self.id, status.value)
        return applied

    def update_agent(self, agent: str | None) -> None:
        def _change(record: TaskRecord) -> None:
            record.current_agent = agent

        self._mutate(_change)

    def advance_flow_step(self) -> int:
        def _change(record: TaskRecord) -> None:
            record.flow_step += 1

        return self._mutate(_change).flow_step

    def set_flow_step(self, step: int) -> None:
        if step < 0:
            raise ValueError(f"Flow step must be non-negative, got {step}")

        def _change(record: TaskRecord) -> None:
            record.flow_step = step

        self._mutate(_change)

    def set_flow(self, flow_name: str) -> None:
        def _change(record: TaskRecord) -> None:
            record.flow_name = flow_name
            record.flow_step = 0

        self._mutate(_change)

    def set_command_arg(self, value: str | None) -> None:
        def _change(record: TaskRecord) -> None:
            record.command_arg = value

        self._mutate(_change)

    def set_review_after(self, enabled: bool) -> None:
        def _change(record: TaskRecord) -> None:
            record.review_after = enabled

        self._mutate(_change)

    def set_review_addressed(self, addressed: bool) -> None:
        def _change(record: TaskRecord) -> None:
            record.review_addressed = addressed

        self._mutate(_change)

    def set_last_review_count(self, count: int | None) -> None:
        def _change(record: TaskRecord) -> None:
            record.last_review_count = count

        self._mutate(_change)

    def set_linked_pr(self, number: int, url: str) -> None:
        def _change(record: TaskRecord) -> None:
            record.linked_pr = LinkedPr(number=number, url=url)

        self._mutate(_change)

    def clear_linked_pr(self) -> None:
        def _change(record: TaskRecord) -> None:
            record.linked_pr = None
            record.last_review_count = None
            record.review_addressed = False

        self._mutate(_change)

    # -- feedback queue --------------------------------------------------

    def queue_feedback(self, text: str) -> int:
        def _change(record: TaskRecord) -> None:
            record.feedback_queue.append(text)

        return len(self._mutate(_change).feedback_queue)

    def pop_feedback_queue(self) -> str | None:
        popped: list[str] = []

        def _change(record: TaskRecord) -> None:
            popped.clear()
            if record.feedback_queue:
                popped.append(record.feedback_queue.pop(0))

        self._mutate(_change)
        return popped[0] if popped else None

    def remove_feedback_queue_item(self, index: int) -> bool:
        removed: list[bool] = []

        def _change(record: TaskRecord) -> None:
            removed.clear()
            if 0 <= index < len(record.feedback_queue):
                del record.feedback_queue[index]
                removed.append(True)

        self._mutate(_change)
        return bool(removed)

    def clear_feedback_queue(self) -> None:
        def _change(record: TaskRecord) -> None:
            record.feedback_queue.clear()

        self._mutate(_change)

    @property
    def feedback_queue(self) -> list[str]:
        return list(self.record.feedback_queue)

    # -- artifacts -------------------------------------------------------

    def _read_artifact(self, name: str) -> str:
        path = self.dir / name
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")

    def _write_artifact(self, name: str, content: str) -> None:
        self.dir.mkdir(parents=True, exist_ok=True)
        (self.dir / name).write_text(content, encoding="utf-8")

    def read_task(self) -> str:
        return self._read_artifact(TASK_FILE)

    def write_task(self, content: str) -> None:
        self._write_artifact(TASK_FILE, content)

    def read_plan(self) -> str:
        return self._read_artifact(PLAN_FILE)

    def read_progress(self) -> str:
        return self._read_artifact(PROGRESS_FILE)

    def read_context(self) -> str:
        return self._read_artifact(CONTEXT_FILE)

    def read_notes(self) -> str:
        return self._read_artifact(NOTES_FILE)

    def write_notes(self, content: str) -> None:
        self._write_artifact(NOTES_FILE, content)

    def read_feedback(self) -> str:
        return self._read_artifact(FEEDBACK_FILE)

    def write_feedback(self, content: str) -> None:
        self._write_artifact(FEEDBACK_FILE, content)

    def clear_feedback(self) -> None:
        (self.dir / FEEDBACK_FILE).unlink(missing_ok=True)

    # -- transcript ------------------------------------------------------

    @property
    def transcript_path(self) -> Path:
        return self.dir / TRANSCRIPT_FILE

    def append_transcript(self, content: str) -> None:
        self.dir.mkdir(parents=True, exist_ok=True)
        with self.transcript_path.open("a", encoding="utf-8") as handle:
            handle.write(f"{content}\n")

    def append_feedback_to_transcript(self, text: str) -> None:
        timestamp = _utcnow().strftime("%Y-%m-%d %H:%M:%S UTC")
        self.append_transcript(
            f"\n--- User feedback at {timestamp} ---\n{text}\n--- End user feedback ---\n"
        )

    def read_transcript(self) -> str:
        return self._read_artifact(TRANSCRIPT_FILE)

    def read_transcript_tail(self, lines: int) -> list[str]:
        if lines <= 0:
            return []
        return self.read_transcript().splitlines()[-lines:]

    # -- worktree helpers ------------------------------------------------

    def _git_output(self, args: list[str]) -> str:
        worktree = self.worktree
        if not worktree.is_dir():
            return ""
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=worktree,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            logger.warning("git %s failed in %s: %s", args[0], worktree, exc)
            return ""
        if proc.returncode != 0:
            logger.debug("git %s exited %s in %s", args[0], proc.returncode, worktree)
            return ""
        return proc.stdout

    def git_diff(self) -> str:
        diff = self._git_output(["diff", "HEAD"])
        if len(diff) > MAX_DIFF_CHARS:
            return f"{diff[:MAX_DIFF_CHARS]}\n\n[... diff truncated, showing first 10000 chars ...]"
        return diff

    def git_log_summary(self) -> str:
        return self._git_output(["log", "--oneline", "-20"])

    def time_since_update(self, now: datetime | None = None) -> str:
        elapsed = int(((now or _utcnow()) - self.record.updated_at).total_seconds())
        if elapsed >= 86_400:
            return f"{elapsed // 86_400}d ago"
        if elapsed >= 3_600:
            return f"{elapsed // 3_600}h ago"
        if elapsed >= 60:
            return f"{elapsed // 60}m ago"
        return "just now"
