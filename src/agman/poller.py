from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agman.lifecycle import PrPollAction, PrPollResult, apply_pr_poll_result
from agman.state.task import LinkedPr, Task

logger = logging.getLogger(__name__)


class PullRequestError(RuntimeError):
    """Raised when the code-review system cannot be queried."""


@dataclass(slots=True, frozen=True)
class PollTarget:
    task_id: str
    worktree_path: Path
    pr_number: int
    pr_url: str


@dataclass(slots=True, frozen=True)
class PullRequestState:
    merged: bool
    review_count: int | None


class PullRequestSource(ABC):
    @abstractmethod
    async def fetch(self, target: PollTarget) -> PullRequestState:
        """Return the merge state and review count of the target's pull request."""

    @abstractmethod
    async def find_for_worktree(self, worktree_path: Path) -> LinkedPr | None:
        """Return the pull request for the branch checked out in ``worktree_path``."""


class GhPullRequestSource(PullRequestSource):
    def __init__(self, binary: str = "gh") -> None:
        self.binary = binary

    async def _run_json(self, args: list[str], cwd: Path) -> dict[str, Any]:
        command = [self.binary, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd.is_dir() else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise PullRequestError(f"Failed to start {self.binary}: {exc}") from exc
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise PullRequestError(
                f"{' '.join(command[:3])} exited {process.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()}"
            )
        try:
            payload = json.loads(stdout.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as exc:
            raise PullRequestError(f"Unparsable output from {self.binary}: {exc}") from exc
        if not isinstance(payload, dict):
            raise PullRequestError(f"Unexpected output from {self.binary}: {payload!r}")
        return payload

    async def fetch(self, target: PollTarget) -> PullRequestState:
        payload = await self._run_json(
            ["pr", "view", str(target.pr_number), "--json", "state,reviews,number,url"],
            target.worktree_path,
        )
        reviews = payload.get("reviews")
        return PullRequestState(
            merged=str(payload.get("state", "")).upper() == "MERGED",
            review_count=len(reviews) if isinstance(reviews, list) else None,
        )

    async def find_for_worktree(self, worktree_path: Path) -> LinkedPr | None:
        try:
            payload = await self._run_json(["pr", "view", "--json", "number,url"], worktree_path)
        except PullRequestError as exc:
            logger.info("no pull request for %s: %s", worktree_path, exc)
            return None
        number = payload.get("number")
        if not isinstance(number, int):
            return None
        return LinkedPr(number=number, url=str(payload.get("url", "")))


class ReviewPoller:
    """Polls linked pull requests concurrently and applies the results one at a time."""

    def __init__(self, source: PullRequestSource, *, max_concurrency: int = 4) -> None:
        self.source = source
        self.max_concurrency = max(1, max_concurrency)

    @staticmethod
    def snapshot(tasks: Iterable[Task]) -> tuple[PollTarget, ...]:
        targets: list[PollTarget] = []
        for task in tasks:
            linked = task.record.linked_pr
            if linked is None:
                continue
            targets.append(
                PollTarget(
                    task_id=task.id,
                    worktree_path=task.worktree,
                    pr_number=linked.number,
                    pr_url=linked.url,
                )
            )
        return tuple(targets)

    async def _poll_one(
        self,
        target: PollTarget,
        semaphore: asyncio.Semaphore,
        results: asyncio.Queue[PrPollResult],
    ) -> None:
        async with semaphore:
            try:
                state = await self.source.fetch(target)
            except (PullRequestError, OSError) as exc:
                logger.warning("polling PR #%d for %s failed: %s", target.pr_number, target.task_id, exc)
                return
        await results.put(
            PrPollResult(task_id=target.task_id, merged=state.merged, review_count=state.review_count)
        )

    async def poll(self, targets: tuple[PollTarget, ...]) -> asyncio.Queue[PrPollResult]:
        results: asyncio.Queue[PrPollResult] = asyncio.Queue()
        semaphore = asyncio.Semaphore(self.max_concurrency)
        await asyncio.gather(*(self._poll_one(target, semaphore, results) for target in targets))
        return results

    @staticmethod
    def drain_results(
        results: asyncio.Queue[PrPollResult],
        tasks_by_id: dict[str, Task],
    ) -> list[tuple[Task, PrPollAction]]:
        actions: list[tuple[Task, PrPollAction]] = []
        while not results.empty():
            result = results.get_nowait()
            task = tasks_by_id.get(result.task_id)
            if task is None:
                logger.warning("dropping poll result for unknown task %s", result.task_id)
                continue
            actions.append((task, apply_pr_poll_result(task, result)))
        return actions

    async def run_cycle(self, tasks: Iterable[Task]) -> list[tuple[Task, PrPollAction]]:
        task_list = list(tasks)
        targets = self.snapshot(task_list)
        logger.info("polling %d linked pull requests", len(targets))
        results = await self.poll(targets)
        return self.drain_results(results, {task.id: task for task in task_list})
