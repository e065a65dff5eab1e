from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from agman.state.task import Task, TaskStatus

logger = logging.getLogger(__name__)


class PrPollAction(str, Enum):
    NONE = "none"
    DELETE_TASK = "delete_task"
    TRIGGER_ADDRESS_REVIEW = "trigger_address_review"

    def __str__(self) -> str:
        return self.value


class FeedbackDisposition(str, Enum):
    QUEUED = "queued"
    APPLIED = "applied"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True, frozen=True)
class PrPollResult:
    task_id: str
    merged: bool
    review_count: int | None


def decide_pr_poll_action(
    merged: bool,
    current_review_count: int | None,
    last_known_review_count: int | None,
) -> PrPollAction:
    if merged:
        return PrPollAction.DELETE_TASK
    if current_review_count is None or last_known_review_count is None:
        return PrPollAction.NONE
    if current_review_count > last_known_review_count:
        return PrPollAction.TRIGGER_ADDRESS_REVIEW
    return PrPollAction.NONE


def apply_pr_poll_result(task: Task, result: PrPollResult) -> PrPollAction:
    """Fold one poll observation into the task record and report what the driver should do."""
    task.reload()
    last_known = task.record.last_review_count
    action = decide_pr_poll_action(result.merged, result.review_count, last_known)

    if action is PrPollAction.NONE:
        if last_known is None and result.review_count is not None:
            task.set_last_review_count(result.review_count)
            logger.info("seeded review baseline for %s at %d", task.id, result.review_count)
        return action

    if action is PrPollAction.TRIGGER_ADDRESS_REVIEW:
        if task.status is TaskStatus.RUNNING:
            logger.info(
                "deferring review trigger for %s while it is running (%s -> %s)",
                task.id,
                last_known,
                result.review_count,
            )
            return PrPollAction.NONE
        task.set_last_review_count(result.review_count)
        task.set_review_addressed(False)
        logger.info(
            "new reviews on %s (%s -> %s), triggering address-review",
            task.id,
            last_known,
            result.review_count,
        )
        return action

    logger.info("pull request for %s merged", task.id)
    return action


# -- feedback ---------------------------------------------------------------


def submit_feedback(task: Task, text: str) -> FeedbackDisposition:
    task.reload()
    if task.status is TaskStatus.RUNNING:
        task.append_feedback_to_transcript(text)
        count = task.queue_feedback(text)
        logger.info("queued feedback for running task %s (%d pending)", task.id, count)
        return FeedbackDisposition.QUEUED
    task.write_feedback(text)
    logger.info("wrote immediate feedback for task %s", task.id)
    return FeedbackDisposition.APPLIED


def pop_and_apply_feedback(task: Task) -> str | None:
    text = task.pop_feedback_queue()
    if text is None:
        return None
    task.write_feedback(text)
    return text


def sweep_stranded_feedback(tasks: Iterable[Task]) -> list[tuple[Task, str]]:
    applied: list[tuple[Task, str]] = []
    for task in tasks:
        task.reload()
        if task.status is not TaskStatus.STOPPED or not task.record.feedback_queue:
            continue
        text = pop_and_apply_feedback(task)
        if text is not None:
            logger.info("applied stranded feedback for task %s", task.id)
            applied.append((task, text))
    return applied


def delete_queued_feedback(task: Task, index: int) -> bool:
    return task.remove_feedback_queue_item(index)


def clear_all_queued_feedback(task: Task) -> None:
    task.clear_feedback_queue()


# -- status transitions -----------------------------------------------------


def stop_task(task: Task) -> bool:
    task.reload()
    if task.status is TaskStatus.STOPPED:
        return False
    task.update_status(TaskStatus.STOPPED)
    task.update_agent(None)
    return True


def resume_after_answering(task: Task) -> bool:
    task.reload()
    if task.status is not TaskStatus.INPUT_NEEDED:
        return False
    task.update_status(TaskStatus.RUNNING)
    return True


def put_on_hold(task: Task) -> None:
    task.update_status(TaskStatus.ON_HOLD)
    task.update_agent(None)


def resume_from_hold(task: Task) -> bool:
    task.reload()
    if task.status is not TaskStatus.ON_HOLD:
        return False
    task.update_status(TaskStatus.STOPPED)
    return True


def restart_task(task: Task, step: int, step_count: int | None = None) -> None:
    if step < 0 or (step_count is not None and step >= step_count):
        raise ValueError(f"Step {step} is out of range for flow '{task.record.flow_name}'")
    task.set_flow_step(step)
    task.update_status(TaskStatus.RUNNING)


def start_flow(task: Task, flow_name: str) -> None:
    task.set_flow(flow_name)
    task.update_status(TaskStatus.RUNNING)


# -- review tracking --------------------------------------------------------


def set_review_addressed(task: Task, addressed: bool = True) -> None:
    task.set_review_addressed(addressed)


def update_last_review_count(task: Task, count: int | None) -> None:
    task.set_last_review_count(count)


def set_linked_pr(task: Task, number: int, url: str) -> None:
    task.set_linked_pr(number, url)
    logger.info("linked task %s to PR #%d", task.id, number)


def clear_linked_pr(task: Task) -> None:
    task.clear_linked_pr()
    logger.info("unlinked PR from task %s", task.id)
