from __future__ import annotations

import asyncio
import logging
import re
import shlex
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from agman.agent import AgentInvoker
from agman.backends.base import ProcessError
from agman.config import AgmanPaths
from agman.flow import AgentStep, DefinitionLoadError, FailAction, Flow, LoopStep
from agman.lifecycle import set_linked_pr
from agman.poller import PullRequestSource
from agman.signals import Signal
from agman.state.task import Task, TaskStatus

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")

PostHook = Callable[[Task], Awaitable[None]]


class HaltReason(str, Enum):
    STEP_SIGNAL_TERMINAL = "step_signal_terminal"
    BLOCKED = "blocked"
    EXHAUSTED_STEPS = "exhausted_steps"
    FATAL_ERROR = "fatal_error"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True, frozen=True)
class RunOutcome:
    reason: HaltReason
    flow_step: int
    signal: Signal | None = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.reason in {HaltReason.EXHAUSTED_STEPS, HaltReason.STEP_SIGNAL_TERMINAL}


async def clear_feedback_hook(task: Task) -> None:
    task.clear_feedback()
    logger.info("cleared immediate feedback for task %s", task.id)


def link_pr_hook(source: PullRequestSource) -> PostHook:
    async def _link_pr(task: Task) -> None:
        linked = await source.find_for_worktree(task.worktree)
        if linked is None:
            logger.warning("no pull request found for worktree %s", task.worktree)
            return
        set_linked_pr(task, linked.number, linked.url)

    return _link_pr


def default_hooks(pr_source: PullRequestSource | None = None) -> dict[str, PostHook]:
    hooks: dict[str, PostHook] = {"clear_feedback": clear_feedback_hook}
    if pr_source is not None:
        hooks["link_pr"] = link_pr_hook(pr_source)
    return hooks


class FlowExecutor:
    """Drives a task through a flow, persisting progress after every step."""

    def __init__(
        self,
        paths: AgmanPaths,
        invoker: AgentInvoker,
        hooks: Mapping[str, PostHook] | None = None,
        max_idle_retries: int | None = None,
    ) -> None:
        self.paths = paths
        self.invoker = invoker
        self.hooks: dict[str, PostHook] = dict(default_hooks() if hooks is None else hooks)
        self.max_idle_retries = max_idle_retries or None

    # -- halting ---------------------------------------------------------

    @staticmethod
    def _changed_outside(task: Task, signal: Signal | None = None) -> RunOutcome:
        message = f"task status changed to {task.status.value} outside this run"
        logger.info("task %s: %s", task.id, message)
        return RunOutcome(HaltReason.BLOCKED, task.record.flow_step, signal, message)

    def _finish(
        self, task: Task, reason: HaltReason, signal: Signal | None, message: str
    ) -> RunOutcome:
        if not task.settle(TaskStatus.STOPPED):
            return self._changed_outside(task, signal)
        logger.info("task %s halted: %s (%s)", task.id, reason.value, message)
        return RunOutcome(reason, task.record.flow_step, signal, message)

    def _block(
        self, task: Task, status: TaskStatus, signal: Signal | None, message: str
    ) -> RunOutcome:
        if not task.settle(status):
            return self._changed_outside(task, signal)
        logger.info("task %s blocked as %s: %s", task.id, status.value, message)
        return RunOutcome(HaltReason.BLOCKED, task.record.flow_step, signal, message)

    def _externally_halted(self, task: Task) -> RunOutcome | None:
        task.reload()
        if task.status is TaskStatus.RUNNING:
            return None
        return self._changed_outside(task)

    def _idle_exhausted(self, task: Task, agent_name: str, idle_runs: int) -> RunOutcome | None:
        if self.max_idle_retries is None or idle_runs <= self.max_idle_retries:
            logger.info("agent %s produced no signal for task %s, retrying", agent_name, task.id)
            return None
        return self._block(
            task,
            TaskStatus.STOPPED,
            None,
            f"{agent_name} produced no signal after {idle_runs} runs",
        )

    # -- hooks and checks --------------------------------------------------

    def _validate_hooks(self, flow: Flow) -> None:
        for step in flow.steps:
            inner = step.steps if isinstance(step, LoopStep) else (step,)
            for item in inner:
                if item.post_hook and item.post_hook not in self.hooks:
                    raise DefinitionLoadError(
                        f"Flow '{flow.name}' uses unknown post hook '{item.post_hook}'"
                    )

    async def _run_post_hook(self, step: AgentStep, task: Task) -> None:
        if not step.post_hook:
            return
        hook = self.hooks.get(step.post_hook)
        if hook is None:
            raise DefinitionLoadError(f"Unknown post hook '{step.post_hook}'")
        logger.info("running post hook %s for task %s", step.post_hook, task.id)
        await hook(task)

    async def _pre_check_passes(self, step: AgentStep, task: Task) -> bool:
        command_text = (step.pre_check or "").strip()
        if not command_text:
            return False
        if not task.worktree.is_dir():
            logger.warning("skipping pre-check for %s: worktree %s missing", step.agent, task.worktree)
            return False

        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        argv: list[str] = []
        if not used_shell:
            try:
                argv = shlex.split(command_text)
            except ValueError:
                used_shell = True
        try:
            if used_shell:
                process = await asyncio.create_subprocess_shell(
                    command_text,
                    cwd=str(task.worktree),
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=str(task.worktree),
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
        except OSError as exc:
            logger.warning("pre-check for %s could not start: %s", step.agent, exc)
            return False
        exit_code = await process.wait()
        logger.debug("pre-check for %s exited %s", step.agent, exit_code)
        return exit_code == 0

    async def _execute(self, step: AgentStep, task: Task) -> Signal | None:
        if await self._pre_check_passes(step, task):
            self.invoker.append_transcript(
                task,
                f"\n--- Pre-check passed for agent: {step.agent}, treating as {step.until} ---\n",
            )
            logger.info("pre-check satisfied %s for task %s", step.agent, task.id)
            return step.until
        task.update_agent(step.agent)
        return await self.invoker.invoke(step.agent, task)

    # -- steps -------------------------------------------------------------

    async def _run_agent_step(self, step: AgentStep, task: Task) -> RunOutcome | None:
        idle_runs = 0
        while True:
            halted = self._externally_halted(task)
            if halted is not None:
                return halted

            signal = await self._execute(step, task)
            if signal is None:
                idle_runs += 1
                exhausted = self._idle_exhausted(task, step.agent, idle_runs)
                if exhausted is not None:
                    return exhausted
                continue

            if signal == step.until:
                await self._run_post_hook(step, task)
                task.advance_flow_step()
                return None
            if signal is Signal.INPUT_NEEDED:
                return self._block(
                    task, TaskStatus.INPUT_NEEDED, signal, f"{step.agent} needs input"
                )
            if signal is Signal.TASK_COMPLETE:
                return self._finish(
                    task,
                    HaltReason.STEP_SIGNAL_TERMINAL,
                    signal,
                    f"{step.agent} reported the task complete",
                )
            if step.fail_action is FailAction.CONTINUE:
                logger.info(
                    "agent %s emitted %s instead of %s, continuing", step.agent, signal, step.until
                )
                task.advance_flow_step()
                return None
            return self._block(
                task,
                TaskStatus.STOPPED,
                signal,
                f"{step.agent} emitted {signal}, expected {step.until}",
            )

    async def _run_loop_step(self, loop: LoopStep, task: Task) -> RunOutcome | None:
        inner_index = 0
        passes = 1
        idle_runs = 0
        while True:
            if inner_index >= len(loop.steps):
                inner_index = 0
                passes += 1
                if passes > loop.max_iterations:
                    return self._block(
                        task,
                        TaskStatus.STOPPED,
                        None,
                        f"loop exceeded {loop.max_iterations} iterations without {loop.until}",
                    )
                logger.info("task %s loop pass %d", task.id, passes)

            halted = self._externally_halted(task)
            if halted is not None:
                return halted

            step = loop.steps[inner_index]
            signal = await self._execute(step, task)
            if signal is None:
                idle_runs += 1
                exhausted = self._idle_exhausted(task, step.agent, idle_runs)
                if exhausted is not None:
                    return exhausted
                continue
            idle_runs = 0

            if signal is Signal.INPUT_NEEDED:
                return self._block(
                    task, TaskStatus.INPUT_NEEDED, signal, f"{step.agent} needs input"
                )
            if signal == loop.until:
                if signal == step.until:
                    await self._run_post_hook(step, task)
                task.advance_flow_step()
                return None
            if signal == step.until:
                await self._run_post_hook(step, task)
                inner_index += 1
                continue
            if signal is Signal.TASK_COMPLETE:
                return self._finish(
                    task,
                    HaltReason.STEP_SIGNAL_TERMINAL,
                    signal,
                    f"{step.agent} reported the task complete",
                )
            if step.fail_action is FailAction.CONTINUE:
                inner_index += 1
                continue
            return self._block(
                task,
                TaskStatus.STOPPED,
                signal,
                f"{step.agent} emitted {signal}, expected {step.until}",
            )

    # -- entry points ------------------------------------------------------

    @staticmethod
    def _abandon(task: Task, exc: ProcessError) -> None:
        # The agent is gone; status and step stay put so a re-run resumes here.
        logger.error("task %s run aborted at step %d: %s", task.id, task.record.flow_step, exc)
        task.update_agent(None)

    async def run(self, flow: Flow, task: Task) -> RunOutcome:
        task.reload()
        self._validate_hooks(flow)
        task.update_status(TaskStatus.RUNNING)
        if flow.is_complete(task.record.flow_step):
            return self._finish(
                task,
                HaltReason.EXHAUSTED_STEPS,
                None,
                f"flow '{flow.name}' has no step {task.record.flow_step}",
            )

        logger.info(
            "running flow %s for task %s from step %d", flow.name, task.id, task.record.flow_step
        )
        try:
            return await self._run_steps(flow, task)
        except ProcessError as exc:
            self._abandon(task, exc)
            raise

    async def _run_steps(self, flow: Flow, task: Task) -> RunOutcome:
        while True:
            step = flow.get_step(task.record.flow_step)
            match step:
                case None:
                    return self._finish(
                        task, HaltReason.EXHAUSTED_STEPS, None, f"flow '{flow.name}' complete"
                    )
                case AgentStep():
                    outcome = await self._run_agent_step(step, task)
                case LoopStep():
                    outcome = await self._run_loop_step(step, task)
            if outcome is not None:
                return outcome

    async def run_single_agent(self, agent_name: str, task: Task) -> RunOutcome:
        task.reload()
        task.update_status(TaskStatus.RUNNING)
        try:
            return await self._run_single(agent_name, task)
        except ProcessError as exc:
            self._abandon(task, exc)
            raise

    async def _run_single(self, agent_name: str, task: Task) -> RunOutcome:
        idle_runs = 0
        while True:
            halted = self._externally_halted(task)
            if halted is not None:
                return halted
            task.update_agent(agent_name)
            signal = await self.invoker.invoke(agent_name, task)
            if signal is None:
                idle_runs += 1
                exhausted = self._idle_exhausted(task, agent_name, idle_runs)
                if exhausted is not None:
                    return exhausted
                continue
            if signal is Signal.INPUT_NEEDED:
                return self._block(
                    task, TaskStatus.INPUT_NEEDED, signal, f"{agent_name} needs input"
                )
            return self._finish(
                task, HaltReason.STEP_SIGNAL_TERMINAL, signal, f"{agent_name} emitted {signal}"
            )
