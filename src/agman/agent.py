from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from agman.backends.base import AgentBackend, TranscriptWriteError
from agman.config import AgmanPaths
from agman.flow import DefinitionLoadError
from agman.signals import Signal, classify
from agman.state.task import Task

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]


class AgentLoadError(DefinitionLoadError):
    """Raised when an agent's prompt template is missing or unreadable."""


def _timestamp() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


@dataclass(slots=True, frozen=True)
class Agent:
    name: str
    prompt_template: str

    @classmethod
    def load(cls, paths: AgmanPaths, name: str) -> Agent:
        path = paths.prompt_path(name)
        try:
            template = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise AgentLoadError(f"Prompt template for agent '{name}' not found: {path}") from exc
        except OSError as exc:
            raise AgentLoadError(f"Failed to read prompt template {path}: {exc}") from exc
        return cls(name=name, prompt_template=template)

    def build_prompt(self, task: Task) -> str:
        sections: list[tuple[str, str]] = [
            ("Task Goal", task.read_task()),
            ("Implementation Plan", task.read_plan()),
            ("Progress So Far", task.read_progress()),
            ("Relevant Context", task.read_context()),
            ("Command Argument", task.record.command_arg or ""),
        ]
        feedback = task.read_feedback()
        sections.append(("Follow-up Feedback", feedback))

        parts = [self.prompt_template.rstrip(), "---"]
        for title, body in sections:
            if body.strip():
                parts.append(f"# {title}\n{body.strip()}")

        if feedback.strip():
            diff = task.git_diff()
            if diff.strip():
                parts.append(f"# Current Git Diff\n```diff\n{diff.rstrip()}\n```")
            log_summary = task.git_log_summary()
            if log_summary.strip():
                parts.append(f"# Recent Commits\n```\n{log_summary.rstrip()}\n```")
        return "\n\n".join(parts) + "\n"


class AgentInvoker:
    """Runs one agent against one task and reports the last stop signal it printed."""

    def __init__(
        self,
        paths: AgmanPaths,
        backend: AgentBackend,
        on_line: LineCallback | None = None,
    ) -> None:
        self.paths = paths
        self.backend = backend
        self.on_line = on_line

    def append_transcript(self, task: Task, content: str) -> None:
        try:
            task.append_transcript(content)
        except OSError as exc:
            raise TranscriptWriteError(
                f"Failed to append to transcript {task.transcript_path}: {exc}",
                backend=self.backend.name,
            ) from exc

    async def invoke(self, agent_name: str, task: Task) -> Signal | None:
        agent = Agent.load(self.paths, agent_name)
        prompt = agent.build_prompt(task)

        self.append_transcript(task, f"\n--- Agent: {agent_name} started at {_timestamp()} ---\n")
        logger.info("invoking agent %s for task %s", agent_name, task.id)

        observed: Signal | None = None
        async for line in self.backend.execute(prompt, task.worktree):
            self.append_transcript(task, line)
            signal = classify(line)
            if signal is not None:
                observed = signal
            if self.on_line is not None:
                self.on_line(line)

        exit_code = self.backend.last_exit_code
        outcome = str(observed) if observed is not None else "no signal"
        self.append_transcript(
            task,
            f"\n--- Agent: {agent_name} finished at {_timestamp()} "
            f"with: {outcome} (exit: {exit_code if exit_code is not None else '?'}) ---\n",
        )
        logger.info(
            "agent %s for task %s finished with %s (exit=%s)",
            agent_name,
            task.id,
            outcome,
            exit_code,
        )
        return observed
