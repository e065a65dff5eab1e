import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from agman.agent import Agent, AgentInvoker, AgentLoadError
from agman.backends.base import AgentBackend, TranscriptWriteError
from agman.config import AgmanPaths
from agman.signals import Signal
from agman.state import Task


class EchoBackend(AgentBackend):
    name = "echo"

    def __init__(self, lines: list[str], exit_code: int | None = 0) -> None:
        super().__init__()
        self.lines = lines
        self.exit_code = exit_code
        self.prompt = ""
        self.cwd: Path | None = None

    async def execute(self, prompt: str, working_directory: Path) -> AsyncIterator[str]:
        self.prompt = prompt
        self.cwd = working_directory
        for line in self.lines:
            yield line
        self.last_exit_code = self.exit_code


def _setup(tmp_path: Path) -> tuple[AgmanPaths, Task]:
    paths = AgmanPaths(tmp_path / "home")
    paths.ensure_dirs()
    paths.prompt_path("coder").write_text("You are a coding agent.\n\n", encoding="utf-8")
    worktree = tmp_path / "worktree"
    worktree.mkdir()
    task = Task.create(paths, "repo", "feat/x", "Add a login form", worktree)
    return paths, task


def test_missing_prompt_template_raises_load_error(tmp_path: Path) -> None:
    paths, _task = _setup(tmp_path)

    with pytest.raises(AgentLoadError, match="Prompt template for agent 'ghost' not found"):
        Agent.load(paths, "ghost")


def test_build_prompt_orders_sections_and_skips_empty_ones(tmp_path: Path) -> None:
    paths, task = _setup(tmp_path)
    (task.dir / "PLAN.md").write_text("1. add form\n2. add validation\n", encoding="utf-8")
    task.set_command_arg("main")

    prompt = Agent.load(paths, "coder").build_prompt(task)

    assert prompt.startswith("You are a coding agent.\n\n---\n\n# Task Goal\nAdd a login form")
    assert prompt.index("# Task Goal") < prompt.index("# Implementation Plan")
    assert prompt.index("# Implementation Plan") < prompt.index("# Command Argument\nmain")
    assert "# Progress So Far" not in prompt
    assert "# Relevant Context" not in prompt
    assert "# Follow-up Feedback" not in prompt
    assert "# Current Git Diff" not in prompt


def test_build_prompt_includes_feedback_last(tmp_path: Path) -> None:
    paths, task = _setup(tmp_path)
    task.write_feedback("Use the existing validator module")

    prompt = Agent.load(paths, "coder").build_prompt(task)

    assert prompt.rstrip().endswith("# Follow-up Feedback\nUse the existing validator module")


def test_invoke_returns_last_signal_and_writes_markers(tmp_path: Path) -> None:
    paths, task = _setup(tmp_path)
    backend = EchoBackend(["TESTS_FAIL", "fixed the test", "TESTS_PASS", "AGENT_DONE", "bye"])
    seen: list[str] = []

    signal = asyncio.run(AgentInvoker(paths, backend, on_line=seen.append).invoke("coder", task))

    assert signal is Signal.AGENT_DONE
    assert seen == backend.lines
    assert backend.cwd == task.worktree
    assert "# Task Goal\nAdd a login form" in backend.prompt
    transcript = task.read_transcript()
    assert "--- Agent: coder started at " in transcript
    assert "fixed the test\n" in transcript
    assert "with: AGENT_DONE (exit: 0) ---" in transcript


def test_invoke_without_signal_reports_unknown_exit(tmp_path: Path) -> None:
    paths, task = _setup(tmp_path)
    backend = EchoBackend(["still thinking"], exit_code=None)

    signal = asyncio.run(AgentInvoker(paths, backend).invoke("coder", task))

    assert signal is None
    assert "with: no signal (exit: ?) ---" in task.read_transcript()


def test_transcript_failure_raises_transcript_write_error(tmp_path: Path) -> None:
    paths, task = _setup(tmp_path)
    task.transcript_path.unlink()
    task.transcript_path.mkdir()

    with pytest.raises(TranscriptWriteError) as excinfo:
        asyncio.run(AgentInvoker(paths, EchoBackend(["AGENT_DONE"])).invoke("coder", task))

    assert excinfo.value.backend == "echo"
