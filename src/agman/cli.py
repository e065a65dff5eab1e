from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Coroutine, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from agman import __version__
from agman.agent import AgentInvoker
from agman.backends import ProcessError, create_backend
from agman.config import (
    COMMAND_FLOW_PREFIX,
    AgmanConfig,
    AgmanPaths,
    ConfigError,
    command_flow_name,
    default_home,
    init_default_files,
    load_config,
    save_config,
)
from agman.executor import FlowExecutor, HaltReason, RunOutcome, default_hooks
from agman.flow import DefinitionLoadError, Flow, StoredCommand, list_commands, load_command, load_flow
from agman.lifecycle import (
    FeedbackDisposition,
    PrPollAction,
    clear_all_queued_feedback,
    clear_linked_pr,
    delete_queued_feedback,
    pop_and_apply_feedback,
    put_on_hold,
    restart_task,
    resume_after_answering,
    resume_from_hold,
    set_linked_pr,
    set_review_addressed,
    start_flow,
    stop_task,
    submit_feedback,
    sweep_stranded_feedback,
)
from agman.log import setup_logging
from agman.poller import GhPullRequestSource, ReviewPoller
from agman.state import PersistenceError, Task, TaskNotFoundError, TaskStatus
from agman.workspace import GitWorktreeProvisioner, WorkspaceError

logger = logging.getLogger(__name__)

CONTINUE_FLOW = "continue"
REVIEW_COMMAND = "review-pr"
ADDRESS_REVIEW_COMMAND = "address-review"
EXCLUDED_WORKTREE_ENTRY = "REVIEW.md"

FATAL_ERRORS = (
    ConfigError,
    DefinitionLoadError,
    PersistenceError,
    ProcessError,
    WorkspaceError,
)

T = TypeVar("T")


@dataclass(slots=True)
class Runtime:
    paths: AgmanPaths
    config: AgmanConfig
    executor: FlowExecutor
    provisioner: GitWorktreeProvisioner
    pr_source: GhPullRequestSource


@contextmanager
def _fatal_errors() -> Iterator[None]:
    try:
        yield
    except TaskNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    except FATAL_ERRORS as exc:
        raise click.ClickException(f"{HaltReason.FATAL_ERROR}: {exc}") from exc


def _paths(ctx: click.Context) -> AgmanPaths:
    return ctx.find_object(AgmanPaths) or AgmanPaths(default_home())


def _load_runtime(paths: AgmanPaths) -> Runtime:
    with _fatal_errors():
        config = load_config(paths.config_path)
    try:
        backend = create_backend(config.backend)
    except ValueError as exc:
        raise click.ClickException(f"Invalid backend config in {paths.config_path}: {exc}") from exc
    pr_source = GhPullRequestSource(config.poller.gh_binary)
    invoker = AgentInvoker(paths, backend, on_line=click.echo)
    executor = FlowExecutor(
        paths,
        invoker,
        hooks=default_hooks(pr_source),
        max_idle_retries=config.flow.max_idle_retries,
    )
    return Runtime(
        paths=paths,
        config=config,
        executor=executor,
        provisioner=GitWorktreeProvisioner(config.repos_dir()),
        pr_source=pr_source,
    )


def _load_task(paths: AgmanPaths, identifier: str) -> Task:
    with _fatal_errors():
        return Task.load_by_id(paths, identifier)


def _run_async(coro: Coroutine[Any, Any, T]) -> T:
    with _fatal_errors():
        return asyncio.run(coro)


def _command_for_flow(paths: AgmanPaths, flow_name: str) -> StoredCommand | None:
    if not flow_name.startswith(COMMAND_FLOW_PREFIX):
        return None
    return load_command(paths.flow_path(flow_name))


def _resolve_flow(paths: AgmanPaths, flow_name: str) -> tuple[Flow, StoredCommand | None]:
    with _fatal_errors():
        command = _command_for_flow(paths, flow_name)
        if command is not None:
            return command.flow, command
        return load_flow(paths.flow_path(flow_name)), None


def _echo_outcome(task: Task, outcome: RunOutcome) -> None:
    line = f"{task.id}: {outcome.reason} at step {outcome.flow_step}"
    if outcome.message:
        line = f"{line} ({outcome.message})"
    click.echo(line)


def _delete_task(runtime: Runtime, task: Task, *, task_only: bool = False) -> None:
    record = task.record
    managed = runtime.provisioner.worktree_path(record.repo_name, record.branch_name)
    if not task_only and task.worktree == managed and managed.exists():
        with _fatal_errors():
            runtime.provisioner.remove(record.repo_name, managed, record.branch_name)
    task.delete()
    click.echo(f"Deleted task {task.id}")


def _run_task_flow(runtime: Runtime, task: Task) -> RunOutcome:
    flow, command = _resolve_flow(runtime.paths, task.record.flow_name)
    outcome = _run_async(runtime.executor.run(flow, task))
    _echo_outcome(task, outcome)
    if not outcome.succeeded:
        return outcome

    if command is not None:
        if command.post_action == "delete_task":
            _delete_task(runtime, task)
        elif command.post_action:
            logger.warning("unknown post action %s on command %s", command.post_action, command.id)
        return outcome

    if task.record.review_after and runtime.paths.command_path(REVIEW_COMMAND).exists():
        click.echo(f"Running {REVIEW_COMMAND} for {task.id}")
        with _fatal_errors():
            start_flow(task, command_flow_name(REVIEW_COMMAND))
        return _run_task_flow(runtime, task)
    return outcome


def _start_and_run(runtime: Runtime, task: Task, flow_name: str) -> RunOutcome:
    with _fatal_errors():
        start_flow(task, flow_name)
    return _run_task_flow(runtime, task)


no_run_option = click.option(
    "--no-run",
    is_flag=True,
    default=False,
    help="Only update the task; do not start the flow.",
)


@click.group()
@click.option(
    "--home",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="agman state directory (defaults to $AGMAN_HOME or ~/.agman).",
)
@click.version_option(__version__, prog_name="agman")
@click.pass_context
def cli(ctx: click.Context, home: Path | None) -> None:
    """agman: drive coding agents through declarative flows."""
    paths = AgmanPaths(home.expanduser() if home else default_home())
    ctx.obj = paths
    setup_logging(paths)


@cli.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite bundled defaults.")
@click.pass_context
def init_command(ctx: click.Context, force: bool) -> None:
    paths = _paths(ctx)
    written = init_default_files(paths, force=force)
    if force or not paths.config_path.exists():
        with _fatal_errors():
            config = load_config(paths.config_path) if paths.config_path.exists() else AgmanConfig()
        save_config(paths.config_path, config)
    click.echo(f"Initialized agman in {paths.home}")
    click.echo(f"Installed {len(written)} default files")
    click.echo(f"Config: {paths.config_path}")


@cli.command("new")
@click.argument("repo")
@click.argument("branch")
@click.argument("description")
@click.option("--flow", "flow_name", default=None, help="Flow to run (defaults to config).")
@click.option(
    "--worktree",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Adopt an existing directory instead of creating a git worktree.",
)
@click.option("--review-after/--no-review-after", default=None)
@click.option("--no-start", is_flag=True, default=False, help="Create the task without running it.")
@click.pass_context
def new_command(
    ctx: click.Context,
    repo: str,
    branch: str,
    description: str,
    flow_name: str | None,
    worktree: Path | None,
    review_after: bool | None,
    no_start: bool,
) -> None:
    runtime = _load_runtime(_paths(ctx))
    runtime.paths.ensure_dirs()
    with _fatal_errors():
        if worktree is None:
            worktree = runtime.provisioner.provision(repo, branch)
            runtime.provisioner.ensure_excluded(worktree, EXCLUDED_WORKTREE_ENTRY)
        task = Task.create(
            runtime.paths,
            repo,
            branch,
            description,
            worktree.resolve(),
            flow_name or runtime.config.flow.default_flow,
            review_after=runtime.config.flow.review_after if review_after is None else review_after,
        )
    click.echo(f"Created task {task.id} ({task.record.flow_name}) in {task.worktree}")
    if not no_start:
        _run_task_flow(runtime, task)


@cli.command("list")
@click.pass_context
def list_command(ctx: click.Context) -> None:
    with _fatal_errors():
        tasks = Task.list_all(_paths(ctx))
    if not tasks:
        click.echo("No tasks.")
        return
    for task in tasks:
        record = task.record
        queued = f" +{len(record.feedback_queue)}fb" if record.feedback_queue else ""
        click.echo(
            f"{task.id:<40} {record.status.value:<13} {record.flow_name}[{record.flow_step}] "
            f"{record.current_agent or '-'} {task.time_since_update()}{queued}"
        )


@cli.command("status")
@click.argument("task_ref")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--tail", default=10, show_default=True, help="Transcript lines to show.")
@click.pass_context
def status_command(ctx: click.Context, task_ref: str, as_json: bool, tail: int) -> None:
    paths = _paths(ctx)
    task = _load_task(paths, task_ref)
    if as_json:
        payload = {"id": task.id, **task.record.to_dict()}
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    record = task.record
    try:
        flow, _ = _resolve_flow(paths, record.flow_name)
        step_text = flow.describe_step(record.flow_step)
    except click.ClickException:
        step_text = "unavailable"
    click.echo(f"Task:     {task.id}")
    click.echo(f"Status:   {record.status.value}")
    click.echo(f"Flow:     {record.flow_name} step {record.flow_step}: {step_text}")
    click.echo(f"Agent:    {record.current_agent or '-'}")
    click.echo(f"Worktree: {record.worktree_path}")
    click.echo(f"Updated:  {task.time_since_update()}")
    if record.linked_pr:
        click.echo(f"PR:       #{record.linked_pr.number} {record.linked_pr.url}")
    if record.feedback_queue:
        click.echo(f"Queued feedback: {len(record.feedback_queue)}")
    lines = task.read_transcript_tail(tail)
    if lines:
        click.echo("--- transcript ---")
        for line in lines:
            click.echo(line)


@cli.command("flow-run")
@click.argument("task_ref")
@click.option("--force", is_flag=True, default=False, help="Run even if the task looks active.")
@click.pass_context
def flow_run_command(ctx: click.Context, task_ref: str, force: bool) -> None:
    runtime = _load_runtime(_paths(ctx))
    task = _load_task(runtime.paths, task_ref)
    record = task.record
    if record.status is TaskStatus.RUNNING and record.current_agent and not force:
        click.echo(
            f"{task.id} is already running ({record.current_agent}); use --force to recover."
        )
        return
    _run_task_flow(runtime, task)


@cli.command("run")
@click.argument("task_ref")
@click.argument("agent_name")
@click.pass_context
def run_command(ctx: click.Context, task_ref: str, agent_name: str) -> None:
    runtime = _load_runtime(_paths(ctx))
    task = _load_task(runtime.paths, task_ref)
    outcome = _run_async(runtime.executor.run_single_agent(agent_name, task))
    _echo_outcome(task, outcome)


@cli.command("continue")
@click.argument("task_ref")
@click.argument("feedback", required=False)
@click.pass_context
def continue_command(ctx: click.Context, task_ref: str, feedback: str | None) -> None:
    runtime = _load_runtime(_paths(ctx))
    task = _load_task(runtime.paths, task_ref)
    with _fatal_errors():
        if feedback:
            task.append_feedback_to_transcript(feedback)
            task.write_feedback(feedback)
        elif not task.read_feedback().strip() and pop_and_apply_feedback(task) is None:
            raise click.ClickException(f"No feedback to continue {task.id} with.")
    _start_and_run(runtime, task, CONTINUE_FLOW)


@cli.command("feedback")
@click.argument("task_ref")
@click.argument("text")
@no_run_option
@click.pass_context
def feedback_command(ctx: click.Context, task_ref: str, text: str, no_run: bool) -> None:
    runtime = _load_runtime(_paths(ctx))
    task = _load_task(runtime.paths, task_ref)
    with _fatal_errors():
        disposition = submit_feedback(task, text)
    if disposition is FeedbackDisposition.QUEUED:
        click.echo(f"Queued feedback for {task.id} ({len(task.feedback_queue)} pending)")
        return
    click.echo(f"Applied feedback for {task.id}")
    if not no_run:
        _start_and_run(runtime, task, CONTINUE_FLOW)


@cli.command("queue")
@click.argument("task_ref")
@click.option("--drop", "drop_index", type=int, default=None, help="Remove one queued item.")
@click.option("--clear", is_flag=True, default=False, help="Remove all queued items.")
@click.pass_context
def queue_command(ctx: click.Context, task_ref: str, drop_index: int | None, clear: bool) -> None:
    task = _load_task(_paths(ctx), task_ref)
    with _fatal_errors():
        if clear:
            clear_all_queued_feedback(task)
            click.echo(f"Cleared feedback queue for {task.id}")
            return
        if drop_index is not None:
            if not delete_queued_feedback(task, drop_index):
                raise click.ClickException(f"No queued feedback at index {drop_index}")
            click.echo(f"Removed queued feedback {drop_index} from {task.id}")
            return
    if not task.feedback_queue:
        click.echo("Feedback queue is empty.")
        return
    for index, item in enumerate(task.feedback_queue):
        click.echo(f"[{index}] {item}")


@cli.command("stop")
@click.argument("task_ref")
@click.pass_context
def stop_command(ctx: click.Context, task_ref: str) -> None:
    task = _load_task(_paths(ctx), task_ref)
    with _fatal_errors():
        changed = stop_task(task)
    click.echo(f"Stopped {task.id}" if changed else f"{task.id} is already stopped")


@cli.command("hold")
@click.argument("task_ref")
@click.pass_context
def hold_command(ctx: click.Context, task_ref: str) -> None:
    task = _load_task(_paths(ctx), task_ref)
    with _fatal_errors():
        put_on_hold(task)
    click.echo(f"{task.id} is on hold")


@cli.command("unhold")
@click.argument("task_ref")
@click.pass_context
def unhold_command(ctx: click.Context, task_ref: str) -> None:
    task = _load_task(_paths(ctx), task_ref)
    with _fatal_errors():
        changed = resume_from_hold(task)
    click.echo(f"Released {task.id} from hold" if changed else f"{task.id} is not on hold")


@cli.command("answered")
@click.argument("task_ref")
@no_run_option
@click.pass_context
def answered_command(ctx: click.Context, task_ref: str, no_run: bool) -> None:
    runtime = _load_runtime(_paths(ctx))
    task = _load_task(runtime.paths, task_ref)
    with _fatal_errors():
        resumed = resume_after_answering(task)
    if not resumed:
        click.echo(f"{task.id} is not waiting for input")
        return
    click.echo(f"Resuming {task.id} at step {task.record.flow_step}")
    if not no_run:
        _run_task_flow(runtime, task)


@cli.command("restart")
@click.argument("task_ref")
@click.argument("step", type=int)
@no_run_option
@click.pass_context
def restart_command(ctx: click.Context, task_ref: str, step: int, no_run: bool) -> None:
    runtime = _load_runtime(_paths(ctx))
    task = _load_task(runtime.paths, task_ref)
    flow, _ = _resolve_flow(runtime.paths, task.record.flow_name)
    try:
        with _fatal_errors():
            restart_task(task, step, len(flow.steps))
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Restarted {task.id} at step {step}: {flow.describe_step(step)}")
    if not no_run:
        _run_task_flow(runtime, task)


@cli.command("run-command")
@click.argument("task_ref")
@click.argument("command_id")
@click.option("--arg", "--branch", "command_arg", default=None, help="Argument for the command.")
@click.pass_context
def run_command_command(
    ctx: click.Context, task_ref: str, command_id: str, command_arg: str | None
) -> None:
    runtime = _load_runtime(_paths(ctx))
    task = _load_task(runtime.paths, task_ref)
    with _fatal_errors():
        command = load_command(runtime.paths.command_path(command_id))
        if command.requires_arg and not command_arg:
            raise click.ClickException(
                f"Command '{command.id}' requires --arg ({command.requires_arg})"
            )
        task.set_command_arg(command_arg)
    click.echo(f"Running command {command.name} on {task.id}")
    _start_and_run(runtime, task, command_flow_name(command.id))


@cli.command("commands")
@click.pass_context
def commands_command(ctx: click.Context) -> None:
    commands = list_commands(_paths(ctx).commands_dir)
    if not commands:
        click.echo("No stored commands. Run `agman init` to install the defaults.")
        return
    for command in commands:
        arg = f" <{command.requires_arg}>" if command.requires_arg else ""
        click.echo(f"{command.id:<18} {command.name}{arg}: {command.description}")


@cli.command("poll")
@click.option(
    "--watch",
    is_flag=True,
    default=False,
    help="Keep polling every poller.interval_seconds until interrupted.",
)
@click.pass_context
def poll_command(ctx: click.Context, watch: bool) -> None:
    runtime = _load_runtime(_paths(ctx))
    poller = ReviewPoller(runtime.pr_source, max_concurrency=runtime.config.poller.max_concurrency)
    _poll_once(runtime, poller)
    while watch:
        time.sleep(runtime.config.poller.interval_seconds)
        _poll_once(runtime, poller)


def _poll_once(runtime: Runtime, poller: ReviewPoller) -> None:
    with _fatal_errors():
        tasks = Task.list_all(runtime.paths)
        actions = asyncio.run(poller.run_cycle(tasks))
    triggered = 0
    for task, action in actions:
        if action is PrPollAction.DELETE_TASK:
            click.echo(f"PR for {task.id} merged")
            _delete_task(runtime, task)
        elif action is PrPollAction.TRIGGER_ADDRESS_REVIEW:
            triggered += 1
            click.echo(f"New review on {task.id}, running {ADDRESS_REVIEW_COMMAND}")
            outcome = _start_and_run(runtime, task, command_flow_name(ADDRESS_REVIEW_COMMAND))
            if outcome.succeeded:
                with _fatal_errors():
                    set_review_addressed(task, True)
    click.echo(f"Polled {len(actions)} pull requests, {triggered} triggered")


@cli.command("sweep-feedback")
@no_run_option
@click.pass_context
def sweep_feedback_command(ctx: click.Context, no_run: bool) -> None:
    runtime = _load_runtime(_paths(ctx))
    with _fatal_errors():
        applied = sweep_stranded_feedback(Task.list_all(runtime.paths))
    if not applied:
        click.echo("No stranded feedback.")
        return
    for task, _text in applied:
        click.echo(f"Applied queued feedback for {task.id}")
        if not no_run:
            _start_and_run(runtime, task, CONTINUE_FLOW)


@cli.command("delete")
@click.argument("task_ref")
@click.option("--task-only", is_flag=True, default=False, help="Keep the worktree and branch.")
@click.pass_context
def delete_command(ctx: click.Context, task_ref: str, task_only: bool) -> None:
    runtime = _load_runtime(_paths(ctx))
    task = _load_task(runtime.paths, task_ref)
    _delete_task(runtime, task, task_only=task_only)


@cli.command("link-pr")
@click.argument("task_ref")
@click.argument("number", type=int)
@click.argument("url")
@click.pass_context
def link_pr_command(ctx: click.Context, task_ref: str, number: int, url: str) -> None:
    task = _load_task(_paths(ctx), task_ref)
    with _fatal_errors():
        set_linked_pr(task, number, url)
    click.echo(f"Linked {task.id} to PR #{number}")


@cli.command("unlink-pr")
@click.argument("task_ref")
@click.pass_context
def unlink_pr_command(ctx: click.Context, task_ref: str) -> None:
    task = _load_task(_paths(ctx), task_ref)
    with _fatal_errors():
        clear_linked_pr(task)
    click.echo(f"Unlinked PR from {task.id}")


if __name__ == "__main__":
    cli()
