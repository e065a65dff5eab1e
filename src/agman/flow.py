from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from agman.signals import Signal

logger = logging.getLogger(__name__)

DEFAULT_LOOP_ITERATIONS = 100


class DefinitionLoadError(RuntimeError):
    """Raised when a flow, command, or agent definition is missing or malformed."""


class FailAction(str, Enum):
    PAUSE = "pause"
    CONTINUE = "continue"


@dataclass(slots=True, frozen=True)
class AgentStep:
    agent: str
    until: Signal
    on_fail: FailAction | None = None
    pre_check: str | None = None
    post_hook: str | None = None

    @property
    def fail_action(self) -> FailAction:
        return self.on_fail or FailAction.PAUSE


@dataclass(slots=True, frozen=True)
class LoopStep:
    steps: tuple[AgentStep, ...]
    until: Signal
    max_iterations: int = DEFAULT_LOOP_ITERATIONS


FlowStep = AgentStep | LoopStep


@dataclass(slots=True, frozen=True)
class Flow:
    name: str
    steps: tuple[FlowStep, ...]

    def get_step(self, index: int) -> FlowStep | None:
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None

    def is_complete(self, index: int) -> bool:
        return index >= len(self.steps)

    def agent_names(self) -> list[str]:
        names: list[str] = []
        for step in self.steps:
            match step:
                case AgentStep(agent=agent):
                    names.append(agent)
                case LoopStep(steps=inner):
                    names.extend(item.agent for item in inner)
        return names

    def describe_step(self, index: int) -> str:
        match self.get_step(index):
            case AgentStep(agent=agent, until=until):
                return f"{agent} (until {until})"
            case LoopStep(steps=inner, until=until):
                agents = " -> ".join(item.agent for item in inner)
                return f"loop[{agents}] (until {until})"
            case _:
                return "complete"


@dataclass(slots=True, frozen=True)
class StoredCommand:
    """A named, reusable flow that runs against an existing task without new input."""

    id: str
    name: str
    description: str
    flow: Flow
    requires_arg: str | None = None
    post_action: str | None = None
    path: Path | None = None


def _require_str(payload: dict[str, Any], key: str, where: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise DefinitionLoadError(f"{where}: '{key}' must be a non-empty string")
    return value.strip()


def _optional_str(payload: dict[str, Any], key: str, where: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise DefinitionLoadError(f"{where}: '{key}' must be a non-empty string when set")
    return value.strip()


def _parse_signal(payload: dict[str, Any], where: str) -> Signal:
    if "until" not in payload:
        raise DefinitionLoadError(f"{where}: missing 'until'")
    try:
        return Signal.parse(payload["until"])
    except ValueError as exc:
        raise DefinitionLoadError(f"{where}: {exc}") from exc


def _parse_agent_step(payload: dict[str, Any], where: str) -> AgentStep:
    on_fail_raw = payload.get("on_fail")
    on_fail: FailAction | None = None
    if on_fail_raw is not None:
        try:
            on_fail = FailAction(str(on_fail_raw).strip().lower())
        except ValueError as exc:
            raise DefinitionLoadError(
                f"{where}: 'on_fail' must be 'pause' or 'continue', got '{on_fail_raw}'"
            ) from exc
    return AgentStep(
        agent=_require_str(payload, "agent", where),
        until=_parse_signal(payload, where),
        on_fail=on_fail,
        pre_check=_optional_str(payload, "pre_check", where),
        post_hook=_optional_str(payload, "post_hook", where),
    )


def _parse_loop_step(payload: dict[str, Any], where: str) -> LoopStep:
    inner_raw = payload.get("loop")
    if not isinstance(inner_raw, list) or not inner_raw:
        raise DefinitionLoadError(f"{where}: 'loop' must be a non-empty list of agent steps")
    inner: list[AgentStep] = []
    for position, item in enumerate(inner_raw):
        inner_where = f"{where}.loop[{position}]"
        if not isinstance(item, dict) or "agent" not in item:
            raise DefinitionLoadError(f"{inner_where}: loop entries must be agent steps")
        inner.append(_parse_agent_step(item, inner_where))

    max_iterations = payload.get("max_iterations", DEFAULT_LOOP_ITERATIONS)
    if not isinstance(max_iterations, int) or isinstance(max_iterations, bool) or max_iterations < 1:
        raise DefinitionLoadError(f"{where}: 'max_iterations' must be a positive integer")
    return LoopStep(
        steps=tuple(inner),
        until=_parse_signal(payload, where),
        max_iterations=max_iterations,
    )


def parse_step(payload: Any, where: str) -> FlowStep:
    if not isinstance(payload, dict):
        raise DefinitionLoadError(f"{where}: step must be a mapping")
    has_loop = "loop" in payload
    has_agent = "agent" in payload
    if has_loop and has_agent:
        raise DefinitionLoadError(f"{where}: step cannot set both 'agent' and 'loop'")
    if has_loop:
        return _parse_loop_step(payload, where)
    if has_agent:
        return _parse_agent_step(payload, where)
    raise DefinitionLoadError(f"{where}: step needs either an 'agent' or a 'loop' key")


def parse_flow(data: Any, source: str = "<inline>") -> Flow:
    if not isinstance(data, dict):
        raise DefinitionLoadError(f"{source}: flow document must be a mapping")
    name = _require_str(data, "name", source)
    steps_raw = data.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise DefinitionLoadError(f"{source}: 'steps' must be a non-empty list")
    steps = tuple(
        parse_step(item, f"{source}: steps[{index}]") for index, item in enumerate(steps_raw)
    )
    return Flow(name=name, steps=steps)


def _read_yaml(path: Path, kind: str) -> Any:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise DefinitionLoadError(f"{kind} file not found: {path}") from exc
    except OSError as exc:
        raise DefinitionLoadError(f"Failed to read {kind} file {path}: {exc}") from exc
    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise DefinitionLoadError(f"Failed to parse {kind} file {path}: {exc}") from exc


def load_flow(path: Path) -> Flow:
    logger.debug("loading flow from %s", path)
    flow = parse_flow(_read_yaml(path, "flow"), source=str(path))
    logger.debug("flow %s loaded with %d steps", flow.name, len(flow.steps))
    return flow


def load_command(path: Path) -> StoredCommand:
    data = _read_yaml(path, "command")
    source = str(path)
    if not isinstance(data, dict):
        raise DefinitionLoadError(f"{source}: command document must be a mapping")
    command_id = _require_str(data, "id", source)
    return StoredCommand(
        id=command_id,
        name=_require_str(data, "name", source),
        description=str(data.get("description") or "").strip(),
        flow=parse_flow({"name": command_id, "steps": data.get("steps")}, source=source),
        requires_arg=_optional_str(data, "requires_arg", source),
        post_action=_optional_str(data, "post_action", source),
        path=path,
    )


def list_commands(commands_dir: Path) -> list[StoredCommand]:
    if not commands_dir.exists():
        return []
    commands: list[StoredCommand] = []
    for path in sorted(commands_dir.glob("*.yaml")):
        try:
            commands.append(load_command(path))
        except DefinitionLoadError as exc:
            logger.warning("skipping command %s: %s", path, exc)
    commands.sort(key=lambda command: command.name)
    return commands
