from __future__ import annotations

import json
import logging
import os
import tomllib
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

BackendName = Literal["claude", "codex"]

COMMAND_FLOW_PREFIX = "command:"
TASK_ID_SEPARATOR = "--"


class ConfigError(RuntimeError):
    """Raised when the agman config file cannot be read or parsed."""


@dataclass(slots=True)
class PathsConfig:
    repos_dir: str = "~/repos"


@dataclass(slots=True)
class BackendConfig:
    name: BackendName = "claude"
    binary: str = ""
    model: str = ""
    timeout_seconds: float = 0.0


@dataclass(slots=True)
class FlowConfig:
    default_flow: str = "new"
    max_idle_retries: int = 0
    review_after: bool = False


@dataclass(slots=True)
class PollerConfig:
    interval_seconds: float = 120.0
    max_concurrency: int = 4
    gh_binary: str = "gh"


@dataclass(slots=True)
class AgmanConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    flow: FlowConfig = field(default_factory=FlowConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)

    @classmethod
    def default(cls) -> AgmanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AgmanConfig:
        return cls(
            paths=PathsConfig(**data.get("paths", {})),
            backend=BackendConfig(**data.get("backend", {})),
            flow=FlowConfig(**data.get("flow", {})),
            poller=PollerConfig(**data.get("poller", {})),
        )

    def to_dict(self) -> dict:
        return {
            "paths": {
                "repos_dir": self.paths.repos_dir,
            },
            "backend": {
                "name": self.backend.name,
                "binary": self.backend.binary,
                "model": self.backend.model,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "flow": {
                "default_flow": self.flow.default_flow,
                "max_idle_retries": self.flow.max_idle_retries,
                "review_after": self.flow.review_after,
            },
            "poller": {
                "interval_seconds": self.poller.interval_seconds,
                "max_concurrency": self.poller.max_concurrency,
                "gh_binary": self.poller.gh_binary,
            },
        }

    def repos_dir(self) -> Path:
        return Path(self.paths.repos_dir).expanduser()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AgmanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["paths", "backend", "flow", "poller"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AgmanConfig:
    if not path.exists():
        return AgmanConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    try:
        return AgmanConfig.from_dict(data)
    except TypeError as exc:
        raise ConfigError(f"Invalid config file {path}: {exc}") from exc


def save_config(path: Path, config: AgmanConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")


def sanitize_branch(branch_name: str) -> str:
    return branch_name.replace("/", "-")


def task_id(repo_name: str, branch_name: str) -> str:
    return f"{repo_name}{TASK_ID_SEPARATOR}{sanitize_branch(branch_name)}"


def parse_task_id(value: str) -> tuple[str, str] | None:
    repo_name, separator, branch_name = value.partition(TASK_ID_SEPARATOR)
    if not separator or not repo_name or not branch_name:
        return None
    return repo_name, branch_name


def default_home() -> Path:
    override = os.environ.get("AGMAN_HOME", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".agman"


@dataclass(slots=True, frozen=True)
class AgmanPaths:
    home: Path

    @property
    def config_path(self) -> Path:
        return self.home / "config.toml"

    @property
    def log_path(self) -> Path:
        return self.home / "agman.log"

    @property
    def tasks_dir(self) -> Path:
        return self.home / "tasks"

    @property
    def flows_dir(self) -> Path:
        return self.home / "flows"

    @property
    def prompts_dir(self) -> Path:
        return self.home / "prompts"

    @property
    def commands_dir(self) -> Path:
        return self.home / "commands"

    def ensure_dirs(self) -> None:
        for directory in (self.tasks_dir, self.flows_dir, self.prompts_dir, self.commands_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def task_dir(self, identifier: str) -> Path:
        return self.tasks_dir / identifier

    def flow_path(self, flow_name: str) -> Path:
        if flow_name.startswith(COMMAND_FLOW_PREFIX):
            return self.command_path(flow_name[len(COMMAND_FLOW_PREFIX) :])
        return self.flows_dir / f"{flow_name}.yaml"

    def prompt_path(self, agent_name: str) -> Path:
        return self.prompts_dir / f"{agent_name}.md"

    def command_path(self, command_id: str) -> Path:
        return self.commands_dir / f"{command_id}.yaml"


def command_flow_name(command_id: str) -> str:
    return f"{COMMAND_FLOW_PREFIX}{command_id}"


def _install_defaults(kind: str, target_dir: Path, suffix: str, *, force: bool) -> list[Path]:
    written: list[Path] = []
    source_dir = resources.files("agman.defaults").joinpath(kind)
    for entry in sorted(source_dir.iterdir(), key=lambda item: item.name):
        if not entry.name.endswith(suffix):
            continue
        destination = target_dir / entry.name
        if destination.exists() and not force:
            continue
        destination.write_text(entry.read_text(encoding="utf-8"), encoding="utf-8")
        written.append(destination)
    return written


def init_default_files(paths: AgmanPaths, *, force: bool = False) -> list[Path]:
    paths.ensure_dirs()
    written: list[Path] = []
    written.extend(_install_defaults("flows", paths.flows_dir, ".yaml", force=force))
    written.extend(_install_defaults("prompts", paths.prompts_dir, ".md", force=force))
    written.extend(_install_defaults("commands", paths.commands_dir, ".yaml", force=force))
    if written:
        logger.info("installed %d default files under %s", len(written), paths.home)
    return written
