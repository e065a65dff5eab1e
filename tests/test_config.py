import logging
import tomllib
from pathlib import Path

import pytest

from agman import __version__
from agman.config import (
    AgmanConfig,
    AgmanPaths,
    ConfigError,
    command_flow_name,
    default_home,
    dumps_toml,
    init_default_files,
    load_config,
    parse_task_id,
    save_config,
    task_id,
)
from agman.flow import list_commands, load_flow
from agman.log import rotate_log, setup_logging


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "home" / "config.toml"
    config = AgmanConfig.default()
    config.paths.repos_dir = "~/src"
    config.backend.name = "codex"
    config.backend.binary = "/opt/codex"
    config.backend.model = "gpt-5-codex"
    config.backend.timeout_seconds = 900.0
    config.flow.default_flow = "review"
    config.flow.max_idle_retries = 3
    config.flow.review_after = True
    config.poller.interval_seconds = 30.5
    config.poller.max_concurrency = 2
    config.poller.gh_binary = "/usr/local/bin/gh"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded == config
    assert loaded.repos_dir() == Path("~/src").expanduser()


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == AgmanConfig.default()
    assert loaded.backend.name == "claude"
    assert loaded.flow.default_flow == "new"


def test_malformed_config_raises_config_error(tmp_path: Path) -> None:
    broken = tmp_path / "config.toml"
    broken.write_text("[backend\nname = ", encoding="utf-8")
    with pytest.raises(ConfigError, match=str(broken)):
        load_config(broken)

    unknown = tmp_path / "unknown.toml"
    unknown.write_text("[backend]\ncolour = 'blue'\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid config"):
        load_config(unknown)


def test_toml_dump_renders_every_section() -> None:
    rendered = dumps_toml(AgmanConfig.default())

    for section in ("[paths]", "[backend]", "[flow]", "[poller]"):
        assert section in rendered
    assert "timeout_seconds = 0.0" in rendered
    assert "review_after = false" in rendered
    assert 'gh_binary = "gh"' in rendered
    assert tomllib.loads(rendered)["poller"]["max_concurrency"] == 4


def test_task_id_sanitizes_branch_and_parses_back() -> None:
    assert task_id("repo", "feature/login/form") == "repo--feature-login-form"
    assert parse_task_id("repo--feature-login-form") == ("repo", "feature-login-form")
    assert parse_task_id("repo--a--b") == ("repo", "a--b")
    assert parse_task_id("just-a-branch") is None
    assert parse_task_id("--branch") is None


def test_paths_layout_and_command_flow_names(tmp_path: Path) -> None:
    paths = AgmanPaths(tmp_path)

    assert paths.config_path == tmp_path / "config.toml"
    assert paths.log_path == tmp_path / "agman.log"
    assert paths.task_dir("r--b") == tmp_path / "tasks" / "r--b"
    assert paths.flow_path("new") == tmp_path / "flows" / "new.yaml"
    assert paths.prompt_path("coder") == tmp_path / "prompts" / "coder.md"
    assert command_flow_name("create-pr") == "command:create-pr"
    assert paths.flow_path("command:create-pr") == tmp_path / "commands" / "create-pr.yaml"


def test_default_home_honours_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGMAN_HOME", str(tmp_path / "custom"))
    assert default_home() == tmp_path / "custom"

    monkeypatch.delenv("AGMAN_HOME")
    assert default_home() == Path.home() / ".agman"


def test_init_default_files_installs_loadable_defaults(tmp_path: Path) -> None:
    paths = AgmanPaths(tmp_path)

    written = init_default_files(paths)

    assert paths.flow_path("new") in written
    for name in ("new", "review", "continue"):
        flow = load_flow(paths.flow_path(name))
        for agent in flow.agent_names():
            assert paths.prompt_path(agent).exists(), agent

    commands = {command.id: command for command in list_commands(paths.commands_dir)}
    assert {"create-pr", "address-review", "rebase", "review-pr", "local-merge"} <= set(commands)
    assert commands["rebase"].requires_arg == "branch"
    assert commands["local-merge"].post_action == "delete_task"
    for command in commands.values():
        for agent in command.flow.agent_names():
            assert paths.prompt_path(agent).exists(), agent


def test_init_default_files_keeps_user_edits_unless_forced(tmp_path: Path) -> None:
    paths = AgmanPaths(tmp_path)
    init_default_files(paths)
    coder = paths.prompt_path("coder")
    coder.write_text("custom coder\n", encoding="utf-8")

    assert init_default_files(paths) == []
    assert coder.read_text(encoding="utf-8") == "custom coder\n"

    rewritten = init_default_files(paths, force=True)
    assert coder in rewritten
    assert coder.read_text(encoding="utf-8") != "custom coder\n"


def test_rotate_log_keeps_newest_lines(tmp_path: Path) -> None:
    log_path = tmp_path / "agman.log"
    log_path.write_text("".join(f"line {index}\n" for index in range(1200)), encoding="utf-8")

    assert rotate_log(log_path) is True
    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 750
    assert lines[0] == "line 450"
    assert lines[-1] == "line 1199"
    assert rotate_log(log_path) is False
    assert rotate_log(tmp_path / "absent.log") is False


def test_setup_logging_writes_to_home_log(tmp_path: Path) -> None:
    paths = AgmanPaths(tmp_path)
    log_path = setup_logging(paths, level="DEBUG")
    setup_logging(paths, level="DEBUG")

    handlers = [
        handler
        for handler in logging.getLogger("agman").handlers
        if isinstance(handler, logging.FileHandler)
    ]
    assert len(handlers) == 1
    logging.getLogger("agman.test").info("hello from the test")
    handlers[0].flush()
    assert "hello from the test" in log_path.read_text(encoding="utf-8")


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
