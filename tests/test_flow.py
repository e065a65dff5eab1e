from pathlib import Path

import pytest

from agman.flow import (
    DEFAULT_LOOP_ITERATIONS,
    AgentStep,
    DefinitionLoadError,
    FailAction,
    LoopStep,
    list_commands,
    load_command,
    load_flow,
    parse_flow,
)
from agman.signals import Signal

NEW_FLOW = """\
name: new
steps:
  - agent: planner
    until: AGENT_DONE
    pre_check: test -s PLAN.md
  - loop:
      - agent: coder
        until: AGENT_DONE
        on_fail: continue
      - agent: checker
        until: AGENT_DONE
        post_hook: clear_feedback
    until: TASK_COMPLETE
    max_iterations: 7
"""


def test_load_flow_parses_tagged_steps(tmp_path: Path) -> None:
    path = tmp_path / "new.yaml"
    path.write_text(NEW_FLOW, encoding="utf-8")

    flow = load_flow(path)

    assert flow.name == "new"
    assert len(flow.steps) == 2
    first, second = flow.steps
    assert isinstance(first, AgentStep)
    assert first.agent == "planner"
    assert first.until is Signal.AGENT_DONE
    assert first.pre_check == "test -s PLAN.md"
    assert first.fail_action is FailAction.PAUSE
    assert isinstance(second, LoopStep)
    assert second.until is Signal.TASK_COMPLETE
    assert second.max_iterations == 7
    assert [step.agent for step in second.steps] == ["coder", "checker"]
    assert second.steps[0].on_fail is FailAction.CONTINUE
    assert second.steps[1].post_hook == "clear_feedback"
    assert flow.agent_names() == ["planner", "coder", "checker"]


def test_flow_step_lookup_and_completion() -> None:
    flow = parse_flow(
        {
            "name": "tiny",
            "steps": [
                {"agent": "a", "until": "AGENT_DONE"},
                {"loop": [{"agent": "b", "until": "AGENT_DONE"}], "until": "TASK_COMPLETE"},
            ],
        }
    )

    assert flow.get_step(0) == AgentStep(agent="a", until=Signal.AGENT_DONE)
    assert isinstance(flow.get_step(1), LoopStep)
    assert flow.get_step(1).max_iterations == DEFAULT_LOOP_ITERATIONS
    assert flow.get_step(2) is None
    assert flow.get_step(-1) is None
    assert flow.is_complete(2)
    assert not flow.is_complete(1)
    assert flow.describe_step(0) == "a (until AGENT_DONE)"
    assert flow.describe_step(1) == "loop[b] (until TASK_COMPLETE)"
    assert flow.describe_step(5) == "complete"


@pytest.mark.parametrize(
    ("document", "message"),
    [
        ({"name": "x", "steps": []}, "non-empty list"),
        ({"steps": [{"agent": "a", "until": "AGENT_DONE"}]}, "'name'"),
        ({"name": "x", "steps": [{"agent": "a"}]}, "missing 'until'"),
        ({"name": "x", "steps": [{"agent": "a", "until": "NOPE"}]}, "Unknown stop signal"),
        ({"name": "x", "steps": [{"until": "AGENT_DONE"}]}, "either an 'agent' or a 'loop'"),
        (
            {"name": "x", "steps": [{"agent": "a", "loop": [], "until": "AGENT_DONE"}]},
            "both 'agent' and 'loop'",
        ),
        ({"name": "x", "steps": [{"loop": [], "until": "TASK_COMPLETE"}]}, "non-empty list"),
        (
            {
                "name": "x",
                "steps": [{"loop": [{"loop": []}], "until": "TASK_COMPLETE"}],
            },
            "loop entries must be agent steps",
        ),
        (
            {"name": "x", "steps": [{"agent": "a", "until": "AGENT_DONE", "on_fail": "retry"}]},
            "'on_fail'",
        ),
        (
            {
                "name": "x",
                "steps": [
                    {
                        "loop": [{"agent": "a", "until": "AGENT_DONE"}],
                        "until": "TASK_COMPLETE",
                        "max_iterations": 0,
                    }
                ],
            },
            "max_iterations",
        ),
        (["not", "a", "mapping"], "must be a mapping"),
    ],
)
def test_parse_flow_rejects_malformed_documents(document: object, message: str) -> None:
    with pytest.raises(DefinitionLoadError, match=message):
        parse_flow(document)


def test_load_flow_reports_missing_and_unparsable_files(tmp_path: Path) -> None:
    with pytest.raises(DefinitionLoadError, match="not found"):
        load_flow(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("name: [unclosed\n", encoding="utf-8")
    with pytest.raises(DefinitionLoadError, match="Failed to parse"):
        load_flow(broken)


def test_load_command_and_list_commands(tmp_path: Path) -> None:
    (tmp_path / "rebase.yaml").write_text(
        "name: Rebase\n"
        "id: rebase\n"
        "description: Rebase onto another branch\n"
        "requires_arg: branch\n"
        "steps:\n"
        "  - agent: rebase-executor\n"
        "    until: AGENT_DONE\n",
        encoding="utf-8",
    )
    (tmp_path / "merge.yaml").write_text(
        "name: Local Merge\n"
        "id: local-merge\n"
        "post_action: delete_task\n"
        "steps:\n"
        "  - agent: local-merge-executor\n"
        "    until: AGENT_DONE\n",
        encoding="utf-8",
    )
    (tmp_path / "broken.yaml").write_text("id: broken\n", encoding="utf-8")

    command = load_command(tmp_path / "rebase.yaml")
    assert command.id == "rebase"
    assert command.requires_arg == "branch"
    assert command.post_action is None
    assert command.flow.agent_names() == ["rebase-executor"]

    commands = list_commands(tmp_path)
    assert [item.name for item in commands] == ["Local Merge", "Rebase"]
    assert commands[0].post_action == "delete_task"
    assert list_commands(tmp_path / "absent") == []
