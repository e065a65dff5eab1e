from __future__ import annotations

from agman.backends.base import SubprocessBackend


class ClaudeCodeBackend(SubprocessBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        *,
        model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(binary, model=model, timeout_seconds=timeout_seconds)

    def build_command(self) -> list[str]:
        command = [self.binary, "-p", "--dangerously-skip-permissions"]
        if self.model:
            command.extend(["--model", self.model])
        return command
