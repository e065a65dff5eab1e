from __future__ import annotations

from agman.backends.base import SubprocessBackend


class CodexBackend(SubprocessBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        *,
        model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(binary, model=model, timeout_seconds=timeout_seconds)

    def build_command(self) -> list[str]:
        command = [self.binary, "exec", "--full-auto"]
        if self.model:
            command.extend(["-m", self.model])
        # Read the prompt from stdin.
        command.append("-")
        return command
