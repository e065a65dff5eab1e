from __future__ import annotations

from agman.backends.base import (
    AgentBackend,
    ProcessError,
    ProcessSpawnError,
    SubprocessBackend,
    TranscriptWriteError,
)
from agman.backends.claude import ClaudeCodeBackend
from agman.backends.codex import CodexBackend
from agman.config import BackendConfig


def create_backend(config: BackendConfig) -> AgentBackend:
    binary = config.binary.strip() or None
    model = config.model.strip() or None
    timeout = config.timeout_seconds or None
    if config.name == "claude":
        return ClaudeCodeBackend(binary or "claude", model=model, timeout_seconds=timeout)
    if config.name == "codex":
        return CodexBackend(binary or "codex", model=model, timeout_seconds=timeout)
    raise ValueError(f"Unsupported backend: {config.name}")


__all__ = [
    "AgentBackend",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ProcessError",
    "ProcessSpawnError",
    "SubprocessBackend",
    "TranscriptWriteError",
    "create_backend",
]
