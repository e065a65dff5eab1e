from __future__ import annotations

from collections.abc import Iterable
from enum import Enum


class Signal(str, Enum):
    """Sentinel tokens an agent prints to report how its step ended."""

    AGENT_DONE = "AGENT_DONE"
    TASK_COMPLETE = "TASK_COMPLETE"
    INPUT_NEEDED = "INPUT_NEEDED"
    TESTS_PASS = "TESTS_PASS"
    TESTS_FAIL = "TESTS_FAIL"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, raw: object) -> Signal:
        name = str(raw).strip().upper()
        try:
            return cls(name)
        except ValueError as exc:
            known = ", ".join(item.value for item in cls)
            raise ValueError(f"Unknown stop signal '{raw}'. Expected one of: {known}") from exc


# First match wins when a line carries several tokens.
SIGNAL_PRIORITY: tuple[Signal, ...] = (
    Signal.AGENT_DONE,
    Signal.TASK_COMPLETE,
    Signal.INPUT_NEEDED,
    Signal.TESTS_PASS,
    Signal.TESTS_FAIL,
)


def classify(line: str) -> Signal | None:
    text = line.strip()
    if not text:
        return None
    for signal in SIGNAL_PRIORITY:
        if signal.value in text:
            return signal
    return None


def last_signal(lines: Iterable[str]) -> Signal | None:
    observed: Signal | None = None
    for line in lines:
        signal = classify(line)
        if signal is not None:
            observed = signal
    return observed
