from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when a state record cannot be read, parsed, or written."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class JsonRecordStore:
    """One JSON record per file, wrapped in a revisioned envelope and guarded by a lock file."""

    SCHEMA_VERSION = 1
    CONFLICT_MESSAGE = "Concurrent state update detected"

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.path = path
        self.lock_file = path.with_name(f".{path.name}.lock")
        self.lock_timeout_seconds = lock_timeout_seconds

    def exists(self) -> bool:
        return self.path.exists()

    @contextmanager
    def lock(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise PersistenceError(
                        f"Timed out waiting for state lock: {self.lock_file}"
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self) -> Any:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise PersistenceError(f"State record not found: {self.path}") from exc
        except OSError as exc:
            raise PersistenceError(f"Failed to read state record {self.path}: {exc}") from exc
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Corrupt state record {self.path}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload["data"],
            }
        # Bare records written before the envelope existed.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": utcnow_iso(),
            "data": raw_payload,
        }

    def get_envelope(self) -> dict[str, Any]:
        return self._normalize_envelope(self._read_raw())

    def read(self) -> Any:
        return self.get_envelope()["data"]

    def _write_atomic(self, payload: dict[str, Any]) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, self.path)
        except OSError as exc:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise PersistenceError(f"Failed to write state record {self.path}: {exc}") from exc

    def _current_revision(self) -> int:
        if not self.path.exists():
            return 0
        return int(self.get_envelope()["revision"])

    def write(self, data: Any, expected_revision: int | None = None) -> int:
        with self.lock():
            current_revision = self._current_revision()
            if expected_revision is not None and expected_revision != current_revision:
                raise PersistenceError(f"{self.CONFLICT_MESSAGE} for {self.path}.")
            revision = current_revision + 1
            self._write_atomic(
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": revision,
                    "updated_at": utcnow_iso(),
                    "data": data,
                }
            )
        return revision

    def update(self, updater: Callable[[Any], Any]) -> Any:
        """Apply ``updater`` to the latest stored data, retrying when another writer won the race."""
        last_error: PersistenceError | None = None
        for _ in range(4):
            current = self.get_envelope()
            updated = updater(current["data"])
            try:
                self.write(updated, expected_revision=int(current["revision"]))
                return updated
            except PersistenceError as exc:
                last_error = exc
                if self.CONFLICT_MESSAGE not in str(exc):
                    raise
                logger.info("retrying update of %s after concurrent write", self.path)
                time.sleep(0.01)
        raise PersistenceError(str(last_error) if last_error else "State update failed.")
