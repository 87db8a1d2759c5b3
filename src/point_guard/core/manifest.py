"""File-backed, lock-guarded manifest persistence.

Every mutation goes through :meth:`ManifestStore.update`, which takes an
exclusive ``fcntl`` lock, reloads the manifest, applies the caller's
function and writes the result atomically (temp file + ``os.replace``).
Readers never lock: the rename guarantees they only ever see whole files.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Protocol

from pydantic import ValidationError

from point_guard.core.errors import (
    ManifestInvalidError,
    ManifestLockError,
    NotInitializedError,
)
from point_guard.schemas.manifest import MANIFEST_VERSION, Manifest, now_iso
from point_guard.utils.paths import manifest_path

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 10.0
LOCK_MIN_BACKOFF = 0.1
LOCK_MAX_BACKOFF = 1.0


class Lock(Protocol):
    """Exclusive lock guarding manifest mutation."""

    def acquire(self) -> None: ...

    def release(self) -> None: ...


class FileLock:
    """Exclusive advisory lock on a sidecar file.

    ``flock`` locks belong to the open file description, so two instances
    exclude each other even inside a single process. Threads sharing one
    instance are serialized by an in-process lock first.
    """

    def __init__(
        self,
        path: Path,
        timeout: float = LOCK_TIMEOUT,
        min_backoff: float = LOCK_MIN_BACKOFF,
        max_backoff: float = LOCK_MAX_BACKOFF,
    ):
        self.path = Path(path)
        self.timeout = timeout
        self.min_backoff = min_backoff
        self.max_backoff = max_backoff
        self._fd: int | None = None
        self._thread_lock = threading.Lock()

    def acquire(self) -> None:
        """Take the lock, retrying with exponential backoff.

        Raises:
            ManifestLockError: If the lock is still held after ``timeout``
        """
        deadline = time.monotonic() + self.timeout
        if not self._thread_lock.acquire(timeout=self.timeout):
            raise ManifestLockError(self.timeout)

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except BaseException:
            self._thread_lock.release()
            raise
        delay = self.min_backoff

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                self._fd = fd
                return
            except BlockingIOError:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    os.close(fd)
                    self._thread_lock.release()
                    raise ManifestLockError(self.timeout) from None
                time.sleep(min(delay, remaining))
                delay = min(delay * 2, self.max_backoff)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
            self._thread_lock.release()


def atomic_write_text(path: Path, content: str) -> None:
    """Write a file so readers see either the old or the new content.

    Args:
        path: Destination file
        content: Full file content
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class ManifestStore:
    """Persistent state of all worktrees and agents for a project."""

    def __init__(
        self,
        project_root: str | Path,
        lock: Lock | None = None,
    ):
        """Initialize the store.

        Args:
            project_root: Root of the git repository
            lock: Lock implementation (defaults to a FileLock beside the manifest)
        """
        self.project_root = Path(project_root)
        self.path = manifest_path(self.project_root)
        self.lock = lock or FileLock(self.path.with_name(self.path.name + ".lock"))

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Manifest:
        """Read the last fully-written manifest.

        Raises:
            NotInitializedError: If there is no manifest
            ManifestInvalidError: On an unexpected version or unreadable content
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotInitializedError(str(self.project_root)) from None

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ManifestInvalidError(f"Manifest is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ManifestInvalidError("Manifest is not a JSON object")

        version = data.get("version")
        if version != MANIFEST_VERSION:
            raise ManifestInvalidError(
                f"Unsupported manifest version {version!r} "
                f"(expected {MANIFEST_VERSION}) in {self.path}"
            )

        try:
            return Manifest.model_validate(data)
        except ValidationError as e:
            raise ManifestInvalidError(f"Invalid manifest: {e}") from e

    def write(self, manifest: Manifest) -> None:
        """Persist a manifest atomically, refreshing ``updatedAt``.

        Callers outside :meth:`update` must hold the lock themselves.
        """
        manifest.updated_at = now_iso()
        content = json.dumps(manifest.to_wire(), indent=2) + "\n"
        atomic_write_text(self.path, content)

    def create(self, session_name: str) -> Manifest:
        """Write an empty manifest for the project."""
        manifest = Manifest(project_root=str(self.project_root), session_name=session_name)
        with self.locked():
            self.write(manifest)
        return manifest

    @contextmanager
    def locked(self) -> Iterator[None]:
        self.lock.acquire()
        try:
            yield
        finally:
            self.lock.release()

    def update(self, fn: Callable[[Manifest], Manifest | None]) -> Manifest:
        """Apply a mutation under the lock and persist it.

        ``fn`` may mutate the manifest in place and return None, or return a
        replacement manifest. No external process calls belong inside ``fn``.

        Raises:
            ManifestLockError: If the lock cannot be acquired
            NotInitializedError: If there is no manifest
        """
        with self.locked():
            manifest = self.load()
            updated = fn(manifest)
            if updated is None:
                updated = manifest
            # Re-validate so nested edits cannot break the id-uniqueness invariant.
            updated = Manifest.model_validate(updated.to_wire())
            self.write(updated)
            return updated
