"""File-based locks serialising rotation attempts per domain."""
from __future__ import annotations

import errno
import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock file cannot be prepared."""


class LockTimeoutError(LockError):
    """Raised when a lock is still held by another process after the timeout."""


@dataclass(frozen=True)
class LockHandle:
    """Metadata about a held lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Hand out exclusive ``flock`` locks under ``<runtime_dir>/locks``."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 5.0) -> None:
        """Record the lock directory and default acquisition timeout."""
        self.root = Path(runtime_dir).expanduser() / "locks"
        self.default_timeout = float(default_timeout)

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = "".join(char if char.isalnum() or char in {"-", "_", "."} else "-" for char in name)
        return self.root / f"{safe}.lock"

    @contextmanager
    def domain_lock(self, domain: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the rotation lock for *domain* for the duration of the block."""
        with self._acquire(self.lock_path(domain), timeout) as handle:
            yield handle

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Failed to open lock file {path}: {exc}") from exc

        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as exc:
                    if exc.errno not in (errno.EAGAIN, errno.EACCES):
                        raise LockError(f"Failed to lock {path}: {exc}") from exc
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}; "
                            "another rotation may be in progress."
                        ) from exc
                    time.sleep(_POLL_INTERVAL)

            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    # Lock files persist after release so operators can see the last holder.
    payload = json.dumps(
        {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(),
        }
    )
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, payload.encode("utf-8"))


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError"]
