"""Serialised, all-or-nothing edits of the directory files.

The directory is spread across several text files that Postfix and Dovecot
read independently. Two rules keep them coherent:

- only one mailkit process edits them at a time (``DirectoryLock``)
- an edit that fails half way is rolled back (``StoreTransaction``)
"""

import errno
import fcntl
import logging
import os
import tempfile
import time
from pathlib import Path
from types import TracebackType

from mailkit.errors import MailError

logger = logging.getLogger(__name__)


def atomic_write(path: Path, content: str, mode: int | None = None) -> None:
    """Replace ``path`` with ``content`` without exposing a partial file.

    The file mode of an existing target is kept unless ``mode`` is given.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode is None:
        try:
            mode = path.stat().st_mode & 0o7777
        except FileNotFoundError:
            mode = 0o644

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class DirectoryLock:
    """Exclusive advisory lock on the mail directory."""

    def __init__(self, path: Path, timeout: float = 0.0) -> None:
        self.path = path
        self.timeout = timeout
        self._fd: int | None = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError as e:
                if e.errno not in (errno.EAGAIN, errno.EACCES):
                    os.close(fd)
                    raise
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise MailError(
                        code="STORE_LOCKED",
                        message=f"Mail directory is locked by another process ({self.path})",
                        suggestion="Wait for the other mailkit command to finish and retry",
                    )
                time.sleep(0.1)

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug("Acquired directory lock %s", self.path)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Released directory lock %s", self.path)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "DirectoryLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class StoreTransaction:
    """Snapshot a set of files and restore them if the block raises.

    Files that did not exist when the transaction opened are deleted again
    on rollback.
    """

    def __init__(self, paths: list[Path]) -> None:
        self.paths = list(dict.fromkeys(paths))
        self._snapshots: dict[Path, tuple[str, int] | None] = {}
        self._rolled_back = False

    def __enter__(self) -> "StoreTransaction":
        for path in self.paths:
            if path.exists():
                self._snapshots[path] = (
                    path.read_text(encoding="utf-8"),
                    path.stat().st_mode & 0o7777,
                )
            else:
                self._snapshots[path] = None
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is None or self._rolled_back:
            return
        logger.warning("Rolling back directory files after error: %s", exc)
        self.rollback()

    def rollback(self) -> None:
        """Restore the snapshots of files that changed since the block opened."""
        self._rolled_back = True
        for path, snapshot in self._snapshots.items():
            try:
                if snapshot is None:
                    path.unlink(missing_ok=True)
                    continue
                content, mode = snapshot
                # Rewriting an unchanged map would make it newer than its .db
                if path.exists() and path.read_text(encoding="utf-8") == content:
                    if path.stat().st_mode & 0o7777 != mode:
                        path.chmod(mode)
                    continue
                atomic_write(path, content, mode=mode)
            except OSError as e:
                logger.error("Could not restore %s during rollback: %s", path, e)
