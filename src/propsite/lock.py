from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from types import TracebackType
from typing import Callable, IO

from propsite.errors import LockError

logger = logging.getLogger(__name__)

LOCK_NAME = ".lock"
_POLL_SECONDS = 0.1


class ProcessLock:
    """Repository-scoped exclusive lock backed by ``fcntl.flock``.

    Acquisition never blocks indefinitely: it fails with ``LockError`` at once,
    or after ``wait`` seconds of polling. The lock file records the owner pid.
    """

    def __init__(
        self,
        path: Path,
        *,
        wait: float = 0.0,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock_fn: Callable[[], float] = time.monotonic,
    ):
        self.path = path
        self.wait = wait
        self._sleep = sleep_fn
        self._clock = clock_fn
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def _owner(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return ""

    def acquire(self) -> "ProcessLock":
        if self._handle is not None:
            raise LockError(f"lock `{self.path}` is already held by this process", path=self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")
        deadline = self._clock() + self.wait
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if self._clock() >= deadline:
                    handle.close()
                    owner = self._owner()
                    held_by = f" (held by pid {owner})" if owner else ""
                    raise LockError(
                        f"another build is in progress: `{self.path}` is locked{held_by}",
                        path=self.path,
                        owner=owner,
                    ) from None
                self._sleep(_POLL_SECONDS)
            except OSError as exc:
                handle.close()
                raise LockError(f"could not lock `{self.path}`: {exc}", path=self.path) from exc
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug("acquired `%s`", self.path)
        return self

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            handle.seek(0)
            handle.truncate()
        except OSError:
            logger.debug("could not clear `%s`", self.path)
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
        logger.debug("released `%s`", self.path)

    def __enter__(self) -> "ProcessLock":
        return self.acquire()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
