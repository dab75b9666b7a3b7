"""
Wasmgate Slot Lock

Exclusive advisory file lock guarding one cache slot across processes.
Acquisition polls a non-blocking lock so the wait is bounded and
cancellable; the lock is released when the token is released or its
handle is closed (including process exit).
"""

from __future__ import annotations

import asyncio
import errno
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Optional

import structlog

from wasmgate.errors import LockIOError, LockTimeoutError

logger = structlog.get_logger(__name__)

_CONTENDED = (errno.EAGAIN, errno.EWOULDBLOCK, errno.EACCES, errno.EDEADLK)


def _lock_file(handle: IO[Any]) -> bool:
    """Try to take the lock without blocking. False when another holder has it."""
    if os.name == "nt":
        import msvcrt

        try:
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
        except OSError as exc:
            if exc.errno in _CONTENDED:
                return False
            raise
        return True
    import fcntl

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as exc:
        if exc.errno in _CONTENDED:
            return False
        raise
    return True


def _unlock_file(handle: IO[Any]) -> None:
    if os.name == "nt":
        import msvcrt

        try:
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        except OSError:
            return
        return
    import fcntl

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    except OSError:
        return


@dataclass
class LockToken:
    """Proof of holding a slot lock. Released exactly once."""

    path: Path
    _handle: Optional[IO[Any]] = field(default=None, repr=False)
    acquired_at: float = field(default_factory=time.monotonic)

    @property
    def held(self) -> bool:
        return self._handle is not None

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        _unlock_file(handle)
        handle.close()
        logger.debug(
            "Released slot lock",
            path=str(self.path),
            held_seconds=round(time.monotonic() - self.acquired_at, 3),
        )


class SlotLock:
    """
    Cross-process exclusive lock on a lock file.

    Usage:
        async with SlotLock(path, timeout=30) as token:
            ...

    Raises (on acquire):
        LockTimeoutError: Not acquired within `timeout`
        LockIOError: The lock file could not be created or locked
    """

    def __init__(self, path: Path, timeout: float = 60.0, poll_interval: float = 0.05):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._token: Optional[LockToken] = None

    def _open(self) -> IO[Any]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return self.path.open("a+", encoding="utf-8")
        except OSError as e:
            raise LockIOError(f"Cannot open lock file {self.path}", cause=e)

    def try_acquire(self) -> Optional[LockToken]:
        """Take the lock if free, without waiting."""
        handle = self._open()
        try:
            locked = _lock_file(handle)
        except OSError as e:
            handle.close()
            raise LockIOError(f"Cannot lock {self.path}", cause=e)
        if not locked:
            handle.close()
            return None
        try:
            handle.seek(0)
            handle.truncate()
            handle.write(f"pid={os.getpid()}\n")
            handle.flush()
        except OSError:
            # Holder metadata is informational only.
            pass
        return LockToken(path=self.path, _handle=handle)

    async def acquire(self, timeout: Optional[float] = None) -> LockToken:
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        waited = False

        while True:
            token = self.try_acquire()
            if token is not None:
                if waited:
                    logger.debug("Acquired contended slot lock", path=str(self.path))
                return token

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeoutError(str(self.path), timeout)
            if not waited:
                logger.debug("Waiting for slot lock", path=str(self.path), timeout=timeout)
                waited = True
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def __aenter__(self) -> LockToken:
        self._token = await self.acquire()
        return self._token

    async def __aexit__(self, *exc_info: Any) -> None:
        token, self._token = self._token, None
        if token is not None:
            token.release()
