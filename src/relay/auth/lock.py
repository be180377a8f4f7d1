"""Cross-process advisory lock guarding the interactive authorization flow.

The lock is a JSON file created with ``O_CREAT | O_EXCL`` next to the stored
credentials. Its record names the holder PID so a crashed holder can be
detected and the lock reclaimed by the next process.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import time
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from types import TracebackType
from typing import Self

logger = logging.getLogger(__name__)

DEFAULT_STALE_TIMEOUT = 600.0  # 10 minutes
_UNREADABLE_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class LockRecord:
    """Contents of the lock file."""

    holder_pid: int
    acquired_at: float
    callback_port: int | None = None

    def is_stale(self, stale_timeout: float = DEFAULT_STALE_TIMEOUT) -> bool:
        """True when the holder is gone or has held the lock too long."""
        if time.time() - self.acquired_at > stale_timeout:
            return True
        return not pid_alive(self.holder_pid)


def pid_alive(pid: int) -> bool:
    """Check if a PID is alive."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except PermissionError:
        # Exists but owned by someone else
        return True
    except (OSError, ProcessLookupError):
        return False


class AuthLock:
    """Advisory lock for one server hash.

    Acquisition never blocks: ``try_acquire`` either creates the lock file or
    reports that someone else holds it. ``acquire`` adds bounded retries with
    exponential backoff on top.
    """

    def __init__(
        self,
        config_dir: Path | str,
        server_hash: str,
        stale_timeout: float = DEFAULT_STALE_TIMEOUT,
    ) -> None:
        self.path = Path(config_dir) / f"{server_hash}_lock.json"
        self.stale_timeout = stale_timeout
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    # ================================
    # Acquire / release
    # ================================

    def try_acquire(self, callback_port: int | None = None) -> bool:
        """Attempt to create the lock file once, reclaiming a stale one.

        Returns:
            True if this instance now holds the lock
        """
        if self._held:
            return True

        record = LockRecord(
            holder_pid=os.getpid(),
            acquired_at=time.time(),
            callback_port=callback_port,
        )

        # Two passes: the second runs only after a stale lock was removed
        for _ in range(2):
            if self._create(record):
                self._held = True
                logger.debug(f"Acquired auth lock {self.path}")
                return True

            if not self._reclaim():
                return False

        return False

    def _reclaim(self) -> bool:
        """Remove a stale lock file.

        The file is first renamed to a name only this call knows, so of two
        processes reclaiming the same stale lock exactly one gets to remove
        it. If what was moved aside turns out to be a live lock (another
        reclaimer won and created a fresh one in between) it is put back.

        Returns:
            True if the lock path is free for another create attempt
        """
        if not self._reclaimable(self.path):
            return False

        aside = self.path.with_name(
            f"{self.path.name}.{os.getpid()}.{secrets.token_hex(4)}.stale"
        )
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return True

        if self._reclaimable(aside):
            logger.info(f"Removed stale auth lock {self.path}")
            aside.unlink(missing_ok=True)
            return True

        try:
            os.link(aside, self.path)
        except FileExistsError:
            logger.warning(f"Auth lock {self.path} was replaced while restoring it")
        finally:
            aside.unlink(missing_ok=True)
        return False

    def _reclaimable(self, path: Path) -> bool:
        existing = self._read(path)
        if existing is not None:
            if existing.is_stale(self.stale_timeout):
                logger.debug(f"Auth lock held by {existing.holder_pid} is stale")
                return True
            return False

        # Missing or unreadable record. A holder may be mid-write.
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age > _UNREADABLE_GRACE_SECONDS:
            logger.debug(f"Auth lock {path} is unreadable")
            return True
        return False

    async def acquire(
        self,
        attempts: int = 3,
        backoff: float = 0.5,
        callback_port: int | None = None,
    ) -> bool:
        """Try to acquire the lock up to ``attempts`` times.

        Args:
            attempts: Number of non-blocking attempts
            backoff: Initial delay between attempts, doubled each time
            callback_port: Port recorded for peers to observe

        Returns:
            True if the lock was acquired
        """
        delay = backoff
        for attempt in range(1, attempts + 1):
            if await asyncio.to_thread(self.try_acquire, callback_port):
                return True
            if attempt < attempts:
                logger.debug(
                    f"Auth lock busy (attempt {attempt}/{attempts}), "
                    f"retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                delay *= 2
        return False

    async def release(self) -> None:
        """Remove the lock file if this instance holds it. Safe to call twice."""
        if not self._held:
            return
        self._held = False

        existing = await asyncio.to_thread(self.read_record)
        if existing is not None and existing.holder_pid != os.getpid():
            logger.warning(
                f"Auth lock was taken over by {existing.holder_pid}, not removing"
            )
            return

        await asyncio.to_thread(self.path.unlink, True)
        logger.debug(f"Released auth lock {self.path}")

    async def set_callback_port(self, port: int) -> None:
        """Record the holder's callback listener port so waiters can reach it."""
        if not self._held:
            raise RuntimeError(f"Auth lock {self.path} is not held")
        await asyncio.to_thread(self._rewrite, port)

    def _rewrite(self, port: int) -> None:
        existing = self.read_record()
        if existing is None or existing.holder_pid != os.getpid():
            logger.warning(f"Auth lock {self.path} is no longer ours, not updating")
            return

        tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        fd = os.open(tmp, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(asdict(replace(existing, callback_port=port)), f)
        os.replace(tmp, self.path)
        logger.debug(f"Auth lock {self.path} now names callback port {port}")

    def read_record(self) -> LockRecord | None:
        """Current lock record, or None if absent or unreadable."""
        return self._read(self.path)

    def _read(self, path: Path) -> LockRecord | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return LockRecord(
                holder_pid=int(data["holder_pid"]),
                acquired_at=float(data["acquired_at"]),
                callback_port=data.get("callback_port"),
            )
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.debug(f"Unreadable auth lock {self.path}: {e}")
            return None

    def _create(self, record: LockRecord) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(asdict(record), f)
        return True

    # ================================
    # Context manager
    # ================================

    async def __aenter__(self) -> Self:
        if not await self.acquire():
            raise TimeoutError(f"Could not acquire auth lock {self.path}")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.release()
