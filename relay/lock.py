"""Single-instance guard for the relay.

The lock is a small JSON file holding the owner's PID and the time of its
last heartbeat. A lock whose heartbeat is older than the staleness threshold
belongs to a dead or wedged process and is taken over without manual cleanup.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

import structlog

from relay.errors import LockError

logger = structlog.get_logger(__name__)

DEFAULT_STALE_AFTER_SECONDS = 90
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LockInfo:
    """Contents of the lock file."""

    pid: int
    heartbeat_at: datetime

    def age_seconds(self, now: datetime) -> float:
        return (now - self.heartbeat_at).total_seconds()


class ProcessLock:
    """PID and heartbeat based lock for the relay process.

    Usage:
        lock = ProcessLock(Path("data/relay.lock"))
        with lock:
            lock.start_heartbeat()
            ...  # serve messages
            await lock.stop_heartbeat()
        # Lock is released

    Attributes:
        path: Location of the lock file
        stale_after_seconds: Heartbeat age after which the lock is abandoned
        heartbeat_interval_seconds: How often a running holder re-stamps it
    """

    def __init__(
        self,
        path: Path,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        pid: int | None = None,
    ) -> None:
        """Initialize lock manager.

        Args:
            path: Lock file path; parent directories are created on acquire
            stale_after_seconds: Staleness threshold
            heartbeat_interval_seconds: Interval for the background heartbeat
            clock: Source of the current time
            pid: Identity to stamp into the lock (defaults to this process)
        """
        self.path = Path(path)
        self.stale_after_seconds = stale_after_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.clock = clock
        self.pid = pid if pid is not None else os.getpid()
        self._heartbeat_task: asyncio.Task | None = None
        self.lost = False

    def read(self) -> LockInfo | None:
        """Return the current lock holder, or None if absent or unreadable.

        Raises:
            OSError: If the file exists but cannot be read
        """
        try:
            content = self.path.read_text()
        except FileNotFoundError:
            return None
        try:
            data = json.loads(content)
            heartbeat_at = datetime.fromisoformat(data["heartbeat_at"])
            if heartbeat_at.tzinfo is None:
                heartbeat_at = heartbeat_at.replace(tzinfo=timezone.utc)
            return LockInfo(pid=int(data["pid"]), heartbeat_at=heartbeat_at)
        except (ValueError, KeyError, TypeError):
            return None

    def _payload(self) -> str:
        return json.dumps({"pid": self.pid, "heartbeat_at": self.clock().isoformat()})

    def _create(self) -> None:
        """Create the lock file, failing if any process created it first.

        Raises:
            FileExistsError: If the lock file already exists
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w") as f:
            f.write(self._payload())

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{self.pid}.tmp")
        tmp_path.write_text(self._payload())
        os.replace(tmp_path, self.path)

    def _owned(self) -> bool:
        holder = self.read()
        return holder is not None and holder.pid == self.pid

    def acquire(self) -> bool:
        """Try to take the lock.

        A missing lock file is created exclusively. A stale or unparseable
        one is replaced. Either way the file is read back afterwards, so an
        instance that raced us and wrote last wins.

        Returns:
            True if acquired; False if a live instance holds it, another
            instance won a simultaneous start, or the lock file could not
            be read or written
        """
        try:
            try:
                self._create()
            except FileExistsError:
                holder = self.read()
                # A fresh lock blocks even a holder with our own pid (a recycled pid)
                if holder is not None:
                    age = holder.age_seconds(self.clock())
                    if age < self.stale_after_seconds:
                        logger.warning(
                            "Lock held by another instance",
                            holder_pid=holder.pid,
                            heartbeat_age_seconds=round(age, 1),
                        )
                        return False
                    logger.info(
                        "Taking over stale lock", holder_pid=holder.pid, age_seconds=round(age, 1)
                    )
                self._write()

            if not self._owned():
                logger.warning("Lost lock race to another instance", path=str(self.path))
                return False
        except OSError as e:
            logger.error("Lock file unavailable, refusing to start", path=str(self.path), error=str(e))
            return False

        self.lost = False
        logger.info("Lock acquired", pid=self.pid, path=str(self.path))
        return True

    def heartbeat(self) -> bool:
        """Re-stamp the lock if this process still owns it.

        A lock now stamped with another pid was taken over while we were
        stalled; it is left alone and ``lost`` is set. A missing lock file
        is recreated exclusively.

        Returns:
            True if the lock was re-stamped; I/O failures are logged and
            reported as False without setting ``lost``
        """
        try:
            holder = self.read()
            if holder is None and not self.path.exists():
                try:
                    self._create()
                    return True
                except FileExistsError:
                    holder = self.read()
            if holder is None or holder.pid != self.pid:
                self.lost = True
                logger.error(
                    "Lock lost to another instance",
                    pid=self.pid,
                    holder_pid=holder.pid if holder else None,
                )
                return False
            self._write()
            return True
        except OSError as e:
            logger.warning("Lock heartbeat failed", path=str(self.path), error=str(e))
            return False

    def release(self) -> None:
        """Remove the lock if this process owns it.

        Safe to call even if the lock doesn't exist.
        """
        try:
            holder = self.read()
            if holder is not None and holder.pid != self.pid:
                logger.warning("Not releasing lock owned by another process", holder_pid=holder.pid)
                return
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to release lock", path=str(self.path), error=str(e))
            return
        logger.info("Lock released", pid=self.pid)

    def start_heartbeat(self, on_lost: Callable[[], None] | None = None) -> asyncio.Task:
        """Start the background heartbeat task on the running loop.

        Args:
            on_lost: Called once if another instance takes the lock over;
                the heartbeat stops afterwards
        """
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(on_lost))
        return self._heartbeat_task

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _heartbeat_loop(self, on_lost: Callable[[], None] | None) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_seconds)
            if not self.heartbeat() and self.lost:
                if on_lost is not None:
                    on_lost()
                return

    def __enter__(self) -> ProcessLock:
        """Acquire lock on context entry.

        Raises:
            LockError: If another live instance holds the lock
        """
        if not self.acquire():
            holder = None
            try:
                holder = self.read()
            except OSError:
                pass
            raise LockError(
                f"Relay already running (PID: {holder.pid if holder else 'unknown'})"
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release lock on context exit."""
        self.release()


def install_shutdown_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> bool:
    """Set stop_event on SIGINT or SIGTERM.

    Returns:
        True if the handlers were installed
    """

    def request_stop(signame: str) -> None:
        logger.info("Shutdown requested", signal=signame)
        stop_event.set()

    try:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, request_stop, signal.Signals(signum).name)
    except (ValueError, OSError, NotImplementedError):
        # Not in the main thread, or the platform lacks signal support
        logger.debug("Signal handlers not installed")
        return False
    return True
