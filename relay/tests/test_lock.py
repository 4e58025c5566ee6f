"""Tests for the process lock."""

import asyncio
import json
import os
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from relay.errors import LockError
from relay.lock import ProcessLock, install_shutdown_handlers


def make_lock(path: Path, clock, pid: int) -> ProcessLock:
    return ProcessLock(path, stale_after_seconds=90, clock=clock, pid=pid)


class TestProcessLockAcquire:
    """Tests for ProcessLock.acquire()."""

    def test_acquire_writes_pid_and_heartbeat(self, tmp_path: Path, clock) -> None:
        """Acquiring creates the lock file with our pid and the current time."""
        path = tmp_path / "relay.lock"

        assert make_lock(path, clock, pid=100).acquire() is True

        data = json.loads(path.read_text())
        assert data == {"pid": 100, "heartbeat_at": clock.now.isoformat()}

    @pytest.mark.parametrize("second_pid", [100, 200])
    def test_fresh_lock_blocks(self, tmp_path: Path, clock, second_pid: int) -> None:
        """A lock younger than 90s blocks any caller, same pid or not."""
        path = tmp_path / "relay.lock"
        make_lock(path, clock, pid=100).acquire()
        clock.now += timedelta(seconds=89)

        assert make_lock(path, clock, pid=second_pid).acquire() is False

    @pytest.mark.parametrize("second_pid", [100, 200])
    def test_stale_lock_is_taken_over(self, tmp_path: Path, clock, second_pid: int) -> None:
        """A lock older than 90s is taken over."""
        path = tmp_path / "relay.lock"
        make_lock(path, clock, pid=100).acquire()
        clock.now += timedelta(seconds=91)

        assert make_lock(path, clock, pid=second_pid).acquire() is True
        assert json.loads(path.read_text())["pid"] == second_pid

    def test_two_instances_thirty_then_ninety_five_seconds_apart(
        self, tmp_path: Path, clock
    ) -> None:
        """Without heartbeats the lock is fresh at 30s and stale at 95s."""
        path = tmp_path / "relay.lock"
        start = clock.now
        assert make_lock(path, clock, pid=100).acquire() is True

        clock.now = start + timedelta(seconds=30)
        assert make_lock(path, clock, pid=200).acquire() is False

        clock.now = start + timedelta(seconds=95)
        assert make_lock(path, clock, pid=200).acquire() is True

    def test_missing_lock_is_created_exclusively(self, tmp_path: Path, clock) -> None:
        """A fresh lock file is created in place, never swapped in over another."""
        path = tmp_path / "relay.lock"

        with patch("relay.lock.os.replace") as replace:
            assert make_lock(path, clock, pid=100).acquire() is True

        replace.assert_not_called()
        assert json.loads(path.read_text())["pid"] == 100

    def test_simultaneous_takeover_only_one_wins(self, tmp_path: Path, clock) -> None:
        """An instance whose takeover is overwritten by a rival backs off."""
        path = tmp_path / "relay.lock"
        make_lock(path, clock, pid=100).acquire()
        clock.now += timedelta(seconds=95)
        rival = make_lock(path, clock, pid=300)
        real_replace = os.replace

        def replace_then_rival_writes(src, dst):
            real_replace(src, dst)
            path.write_text(rival._payload())

        with patch("relay.lock.os.replace", side_effect=replace_then_rival_writes):
            assert make_lock(path, clock, pid=200).acquire() is False

        assert json.loads(path.read_text())["pid"] == 300

    def test_unparseable_lock_is_treated_as_stale(self, tmp_path: Path, clock) -> None:
        path = tmp_path / "relay.lock"
        path.write_text("not json")

        assert make_lock(path, clock, pid=100).acquire() is True

    def test_unreadable_lock_fails_closed(self, tmp_path: Path, clock) -> None:
        """An I/O error while checking the lock refuses to start."""
        lock = make_lock(tmp_path / "relay.lock", clock, pid=100)

        with patch.object(Path, "read_text", side_effect=PermissionError("denied")):
            assert lock.acquire() is False

    def test_heartbeat_keeps_lock_fresh(self, tmp_path: Path, clock) -> None:
        """A running holder that heartbeats is never taken over."""
        path = tmp_path / "relay.lock"
        holder = make_lock(path, clock, pid=100)
        holder.acquire()

        for _ in range(3):
            clock.now += timedelta(seconds=60)
            assert holder.heartbeat() is True

        assert make_lock(path, clock, pid=200).acquire() is False


class TestProcessLockHeartbeat:
    """Heartbeat failures are warnings, not crashes."""

    def test_heartbeat_failure_returns_false(self, tmp_path: Path, clock) -> None:
        lock = make_lock(tmp_path / "relay.lock", clock, pid=100)
        lock.acquire()

        with patch("relay.lock.os.replace", side_effect=OSError("disk full")):
            assert lock.heartbeat() is False

        assert lock.lost is False

    def test_stalled_holder_does_not_reclaim_lock(self, tmp_path: Path, clock) -> None:
        """An owner that stalled past the threshold leaves the new owner alone."""
        path = tmp_path / "relay.lock"
        stalled = make_lock(path, clock, pid=111)
        assert stalled.acquire() is True
        clock.now += timedelta(seconds=95)
        assert make_lock(path, clock, pid=222).acquire() is True

        assert stalled.heartbeat() is False

        assert stalled.lost is True
        assert json.loads(path.read_text())["pid"] == 222

    def test_deleted_lock_file_is_recreated(self, tmp_path: Path, clock) -> None:
        path = tmp_path / "relay.lock"
        lock = make_lock(path, clock, pid=100)
        lock.acquire()
        path.unlink()

        assert lock.heartbeat() is True
        assert json.loads(path.read_text())["pid"] == 100

    @pytest.mark.asyncio
    async def test_background_heartbeat_reports_lost_lock(self, tmp_path: Path, clock) -> None:
        """Losing the lock calls on_lost once and stops the heartbeat."""
        path = tmp_path / "relay.lock"
        lock = ProcessLock(path, heartbeat_interval_seconds=0.01, clock=clock, pid=111)
        lock.acquire()
        clock.now += timedelta(seconds=95)
        make_lock(path, clock, pid=222).acquire()
        stop_event = asyncio.Event()

        task = lock.start_heartbeat(on_lost=stop_event.set)
        await asyncio.wait_for(stop_event.wait(), timeout=1)
        await asyncio.wait_for(task, timeout=1)

        assert json.loads(path.read_text())["pid"] == 222
        await lock.stop_heartbeat()

    @pytest.mark.asyncio
    async def test_background_heartbeat_restamps(self, tmp_path: Path, clock) -> None:
        """start_heartbeat() re-stamps the lock on its interval."""
        path = tmp_path / "relay.lock"
        lock = ProcessLock(path, heartbeat_interval_seconds=0.01, clock=clock, pid=100)
        lock.acquire()
        clock.now += timedelta(seconds=45)

        lock.start_heartbeat()
        await asyncio.sleep(0.05)
        await lock.stop_heartbeat()

        assert json.loads(path.read_text())["heartbeat_at"] == clock.now.isoformat()


class TestProcessLockRelease:
    """Tests for ProcessLock.release() and the context manager."""

    def test_release_removes_own_lock(self, tmp_path: Path, clock) -> None:
        path = tmp_path / "relay.lock"
        lock = make_lock(path, clock, pid=100)
        lock.acquire()

        lock.release()

        assert not path.exists()

    def test_release_leaves_foreign_lock(self, tmp_path: Path, clock) -> None:
        """A process never removes a lock it does not own."""
        path = tmp_path / "relay.lock"
        make_lock(path, clock, pid=100).acquire()

        make_lock(path, clock, pid=200).release()

        assert json.loads(path.read_text())["pid"] == 100

    def test_release_without_lock_is_safe(self, tmp_path: Path, clock) -> None:
        make_lock(tmp_path / "relay.lock", clock, pid=100).release()

    def test_context_manager(self, tmp_path: Path, clock) -> None:
        """The lock is held inside the block and released after."""
        path = tmp_path / "relay.lock"

        with make_lock(path, clock, pid=os.getpid()):
            assert path.exists()

        assert not path.exists()

    def test_context_manager_raises_when_held(self, tmp_path: Path, clock) -> None:
        path = tmp_path / "relay.lock"
        make_lock(path, clock, pid=100).acquire()

        with pytest.raises(LockError, match="PID: 100"):
            with make_lock(path, clock, pid=200):
                pass


class TestShutdownHandlers:
    """Tests for install_shutdown_handlers()."""

    @pytest.mark.asyncio
    async def test_signal_sets_stop_event(self) -> None:
        loop = MagicMock()
        stop_event = asyncio.Event()

        assert install_shutdown_handlers(loop, stop_event) is True
        assert loop.add_signal_handler.call_count == 2

        callback, signame = loop.add_signal_handler.call_args_list[0].args[1:]
        callback(signame)
        assert stop_event.is_set()

    def test_unsupported_platform(self) -> None:
        loop = MagicMock()
        loop.add_signal_handler.side_effect = NotImplementedError

        assert install_shutdown_handlers(loop, asyncio.Event()) is False
