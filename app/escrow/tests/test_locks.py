"""
Tests for escrow concurrency control.

DistributedLock runs against the mocked Redis connection from conftest.
"""

import pytest

from escrow.exceptions import LockAcquisitionError
from escrow.locks import DistributedLock, escrow_lock_key
from escrow.services import EscrowService


class TestDistributedLock:
    def test_acquire_sets_key_with_ttl(self, mock_redis):
        lock = DistributedLock(escrow_lock_key("abc"), ttl=45, blocking=False)

        assert lock.acquire() is True
        assert lock.is_held

        args, kwargs = mock_redis.set.call_args
        assert args[0] == "lock:escrow:abc"
        assert kwargs == {"nx": True, "ex": 45}

    def test_tokens_differ_per_holder(self, mock_redis):
        first = DistributedLock("escrow:1", blocking=False)
        second = DistributedLock("escrow:2", blocking=False)

        first.acquire()
        second.acquire()

        assert first._token != second._token

    def test_non_blocking_raises_when_held(self, mock_redis):
        mock_redis.set.return_value = False
        lock = DistributedLock("escrow:1", blocking=False)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert exc_info.value.details["key"] == "lock:escrow:1"
        assert not lock.is_held

    def test_blocking_retries_until_free(self, mock_redis):
        mock_redis.set.side_effect = [False, False, True]
        lock = DistributedLock("escrow:1", timeout=1.0)

        assert lock.acquire() is True
        assert mock_redis.set.call_count == 3

    def test_blocking_gives_up_after_timeout(self, mock_redis):
        mock_redis.set.return_value = False
        lock = DistributedLock("milestone:42", timeout=0.1)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert exc_info.value.details == {"key": "lock:milestone:42", "timeout": 0.1}

    def test_release_runs_owner_checked_script(self, mock_redis):
        lock = DistributedLock("escrow:1", blocking=False)
        lock.acquire()
        token = lock._token

        assert lock.release() is True
        assert not lock.is_held
        mock_redis.eval.assert_called_once_with(
            DistributedLock.RELEASE_SCRIPT, 1, "lock:escrow:1", token
        )

    def test_release_lost_lock_returns_false(self, mock_redis):
        mock_redis.eval.return_value = 0
        lock = DistributedLock("escrow:1", blocking=False)
        lock.acquire()

        assert lock.release() is False

    def test_release_twice_is_safe(self, mock_redis):
        lock = DistributedLock("escrow:1", blocking=False)
        lock.acquire()
        lock.release()

        assert lock.release() is False
        assert mock_redis.eval.call_count == 1

    def test_context_manager_releases_on_error(self, mock_redis):
        with pytest.raises(RuntimeError):
            with DistributedLock("escrow:1") as lock:
                assert lock.is_held
                raise RuntimeError("boom")

        assert not lock.is_held
        mock_redis.eval.assert_called_once()

    @pytest.mark.django_db
    def test_capture_holds_escrow_lock(self, funded_escrow, mock_redis):
        mock_redis.set.reset_mock()

        EscrowService.capture(funded_escrow.id)

        keys = [call.args[0] for call in mock_redis.set.call_args_list]
        assert keys == [f"lock:escrow:{funded_escrow.id}"]

