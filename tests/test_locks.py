"""Tests for the file lock manager."""

import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor

from ticket_orchestrator.core.locks import keys_overlap
from ticket_orchestrator.db.models import Lease, LockConflict


class TestKeysOverlap:
    def test_same_path(self):
        assert keys_overlap("src/a.py", "src/a.py")

    def test_different_paths(self):
        assert not keys_overlap("src/a.py", "src/b.py")

    def test_glob_matches_path(self):
        assert keys_overlap("src/*.py", "src/a.py")
        assert keys_overlap("src/a.py", "src/*.py")

    def test_repository_key_matches_everything(self):
        assert keys_overlap("*", "docs/readme.md")


class TestAcquire:
    def test_acquire_and_release(self, locks):
        lease = locks.try_acquire({"a.py", "b.py"}, "w1")
        assert isinstance(lease, Lease)
        assert lease.resource_keys == frozenset({"a.py", "b.py"})
        assert {lock.resource_key for lock in locks.active_locks()} == {"a.py", "b.py"}

        assert locks.release(lease.token) == 2
        assert locks.active_locks() == []
        assert locks.release(lease.token) == 0

    def test_conflict_is_all_or_nothing(self, locks):
        locks.try_acquire({"a.py"}, "w1")
        result = locks.try_acquire({"a.py", "b.py"}, "w2")
        assert isinstance(result, LockConflict)
        assert result.resource_keys == frozenset({"a.py"})
        assert result.holders == {"a.py": "w1"}
        held = {lock.resource_key: lock.holder for lock in locks.active_locks()}
        assert held == {"a.py": "w1"}

    def test_disjoint_sets_both_succeed(self, locks):
        assert isinstance(locks.try_acquire({"a.py"}, "w1"), Lease)
        assert isinstance(locks.try_acquire({"b.py"}, "w2"), Lease)

    def test_glob_conflict(self, locks):
        locks.try_acquire({"src/api/*.py"}, "w1")
        result = locks.try_acquire({"src/api/routes.py"}, "w2")
        assert isinstance(result, LockConflict)
        assert result.holders == {"src/api/*.py": "w1"}

    def test_empty_set_always_succeeds(self, locks):
        locks.try_acquire({"a.py"}, "w1")
        lease = locks.try_acquire(set(), "w2")
        assert isinstance(lease, Lease)
        assert lease.resource_keys == frozenset()

    def test_holder_does_not_conflict_with_itself(self, locks):
        first = locks.try_acquire({"a.py"}, "w1")
        second = locks.try_acquire({"a.py", "b.py"}, "w1")
        assert isinstance(second, Lease)
        assert locks.release(first.token) == 0
        assert locks.release(second.token) == 2

    def test_release_holder(self, locks):
        locks.try_acquire({"a.py"}, "w1")
        locks.try_acquire({"b.py"}, "w1")
        locks.try_acquire({"c.py"}, "w2")
        assert locks.release_holder("w1") == 2
        assert [lock.resource_key for lock in locks.active_locks()] == ["c.py"]


class TestExpiry:
    def test_expired_lock_is_reclaimed_on_acquire(self, locks, clock):
        locks.try_acquire({"a.py"}, "w1", timeout=60)
        clock.advance(61)
        lease = locks.try_acquire({"a.py"}, "w2")
        assert isinstance(lease, Lease)
        assert locks.active_locks()[0].holder == "w2"

    def test_lock_valid_until_expiry(self, locks, clock):
        locks.try_acquire({"a.py"}, "w1", timeout=60)
        clock.advance(59)
        assert isinstance(locks.try_acquire({"a.py"}, "w2"), LockConflict)

    def test_renew_extends(self, locks, clock):
        lease = locks.try_acquire({"a.py"}, "w1", timeout=60)
        clock.advance(50)
        assert locks.renew(lease.token, timeout=60)
        clock.advance(50)
        assert isinstance(locks.try_acquire({"a.py"}, "w2"), LockConflict)

    def test_renew_after_reclaim_fails(self, locks, clock):
        lease = locks.try_acquire({"a.py"}, "w1", timeout=60)
        clock.advance(120)
        reclaimed = locks.reclaim_expired()
        assert [r.resource_key for r in reclaimed] == ["a.py"]
        assert not locks.renew(lease.token)

    def test_active_locks_hides_expired(self, locks, clock):
        locks.try_acquire({"a.py"}, "w1", timeout=60)
        clock.advance(60)
        assert locks.active_locks() == []


class TestContention:
    def test_overlapping_sets_never_share_a_file(self, locks):
        files = ["a.py", "b.py", "c.py", "d.py"]
        guard = threading.Lock()
        holding = Counter()
        peak = Counter()
        wins = Counter()
        barrier = threading.Barrier(8)

        def contend(n):
            keys = {files[n % 4], files[(n + 1) % 4]}
            barrier.wait()
            for _ in range(25):
                lease = locks.try_acquire(keys, f"w{n}")
                if not isinstance(lease, Lease):
                    continue
                with guard:
                    wins[n] += 1
                    for key in keys:
                        holding[key] += 1
                        peak[key] = max(peak[key], holding[key])
                time.sleep(0.001)
                with guard:
                    for key in keys:
                        holding[key] -= 1
                locks.release(lease.token)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(contend, range(8)))

        assert sum(wins.values()) > 0
        assert set(peak.values()) == {1}
        assert locks.active_locks() == []

    def test_single_winner_for_a_shared_file(self, locks):
        barrier = threading.Barrier(6)

        def grab(n):
            barrier.wait()
            return locks.try_acquire({"shared.py", f"own-{n}.py"}, f"w{n}")

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(grab, range(6)))

        leases = [r for r in results if isinstance(r, Lease)]
        assert len(leases) == 1
        assert [lock.holder for lock in locks.active_locks() if lock.resource_key == "shared.py"] == [
            leases[0].holder
        ]
        for conflict in (r for r in results if isinstance(r, LockConflict)):
            assert conflict.resource_keys == {"shared.py"}
            assert conflict.holders == {"shared.py": leases[0].holder}
