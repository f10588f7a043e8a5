"""Concurrent access to session admission, lockout counters and the IP gate.

Requests run on worker threads against one store, so each guard must stay
correct when many callers hit the same identity or address at once.
"""

import asyncio
import threading
from typing import List

from dormauth.service.audit import AuditAction
from dormauth.service.errors import AuthenticationError, IPBlockedError, LockoutError

from conftest import STRONG_PASSWORD

WORKERS = 12


def _run_parallel(target, count: int = WORKERS) -> List[Exception]:
    """Start ``count`` threads on a shared barrier; return what they raised."""
    barrier = threading.Barrier(count)
    errors: List[Exception] = []
    errors_lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            target()
        except Exception as e:
            with errors_lock:
                errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


class TestSessionAdmission:
    def test_parallel_creates_respect_session_cap(self, runtime, make_user):
        user = make_user()

        errors = _run_parallel(lambda: runtime.sessions.create(user, user_agent="pytest"))

        assert errors == []
        assert len(runtime.sessions.list_active(user.id)) == 3
        assert len(runtime.store.list_user_sessions(user.id)) == 3

    def test_parallel_admission_for_different_users(self, runtime, make_user):
        users = [make_user(f"student{i}@example.com") for i in range(3)]

        def create_for_all():
            for user in users:
                runtime.sessions.create(user)

        errors = _run_parallel(create_for_all, count=6)

        assert errors == []
        for user in users:
            assert len(runtime.sessions.list_active(user.id)) == 3


class TestLockoutCounter:
    def test_parallel_wrong_passwords_lock_exactly_once(self, runtime, make_user):
        user = make_user()

        def guess():
            asyncio.run(
                runtime.auth.login(email="asha@example.com", password="Wrong123!Guess")
            )

        errors = _run_parallel(guess)

        assert len(errors) == WORKERS
        lockouts = [e for e in errors if isinstance(e, LockoutError)]
        rejected = [e for e in errors if isinstance(e, AuthenticationError)]
        assert len(rejected) == 5
        assert len(lockouts) == WORKERS - 5
        stored = runtime.credentials.get(user.id)
        assert stored.failed_login_count == 5
        assert stored.locked_until is not None
        locks = [r for r in runtime.store.audit_records if r.action == AuditAction.LOCK]
        assert len(locks) == 1

    def test_correct_password_rejected_once_locked(self, runtime, make_user):
        make_user()

        def guess():
            asyncio.run(
                runtime.auth.login(email="asha@example.com", password="Wrong123!Guess")
            )

        _run_parallel(guess, count=8)

        errors = _run_parallel(
            lambda: asyncio.run(
                runtime.auth.login(email="asha@example.com", password=STRONG_PASSWORD)
            ),
            count=4,
        )
        assert len(errors) == 4
        assert all(isinstance(e, LockoutError) for e in errors)


class TestIPGate:
    def test_parallel_attempts_allow_exactly_threshold(self, runtime):
        allowed: List[bool] = []
        allowed_lock = threading.Lock()

        def attempt():
            result = asyncio.run(runtime.ip_guard.record_attempt("198.51.100.9"))
            with allowed_lock:
                allowed.append(result)

        errors = _run_parallel(attempt, count=25)

        assert errors == []
        assert allowed.count(True) == 10
        assert allowed.count(False) == 15

    def test_parallel_gate_raises_for_overflow(self, runtime):
        errors = _run_parallel(
            lambda: asyncio.run(runtime.ip_guard.gate("198.51.100.10")), count=20
        )

        assert len(errors) == 10
        assert all(isinstance(e, IPBlockedError) for e in errors)
        assert asyncio.run(runtime.ip_guard.is_blocked("198.51.100.10"))
