"""
Tests for the periodic maintenance tasks
"""
from dataclasses import replace

from exam_integrity.core.cache import cache
from exam_integrity.models import AttemptStatus
from exam_integrity.services.attempt_repository import AttemptRepository, PresenceStore
from exam_integrity.services.presence import PresenceTracker
from exam_integrity.tasks.maintenance import (
    _expire_overdue_internal,
    _health_check_internal,
    _purge_heartbeats_internal,
)


class TestExpireOverdue:
    """Tests for the overdue attempt sweep"""

    async def test_only_overdue_attempts_expire(self, service, session_factory, clock, audit, exam, ctx,
                                                 fingerprint, proctoring):
        first = await service.start_attempt(exam.id, ctx, fingerprint, proctoring)
        clock.advance(600)
        late_ctx = replace(ctx, user_id="student-2")
        second = await service.start_attempt(exam.id, late_ctx, fingerprint, proctoring)

        clock.advance(exam.duration_seconds - 300)
        result = await _expire_overdue_internal(session_factory, clock)

        expired_id = first.data["attempt"]["id"]
        assert result == {"expired": 1, "attempt_ids": [expired_id]}
        async with session_factory() as db:
            repo = AttemptRepository(db)
            assert (await repo.get_for_user("student-1", exam.id)).status == AttemptStatus.TIME_EXPIRED.value
            assert (await repo.get_for_user("student-2", exam.id)).status == AttemptStatus.STARTED.value
        logs = await audit.get_audit_logs(expired_id, event_type="time_expired")
        assert logs[0].event_metadata["source"] == "maintenance"
        assert second.success is True

    async def test_nothing_due(self, session_factory, clock):
        assert await _expire_overdue_internal(session_factory, clock) == {"expired": 0, "attempt_ids": []}


class TestPurgeHeartbeats:
    """Tests for heartbeat retention"""

    async def test_purges_rows_past_retention(self, session_factory, clock):
        store = PresenceStore(session_factory)
        tracker = PresenceTracker(clock=clock)
        await tracker.update(1, "tab-1")
        await tracker.flush(store)

        clock.advance(25 * 3600)
        result = await _purge_heartbeats_internal(session_factory, clock)

        assert result["purged"] == 1
        assert result["cutoff"] == "2025-03-01T10:00:00"
        assert await store.latest_heartbeat_at(1) is None


class TestHealthCheck:
    """Tests for the worker health task"""

    async def test_reports_each_dependency(self, session_factory, monkeypatch):
        monkeypatch.setattr(cache, "health_check", lambda: False)

        status = await _health_check_internal(session_factory)

        assert status == {"cache": "unhealthy", "database": "healthy"}
