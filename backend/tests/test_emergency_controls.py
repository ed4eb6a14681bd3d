"""
Tests for administrator overrides (pause, force submit, invalidate)
"""
import asyncio

import pytest
import pytest_asyncio
from fastapi import FastAPI

from exam_integrity.core.exceptions import ErrorCode
from exam_integrity.main import build_services
from exam_integrity.models import AttemptStatus
from exam_integrity.services.audit_logger import ClientContext
from exam_integrity.services.integrity_service import IntegrityService


@pytest.fixture
def admin():
    return ClientContext(user_id="admin-1", ip_address="10.0.0.1", user_agent="pytest")


@pytest_asyncio.fixture
async def attempt_id(service, exam, ctx, fingerprint, proctoring):
    result = await service.start_attempt(exam.id, ctx, fingerprint, proctoring)
    return result.data["attempt"]["id"]


class TestPause:
    """Tests for EmergencyControls.pause"""

    async def test_pause_blocks_candidate(self, controls, service, attempt_id, admin, exam, ctx):
        result = await controls.pause(attempt_id, admin, "  fire alarm in hall B  ")

        assert result.success is True
        assert result.data["previous_status"] == AttemptStatus.STARTED.value
        assert result.data["attempt"]["status"] == AttemptStatus.PAUSED.value

        blocked = await service.get_question(exam.id, 0, ctx)
        assert blocked.code == ErrorCode.ATTEMPT_PAUSED
        assert blocked.http_status == 423

    async def test_reason_required(self, controls, attempt_id, admin):
        result = await controls.pause(attempt_id, admin, "   ")
        assert result.code == ErrorCode.INVALID_INPUT
        assert result.http_status == 400

    async def test_only_started_attempts(self, controls, attempt_id, admin):
        await controls.pause(attempt_id, admin, "first")
        result = await controls.pause(attempt_id, admin, "second")
        assert result.code == ErrorCode.ATTEMPT_NOT_ACTIVE
        assert result.http_status == 409

    async def test_audit_records_admin(self, controls, audit, attempt_id, admin):
        await controls.pause(attempt_id, admin, "fire alarm")

        log = (await audit.get_audit_logs(attempt_id, event_type="admin_pause"))[0]

        assert log.event_metadata["admin_id"] == "admin-1"
        assert log.event_metadata["reason"] == "fire alarm"
        assert log.event_metadata["new_status"] == AttemptStatus.PAUSED.value
        assert log.user_id == "student-1"


class TestForceSubmit:
    """Tests for EmergencyControls.force_submit"""

    async def test_force_submit(self, controls, attempt_id, admin):
        result = await controls.force_submit(attempt_id, admin)

        assert result.success is True
        assert result.data["attempt"]["status"] == AttemptStatus.COMPLETED.value
        assert result.data["attempt"]["admin_submitted"] is True

    async def test_force_submit_paused_attempt(self, controls, attempt_id, admin):
        await controls.pause(attempt_id, admin, "investigating")
        result = await controls.force_submit(attempt_id, admin, "investigation closed")
        assert result.data["previous_status"] == AttemptStatus.PAUSED.value

    async def test_already_completed(self, controls, attempt_id, admin):
        await controls.force_submit(attempt_id, admin)
        result = await controls.force_submit(attempt_id, admin)
        assert result.code == ErrorCode.ATTEMPT_NOT_ACTIVE

    async def test_unknown_attempt(self, controls, admin):
        result = await controls.force_submit(424242, admin)
        assert result.code == ErrorCode.ATTEMPT_NOT_FOUND
        assert result.http_status == 404


class TestInvalidate:
    """Tests for EmergencyControls.invalidate"""

    async def test_invalidate_allows_restart_without_progress(self, controls, service, attempt_id, admin, exam, ctx,
                                                              fingerprint, proctoring):
        result = await controls.invalidate(attempt_id, admin, "wrong exam assigned")
        assert result.data["attempt"]["status"] == AttemptStatus.ADMIN_INVALIDATED.value

        restart = await service.start_attempt(exam.id, ctx, fingerprint, proctoring)

        assert restart.success is True
        assert restart.data["restarted"] is True
        assert restart.data["attempt"]["id"] == attempt_id

    async def test_invalidate_twice(self, controls, attempt_id, admin):
        await controls.invalidate(attempt_id, admin, "collusion")
        result = await controls.invalidate(attempt_id, admin, "collusion")
        assert result.code == ErrorCode.ATTEMPT_NOT_ACTIVE

    async def test_reason_required(self, controls, attempt_id, admin):
        result = await controls.invalidate(attempt_id, admin, None)
        assert result.code == ErrorCode.INVALID_INPUT


class TestAuditStatistics:
    """Tests for per-attempt audit summaries"""

    async def test_admin_actions_are_counted(self, controls, audit, attempt_id, admin):
        await controls.pause(attempt_id, admin, "investigating")
        await controls.force_submit(attempt_id, admin)

        stats = await audit.get_audit_statistics(attempt_id)

        assert stats["event_types"]["admin_pause"] == 1
        assert stats["event_types"]["admin_force_submit"] == 1
        assert stats["total_events"] == sum(stats["event_types"].values())
        assert stats["time_range"]["start"] == "2025-03-01T09:00:00"

    async def test_unknown_attempt_is_empty(self, audit):
        stats = await audit.get_audit_statistics(424242)
        assert stats["total_events"] == 0
        assert stats["time_range"] == {"start": None, "end": None}


class TestSerialization:
    """Tests that overrides and candidate operations share one lock per attempt"""

    def test_build_services_shares_lock_registry(self, session_factory, clock):
        application = FastAPI()

        build_services(application, session_factory=session_factory, clock=clock)

        assert application.state.integrity_service.locks is application.state.emergency_controls.locks

    async def test_override_waits_for_candidate_operation(self, controls, locks, attempt_id, admin, exam, ctx):
        async with locks.hold(IntegrityService.lock_key(ctx.user_id, exam.id)):
            pending = asyncio.ensure_future(controls.invalidate(attempt_id, admin, "collusion"))
            await asyncio.sleep(0.2)
            assert not pending.done()

        result = await pending
        assert result.success is True
