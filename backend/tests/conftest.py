"""
Pytest configuration for the exam integrity tests
"""
from collections import namedtuple
from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from exam_integrity.core.database import Base
from exam_integrity.models import Exam, ExamQuestion
from exam_integrity.services.audit_logger import AuditLogger, ClientContext
from exam_integrity.services.emergency_controls import EmergencyControls
from exam_integrity.services.integrity_service import IntegrityService
from exam_integrity.services.locks import KeyedLocks
from exam_integrity.services.presence import PresenceTracker
from exam_integrity.services.rate_limiter import RateLimiter
from exam_integrity.utils.timezone import FrozenClock

START = datetime(2025, 3, 1, 9, 0, 0)

SeededExam = namedtuple("SeededExam", ["id", "question_ids", "duration_seconds"])

FULL_PROCTORING = {
    "front_camera_active": True,
    "back_camera_active": False,
    "screen_share_active": True,
    "display_surface": "monitor",
}


@pytest.fixture
def clock():
    """Frozen server clock; tests advance it explicitly"""
    return FrozenClock(START)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """File-backed SQLite database with the full schema"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'integrity.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


async def seed_exam(session_factory, status="published", question_count=3, duration_seconds=3600, **fields):
    async with session_factory() as db:
        exam = Exam(title="Regional Olympiad", status=status, duration_seconds=duration_seconds, **fields)
        exam.questions = [
            ExamQuestion(
                position=i,
                question_type="multiple-choice",
                content=f"Question {i + 1}",
                options=["A", "B", "C", "D"],
                correct_answer="A",
            )
            for i in range(question_count)
        ]
        db.add(exam)
        await db.commit()
        return SeededExam(exam.id, [q.id for q in exam.questions], duration_seconds)


@pytest.fixture
def make_exam(session_factory):
    """Seed an exam with custom fields: ``await make_exam(status="draft")``"""
    async def _make(**fields):
        return await seed_exam(session_factory, **fields)
    return _make


@pytest_asyncio.fixture
async def exam(session_factory):
    return await seed_exam(session_factory)


@pytest.fixture
def fingerprint():
    return {
        "userAgent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/121.0",
        "hardwareConcurrency": 8,
        "deviceMemory": 16,
        "screenWidth": 2560,
        "screenHeight": 1440,
        "timezone": "Asia/Almaty",
        "webglVendor": "Google Inc. (NVIDIA)",
        "webglRenderer": "ANGLE (NVIDIA GeForce RTX 3060)",
    }


@pytest.fixture
def other_fingerprint(fingerprint):
    return {**fingerprint, "screenWidth": 1366, "screenHeight": 768, "hardwareConcurrency": 4}


@pytest.fixture
def proctoring():
    return dict(FULL_PROCTORING)


@pytest.fixture
def ctx():
    return ClientContext(user_id="student-1", ip_address="10.0.0.5", user_agent="pytest", connection_id="tab-1")


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def audit(session_factory, clock):
    return AuditLogger(session_factory, clock=clock)


@pytest.fixture
def rate_limits():
    return {
        "answer": {"max_requests": 10, "window_seconds": 60},
        "skip": {"max_requests": 5, "window_seconds": 60},
        "heartbeat": {"max_requests": 5, "window_seconds": 10},
        "websocket": {"max_requests": 10, "window_seconds": 10},
    }


@pytest.fixture
def service(session_factory, clock, audit, locks, rate_limits):
    return IntegrityService(
        session_factory,
        presence=PresenceTracker(clock=clock),
        rate_limiter=RateLimiter(limits=rate_limits, clock=clock, sweep_probability=0),
        audit=audit,
        clock=clock,
        locks=locks,
    )


@pytest.fixture
def controls(session_factory, audit, locks, clock):
    return EmergencyControls(session_factory, audit, locks, clock=clock)
