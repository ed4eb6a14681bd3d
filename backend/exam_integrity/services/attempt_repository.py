"""
Storage access for attempts, questions, answers and presence rows.

Every call is bounded by ``settings.storage_timeout_seconds``. Timeouts and
connection failures surface as ``TransientInfraError`` so callers can pick
fail-open or fail-closed behaviour per operation.
"""
import asyncio
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, func, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.exceptions import TransientInfraError
from ..models.attempt import Attempt, AttemptStatus
from ..models.exam import Exam, ExamQuestion
from ..models.session_heartbeat import SessionHeartbeat
from ..models.submission import AnswerSubmission
from ..utils.timezone import utc_now

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (asyncio.TimeoutError, OperationalError, InterfaceError, OSError)


async def bounded(operation: str, awaitable, timeout: Optional[float] = None):
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout or settings.storage_timeout_seconds)
    except IntegrityError:
        raise
    except _TRANSIENT_ERRORS as e:
        logger.error(f"Storage operation '{operation}' failed: {e!r}")
        raise TransientInfraError(operation, e) from e


def dialect_insert(db: AsyncSession, table):
    """INSERT construct supporting ON CONFLICT for the bound dialect."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)


class AttemptRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, attempt_id: int) -> Optional[Attempt]:
        return await bounded("load attempt", self.db.get(Attempt, attempt_id))

    async def get_for_user(self, user_id: str, exam_id: int) -> Optional[Attempt]:
        result = await bounded(
            "load attempt",
            self.db.execute(select(Attempt).where(Attempt.user_id == user_id, Attempt.exam_id == exam_id)),
        )
        return result.scalars().first()

    async def add(self, attempt: Attempt) -> Attempt:
        self.db.add(attempt)
        await self.save(attempt)
        return attempt

    async def save(self, attempt: Attempt) -> None:
        try:
            await bounded("save attempt", self.db.commit())
        except Exception:
            await self.db.rollback()
            raise
        await bounded("refresh attempt", self.db.refresh(attempt))

    async def get_exam(self, exam_id: int) -> Optional[Exam]:
        return await bounded("load exam", self.db.get(Exam, exam_id))

    async def get_questions(self, exam_id: int) -> List[ExamQuestion]:
        result = await bounded(
            "load questions",
            self.db.execute(
                select(ExamQuestion)
                .where(ExamQuestion.exam_id == exam_id)
                .order_by(ExamQuestion.position, ExamQuestion.id)
            ),
        )
        return list(result.scalars().all())

    async def record_answer(self, attempt_id: int, question_id: int, answer, time_spent_ms: Optional[int], now: datetime) -> None:
        """Upsert the candidate's answer; committed together with the attempt."""
        stmt = dialect_insert(self.db, AnswerSubmission.__table__).values(
            attempt_id=attempt_id,
            question_id=question_id,
            answer=answer,
            time_spent_ms=time_spent_ms,
            submitted_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["attempt_id", "question_id"],
            set_={"answer": stmt.excluded.answer, "time_spent_ms": stmt.excluded.time_spent_ms,
                  "submitted_at": stmt.excluded.submitted_at},
        )
        await bounded("save answer", self.db.execute(stmt))

    async def list_overdue(self, now: datetime, limit: int = 500) -> List[Attempt]:
        result = await bounded(
            "list overdue attempts",
            self.db.execute(
                select(Attempt)
                .where(Attempt.status == AttemptStatus.STARTED.value, Attempt.ends_at <= now)
                .limit(limit)
            ),
        )
        return list(result.scalars().all())


class PresenceStore:
    """Durable side of the presence tracker (``session_heartbeats`` table)."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def upsert_presence(self, entries: Iterable) -> int:
        rows = [
            {
                "attempt_id": entry.attempt_id,
                "connection_id": entry.connection_id,
                "last_seen_at": entry.last_seen_at,
                "status": entry.status,
                "updated_at": utc_now(),
            }
            for entry in entries
        ]
        if not rows:
            return 0

        async with self.session_factory() as db:
            stmt = dialect_insert(db, SessionHeartbeat.__table__).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=["attempt_id", "connection_id"],
                set_={
                    "last_seen_at": stmt.excluded.last_seen_at,
                    "status": stmt.excluded.status,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await bounded("presence upsert", db.execute(stmt))
            await bounded("presence commit", db.commit())
        return len(rows)

    async def latest_heartbeat_at(self, attempt_id: int) -> Optional[datetime]:
        async with self.session_factory() as db:
            result = await bounded(
                "load heartbeat",
                db.execute(
                    select(func.max(SessionHeartbeat.last_seen_at)).where(
                        SessionHeartbeat.attempt_id == attempt_id,
                        SessionHeartbeat.status == "connected",
                    )
                ),
            )
            return result.scalar()

    async def purge_before(self, cutoff: datetime) -> int:
        async with self.session_factory() as db:
            result = await bounded(
                "purge heartbeats",
                db.execute(delete(SessionHeartbeat).where(SessionHeartbeat.last_seen_at < cutoff)),
            )
            await bounded("purge commit", db.commit())
            return result.rowcount or 0
