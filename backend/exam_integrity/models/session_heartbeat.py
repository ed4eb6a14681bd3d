from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, UniqueConstraint
from ..core.database import Base
from ..utils.timezone import utc_now


class SessionHeartbeat(Base):
    """Durable copy of a presence entry, written by the batched presence flush.

    One row per (attempt, connection); the flush upserts on that pair so a
    retried batch overwrites instead of duplicating.
    """
    __tablename__ = "session_heartbeats"
    __table_args__ = (
        UniqueConstraint("attempt_id", "connection_id", name="uq_heartbeat_attempt_connection"),
    )

    id = Column(Integer, primary_key=True, index=True)
    attempt_id = Column(Integer, ForeignKey("exam_attempts.id"), index=True, nullable=False)
    connection_id = Column(String(128), nullable=False)
    last_seen_at = Column(DateTime, nullable=False)
    status = Column(String(16), default="connected")  # connected | disconnected
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)
