from sqlalchemy import Column, String, DateTime, Integer, JSON, Index
from ..core.database import Base
from ..utils.timezone import utc_now


class AuditLog(Base):
    """Append-only record of every state-changing action on an attempt"""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_attempt_timestamp", "attempt_id", "timestamp"),
        Index("ix_audit_user_exam_timestamp", "user_id", "exam_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, index=True)
    attempt_id = Column(Integer, nullable=True)
    user_id = Column(String(64), nullable=False)
    exam_id = Column(Integer, nullable=True)
    event_type = Column(String(64), nullable=False, index=True)
    timestamp = Column(DateTime, default=utc_now, nullable=False)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, default=dict)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    device_fingerprint = Column(String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "attempt_id": self.attempt_id,
            "user_id": self.user_id,
            "exam_id": self.exam_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "metadata": self.event_metadata or {},
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "device_fingerprint": self.device_fingerprint,
        }
