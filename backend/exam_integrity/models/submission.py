from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, UniqueConstraint
from ..core.database import Base
from ..utils.timezone import utc_now


class AnswerSubmission(Base):
    """Latest answer a candidate gave to one question of an attempt"""
    __tablename__ = "answer_submissions"
    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_submission_attempt_question"),
    )

    id = Column(Integer, primary_key=True, index=True)
    attempt_id = Column(Integer, ForeignKey("exam_attempts.id"), index=True, nullable=False)
    question_id = Column(Integer, ForeignKey("exam_questions.id"), nullable=False)
    answer = Column(JSON, nullable=True)
    time_spent_ms = Column(Integer, nullable=True)
    submitted_at = Column(DateTime, default=utc_now)
