from sqlalchemy import Column, String, DateTime, ForeignKey, Float, Text, Integer, JSON
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.timezone import utc_now


class Exam(Base):
    """An exam (olympiad round) students take attempts against"""
    __tablename__ = "exams"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    status = Column(String, default="draft")  # draft | published | active | closed
    duration_seconds = Column(Integer, default=3600)
    opens_at = Column(DateTime, nullable=True)
    closes_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now)

    questions = relationship(
        "ExamQuestion",
        back_populates="exam",
        order_by="ExamQuestion.position",
        cascade="all, delete-orphan",
    )

    AVAILABLE_STATUSES = ("published", "active")

    def is_available(self) -> bool:
        return self.status in self.AVAILABLE_STATUSES


class ExamQuestion(Base):
    __tablename__ = "exam_questions"

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), index=True, nullable=False)
    position = Column(Integer, nullable=False)
    question_type = Column(String, default="multiple-choice")
    content = Column(Text, nullable=False)
    options = Column(JSON, nullable=True)
    correct_answer = Column(Text, nullable=True)
    points = Column(Float, default=1.0)

    exam = relationship("Exam", back_populates="questions")

    def to_public_dict(self) -> dict:
        """Question payload safe to send to a candidate (no correct answer)"""
        return {
            "id": self.id,
            "position": self.position,
            "type": self.question_type,
            "content": self.content,
            "options": self.options,
            "points": self.points,
        }
