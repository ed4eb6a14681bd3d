from .exam import Exam, ExamQuestion
from .attempt import Attempt, AttemptStatus, RESTARTABLE_STATUSES
from .session_heartbeat import SessionHeartbeat
from .audit_log import AuditLog
from .submission import AnswerSubmission

__all__ = [
    "Exam",
    "ExamQuestion",
    "Attempt",
    "AttemptStatus",
    "RESTARTABLE_STATUSES",
    "SessionHeartbeat",
    "AuditLog",
    "AnswerSubmission",
]
