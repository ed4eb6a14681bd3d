from .attempt import (
    ProctoringStatus,
    StartAttemptRequest,
    AnswerRequest,
    SkipRequest,
    ViolationRequest,
    HeartbeatRequest,
    SubmitAttemptRequest,
    TimerStatus,
    AttemptSummary,
    StartAttemptResponse,
    QuestionResponse,
    SubmitAttemptResponse,
)
from .admin import PauseRequest, ForceSubmitRequest, InvalidateRequest, AuditLogEntry, AuditLogQuery

__all__ = [
    "ProctoringStatus",
    "StartAttemptRequest",
    "AnswerRequest",
    "SkipRequest",
    "ViolationRequest",
    "HeartbeatRequest",
    "SubmitAttemptRequest",
    "TimerStatus",
    "AttemptSummary",
    "StartAttemptResponse",
    "QuestionResponse",
    "SubmitAttemptResponse",
    "PauseRequest",
    "ForceSubmitRequest",
    "InvalidateRequest",
    "AuditLogEntry",
    "AuditLogQuery",
]
