from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ProctoringStatus(BaseModel):
    front_camera_active: bool = False
    back_camera_active: bool = False
    screen_share_active: bool = False
    display_surface: Optional[str] = None


class StartAttemptRequest(BaseModel):
    device_fingerprint: Optional[Dict[str, Any]] = None
    proctoring_status: Optional[ProctoringStatus] = None


class AnswerRequest(BaseModel):
    question_index: int
    answer: Any = None
    nonce: Optional[str] = None
    device_fingerprint: Optional[Dict[str, Any]] = None
    time_spent_ms: Optional[int] = Field(default=None, ge=0)


class SkipRequest(BaseModel):
    question_index: int
    device_fingerprint: Optional[Dict[str, Any]] = None


class ViolationRequest(BaseModel):
    # validated by the service so malformed reports get INVALID_VIOLATION_INPUT
    violation_type: Any = None
    details: Any = None


class HeartbeatRequest(BaseModel):
    client_now: Optional[datetime] = None
    connection_id: Optional[str] = Field(default=None, max_length=128)
    proctoring_status: Optional[ProctoringStatus] = None


class SubmitAttemptRequest(BaseModel):
    device_fingerprint: Optional[Dict[str, Any]] = None


class TimerStatus(BaseModel):
    ends_at: Optional[str] = None
    remaining_seconds: int
    formatted: str
    expired: bool
    server_time: Optional[str] = None


class AttemptSummary(BaseModel):
    id: int
    user_id: str
    exam_id: int
    status: str
    started_at: Optional[str] = None
    ends_at: Optional[str] = None
    submitted_at: Optional[str] = None
    current_question_index: int
    answered_count: int
    skipped_count: int
    violation_count: int
    missed_heartbeats: int
    device_switch_detected: bool
    trust_score: Optional[float] = None
    trust_classification: Optional[str] = None
    verification_status: Optional[str] = None
    admin_submitted: bool = False


class StartAttemptResponse(BaseModel):
    message: str
    attempt: AttemptSummary
    session_token: Optional[str] = None
    total_questions: int
    timer: TimerStatus
    resumed: bool
    restarted: bool


class QuestionPayload(BaseModel):
    id: int
    position: int
    type: str
    content: str
    options: Any = None
    points: Optional[float] = None


class QuestionResponse(BaseModel):
    question: QuestionPayload
    question_index: int
    total_questions: int
    is_last: bool
    answered: bool
    nonce: str
    nonce_expires_at: str
    timer: TimerStatus


class SubmitAttemptResponse(BaseModel):
    message: str
    attempt: AttemptSummary
    trust_score: float
    trust_classification: str
    scoring_breakdown: Dict[str, Any]
    verification: Dict[str, Any]
