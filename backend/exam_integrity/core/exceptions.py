from enum import Enum


class ErrorCode(str, Enum):
    """Stable machine-readable codes returned with every policy rejection."""

    ATTEMPT_NOT_FOUND = "ATTEMPT_NOT_FOUND"
    ALREADY_ATTEMPTED = "ALREADY_ATTEMPTED"
    ATTEMPT_COMPLETED = "ATTEMPT_COMPLETED"
    ATTEMPT_TERMINATED = "ATTEMPT_TERMINATED"
    ATTEMPT_PAUSED = "ATTEMPT_PAUSED"
    ATTEMPT_NOT_ACTIVE = "ATTEMPT_NOT_ACTIVE"
    TIME_EXPIRED = "TIME_EXPIRED"

    EXAM_NOT_FOUND = "EXAM_NOT_FOUND"
    EXAM_NOT_AVAILABLE = "EXAM_NOT_AVAILABLE"
    EXAM_NOT_OPEN = "EXAM_NOT_OPEN"
    EXAM_CLOSED = "EXAM_CLOSED"
    EXAM_HAS_NO_QUESTIONS = "EXAM_HAS_NO_QUESTIONS"

    INVALID_QUESTION_ACCESS = "INVALID_QUESTION_ACCESS"
    INVALID_QUESTION_INDEX = "INVALID_QUESTION_INDEX"
    QUESTION_OUT_OF_RANGE = "QUESTION_OUT_OF_RANGE"
    QUESTION_ALREADY_HANDLED = "QUESTION_ALREADY_HANDLED"

    NONCE_REQUIRED = "NONCE_REQUIRED"
    REPLAY_ATTEMPT = "REPLAY_ATTEMPT"
    TIME_WINDOW_VIOLATION = "TIME_WINDOW_VIOLATION"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    DEVICE_FINGERPRINT_REQUIRED = "DEVICE_FINGERPRINT_REQUIRED"
    DEVICE_SWITCH_DETECTED = "DEVICE_SWITCH_DETECTED"
    DEVICE_MISMATCH = "DEVICE_MISMATCH"
    VM_DETECTED = "VM_DETECTED"
    PROCTORING_NOT_READY = "PROCTORING_NOT_READY"

    INVALID_VIOLATION_INPUT = "INVALID_VIOLATION_INPUT"
    INVALID_INPUT = "INVALID_INPUT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class TransientInfraError(Exception):
    """Durable storage was unreachable or did not answer within its timeout.

    Raised by storage wrappers for integrity-critical writes; the HTTP layer
    answers it with a generic 503 so no internals leak to the client.
    """

    def __init__(self, operation: str, cause: Exception = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause!r}" if cause else f"{operation} failed")
