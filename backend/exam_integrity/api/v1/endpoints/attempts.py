from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from .... import schemas
from ....services.audit_logger import ClientContext
from ....services.integrity_service import IntegrityService
from ... import deps

router = APIRouter()


def _dump(model):
    return model.model_dump() if model is not None else None


@router.post("/{exam_id}/attempt/start", response_model=schemas.StartAttemptResponse)
async def start_attempt(
    exam_id: int,
    payload: schemas.StartAttemptRequest,
    ctx: ClientContext = Depends(deps.get_client_context),
    service: IntegrityService = Depends(deps.get_integrity_service),
):
    """Start, resume or restart the caller's attempt."""
    result = await service.start_attempt(
        exam_id, ctx, payload.device_fingerprint, _dump(payload.proctoring_status)
    )
    return deps.to_response(result)


@router.get("/{exam_id}/attempt/question/{index}", response_model=schemas.QuestionResponse)
async def get_question(
    exam_id: int,
    index: int,
    ctx: ClientContext = Depends(deps.get_client_context),
    fingerprint: Optional[Dict[str, Any]] = Depends(deps.get_device_fingerprint),
    service: IntegrityService = Depends(deps.get_integrity_service),
):
    """Serve the current question together with a fresh single-use nonce."""
    result = await service.get_question(exam_id, index, ctx, fingerprint)
    return deps.to_response(result)


@router.post("/{exam_id}/attempt/answer")
async def submit_answer(
    exam_id: int,
    payload: schemas.AnswerRequest,
    ctx: ClientContext = Depends(deps.get_client_context),
    service: IntegrityService = Depends(deps.get_integrity_service),
):
    result = await service.submit_answer(
        exam_id,
        ctx,
        question_index=payload.question_index,
        answer=payload.answer,
        nonce=payload.nonce,
        fingerprint=payload.device_fingerprint,
        time_spent_ms=payload.time_spent_ms,
    )
    return deps.to_response(result)


@router.post("/{exam_id}/attempt/skip")
async def skip_question(
    exam_id: int,
    payload: schemas.SkipRequest,
    ctx: ClientContext = Depends(deps.get_client_context),
    service: IntegrityService = Depends(deps.get_integrity_service),
):
    result = await service.skip_question(exam_id, ctx, payload.question_index, payload.device_fingerprint)
    return deps.to_response(result)


@router.post("/{exam_id}/attempt/violation")
async def report_violation(
    exam_id: int,
    payload: schemas.ViolationRequest,
    ctx: ClientContext = Depends(deps.get_client_context),
    service: IntegrityService = Depends(deps.get_integrity_service),
):
    result = await service.report_violation(exam_id, ctx, payload.violation_type, payload.details)
    return deps.to_response(result)


@router.post("/{exam_id}/attempt/heartbeat")
async def heartbeat(
    exam_id: int,
    payload: schemas.HeartbeatRequest,
    ctx: ClientContext = Depends(deps.get_client_context),
    service: IntegrityService = Depends(deps.get_integrity_service),
):
    if payload.connection_id:
        ctx.connection_id = payload.connection_id
    result = await service.heartbeat(
        exam_id, ctx, client_now=payload.client_now, proctoring_status=_dump(payload.proctoring_status)
    )
    return deps.to_response(result)


@router.get("/{exam_id}/attempt/timer")
async def timer_sync(
    exam_id: int,
    ctx: ClientContext = Depends(deps.get_client_context),
    service: IntegrityService = Depends(deps.get_integrity_service),
):
    """Server-authoritative remaining time."""
    result = await service.timer_sync(exam_id, ctx)
    return deps.to_response(result)


@router.post("/{exam_id}/attempt/submit", response_model=schemas.SubmitAttemptResponse)
async def submit_attempt(
    exam_id: int,
    payload: schemas.SubmitAttemptRequest,
    ctx: ClientContext = Depends(deps.get_client_context),
    service: IntegrityService = Depends(deps.get_integrity_service),
):
    """Finish the attempt: verification, trust scoring and final status."""
    result = await service.submit_attempt(exam_id, ctx, payload.device_fingerprint)
    return deps.to_response(result)
