from typing import List

from fastapi import APIRouter, Depends

from .... import schemas
from ....services.audit_logger import AuditLogger, ClientContext
from ....services.emergency_controls import EmergencyControls
from ....utils.timezone import to_naive_utc
from ... import deps

router = APIRouter()


@router.post("/attempts/{attempt_id}/pause")
async def pause_attempt(
    attempt_id: int,
    payload: schemas.PauseRequest,
    admin: ClientContext = Depends(deps.get_admin_context),
    controls: EmergencyControls = Depends(deps.get_emergency_controls),
):
    return deps.to_response(await controls.pause(attempt_id, admin, payload.reason))


@router.post("/attempts/{attempt_id}/force-submit")
async def force_submit_attempt(
    attempt_id: int,
    payload: schemas.ForceSubmitRequest,
    admin: ClientContext = Depends(deps.get_admin_context),
    controls: EmergencyControls = Depends(deps.get_emergency_controls),
):
    return deps.to_response(await controls.force_submit(attempt_id, admin, payload.reason))


@router.post("/attempts/{attempt_id}/invalidate")
async def invalidate_attempt(
    attempt_id: int,
    payload: schemas.InvalidateRequest,
    admin: ClientContext = Depends(deps.get_admin_context),
    controls: EmergencyControls = Depends(deps.get_emergency_controls),
):
    return deps.to_response(await controls.invalidate(attempt_id, admin, payload.reason))


@router.get("/attempts/{attempt_id}/audit-logs", response_model=List[schemas.AuditLogEntry])
async def get_audit_logs(
    attempt_id: int,
    query: schemas.AuditLogQuery = Depends(),
    admin: ClientContext = Depends(deps.get_admin_context),
    audit: AuditLogger = Depends(deps.get_audit_logger),
):
    """Audit trail for one attempt, newest first."""
    logs = await audit.get_audit_logs(
        attempt_id,
        limit=query.limit,
        skip=query.skip,
        event_type=query.event_type,
        start=to_naive_utc(query.start) if query.start else None,
        end=to_naive_utc(query.end) if query.end else None,
    )
    return [log.to_dict() for log in logs]


@router.get("/attempts/{attempt_id}/audit-statistics")
async def get_audit_statistics(
    attempt_id: int,
    admin: ClientContext = Depends(deps.get_admin_context),
    audit: AuditLogger = Depends(deps.get_audit_logger),
):
    return await audit.get_audit_statistics(attempt_id)
