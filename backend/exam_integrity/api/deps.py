import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ..core.config import settings
from ..core.exceptions import ErrorCode
from ..services.audit_logger import AuditLogger, ClientContext
from ..services.emergency_controls import EmergencyControls
from ..services.integrity_service import ActionResult, IntegrityService


@dataclass
class CurrentUser:
    """Identity forwarded by the authenticating gateway."""
    user_id: str
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == settings.admin_role


def client_ip(request) -> Optional[str]:
    """X-Forwarded-For first hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> CurrentUser:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHENTICATED", "message": "Could not identify the caller"},
        )
    return CurrentUser(user_id=x_user_id.strip(), role=(x_user_role or "").strip() or None)


def get_current_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": "Admin access required"},
        )
    return current_user


def get_device_fingerprint(x_device_fingerprint: Optional[str] = Header(default=None)) -> Optional[Dict[str, Any]]:
    """Fingerprint for GET requests, sent as a JSON object header."""
    if not x_device_fingerprint:
        return None
    try:
        fingerprint = json.loads(x_device_fingerprint)
    except ValueError:
        fingerprint = None
    if not isinstance(fingerprint, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": ErrorCode.INVALID_INPUT.value, "message": "X-Device-Fingerprint must be a JSON object"},
        )
    return fingerprint


def get_client_context(request: Request, current_user: CurrentUser = Depends(get_current_user)) -> ClientContext:
    return ClientContext(
        user_id=current_user.user_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def get_admin_context(request: Request, admin: CurrentUser = Depends(get_current_admin)) -> ClientContext:
    return ClientContext(
        user_id=admin.user_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def get_integrity_service(request: Request) -> IntegrityService:
    return request.app.state.integrity_service


def get_emergency_controls(request: Request) -> EmergencyControls:
    return request.app.state.emergency_controls


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger


def to_response(result: ActionResult) -> JSONResponse:
    """Successful results become a JSON body; rejections become HTTPException."""
    headers = result.rate_limit.headers() if result.rate_limit is not None else {}
    if not result.success:
        raise HTTPException(
            status_code=result.http_status,
            detail={"code": result.code.value, "message": result.message, **result.data},
            headers=headers or None,
        )
    body = {"success": True, **result.data}
    if result.message:
        body["message"] = result.message
    return JSONResponse(content=body, status_code=result.http_status, headers=headers or None)
