"""
Realtime channel for exam rooms.

Candidates send heartbeats, violation reports and timer-sync requests over one
WebSocket per tab; proctors use the same room to push timer and leaderboard
broadcasts. Messages are JSON objects of the form ``{"event": ..., "data": {...}}``.
"""
import json
import logging
import uuid
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ....core.exceptions import ErrorCode, TransientInfraError
from ....services.audit_logger import ClientContext
from ....services.integrity_service import IntegrityService
from ....utils.timezone import from_epoch_ms, from_iso
from ...deps import CurrentUser, client_ip

logger = logging.getLogger(__name__)

router = APIRouter()

POLICY_VIOLATION_CLOSE = 1008


class ConnectionManager:
    """WebSocket rooms keyed by exam id."""

    def __init__(self):
        self.active_connections: Dict[int, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, exam_id: int):
        await websocket.accept()
        self.active_connections.setdefault(exam_id, set()).add(websocket)
        logger.info(f"WebSocket connected for exam {exam_id}")

    def disconnect(self, websocket: WebSocket, exam_id: int):
        if exam_id in self.active_connections:
            self.active_connections[exam_id].discard(websocket)
            if not self.active_connections[exam_id]:
                del self.active_connections[exam_id]
        logger.info(f"WebSocket disconnected for exam {exam_id}")

    async def broadcast(self, exam_id: int, message: dict, exclude: Optional[WebSocket] = None) -> int:
        sent = 0
        dead = set()
        for connection in list(self.active_connections.get(exam_id, ())):
            if connection is exclude:
                continue
            try:
                await connection.send_json(message)
                sent += 1
            except (RuntimeError, WebSocketDisconnect) as e:
                logger.warning(f"Dropping dead socket in exam {exam_id} room: {e}")
                dead.add(connection)
        for connection in dead:
            self.disconnect(connection, exam_id)
        return sent


manager = ConnectionManager()


def _client_now(data: Dict[str, Any]):
    value = data.get("clientNow", data.get("client_now"))
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return from_epoch_ms(value)
    try:
        return from_iso(value)
    except ValueError:
        return None


class ExamSocketSession:
    """State for one socket: who it is, which attempt it reports for."""

    def __init__(self, websocket: WebSocket, exam_id: int, user: CurrentUser, service: IntegrityService):
        self.websocket = websocket
        self.exam_id = exam_id
        self.user = user
        self.service = service
        self.connection_id = uuid.uuid4().hex
        self.attempt_id: Optional[int] = None
        self.ctx = ClientContext(
            user_id=user.user_id,
            ip_address=client_ip(websocket),
            user_agent=websocket.headers.get("user-agent"),
            connection_id=self.connection_id,
        )

    async def send(self, event: str, data: Optional[Dict[str, Any]] = None):
        await self.websocket.send_json({"event": event, "data": data or {}})

    async def send_error(self, result):
        await self.send("error", {"code": result.code.value, "message": result.message, **result.data})

    async def handle(self, message: Dict[str, Any]):
        event = message.get("event")
        data = message.get("data") or {}
        if not isinstance(data, dict):
            await self.send("error", {"code": ErrorCode.INVALID_INPUT.value, "message": "data must be an object"})
            return

        handler = self.handlers.get(event)
        if handler is None:
            await self.send("error", {"code": ErrorCode.INVALID_INPUT.value, "message": f"Unknown event: {event}"})
            return
        await handler(self, data)

    async def on_join(self, data):
        self.attempt_id = await self.service.find_attempt_id(self.exam_id, self.user.user_id)
        await self.send("joined", {
            "exam_id": self.exam_id,
            "attempt_id": self.attempt_id,
            "connection_id": self.connection_id,
        })

    async def on_heartbeat(self, data):
        result = await self.service.heartbeat(
            self.exam_id,
            self.ctx,
            client_now=_client_now(data),
            proctoring_status=data.get("proctoringStatus", data.get("proctoring_status")),
        )
        if not result.success:
            await self.send_error(result)
            return
        if self.attempt_id is None:
            self.attempt_id = await self.service.find_attempt_id(self.exam_id, self.user.user_id)
        if result.data.get("rate_limited") and result.rate_limit is not None:
            await self.send("rate-limit-warning", result.rate_limit.to_dict())
        await self.send("heartbeat-ack", {
            "status": result.data.get("status"),
            "missed_heartbeats": result.data.get("missed_heartbeats", 0),
            "timer": result.data.get("timer"),
        })

    async def on_violation_report(self, data):
        limit = await self.service.check_realtime_rate(self.exam_id, self.ctx)
        if not limit.allowed:
            await self.send("rate-limit-warning", limit.to_dict())
            return
        details = data.get("details")
        if isinstance(details, dict):
            details = {**details, "source": "websocket"}
        result = await self.service.report_violation(
            self.exam_id, self.ctx, data.get("violationType", data.get("violation_type")), details
        )
        if not result.success:
            await self.send_error(result)
            return
        await self.send("violation-ack", result.data)

    async def on_timer_sync(self, data):
        result = await self.service.timer_sync(self.exam_id, self.ctx)
        if not result.success:
            await self.send_error(result)
            return
        await self.send("timer-sync-response", result.data["timer"])

    async def on_timer_update(self, data):
        if not self.user.is_admin:
            await self.send("error", {"code": "FORBIDDEN", "message": "Admin access required"})
            return
        await manager.broadcast(self.exam_id, {"event": "timer-update", "data": data}, exclude=self.websocket)

    async def on_leaderboard_update(self, data):
        if not self.user.is_admin:
            await self.send("error", {"code": "FORBIDDEN", "message": "Admin access required"})
            return
        await manager.broadcast(self.exam_id, {"event": "leaderboard-update", "data": data})

    async def on_submission(self, data):
        await manager.broadcast(
            self.exam_id,
            {"event": "submission-notification", "data": {"exam_id": self.exam_id, "user_id": self.user.user_id}},
            exclude=self.websocket,
        )

    async def close(self):
        if self.attempt_id is not None:
            await self.service.disconnect(self.attempt_id, self.connection_id, self.ctx)

    handlers = {
        "join": on_join,
        "heartbeat": on_heartbeat,
        "violation-report": on_violation_report,
        "timer-sync": on_timer_sync,
        "timer-update": on_timer_update,
        "leaderboard-update": on_leaderboard_update,
        "submission": on_submission,
    }


@router.websocket("/ws/exams/{exam_id}")
async def exam_socket(websocket: WebSocket, exam_id: int):
    user_id = (websocket.headers.get("x-user-id") or "").strip()
    if not user_id:
        await websocket.close(code=POLICY_VIOLATION_CLOSE)
        return
    user = CurrentUser(user_id=user_id, role=(websocket.headers.get("x-user-role") or "").strip() or None)
    service: IntegrityService = websocket.app.state.integrity_service

    session = ExamSocketSession(websocket, exam_id, user, service)
    await manager.connect(websocket, exam_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                message = None
            if not isinstance(message, dict):
                await session.send("error", {"code": ErrorCode.INVALID_INPUT.value, "message": "message must be a JSON object"})
                continue
            try:
                await session.handle(message)
            except TransientInfraError as e:
                logger.error(f"Realtime event '{message.get('event')}' failed for user {user_id}: {e}")
                await session.send("error", {
                    "code": ErrorCode.SERVICE_UNAVAILABLE.value,
                    "message": "Service temporarily unavailable, please retry",
                })
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket, exam_id)
        await session.close()
