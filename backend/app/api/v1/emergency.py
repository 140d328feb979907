"""
FastAPI routes: Emergency alert intake, operator dashboard and live feed.

Provides endpoints to:
    POST  /api/v1/emergency/alert             — raise an emergency alert
    GET   /api/v1/emergency/                  — admin list (newest first)
    GET   /api/v1/emergency/police            — police list
    GET   /api/v1/emergency/stats/active      — open-alert counters
    GET   /api/v1/emergency/stats/locations   — alert counts per building
    GET   /api/v1/emergency/{id}              — one alert
    PATCH /api/v1/emergency/{id}              — acknowledge / change status / notes
    WS    /api/v1/emergency/ws?token=...      — operator live feed
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from starlette.websockets import WebSocketState

from backend.app.alerts.abuse_guard import API, caller_key, device_fingerprint
from backend.app.alerts.fanout import JOIN_MESSAGES, envelope
from backend.app.alerts.lifecycle import AlertLifecycleController
from backend.app.alerts.models import AlertDraft, AlertStatus, ReporterSnapshot, _iso
from backend.app.alerts.store import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, OPERATOR_LIST_LIMIT
from backend.app.api.schemas import (
    ActiveStatsResponse,
    AlertSubmitRequest,
    LocationStatsResponse,
    SubmitAlertResponse,
    TransitionRequest,
)
from backend.app.core.errors import AuthenticationError, PermissionDeniedError
from backend.app.core.security import (
    ADMIN_ROLES,
    OPERATOR_ROLES,
    POLICE_ROLES,
    Principal,
    decode_token,
    get_principal,
    require_roles,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/emergency", tags=["emergency-alerts"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_controller(request: Request) -> AlertLifecycleController:
    return request.app.state.controller


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def rate_limited(policy_name: str):
    """Dependency factory: count the request against ``policy_name``."""

    async def _limit(
        request: Request,
        response: Response,
        controller: AlertLifecycleController = Depends(get_controller),
    ) -> None:
        decision = await controller.guard.hit(policy_name, caller_key(request.headers, _client_ip(request)))
        response.headers.update(decision.headers())

    return _limit


require_operator = require_roles(*OPERATOR_ROLES)
require_police = require_roles(*(POLICE_ROLES + ADMIN_ROLES))


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

@router.post(
    "/alert",
    response_model=SubmitAlertResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Raise an emergency alert",
    description=(
        "Stores the alert, pushes it to every connected admin and police "
        "dashboard, and emails the campus administrators. Limited to three "
        "alerts per device per minute."
    ),
)
async def submit_alert(
    body: AlertSubmitRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    controller: AlertLifecycleController = Depends(get_controller),
):
    ip = _client_ip(request)
    key = caller_key(request.headers, ip)
    contact = body.contact_info

    draft = AlertDraft(
        reporter=ReporterSnapshot(
            user_id=principal.user_id,
            name=principal.name,
            campus_id=principal.campus_id,
            role=principal.role,
        ),
        emergency_type=body.emergency_type,
        location_id=body.location_id,
        building=body.building,
        area=body.area,
        latitude=body.coordinates.lat if body.coordinates else None,
        longitude=body.coordinates.lng if body.coordinates else None,
        description=body.description,
        contact_phone=contact.phone if contact else None,
        contact_email=contact.email if contact else None,
        campus_token=body.campus_token,
        device_fingerprint=device_fingerprint(
            request.headers.get("user-agent"), ip, request.headers.get("x-device-fingerprint"),
        ),
    )

    receipt = await controller.submit(draft, key)
    return SubmitAlertResponse(alert_id=receipt.alert_id, timestamp=_iso(receipt.timestamp))


# ---------------------------------------------------------------------------
# Operator reads
# ---------------------------------------------------------------------------

@router.get(
    "/",
    summary="List alerts (admin dashboard)",
    dependencies=[Depends(require_operator), Depends(rate_limited(API))],
)
async def list_alerts(
    status_filter: Optional[AlertStatus] = Query(None, alias="status"),
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    controller: AlertLifecycleController = Depends(get_controller),
) -> List[Dict[str, Any]]:
    alerts = await controller.list(status=status_filter, limit=limit)
    return [a.to_dict() for a in alerts]


@router.get(
    "/police",
    summary="List alerts (police dashboard)",
    dependencies=[Depends(require_police), Depends(rate_limited(API))],
)
async def list_alerts_for_police(
    status_filter: Optional[AlertStatus] = Query(None, alias="status"),
    limit: int = Query(OPERATOR_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    controller: AlertLifecycleController = Depends(get_controller),
) -> List[Dict[str, Any]]:
    alerts = await controller.list(status=status_filter, limit=limit)
    return [a.to_dict() for a in alerts]


@router.get(
    "/stats/active",
    response_model=ActiveStatsResponse,
    summary="Open-alert counters",
    dependencies=[Depends(require_operator), Depends(rate_limited(API))],
)
async def active_stats(controller: AlertLifecycleController = Depends(get_controller)):
    return await controller.stats()


@router.get(
    "/stats/locations",
    response_model=LocationStatsResponse,
    summary="Alert counts per building",
    dependencies=[Depends(require_operator), Depends(rate_limited(API))],
)
async def location_stats(
    status_filter: Optional[AlertStatus] = Query(None, alias="status"),
    controller: AlertLifecycleController = Depends(get_controller),
):
    return {"locations": await controller.location_stats(status_filter)}


@router.get(
    "/{alert_id}",
    summary="Get one alert",
    dependencies=[Depends(require_operator), Depends(rate_limited(API))],
)
async def get_alert(
    alert_id: str,
    controller: AlertLifecycleController = Depends(get_controller),
) -> Dict[str, Any]:
    alert = await controller.get(alert_id)
    return alert.to_dict()


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------

@router.patch(
    "/{alert_id}",
    summary="Acknowledge an alert, change its status or edit notes",
    description=(
        "Allowed status changes: active → investigating, and active or "
        "investigating → resolved / false_alarm. Anything else is a 409."
    ),
)
async def update_alert(
    alert_id: str,
    body: TransitionRequest,
    principal: Principal = Depends(require_operator),
    controller: AlertLifecycleController = Depends(get_controller),
) -> Dict[str, Any]:
    alert = await controller.transition(
        alert_id,
        status=body.status,
        acknowledge=body.acknowledge,
        notes=body.admin_notes,
        operator_id=principal.user_id,
    )
    return alert.to_dict()


# ---------------------------------------------------------------------------
# Live feed
# ---------------------------------------------------------------------------

@router.websocket("/ws")
async def operator_feed(websocket: WebSocket, token: str = Query("")):
    """
    Operator dashboard socket.

    Client → server: ``{"type": "admin-join"}``, ``{"type": "police-join"}``,
    ``{"type": "ping"}``. Server → client: ``{"type", "data", "timestamp"}``
    envelopes (``new-emergency``, ``emergency-updated``, ``joined``,
    ``pong``, ``error``).
    """
    fanout = websocket.app.state.fanout
    try:
        principal = decode_token(token)
    except AuthenticationError as e:
        logger.info("Rejected operator socket: %s", e.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if not principal.is_operator:
        logger.info("Rejected operator socket for role %s", principal.role)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    session = await fanout.connect(websocket, principal)
    try:
        while websocket.application_state == WebSocketState.CONNECTED:
            raw = await websocket.receive_text()
            await fanout.touch(session.session_id)
            try:
                message = json.loads(raw)
            except ValueError:
                await websocket.send_json(envelope("error", {"message": "Invalid JSON"}))
                continue

            kind = message.get("type") if isinstance(message, dict) else None
            if kind in JOIN_MESSAGES:
                try:
                    await fanout.join(session.session_id, JOIN_MESSAGES[kind])
                except KeyError:
                    logger.info("Operator session %s was dropped; closing socket", session.session_id)
                    if websocket.application_state != WebSocketState.DISCONNECTED:
                        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
                    return
                except PermissionDeniedError as e:
                    await websocket.send_json(envelope("error", {"message": e.message}))
                else:
                    await websocket.send_json(envelope("joined", {"group": JOIN_MESSAGES[kind]}))
            elif kind == "ping":
                await websocket.send_json(envelope("pong", {}))
            else:
                await websocket.send_json(envelope("error", {"message": f"Unknown message type: {kind}"}))
    except WebSocketDisconnect:
        pass
    finally:
        await fanout.disconnect(session.session_id)
