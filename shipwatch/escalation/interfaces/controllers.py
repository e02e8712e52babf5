"""
Escalation Controllers (API Routes)
====================================

FastAPI routes for operator escalation actions.

Controllers are thin: they delegate to application services and let the
engine's exceptions reach the application exception handler, which maps
them to HTTP status codes.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from shipwatch.config import NotificationChannel
from shipwatch.core import ResourceNotFoundException
from shipwatch.escalation.application import (
    AcknowledgeEscalationRequest,
    AdvanceEscalationRequest,
    AcknowledgmentResponse,
    CreateEscalationContactRequest,
    EscalationAttemptResponse,
    EscalationChainResponse,
    EscalationContactResponse,
    EscalationDetailResponse,
    EscalationNotifier,
    IEngineConfigProvider,
    JobRunResponse,
    TriggerEscalationRequest,
    TriggerEvaluationResponse,
)
from shipwatch.escalation.application.dto import EscalationStatusStr
from shipwatch.escalation.domain import utcnow
from shipwatch.escalation.infrastructure.external import ChannelBroadcaster
from shipwatch.escalation.services import EscalationServices, build_escalation_services
from shipwatch.infrastructure.database import get_session
from shipwatch.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/escalations", tags=["Escalations"])


# ========== Example payloads for Swagger ==========

ATTEMPT_RESPONSE_EXAMPLE = {
    "id": "5b0c8f5e-3f7d-4a8e-9f52-8d7c4b0a1e11",
    "shipment_id": "shp-1001",
    "issue_id": None,
    "contact_id": "c-ops-lead",
    "attempt_number": 1,
    "event_kind": "triggered",
    "payload": {
        "kind": "triggered",
        "reason": "High SLA risk (score: 0.85)",
        "triggered_by": "ops.alice",
        "contact": {
            "id": "c-ops-lead",
            "user_id": "ops.lead",
            "position": 0,
            "channel_type": "slack",
            "timeout_seconds": 300,
            "label": "Ops lead"
        }
    },
    "acknowledged": False,
    "ack_method": None,
    "acknowledged_by": None,
    "acknowledged_at": None,
    "superseded_at": None,
    "created_at": "2024-05-01T10:00:00Z"
}


# ========== Dependencies ==========

def get_config_provider(request: Request) -> IEngineConfigProvider:
    return request.app.state.config_provider


def get_notifier(request: Request) -> EscalationNotifier:
    return request.app.state.notifier


def get_clock(request: Request) -> Callable:
    return getattr(request.app.state, "clock", utcnow)


async def get_escalation_services(
    session: AsyncSession = Depends(get_session),
    config_provider: IEngineConfigProvider = Depends(get_config_provider),
    notifier: EscalationNotifier = Depends(get_notifier),
    clock: Callable = Depends(get_clock)
) -> EscalationServices:
    """Build the escalation services on the request's session."""
    return build_escalation_services(session, config_provider, notifier, clock)


def get_actor(x_actor_id: str = Header(default="operator", alias="X-Actor-Id")) -> str:
    """Operator identity recorded on escalation events."""
    return x_actor_id


# ========== Chain actions ==========

@router.post(
    "/trigger",
    response_model=EscalationAttemptResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open an escalation chain",
    description="""
    Notify the first contact of the ladder about a shipment.

    Fails with **409** when the shipment already has an active chain and
    with **422** when no active contacts are configured.
    """,
    responses={
        201: {"content": {"application/json": {"example": ATTEMPT_RESPONSE_EXAMPLE}}},
        404: {"description": "Shipment or issue not found"},
        409: {"description": "Active escalation already exists"},
    }
)
async def trigger_escalation(
    body: TriggerEscalationRequest,
    actor: str = Depends(get_actor),
    services: EscalationServices = Depends(get_escalation_services)
):
    attempt = await services.chain.open(
        body.shipment_id, reason=body.reason, triggered_by=actor, issue_id=body.issue_id
    )
    return EscalationAttemptResponse.from_domain(attempt)


@router.post(
    "/{shipment_id}/advance",
    response_model=EscalationAttemptResponse,
    summary="Advance to the next contact",
    responses={409: {"description": "No active chain, or the ladder is exhausted"}}
)
async def advance_escalation(
    shipment_id: str,
    body: Optional[AdvanceEscalationRequest] = None,
    actor: str = Depends(get_actor),
    services: EscalationServices = Depends(get_escalation_services)
):
    reason = body.reason if body else None
    attempt = await services.chain.advance(shipment_id, reason=reason, actor=actor)
    return EscalationAttemptResponse.from_domain(attempt)


@router.post(
    "/{shipment_id}/acknowledge",
    response_model=EscalationAttemptResponse,
    summary="Acknowledge the active chain",
    responses={
        404: {"description": "Shipment not found"},
        409: {"description": "No active chain"},
    }
)
async def acknowledge_escalation(
    shipment_id: str,
    body: AcknowledgeEscalationRequest,
    actor: str = Depends(get_actor),
    services: EscalationServices = Depends(get_escalation_services)
):
    attempt = await services.chain.acknowledge(
        shipment_id, method=body.method, notes=body.notes, actor=actor
    )
    return EscalationAttemptResponse.from_domain(attempt)


@router.post(
    "/issues/{issue_id}/evaluate",
    response_model=TriggerEvaluationResponse,
    summary="Evaluate an issue and escalate if needed",
)
async def evaluate_issue(
    issue_id: str,
    actor: str = Depends(get_actor),
    services: EscalationServices = Depends(get_escalation_services)
):
    issue = await services.issues.get_by_id(issue_id)
    if issue is None:
        raise ResourceNotFoundException("Issue", issue_id)

    decision, attempt = await services.chain.escalate_if_needed(
        issue.shipment_id, triggered_by=actor, issue_id=issue_id
    )
    return TriggerEvaluationResponse(
        should_trigger=decision.should_trigger,
        reason=decision.reason,
        attempt=EscalationAttemptResponse.from_domain(attempt) if attempt else None,
    )


# ========== Contacts ==========

@router.get(
    "/contacts",
    response_model=List[EscalationContactResponse],
    summary="List ladder contacts in walk order",
)
async def list_contacts(services: EscalationServices = Depends(get_escalation_services)):
    contacts = await services.contacts.list_contacts()
    return [EscalationContactResponse.from_domain(c) for c in contacts]


@router.post(
    "/contacts",
    response_model=EscalationContactResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a ladder contact",
)
async def create_contact(
    body: CreateEscalationContactRequest,
    services: EscalationServices = Depends(get_escalation_services)
):
    contact = await services.contacts.create_contact(
        user_id=body.user_id,
        position=body.position,
        channel_type=body.channel_type,
        timeout_seconds=body.timeout_seconds,
        is_active=body.is_active,
        label=body.label,
    )
    return EscalationContactResponse.from_domain(contact)


# ========== Manual job runs ==========

async def _run_job(request: Request, attr: str, job: str) -> JobRunResponse:
    runner = getattr(request.app.state, attr, None)
    if runner is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{job} job is not initialized"
        )
    summary = await runner.run()
    logger.info("Manual job run finished", extra={"job": job, **summary})
    return JobRunResponse(job=job, summary=summary)


@router.post("/jobs/risk-scan", response_model=JobRunResponse, summary="Run the SLA risk scan now")
async def run_risk_scan(request: Request):
    return await _run_job(request, "risk_scanner", "risk_scan")


@router.post("/jobs/ladder-advance", response_model=JobRunResponse, summary="Run the ladder sweep now")
async def run_ladder_advance(request: Request):
    return await _run_job(request, "ladder_advancer", "ladder_advance")


# ========== Live event stream ==========

STREAM_CHANNELS = (
    NotificationChannel.ESCALATION_TRIGGERED,
    NotificationChannel.ESCALATION_ADVANCED,
    NotificationChannel.ESCALATION_ACKNOWLEDGED,
)


def format_sse_event(event_type: str, data: dict, event_id: Optional[str] = None) -> str:
    """Format data as an SSE event."""
    lines = []
    if event_id:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event_type}")
    lines.append(f"data: {json.dumps(data)}")
    lines.append("")
    return "\n".join(lines) + "\n"


async def escalation_event_stream(
    broadcaster: ChannelBroadcaster,
    request: Request,
    heartbeat_seconds: float = 15.0
) -> AsyncIterator[str]:
    """
    Yield every escalation event as SSE, with a heartbeat while idle.

    One queue listens on all escalation channels; it is unsubscribed when
    the client goes away.
    """
    queue = None
    for channel in STREAM_CHANNELS:
        queue = broadcaster.subscribe(channel, queue)
    event_counter = 0
    logger.info("Escalation stream opened")

    try:
        while True:
            if await request.is_disconnected():
                logger.info("Escalation stream client disconnected")
                break

            event_counter += 1
            try:
                message = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield format_sse_event(
                    "heartbeat",
                    {"timestamp": datetime.now(timezone.utc).isoformat()},
                    event_id=str(event_counter),
                )
                continue

            yield format_sse_event(message["event"], message, event_id=str(event_counter))
    except asyncio.CancelledError:
        logger.info("Escalation stream cancelled")
        raise
    finally:
        for channel in STREAM_CHANNELS:
            broadcaster.unsubscribe(channel, queue)
        logger.info("Escalation stream closed", extra={"events_sent": event_counter})


@router.get(
    "/stream",
    summary="Stream escalation events",
    responses={
        200: {
            "description": "SSE stream of escalation.* events",
            "content": {"text/event-stream": {}},
        },
        503: {"description": "Event broadcaster not initialized"},
    }
)
async def stream_escalations(request: Request) -> StreamingResponse:
    broadcaster = getattr(request.app.state, "broadcaster", None)
    if broadcaster is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event broadcaster is not initialized"
        )

    return StreamingResponse(
        escalation_event_stream(broadcaster, request),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ========== Reads ==========

@router.get(
    "/",
    response_model=List[EscalationChainResponse],
    summary="List escalation chains",
    description="""
    **Query Parameters:**
    - `shipment_id`: Only this shipment's chain
    - `issue_id`: Only attempts linked to this issue
    - `status`: Derived chain status (`active`, `acknowledged`, `resolved`)
    """
)
async def list_escalations(
    shipment_id: Optional[str] = Query(None),
    issue_id: Optional[str] = Query(None),
    status_filter: Optional[EscalationStatusStr] = Query(None, alias="status"),
    services: EscalationServices = Depends(get_escalation_services)
):
    chains = await services.chain.list_escalations(
        shipment_id=shipment_id, issue_id=issue_id, status=status_filter
    )
    return [EscalationChainResponse.from_domain(c) for c in chains]


@router.get(
    "/{shipment_id}",
    response_model=EscalationDetailResponse,
    summary="Get one shipment's escalation history",
    responses={404: {"description": "Shipment was never escalated"}}
)
async def get_escalation(
    shipment_id: str,
    services: EscalationServices = Depends(get_escalation_services)
):
    detail = await services.chain.get_escalation(shipment_id)
    chain = EscalationChainResponse.from_domain(detail.chain)
    return EscalationDetailResponse(
        **chain.model_dump(),
        is_active=detail.chain.is_active,
        current_contact=(
            EscalationContactResponse.from_domain(detail.current_contact)
            if detail.current_contact else None
        ),
        acknowledgments=[AcknowledgmentResponse.from_domain(a) for a in detail.acknowledgments],
    )


# Export router with a module-specific name
escalation_router = router
