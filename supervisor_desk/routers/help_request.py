"""
Help Request Router
Handles all help request endpoints
"""

from fastapi import APIRouter, Depends
from typing import Optional

from supervisor_desk.core.dependencies import get_coordinator
from supervisor_desk.core.exceptions import SupervisorDeskError
from supervisor_desk.core.logging import get_plain_logger
from supervisor_desk.models.schemas import (
    ClaimRequestBody,
    EscalateRequestBody,
    RequestStatus,
    ResolveRequestBody,
)
from supervisor_desk.services import EscalationCoordinator
from .errors import to_http_error

logger = get_plain_logger(__name__)

router = APIRouter(
    prefix="/api/help-requests",
    tags=["Help Requests"]
)


@router.post("/", response_model=dict, status_code=201)
async def escalate(
    body: EscalateRequestBody,
    coordinator: EscalationCoordinator = Depends(get_coordinator)
):
    """Escalate a question the agent could not answer to a supervisor"""
    try:
        request = await coordinator.escalate(
            question=body.question,
            caller_id=body.caller_id,
            session_id=body.session_id,
            caller_name=body.caller_name,
            context=body.context,
            confidence_score=body.confidence_score
        )
        return {
            "success": True,
            "request_id": request.id,
            "timeout_at": request.timeout_at.isoformat()
        }
    except SupervisorDeskError as e:
        raise to_http_error(e) from e


@router.get("/stats", response_model=dict)
async def get_stats(
    coordinator: EscalationCoordinator = Depends(get_coordinator)
):
    """Get statistics about help requests"""
    try:
        return {
            "success": True,
            "stats": coordinator.stats().model_dump()
        }
    except SupervisorDeskError as e:
        logger.error(f"Error fetching stats: {e}")
        raise to_http_error(e) from e


@router.get("/pending", response_model=dict)
async def get_pending_requests(
    coordinator: EscalationCoordinator = Depends(get_coordinator)
):
    """Get all open help requests"""
    try:
        requests = coordinator.list_pending()
        return {
            "success": True,
            "count": len(requests),
            "requests": [r.model_dump(mode="json") for r in requests]
        }
    except SupervisorDeskError as e:
        logger.error(f"Error fetching pending requests: {e}")
        raise to_http_error(e) from e


@router.get("/history", response_model=dict)
async def get_history(
    status: Optional[RequestStatus] = None,
    caller_id: Optional[str] = None,
    limit: int = 50,
    skip: int = 0,
    coordinator: EscalationCoordinator = Depends(get_coordinator)
):
    """Get help request history, optionally filtered by status and caller"""
    try:
        page = coordinator.list_history(status=status, caller_id=caller_id, limit=limit, skip=skip)
        return {
            "success": True,
            **page.model_dump(mode="json")
        }
    except SupervisorDeskError as e:
        logger.error(f"Error fetching request history: {e}")
        raise to_http_error(e) from e


@router.get("/{request_id}", response_model=dict)
async def get_request_details(
    request_id: int,
    coordinator: EscalationCoordinator = Depends(get_coordinator)
):
    """Get details of specific help request"""
    try:
        return {
            "success": True,
            "request": coordinator.get_request(request_id).model_dump(mode="json")
        }
    except SupervisorDeskError as e:
        raise to_http_error(e) from e


@router.post("/{request_id}/claim", response_model=dict)
async def claim_request(
    request_id: int,
    body: ClaimRequestBody,
    coordinator: EscalationCoordinator = Depends(get_coordinator)
):
    """Supervisor marks a pending request as being worked on"""
    try:
        request = await coordinator.claim(request_id, body.resolver_id)
        return {
            "success": True,
            "status": request.status.value
        }
    except SupervisorDeskError as e:
        raise to_http_error(e) from e


@router.post("/{request_id}/resolve", response_model=dict)
async def resolve_request(
    request_id: int,
    body: ResolveRequestBody,
    coordinator: EscalationCoordinator = Depends(get_coordinator)
):
    """
    Supervisor resolves a help request
    This triggers:
    1. Update request status to resolved
    2. Add answer to knowledge base
    3. Follow up with customer
    """
    try:
        result = await coordinator.resolve(
            request_id=request_id,
            human_response=body.human_response,
            resolver_id=body.resolver_id
        )
    except SupervisorDeskError as e:
        raise to_http_error(e) from e

    return {
        "success": True,
        "status": result.request.status.value,
        "resolved_at": result.request.resolved_at.isoformat(),
        "knowledge_entry_id": result.knowledge_entry.id if result.knowledge_entry else None,
        "learning_error": result.learning_error
    }
