from fastapi import APIRouter, Depends, HTTPException

from ..core.logging_config import get_logger, log_api_request
from ..schemas.execution import EventDispatchResponse, TriggerEvent
from ..services.dependencies import TokenClaims, validate_token, get_workflow_dispatcher
from ..services.dispatcher import WorkflowDispatcher

router = APIRouter()
logger = get_logger("events_api_controller")


@router.post("/", response_model=EventDispatchResponse, status_code=202)
async def ingest_event(
    event: TriggerEvent,
    claims: TokenClaims = Depends(validate_token),
    dispatcher: WorkflowDispatcher = Depends(get_workflow_dispatcher)
) -> EventDispatchResponse:
    """Ingest a trigger event for the caller's tenant

    Every enabled workflow whose trigger accepts the event starts a run in the
    background. The response lists the spawned run ids; poll /runs/{run_id}
    for outcomes.
    """
    log_api_request("POST", "/events", tenant_id=claims.tenant_id, user_id=claims.user_id, event_type=event.type)
    try:
        return await dispatcher.dispatch_event(claims.tenant_id, event)
    except Exception as e:
        logger.error(f"Failed to dispatch {event.type} event: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
