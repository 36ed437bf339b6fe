from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.exceptions import RunNotFoundError, TenantAccessError
from ..core.logging_config import get_logger
from ..schemas.execution import RunResponse
from ..services.dependencies import TokenClaims, validate_token, get_workflow_dispatcher
from ..services.dispatcher import WorkflowDispatcher
from ..services.workflow_service import WorkflowService

router = APIRouter()
logger = get_logger("runs_api_controller")


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: str,
    db: Session = Depends(get_db),
    claims: TokenClaims = Depends(validate_token)
) -> RunResponse:
    """Get a run with its step results"""
    try:
        service = WorkflowService(db)
        return service.get_run(run_id, claims.tenant_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except TenantAccessError:
        logger.error(f"Tenant Access Error retrieving run {run_id}")
        raise HTTPException(status_code=403, detail="Access denied")
    except Exception as e:
        logger.error(f"Exception retrieving run {run_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{run_id}/abort")
async def abort_run(
    run_id: str,
    claims: TokenClaims = Depends(validate_token),
    dispatcher: WorkflowDispatcher = Depends(get_workflow_dispatcher)
) -> dict:
    """Abort a run in flight; it stops before its next step"""
    try:
        requested = dispatcher.abort_run(run_id, claims.tenant_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except TenantAccessError:
        raise HTTPException(status_code=403, detail="Access denied")
    except Exception as e:
        logger.error(f"Exception aborting run {run_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    if not requested:
        raise HTTPException(status_code=409, detail="Run is not in progress or the abort could not be recorded")

    logger.info(f"Abort requested for run {run_id}")
    return {"run_id": run_id, "abort_requested": True}
