from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..services.dependencies import TokenClaims, validate_token, get_workflow_dispatcher
from ..services.dispatcher import WorkflowDispatcher
from ..services.workflow_service import WorkflowService
from ..core.exceptions import (
    WorkflowNotFoundError, WorkflowValidationError, TenantAccessError
)
from ..core.logging_config import get_logger

from ..schemas.workflow import (
    WorkflowCreate,
    WorkflowUpdate,
    WorkflowResponse,
    WorkflowList,
    WorkflowSummary,
    WorkflowDefinition,
    ValidationReport,
    ExecutionStats,
    TemplateInstantiate
)
from ..schemas.execution import ExecutionResult, RunList, TriggerEvent

router = APIRouter()
logger = get_logger("workflow_api_controller")


def _validation_detail(e: WorkflowValidationError) -> dict:
    return {"message": str(e), "errors": e.errors}


@router.get("/", response_model=WorkflowList)
async def list_workflows(
    page: int = Query(1, ge=1),
    size: int = Query(10, ge=1, le=100),
    enabled: Optional[bool] = None,
    category: Optional[str] = None,
    trigger_type: Optional[str] = None,
    db: Session = Depends(get_db),
    claims: TokenClaims = Depends(validate_token)
) -> WorkflowList:
    """List workflows for the authenticated tenant"""
    try:
        service = WorkflowService(db)
        workflows = service.list_workflows(
            tenant_id=claims.tenant_id,
            page=page,
            size=size,
            enabled=enabled,
            category=category,
            trigger_type=trigger_type
        )

        logger.info("Workflows retrieved successfully")
        return workflows
    except Exception as e:
        logger.error(f"Error retrieving Workflows {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/", response_model=WorkflowResponse)
async def create_workflow(
    workflow: WorkflowCreate,
    db: Session = Depends(get_db),
    claims: TokenClaims = Depends(validate_token)
) -> WorkflowResponse:
    """Create a new workflow"""
    try:
        service = WorkflowService(db)
        workflow = service.create_workflow(
            workflow_data=workflow,
            tenant_id=claims.tenant_id,
            user_id=claims.user_id
        )
        logger.info(f"Workflow created successfully {workflow.id}")
        return workflow
    except WorkflowValidationError as e:
        logger.error(f"Error creating Workflow {str(e)}")
        raise HTTPException(status_code=400, detail=_validation_detail(e))
    except Exception as e:
        logger.error(f"Exception creating Workflow: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/validate", response_model=ValidationReport)
async def validate_workflow(
    definition: WorkflowDefinition,
    claims: TokenClaims = Depends(validate_token)
) -> ValidationReport:
    """Validate an action graph without saving it"""
    return WorkflowService.validate_definition(definition)


@router.get("/templates/list", response_model=List[WorkflowSummary])
async def list_templates(
    category: Optional[str] = None,
    db: Session = Depends(get_db),
    claims: TokenClaims = Depends(validate_token)
) -> List[WorkflowSummary]:
    """List workflow templates"""
    try:
        service = WorkflowService(db)
        return service.list_templates(category)
    except Exception as e:
        logger.error(f"Error listing templates: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/from-template/{template_id}", response_model=WorkflowResponse)
async def create_from_template(
    template_id: str,
    customization: Optional[TemplateInstantiate] = None,
    db: Session = Depends(get_db),
    claims: TokenClaims = Depends(validate_token)
) -> WorkflowResponse:
    """Create a disabled workflow from a template"""
    try:
        service = WorkflowService(db)
        workflow = service.create_from_template(
            template_id=template_id,
            tenant_id=claims.tenant_id,
            user_id=claims.user_id,
            customization=customization
        )
        logger.info(f"Workflow {workflow.id} created from template {template_id}")
        return workflow
    except WorkflowNotFoundError:
        logger.error(f"Template Not found: {template_id}")
        raise HTTPException(status_code=404, detail="Template not found")
    except WorkflowValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_detail(e))
    except Exception as e:
        logger.error(f"Exception creating Workflow from template {template_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(
    workflow_id: str,
    db: Session = Depends(get_db),
    claims: TokenClaims = Depends(validate_token)
) -> WorkflowResponse:
    """Get a specific workflow by ID"""
    try:
        service = WorkflowService(db)
        workflow = service.get_workflow(workflow_id, claims.tenant_id)
        logger.info(f"Single Workflow retrieved successfully {workflow_id}")
        return workflow
    except WorkflowNotFoundError:
        logger.error(f"Workflow Not found: {workflow_id}")
        raise HTTPException(status_code=404, detail="Workflow not found")
    except TenantAccessError:
        logger.error(f"Tenant Access Error retrieving Workflow {workflow_id}")
        raise HTTPException(status_code=403, detail="Access denied")
    except Exception as e:
        logger.error(f"Exception retrieving Workflow {workflow_id}, {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/{workflow_id}", response_model=WorkflowResponse)
async def update_workflow(
    workflow_id: str,
    workflow: WorkflowUpdate,
    db: Session = Depends(get_db),
    claims: TokenClaims = Depends(validate_token)
) -> WorkflowResponse:
    """Update a workflow; bumps its version"""
    try:
        service = WorkflowService(db)
        workflow = service.update_workflow(
            workflow_id=workflow_id,
            workflow_data=workflow,
            tenant_id=claims.tenant_id,
            user_id=claims.user_id
        )
        logger.info(f"Workflow updated successfully {workflow_id}")
        return workflow
    except WorkflowNotFoundError:
        logger.error(f"Workflow {workflow_id} Not Found Updating Workflow")
        raise HTTPException(status_code=404, detail="Workflow not found")
    except TenantAccessError:
        raise HTTPException(status_code=403, detail="Access denied")
    except WorkflowValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_detail(e))
    except Exception as e:
        logger.error(f"Exception updating Workflow {workflow_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    db: Session = Depends(get_db),
    claims: TokenClaims = Depends(validate_token)
) -> dict:
    """Delete a workflow"""
    try:
        service = WorkflowService(db)
        service.delete_workflow(workflow_id, claims.tenant_id)
        return {"message": "Workflow deleted successfully"}
    except WorkflowNotFoundError:
        logger.error(f"Workflow {workflow_id} delete NotFoundException")
        raise HTTPException(status_code=404, detail="Workflow not found")
    except TenantAccessError:
        raise HTTPException(status_code=403, detail="Access denied")
    except Exception as e:
        logger.error(f"Workflow {workflow_id} delete UnknownException {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{workflow_id}/enable", response_model=WorkflowResponse)
async def enable_workflow(
    workflow_id: str,
    db: Session = Depends(get_db),
    claims: TokenClaims = Depends(validate_token)
) -> WorkflowResponse:
    """Enable a workflow so its trigger starts runs"""
    try:
        service = WorkflowService(db)
        workflow = service.set_enabled(workflow_id, claims.tenant_id, True)
        logger.info(f"Workflow {workflow_id} enabled")
        return workflow
    except WorkflowNotFoundError:
        logger.error(f"Workflow Not Found, enabling workflow {workflow_id}")
        raise HTTPException(status_code=404, detail="Workflow not found")
    except TenantAccessError:
        raise HTTPException(status_code=403, detail="Access denied")
    except WorkflowValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_detail(e))
    except Exception as e:
        logger.error(f"Workflow {workflow_id} enable Exception Raised: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{workflow_id}/disable", response_model=WorkflowResponse)
async def disable_workflow(
    workflow_id: str,
    db: Session = Depends(get_db),
    claims: TokenClaims = Depends(validate_token)
) -> WorkflowResponse:
    """Disable a workflow. Runs already started are not affected."""
    try:
        service = WorkflowService(db)
        workflow = service.set_enabled(workflow_id, claims.tenant_id, False)
        logger.info(f"Workflow {workflow_id} disabled")
        return workflow
    except WorkflowNotFoundError:
        logger.error(f"Workflow Not Found, disabling workflow {workflow_id}")
        raise HTTPException(status_code=404, detail="Workflow not found")
    except TenantAccessError:
        raise HTTPException(status_code=403, detail="Access denied")
    except Exception as e:
        logger.error(f"Workflow {workflow_id} disable Exception Raised: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{workflow_id}/test-run", response_model=ExecutionResult)
async def test_run_workflow(
    workflow_id: str,
    event: Optional[TriggerEvent] = None,
    claims: TokenClaims = Depends(validate_token),
    dispatcher: WorkflowDispatcher = Depends(get_workflow_dispatcher)
) -> ExecutionResult:
    """
    Run a workflow once against a sample event and return the full result.

    Works on disabled workflows; delays are not waited out and the
    workflow's execution stats are not changed.
    """
    if event is None:
        event = TriggerEvent(type="manual")

    try:
        result = await dispatcher.test_run(workflow_id, claims.tenant_id, event)
        logger.info(f"Test run {result.run_id} of workflow {workflow_id} finished with {result.status.value}")
        return result
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail="Workflow not found")
    except TenantAccessError:
        raise HTTPException(status_code=403, detail="Access denied")
    except Exception as e:
        logger.error(f"Test run of workflow {workflow_id} failed: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{workflow_id}/stats", response_model=ExecutionStats)
async def get_workflow_stats(
    workflow_id: str,
    db: Session = Depends(get_db),
    claims: TokenClaims = Depends(validate_token)
) -> ExecutionStats:
    """Aggregated execution record of a workflow"""
    try:
        service = WorkflowService(db)
        return service.get_stats(workflow_id, claims.tenant_id)
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail="Workflow not found")
    except TenantAccessError:
        raise HTTPException(status_code=403, detail="Access denied")
    except Exception as e:
        logger.error(f"Exception retrieving stats of Workflow {workflow_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{workflow_id}/runs", response_model=RunList)
async def list_workflow_runs(
    workflow_id: str,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    claims: TokenClaims = Depends(validate_token)
) -> RunList:
    """Run history of a workflow, newest first"""
    try:
        service = WorkflowService(db)
        return service.list_runs(workflow_id, claims.tenant_id, page=page, size=size, status=status)
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail="Workflow not found")
    except TenantAccessError:
        raise HTTPException(status_code=403, detail="Access denied")
    except Exception as e:
        logger.error(f"Exception listing runs of Workflow {workflow_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
