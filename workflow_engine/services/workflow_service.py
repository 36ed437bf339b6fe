"""
Workflow service for CRUD operations and management.
"""
import uuid
from typing import List, Optional, Dict, Any
from datetime import datetime
from sqlalchemy.orm import Session
from sqlalchemy import and_, desc

from ..models.workflow_model import Workflow, WorkflowRun
from ..schemas.workflow import (
    WorkflowCreate, WorkflowUpdate, WorkflowResponse, WorkflowSummary, WorkflowList,
    WorkflowDefinition, WorkflowTrigger, ValidationReport, ExecutionStats, TemplateInstantiate,
    TriggerType
)
from ..schemas.execution import RunResponse, RunList
from ..core.exceptions import (
    WorkflowNotFoundError, RunNotFoundError, TenantAccessError
)
from ..core.logging_config import get_logger
from .workflow_parser import WorkflowParser
from .execution_recorder import ExecutionRecorder

logger = get_logger("workflow_service")

# Fields an update may explicitly set to null
CLEARABLE_FIELDS = {"description"}


def _dump_trigger_config(trigger: WorkflowTrigger) -> Dict[str, Any]:
    return trigger.model_dump(mode="json", by_alias=True, exclude={"type"}, exclude_none=True)


def _dump_actions(actions) -> List[Dict[str, Any]]:
    return [action.model_dump(mode="json", by_alias=True, exclude_none=True) for action in actions]


class WorkflowService:
    """Service for managing workflows"""

    def __init__(self, db: Session):
        self.db = db

    def create_workflow(
        self,
        workflow_data: WorkflowCreate,
        tenant_id: str,
        user_id: str
    ) -> WorkflowResponse:
        """
        Create a new workflow for a tenant.

        Args:
            workflow_data: Workflow creation data
            tenant_id: Tenant ID
            user_id: User ID creating the workflow

        Returns:
            Created workflow response

        Raises:
            WorkflowValidationError: If the action graph is invalid
        """
        definition = WorkflowDefinition(
            name=workflow_data.name,
            description=workflow_data.description,
            enabled=workflow_data.enabled,
            trigger=workflow_data.trigger,
            actions=workflow_data.actions,
            variables=workflow_data.variables,
            category=workflow_data.category,
            tags=workflow_data.tags
        )
        WorkflowParser.ensure_valid(definition)

        try:
            workflow = Workflow(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                name=definition.name,
                description=definition.description,
                enabled=definition.enabled,
                category=definition.category.value,
                version=1,
                tags=definition.tags,
                trigger_type=definition.trigger.type.value,
                trigger_config=_dump_trigger_config(definition.trigger),
                actions=_dump_actions(definition.actions),
                variables=definition.variables,
                is_template=workflow_data.is_template,
                created_by=user_id,
                updated_by=user_id
            )

            self.db.add(workflow)
            self.db.commit()
            self.db.refresh(workflow)

            logger.info(f"Created workflow {workflow.id} for tenant {tenant_id}")
            return self._to_response(workflow)

        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to create workflow: {e}")
            raise

    def get_workflow(self, workflow_id: str, tenant_id: str) -> WorkflowResponse:
        """
        Get a workflow by ID.

        Raises:
            WorkflowNotFoundError: If workflow not found
            TenantAccessError: If workflow doesn't belong to tenant
        """
        return self._to_response(self._get_row(workflow_id, tenant_id))

    def get_definition(self, workflow_id: str, tenant_id: str) -> WorkflowDefinition:
        """Immutable snapshot of the executable definition"""
        return self.to_definition(self._get_row(workflow_id, tenant_id))

    def list_workflows(
        self,
        tenant_id: str,
        page: int = 1,
        size: int = 10,
        enabled: Optional[bool] = None,
        category: Optional[str] = None,
        trigger_type: Optional[str] = None
    ) -> WorkflowList:
        """
        List workflows for a tenant.

        Args:
            tenant_id: Tenant ID
            page: Page number (1-based)
            size: Page size
            enabled: Filter by enabled flag
            category: Filter by category
            trigger_type: Filter by trigger type

        Returns:
            Paginated workflow list
        """
        query = self.db.query(Workflow).filter(
            Workflow.tenant_id == tenant_id,
            Workflow.is_template.is_(False)
        )

        if enabled is not None:
            query = query.filter(Workflow.enabled == enabled)
        if category:
            query = query.filter(Workflow.category == category)
        if trigger_type:
            query = query.filter(Workflow.trigger_type == trigger_type)

        total = query.count()

        offset = (page - 1) * size
        workflows = query.order_by(desc(Workflow.created_at)).offset(offset).limit(size).all()

        return WorkflowList(
            workflows=[self._to_summary(w) for w in workflows],
            total=total,
            page=page,
            size=size
        )

    def update_workflow(
        self,
        workflow_id: str,
        workflow_data: WorkflowUpdate,
        tenant_id: str,
        user_id: str
    ) -> WorkflowResponse:
        """
        Update a workflow. Runs already in flight keep the definition they started with.

        Returns:
            Updated workflow response with its version bumped
        """
        workflow = self._get_row(workflow_id, tenant_id)
        current = self.to_definition(workflow)

        # An explicit null clears nullable fields; required fields keep their value
        changes = workflow_data.model_dump(exclude_unset=True)
        updated = current.model_copy(update={
            key: getattr(workflow_data, key) for key in changes
            if getattr(workflow_data, key) is not None or key in CLEARABLE_FIELDS
        })
        WorkflowParser.ensure_valid(updated)

        try:
            workflow.name = updated.name
            workflow.description = updated.description
            workflow.category = updated.category.value
            workflow.tags = updated.tags
            workflow.trigger_type = updated.trigger.type.value
            workflow.trigger_config = _dump_trigger_config(updated.trigger)
            workflow.actions = _dump_actions(updated.actions)
            workflow.variables = updated.variables
            workflow.version = (workflow.version or 1) + 1
            workflow.updated_by = user_id
            workflow.updated_at = datetime.utcnow()

            self.db.commit()
            self.db.refresh(workflow)

            logger.info(f"Updated workflow {workflow_id} to version {workflow.version}")
            return self._to_response(workflow)

        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to update workflow {workflow_id}: {e}")
            raise

    def delete_workflow(self, workflow_id: str, tenant_id: str) -> bool:
        """Delete a workflow. Its run history is kept."""
        workflow = self._get_row(workflow_id, tenant_id)

        try:
            self.db.delete(workflow)
            self.db.commit()

            logger.info(f"Deleted workflow {workflow_id}")
            return True

        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to delete workflow {workflow_id}: {e}")
            raise

    def set_enabled(self, workflow_id: str, tenant_id: str, enabled: bool) -> WorkflowResponse:
        """
        Enable or disable a workflow.

        Disabling stops new triggers from starting runs; runs already started finish.
        """
        workflow = self._get_row(workflow_id, tenant_id)

        if enabled:
            WorkflowParser.ensure_valid(self.to_definition(workflow))

        try:
            workflow.enabled = enabled
            workflow.updated_at = datetime.utcnow()

            self.db.commit()
            self.db.refresh(workflow)

            logger.info(f"{'Enabled' if enabled else 'Disabled'} workflow {workflow_id}")
            return self._to_response(workflow)

        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to update enabled flag of workflow {workflow_id}: {e}")
            raise

    @staticmethod
    def validate_definition(definition: WorkflowDefinition) -> ValidationReport:
        errors = WorkflowParser.validate_workflow(definition)
        warnings = []
        if not errors:
            warnings = [
                f"Action '{node_id}' is not reachable from the entry action"
                for node_id in WorkflowParser.find_unreachable(definition)
            ]
        return ValidationReport(valid=not errors, errors=errors, warnings=warnings)

    def get_stats(self, workflow_id: str, tenant_id: str) -> ExecutionStats:
        return ExecutionRecorder.stats_for(self._get_row(workflow_id, tenant_id))

    def list_runs(
        self,
        workflow_id: str,
        tenant_id: str,
        page: int = 1,
        size: int = 20,
        status: Optional[str] = None
    ) -> RunList:
        self._get_row(workflow_id, tenant_id)

        query = self.db.query(WorkflowRun).filter(
            and_(WorkflowRun.workflow_id == workflow_id, WorkflowRun.tenant_id == tenant_id)
        )
        if status:
            query = query.filter(WorkflowRun.status == status)

        total = query.count()
        runs = query.order_by(desc(WorkflowRun.started_at)).offset((page - 1) * size).limit(size).all()

        return RunList(
            runs=[RunResponse.model_validate(run) for run in runs],
            total=total,
            page=page,
            size=size
        )

    def get_run(self, run_id: str, tenant_id: str) -> RunResponse:
        run = self.db.query(WorkflowRun).filter(WorkflowRun.id == run_id).first()

        if not run:
            raise RunNotFoundError(f"Run {run_id} not found")

        if run.tenant_id != tenant_id:
            raise TenantAccessError(f"Run {run_id} does not belong to tenant {tenant_id}")

        return RunResponse.model_validate(run)

    def list_enabled_definitions(
        self,
        tenant_id: Optional[str] = None,
        trigger_type: Optional[str] = None
    ) -> List[WorkflowDefinition]:
        """Snapshots of enabled workflows, optionally narrowed to a tenant and trigger type"""
        query = self.db.query(Workflow).filter(
            Workflow.enabled.is_(True),
            Workflow.is_template.is_(False)
        )
        if tenant_id:
            query = query.filter(Workflow.tenant_id == tenant_id)
        if trigger_type:
            query = query.filter(Workflow.trigger_type == trigger_type)

        definitions = []
        for workflow in query.all():
            try:
                definitions.append(self.to_definition(workflow))
            except Exception as e:
                logger.error(f"Skipping workflow {workflow.id} with unreadable definition: {e}")
        return definitions

    def list_templates(self, category: Optional[str] = None) -> List[WorkflowSummary]:
        """
        List workflow templates.

        Args:
            category: Filter by category

        Returns:
            Template summaries, most used first
        """
        query = self.db.query(Workflow).filter(Workflow.is_template.is_(True))

        if category:
            query = query.filter(Workflow.category == category)

        templates = query.order_by(desc(Workflow.created_at)).all()
        return [self._to_summary(t) for t in templates]

    def create_from_template(
        self,
        template_id: str,
        tenant_id: str,
        user_id: str,
        customization: Optional[TemplateInstantiate] = None
    ) -> WorkflowResponse:
        """
        Create a workflow from a template.

        The copy starts disabled; template variables are overridden by the
        customization's variables.
        """
        template = self.db.query(Workflow).filter(
            and_(Workflow.id == template_id, Workflow.is_template.is_(True))
        ).first()

        if not template:
            raise WorkflowNotFoundError(f"Template {template_id} not found")

        definition = self.to_definition(template)
        variables = dict(definition.variables)
        if customization and customization.variables:
            variables.update(customization.variables)

        workflow = self.create_workflow(
            WorkflowCreate(
                name=(customization.name if customization and customization.name else definition.name),
                description=definition.description,
                enabled=False,
                trigger=definition.trigger,
                actions=definition.actions,
                variables=variables,
                category=definition.category,
                tags=definition.tags
            ),
            tenant_id,
            user_id
        )

        try:
            row = self.db.query(Workflow).filter(Workflow.id == workflow.id).first()
            row.template_id = template_id
            self.db.commit()
            self.db.refresh(row)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to link workflow {workflow.id} to template {template_id}: {e}")
            raise

        logger.info(f"Created workflow {workflow.id} from template {template_id}")
        return self._to_response(row)

    def _get_row(self, workflow_id: str, tenant_id: str) -> Workflow:
        workflow = self.db.query(Workflow).filter(Workflow.id == workflow_id).first()

        if not workflow:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")

        if workflow.tenant_id != tenant_id:
            raise TenantAccessError(f"Workflow {workflow_id} does not belong to tenant {tenant_id}")

        return workflow

    @staticmethod
    def to_definition(workflow: Workflow) -> WorkflowDefinition:
        """Rebuild the executable definition from a stored row"""
        return WorkflowParser.parse_from_dict({
            "id": workflow.id,
            "tenantId": workflow.tenant_id,
            "name": workflow.name,
            "description": workflow.description,
            "enabled": workflow.enabled,
            "trigger": {"type": workflow.trigger_type, **(workflow.trigger_config or {})},
            "actions": workflow.actions or [],
            "variables": workflow.variables or {},
            "category": workflow.category,
            "version": workflow.version or 1,
            "tags": workflow.tags or []
        })

    def _to_response(self, workflow: Workflow) -> WorkflowResponse:
        """Convert workflow model to response"""
        definition = self.to_definition(workflow)

        fields = {
            name: getattr(definition, name)
            for name in WorkflowDefinition.model_fields
            if name not in ("id", "tenant_id")
        }

        return WorkflowResponse(
            **fields,
            id=workflow.id,
            tenant_id=workflow.tenant_id,
            execution=ExecutionRecorder.stats_for(workflow),
            is_template=workflow.is_template,
            template_id=workflow.template_id,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at
        )

    def _to_summary(self, workflow: Workflow) -> WorkflowSummary:
        """Convert workflow model to summary"""
        return WorkflowSummary(
            id=workflow.id,
            name=workflow.name,
            description=workflow.description,
            enabled=workflow.enabled,
            trigger_type=TriggerType(workflow.trigger_type),
            category=workflow.category,
            version=workflow.version,
            total_runs=workflow.total_runs or 0,
            last_run_status=workflow.last_run_status,
            created_at=workflow.created_at
        )
