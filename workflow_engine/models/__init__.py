from .workflow_model import Workflow, WorkflowRun

__all__ = [
    "Workflow",
    "WorkflowRun"
]
