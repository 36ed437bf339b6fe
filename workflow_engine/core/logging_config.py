import sys
from typing import Optional
from loguru import logger
import structlog

from .config import settings


def setup_logging():
    """Setup structured logging with Loguru + Structlog"""

    # Remove default handler
    logger.remove()

    log_level = settings.LOG_LEVEL.upper()
    environment = settings.ENVIRONMENT

    if environment == "development":
        logger.add(
            sys.stderr,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                   "<level>{level: <8}</level> | "
                   "<cyan>" + settings.SERVICE_NAME + "</cyan> | "
                   "<level>{message}</level>",
            level=log_level,
            colorize=True
        )
    else:
        # One JSON object per line for the log shipper
        logger.add(sys.stderr, format="{message}", level=log_level, serialize=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if environment == "production" else structlog.dev.ConsoleRenderer()
        ],
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=settings.SERVICE_NAME)


def get_logger(name: str):
    """Get a logger with the given name"""
    return structlog.get_logger(name)


def set_request_context(**context):
    """Bind tenant/user ids to every log line emitted while handling the current request"""
    structlog.contextvars.bind_contextvars(**context)

# Workflow-specific logging helpers
def log_workflow_trigger(
    tenant_id: str,
    trigger_type: str,
    event_type: str,
    triggered: bool,
    **kwargs
):
    """Log workflow trigger evaluations"""
    logger.info(
        "Workflow trigger evaluation",
        tenant_id=tenant_id,
        trigger_type=trigger_type,
        event_type=event_type,
        triggered=triggered,
        **kwargs
    )

def log_workflow_run(
    workflow_id: str,
    tenant_id: str,
    run_id: str,
    phase: str,
    **kwargs
):
    """Log run lifecycle events (started, finished, suspended, resumed)"""
    logger.info(
        "Workflow run",
        workflow_id=workflow_id,
        tenant_id=tenant_id,
        run_id=run_id,
        phase=phase,
        **kwargs
    )

def log_step_result(
    run_id: str,
    node_id: str,
    node_type: str,
    status: str,
    duration_ms: int,
    error: Optional[str] = None,
    **kwargs
):
    """Log the outcome of a single step"""
    log = logger.warning if status == "failed" else logger.info
    log(
        "Workflow step",
        run_id=run_id,
        node_id=node_id,
        node_type=node_type,
        status=status,
        duration_ms=duration_ms,
        error=error,
        **kwargs
    )

def log_api_request(
    method: str,
    path: str,
    tenant_id: Optional[str] = None,
    user_id: Optional[str] = None,
    **kwargs
):
    """Log API request"""
    logger.info(
        "API request",
        method=method,
        path=path,
        tenant_id=tenant_id,
        user_id=user_id,
        **kwargs
    )
