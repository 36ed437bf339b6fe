from contextlib import asynccontextmanager
from fastapi import FastAPI
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from .core.config import settings
from .core.database import Base, engine
from .core.logging_config import setup_logging, get_logger
from .api import workflows, events, runs
from .models import Workflow, WorkflowRun  # noqa: F401  registers the tables
from .services.abort_registry import AbortRegistry
from .services.dispatcher import WorkflowDispatcher, configure_dispatcher
from .services.messaging_publisher import get_messaging_publisher
from .services.scheduler import WorkflowScheduler
from .services.service_clients import build_default_collaborators


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = get_logger("main")
    logger.info("Starting Workflow Automation Service", version="1.0.0")

    Base.metadata.create_all(bind=engine)

    scheduler = WorkflowScheduler()
    dispatcher = WorkflowDispatcher(
        collaborators=build_default_collaborators(),
        abort_registry=AbortRegistry(),
        scheduler=scheduler
    )
    configure_dispatcher(dispatcher)

    # Suspended runs persisted in the job store resume once the scheduler starts
    scheduler.start()
    logger.info("Workflow dispatcher and scheduler started")

    yield

    logger.info("Shutting down Workflow Automation Service")
    scheduler.shutdown()
    await dispatcher.wait_for_runs()
    configure_dispatcher(None)
    get_messaging_publisher().close()


def create_app() -> FastAPI:
    # Setup logging first
    setup_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Multi-tenant CRM workflow automation engine",
        version="1.0.0",
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        docs_url=f"{settings.API_V1_STR}/docs",
        redoc_url=f"{settings.API_V1_STR}/redoc",
        lifespan=lifespan
    )

    # Include routers
    app.include_router(
        workflows.router,
        prefix=f"{settings.API_V1_STR}/workflows",
        tags=["workflows"]
    )

    app.include_router(
        events.router,
        prefix=f"{settings.API_V1_STR}/events",
        tags=["events"]
    )

    app.include_router(
        runs.router,
        prefix=f"{settings.API_V1_STR}/runs",
        tags=["runs"]
    )

    @app.get("/")
    async def root():
        return {
            "message": "Workflow Automation Service",
            "version": "1.0.0",
            "status": "running",
            "docs_url": f"{settings.API_V1_STR}/docs"
        }

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": settings.SERVICE_NAME,
            "version": "1.0.0"
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "workflow_engine.main:app",
        host="0.0.0.0",
        port=8002,
        reload=True
    )
