"""
Approvalflow - Main Application
===============================

Approval routing engine with an SLA escalation watchdog.

Modules:
- Approvals: policy matching, multi-level approval chains, auto-approval
- Escalation: overdue classification and escalation up the workspace tree

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, hierarchy service, webhook notifications
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from approvalflow.config import ApprovalStage, Settings, get_settings

# Infrastructure
from approvalflow.infrastructure.database import close_database, create_tables, init_database
from approvalflow.shared.domain import INotifier
from approvalflow.shared.infrastructure.hierarchy import (
    HierarchyResolver,
    HttpHierarchyResolver,
    InMemoryHierarchyResolver,
)
from approvalflow.shared.infrastructure.notifications import WebhookNotifier

# Approvals Module
from approvalflow.approvals.application import (
    ApprovalChainExecutor,
    AutoApprovalScheduler,
    PolicyService,
)
from approvalflow.approvals.infrastructure import (
    InMemoryInstanceRepository,
    InMemoryPolicyRepository,
    SQLAlchemyInstanceRepository,
    SQLAlchemyPolicyRepository,
)
from approvalflow.approvals.interfaces import approvals_router

# Escalation Module
from approvalflow.escalation.application import EscalationWatchdog, WorkItemService
from approvalflow.escalation.infrastructure import (
    EscalationConfigManager,
    InMemoryWorkItemRepository,
    SQLAlchemyWorkItemRepository,
    SweepScheduler,
)
from approvalflow.escalation.interfaces import escalation_router

# Shared
from approvalflow.shared.api.middleware import install_middleware
from approvalflow.shared.infrastructure.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_hierarchy_resolver(settings: Settings) -> HierarchyResolver:
    """Hierarchy service when configured, else a YAML seed, else empty."""
    if settings.hierarchy_service_url:
        return HttpHierarchyResolver(settings.hierarchy_service_url, settings.hierarchy_timeout_seconds)
    if settings.hierarchy_seed_path:
        return InMemoryHierarchyResolver.from_yaml(settings.hierarchy_seed_path)
    logger.warning("No hierarchy source configured, approver resolution will fail")
    return InMemoryHierarchyResolver()


def create_app(
    settings: Optional[Settings] = None,
    hierarchy_resolver: Optional[HierarchyResolver] = None,
    notifier: Optional[INotifier] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    ``hierarchy_resolver`` and ``notifier`` replace the ones built from
    settings; tests use them to inject fakes.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """
        STARTUP:
        1. Setup structured logging
        2. Initialize storage (database or in-memory)
        3. Build hierarchy resolver and notifier
        4. Load escalation rules and watch the file
        5. Wire services onto app.state
        6. Start the sweep scheduler

        SHUTDOWN runs the same steps in reverse.
        """
        # === STARTUP ===
        setup_logging(settings.log_level, settings.environment)
        logger.info("Starting approvalflow", extra={
            "version": settings.app_version,
            "environment": settings.environment,
            "storage_backend": settings.storage_backend,
        })

        if settings.storage_backend == "memory":
            policy_repository = InMemoryPolicyRepository()
            instance_repository = InMemoryInstanceRepository()
            work_item_repository = InMemoryWorkItemRepository()
        else:
            logger.info("Initializing database")
            init_database(settings)
            await create_tables()
            policy_repository = SQLAlchemyPolicyRepository()
            instance_repository = SQLAlchemyInstanceRepository()
            work_item_repository = SQLAlchemyWorkItemRepository()

        hierarchy = hierarchy_resolver or build_hierarchy_resolver(settings)
        active_notifier = notifier or WebhookNotifier(
            settings.notification_webhook_url,
            timeout_seconds=settings.notification_timeout_seconds,
        )

        config_manager = EscalationConfigManager()
        config_manager.load(settings.escalation_config_path)
        config_manager.start_watching()

        work_item_service = WorkItemService(
            work_item_repository,
            config_manager,
            breach_threshold_hours=settings.breach_threshold_hours,
        )
        executor = ApprovalChainExecutor(
            policy_repository,
            instance_repository,
            hierarchy,
            notifier=active_notifier,
            work_item_tracker=work_item_service,
            default_revision_stage=ApprovalStage(settings.default_revision_stage),
            approval_sla_hours=settings.approval_sla_hours,
            max_commit_attempts=settings.max_commit_attempts,
        )
        auto_approval_scheduler = AutoApprovalScheduler(executor, policy_repository, instance_repository)
        watchdog = EscalationWatchdog(
            work_item_repository,
            hierarchy,
            config_manager,
            notifier=active_notifier,
            breach_threshold_hours=settings.breach_threshold_hours,
        )

        # Store services in app state for dependency injection
        app.state.settings = settings
        app.state.policy_service = PolicyService(policy_repository)
        app.state.approval_executor = executor
        app.state.auto_approval_scheduler = auto_approval_scheduler
        app.state.work_item_service = work_item_service
        app.state.escalation_watchdog = watchdog
        app.state.escalation_config = config_manager

        sweep_scheduler = None
        if settings.scheduler_enabled:
            async def auto_approval_job():
                await auto_approval_scheduler.sweep()

            async def escalation_job():
                await watchdog.sweep()

            sweep_scheduler = SweepScheduler(
                auto_approval_interval=settings.auto_approval_sweep_interval,
                escalation_interval=settings.escalation_sweep_interval,
            )
            await sweep_scheduler.start(auto_approval_job, escalation_job)
        app.state.sweep_scheduler = sweep_scheduler

        logger.info("approvalflow started")

        yield  # Application runs here

        # === SHUTDOWN ===
        logger.info("Shutting down approvalflow")

        if sweep_scheduler:
            await sweep_scheduler.stop()

        config_manager.stop_watching()

        if isinstance(active_notifier, WebhookNotifier):
            await active_notifier.close()
        if isinstance(hierarchy, HttpHierarchyResolver):
            await hierarchy.close()

        if settings.storage_backend != "memory":
            await close_database()

        logger.info("approvalflow shutdown complete")

    app = FastAPI(
        title="Approvalflow API",
        description="""
        ## Approval Routing and SLA Escalation

        ### Approvals
        - `POST /approvals/policies` - Create or update a policy
        - `POST /approvals/submissions` - Submit a work item for approval
        - `POST /approvals/instances/{id}/actions` - Approve, reject or request revision
        - `POST /approvals/sweeps` - Run the auto-approval sweep

        ### Escalation
        - `PUT /escalation/work-items` - Register a work item
        - `GET /escalation/workspaces/{id}/overdue` - At-risk and breached items
        - `POST /escalation/sweeps` - Run the escalation sweep
        """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    install_middleware(app)

    # === Include Module Routers ===
    app.include_router(approvals_router)
    app.include_router(escalation_router)

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Health check endpoint for load balancers and orchestrators."""
        scheduler = getattr(request.app.state, "sweep_scheduler", None)
        config_manager = getattr(request.app.state, "escalation_config", None)
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "checks": {
                "storage_backend": settings.storage_backend,
                "escalation_rules": len(config_manager.get_config().rules) if config_manager else 0,
                "sweep_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
            },
        }

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
            "health": "/health",
            "modules": {
                "approvals": {"prefix": "/approvals"},
                "escalation": {"prefix": "/escalation"},
            },
        }

    return app


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "approvalflow.main:app",
        host=_settings.host,
        port=_settings.port,
        reload=_settings.environment == "development",
        log_level="info",
    )
