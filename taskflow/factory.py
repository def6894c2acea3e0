"""Application factory for creating FastAPI instances."""

from concurrent.futures import Executor
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api.endpoints import router, init_dependencies
from .config import AppConfig, get_config, validate_config
from .core.collaborators import (
    EventBus,
    InMemoryEventBus,
    InMemoryTaskStore,
    LoggingNotificationSender,
    NotificationSender,
)
from .core.error_recovery import HealthChecker
from .core.exceptions import WorkflowEngineError
from .core.execution_engine import ExecutionEngine
from .core.execution_monitor import ExecutionMonitor
from .core.graph_validator import GraphValidator
from .core.logging import setup_logging, get_logger
from .core.middleware import (
    ErrorHandlingMiddleware,
    PerformanceMonitoringMiddleware,
    RequestLoggingMiddleware,
    workflow_error_handler,
)
from .core.scheduling import Clock, SystemClock
from .core.trigger_manager import TriggerManager
from .core.workflow_manager import WorkflowManager
from .storage.database import create_database_engine, create_session_factory, create_tables
from .storage.workflow_store import SqlWorkflowStore, WorkflowStore

logger = get_logger(__name__)


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.database_engine = None
        self.workflow_store: Optional[WorkflowStore] = None
        self.task_store: Optional[InMemoryTaskStore] = None
        self.notification_sender: Optional[NotificationSender] = None
        self.event_bus: Optional[EventBus] = None
        self.clock: Optional[Clock] = None
        self.monitor: Optional[ExecutionMonitor] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.trigger_manager: Optional[TriggerManager] = None
        self.workflow_manager: Optional[WorkflowManager] = None
        self.health_checker: Optional[HealthChecker] = None


def initialize_core_components(
    config: AppConfig,
    workflow_store: Optional[WorkflowStore] = None,
    task_store: Optional[InMemoryTaskStore] = None,
    notification_sender: Optional[NotificationSender] = None,
    event_bus: Optional[EventBus] = None,
    clock: Optional[Clock] = None,
    executor: Optional[Executor] = None
) -> ApplicationState:
    """
    Build and wire the engine components.

    Collaborators that are passed in are used as-is; the rest are created
    from the configuration. A SQL workflow store is created (with its
    tables) only when no store is given.
    """
    state = ApplicationState()
    state.config = config

    if workflow_store is None:
        state.database_engine = create_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        create_tables(state.database_engine)
        workflow_store = SqlWorkflowStore(create_session_factory(state.database_engine))
        logger.info("Database tables created")

    state.workflow_store = workflow_store
    state.task_store = task_store or InMemoryTaskStore()
    state.notification_sender = notification_sender or LoggingNotificationSender()
    state.event_bus = event_bus or InMemoryEventBus()
    state.clock = clock or SystemClock()
    state.monitor = ExecutionMonitor()

    validator = GraphValidator()
    state.execution_engine = ExecutionEngine(
        workflow_store=state.workflow_store,
        task_store=state.task_store,
        notification_sender=state.notification_sender,
        clock=state.clock,
        executor=executor,
        monitor=state.monitor,
        validator=validator,
        max_concurrent_executions=config.max_concurrent_executions,
        max_node_visits=config.max_node_visits,
        execution_timeout=config.execution_timeout,
        default_task_retry_backoff=config.default_task_retry_backoff,
        max_subprocess_depth=config.max_subprocess_depth
    )
    state.trigger_manager = TriggerManager(
        state.execution_engine,
        state.clock,
        state.event_bus,
        failure_threshold=config.trigger_failure_threshold,
        default_poll_interval=config.condition_poll_interval
    )
    state.workflow_manager = WorkflowManager(
        state.workflow_store,
        validator=validator,
        trigger_manager=state.trigger_manager
    )
    state.health_checker = setup_health_checks(state, config)

    logger.info("Core components initialized")
    return state


def setup_health_checks(state: ApplicationState, config: AppConfig) -> HealthChecker:
    """Set up health check functions."""
    health_checker = HealthChecker()

    def check_database():
        if state.database_engine is None:
            return {"message": f"Using {type(state.workflow_store).__name__}"}
        with state.database_engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"message": "Database connection successful"}

    def check_execution_engine():
        return {
            "message": "Execution engine operational",
            **state.execution_engine.get_engine_metrics()
        }

    def check_trigger_manager():
        triggers = state.trigger_manager.list_triggers()
        return {
            "message": "Trigger manager operational",
            "armed_triggers": len(triggers),
            "disabled_triggers": sum(1 for t in triggers if not t["enabled"])
        }

    health_checker.register_check("database", check_database, timeout=config.health_check_timeout)
    health_checker.register_check("execution_engine", check_execution_engine, timeout=config.health_check_timeout)
    health_checker.register_check("trigger_manager", check_trigger_manager, timeout=config.health_check_timeout)
    return health_checker


def graceful_shutdown(state: ApplicationState) -> None:
    """Handle graceful shutdown of application components."""
    logger.info(f"Shutting down {state.config.app_name}")

    try:
        state.trigger_manager.shutdown()
    except Exception as e:
        logger.error(f"Error during trigger manager shutdown: {str(e)}")

    try:
        state.execution_engine.shutdown()
    except Exception as e:
        logger.error(f"Error during execution engine shutdown: {str(e)}")

    try:
        state.clock.shutdown()
    except Exception as e:
        logger.error(f"Error stopping clock timers: {str(e)}")

    if state.database_engine is not None:
        state.database_engine.dispose()


def create_lifespan_handler(state: ApplicationState):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = state.config
        logger.info(f"Starting {config.app_name} v{config.app_version}")
        try:
            state.workflow_manager.restore_triggers()
        except WorkflowEngineError as e:
            logger.error(f"Failed to restore triggers: {e.message}")
            raise
        logger.info("Application startup completed successfully")

        yield

        graceful_shutdown(state)

    return lifespan


def create_app(
    config: Optional[AppConfig] = None,
    workflow_store: Optional[WorkflowStore] = None,
    task_store: Optional[InMemoryTaskStore] = None,
    notification_sender: Optional[NotificationSender] = None,
    event_bus: Optional[EventBus] = None,
    clock: Optional[Clock] = None,
    executor: Optional[Executor] = None
) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)
    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.structured_logging,
        max_size=config.log_max_size,
        backup_count=config.log_backup_count
    )

    state = initialize_core_components(
        config,
        workflow_store=workflow_store,
        task_store=task_store,
        notification_sender=notification_sender,
        event_bus=event_bus,
        clock=clock,
        executor=executor
    )

    app = FastAPI(
        title=config.app_name,
        description="Orchestration engine for business workflows: tasks, decisions, waits, subprocesses and rules",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(state)
    )
    app.state.components = state

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.add_exception_handler(WorkflowEngineError, workflow_error_handler)
    app.add_middleware(ErrorHandlingMiddleware)
    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(RequestLoggingMiddleware)

    init_dependencies(
        workflow_manager=state.workflow_manager,
        execution_engine=state.execution_engine,
        trigger_manager=state.trigger_manager,
        task_store=state.task_store,
        event_bus=state.event_bus
    )
    app.include_router(router)

    add_health_endpoints(app, config, state.health_checker)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig, health_checker: HealthChecker) -> None:
    """Add health check endpoints to the application."""
    service = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": service,
            "version": config.app_version
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        results = await health_checker.run_all_checks()
        status_code = 200 if results["overall_status"] == "healthy" else 503
        return JSONResponse(
            status_code=status_code,
            content={
                "service": service,
                "version": config.app_version,
                **results
            }
        )

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check endpoint for container orchestration."""
        results = {}
        for check_name in ("database", "execution_engine"):
            results[check_name] = await health_checker.run_check(check_name)

        ready = all(result.get("status") == "healthy" for result in results.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "ready": ready,
                "checks": results,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )

    @app.get("/health/live")
    async def liveness_check():
        return {
            "alive": True,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }


def get_app_state(app: FastAPI) -> ApplicationState:
    """Get the components wired into an application."""
    return app.state.components
