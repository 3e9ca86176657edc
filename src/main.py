import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.funnel_store import FunnelStore, InMemoryFunnelStore
from database.funnel_db import FunnelDB

# Internal Services
from services.internal.message_transport_service import MessageTransportService
from services.internal.contact_service import ContactService

# Services
from services.funnel_validation_service import FunnelValidationService
from services.funnel_service import FunnelService
from services.funnel_interpreter_service import FunnelInterpreterService
from services.funnel_run_service import FunnelRunService
from services.run_scheduler_service import RunSchedulerService
from services.trigger_dispatcher_service import TriggerDispatcherService

# APIs
from apis.funnel_api import create_funnel_api
from apis.trigger_api import create_trigger_api
from apis.run_api import create_run_api

# Utils
log_util = LogUtil()
environment_utils = EnvironmentUtils(log_util=log_util)

# Database
def create_funnel_store() -> FunnelStore:
    if environment_utils.get_env_variable("STORE_BACKEND") == "memory":
        log_util.warning(service_name="FunnelEngineService", message="Using in-memory funnel store, data is not persisted")
        return InMemoryFunnelStore(
            log_util=log_util,
            run_lock_ttl_seconds=environment_utils.get_env_variable("RUN_LOCK_TTL_SECONDS"),
            funnel_lock_ttl_seconds=environment_utils.get_env_variable("FUNNEL_LOCK_TTL_SECONDS")
        )
    return FunnelDB(log_util=log_util, environment_utils=environment_utils)

funnel_store = create_funnel_store()

# Internal Services
message_transport_service = MessageTransportService(
    log_util=log_util,
    whatsapp_service_url=environment_utils.get_env_variable("WHATSAPP_SERVICE_URL"),
    email_service_url=environment_utils.get_env_variable("EMAIL_SERVICE_URL"),
    timeout_seconds=environment_utils.get_env_variable("TRANSPORT_TIMEOUT_SECONDS")
)
contact_service = ContactService(
    log_util=log_util,
    contact_service_url=environment_utils.get_env_variable("CONTACT_SERVICE_URL"),
    timeout_seconds=environment_utils.get_env_variable("TRANSPORT_TIMEOUT_SECONDS")
)

# Services
funnel_validation_service = FunnelValidationService(log_util=log_util)

funnel_service = FunnelService(
    log_util=log_util,
    funnel_store=funnel_store,
    validation_service=funnel_validation_service
)

funnel_interpreter_service = FunnelInterpreterService(
    log_util=log_util,
    message_transport=message_transport_service,
    max_attempts=environment_utils.get_env_variable("DISPATCH_MAX_ATTEMPTS"),
    backoff_seconds=environment_utils.get_env_variable("DISPATCH_BACKOFF_SECONDS")
)

funnel_run_service = FunnelRunService(
    log_util=log_util,
    funnel_store=funnel_store,
    interpreter=funnel_interpreter_service,
    contact_service=contact_service
)

run_scheduler_service = RunSchedulerService(
    log_util=log_util,
    funnel_store=funnel_store,
    funnel_run_service=funnel_run_service,
    check_interval_seconds=environment_utils.get_env_variable("SCHEDULER_INTERVAL_SECONDS"),
    batch_size=environment_utils.get_env_variable("SCHEDULER_BATCH_SIZE")
)

trigger_dispatcher_service = TriggerDispatcherService(
    log_util=log_util,
    funnel_store=funnel_store
)

# New runs are stepped right away instead of waiting for the next poll
trigger_dispatcher_service.set_run_scheduler(run_scheduler_service)

# Define lifespan function
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log_util.info(service_name="FunnelEngineService", message="Application startup complete")

    await run_scheduler_service.start()
    log_util.info(service_name="FunnelEngineService", message="Run scheduler started")

    yield

    # Shutdown
    await run_scheduler_service.stop()
    log_util.info(service_name="FunnelEngineService", message="Run scheduler stopped")

    await funnel_store.close()
    log_util.info(service_name="FunnelEngineService", message="Application shutdown complete")

# Create FastAPI app
app = FastAPI(
    title="funnel engine service",
    description="Marketing funnel definitions and their execution per contact",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Funnel editor APIs
funnel_api_router = create_funnel_api(
    log_util=log_util,
    funnel_service=funnel_service
)
app.include_router(funnel_api_router)

# Trigger event API (receives lead and post events from the platform)
trigger_api_router = create_trigger_api(
    log_util=log_util,
    trigger_dispatcher=trigger_dispatcher_service
)
app.include_router(trigger_api_router)

# Run APIs
run_api_router = create_run_api(
    log_util=log_util,
    funnel_run_service=funnel_run_service
)
app.include_router(run_api_router)

# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "funnel_engine_service"}

# Global exception handler for HTTPExceptions
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_util.error(service_name="FunnelEngineService", message=f"HTTPException: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": str(exc),
            "status_code": exc.status_code
        },
        headers={"Content-Type": "application/json"}
    )

# Global exception handler for any unhandled exceptions
@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log_util.error(service_name="FunnelEngineService", message=f"Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "status_code": 500
        },
        headers={"Content-Type": "application/json"}
    )

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=environment_utils.get_env_variable("HOST"),
        port=environment_utils.get_env_variable("PORT")
    )
