from fastapi import APIRouter, HTTPException
from typing import Dict, Any

# Utils
from utils.log_utils import LogUtil

# Services
from services.trigger_dispatcher_service import TriggerDispatcherService

# Models
from models.request.trigger_event_request import TriggerEventRequest
from models.response.trigger_event_response import TriggerEventResponse

# Exceptions
from exceptions.funnel_exception import FunnelException


def create_trigger_api(
    log_util: LogUtil,
    trigger_dispatcher: TriggerDispatcherService
) -> APIRouter:
    """
    Create API router for external trigger events.
    The platform calls it when a lead subscribes or a post is published.
    """
    router = APIRouter(
        prefix="/trigger",
        tags=["trigger"],
    )

    @router.post("/event", response_model=TriggerEventResponse)
    async def process_trigger_event(request: TriggerEventRequest) -> TriggerEventResponse:
        """
        Start one run per active funnel bound to the event's trigger.
        The runs are handed to the scheduler and stepped in the background.
        """
        try:
            runs = await trigger_dispatcher.dispatch(request)

            if not runs:
                return TriggerEventResponse(
                    status="no_funnel",
                    message=f"No active funnel for trigger {request.triggerKind.value}",
                    runs=[]
                )

            return TriggerEventResponse(
                status="success",
                message=f"Started {len(runs)} run(s) for contact {request.contactId}",
                runs=runs
            )

        except FunnelException as e:
            log_util.error(
                service_name="TriggerAPI",
                message=f"Error processing {request.triggerKind.value} event for contact {request.contactId}: {e.message}"
            )
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/health")
    async def trigger_health_check() -> Dict[str, Any]:
        """Health check endpoint for trigger API"""
        return {
            "status": "healthy",
            "api": "trigger_api",
            "service": "funnel_engine_service"
        }

    return router
