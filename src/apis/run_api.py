from fastapi import APIRouter
from fastapi.exceptions import HTTPException
from typing import Optional, List

# Utils
from utils.log_utils import LogUtil

# Services
from services.funnel_run_service import FunnelRunService

# Models
from models.funnel_run_data import FunnelRun, RunStatus

# Exceptions
from exceptions.funnel_exception import FunnelException


def create_run_api(
    log_util: LogUtil,
    funnel_run_service: FunnelRunService
) -> APIRouter:
    router = APIRouter(
        prefix="/run",
        tags=["run"],
    )

    @router.get("/detail/{run_id}", response_model=FunnelRun)
    async def get_run_detail(run_id: str):
        try:
            return await funnel_run_service.get_run(run_id)
        except FunnelException as e:
            log_util.error(service_name="RunAPI", message=f"Error getting run detail: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/list", response_model=List[FunnelRun])
    async def get_runs_list(
        funnelId: Optional[str] = None,
        contactId: Optional[str] = None,
        status: Optional[RunStatus] = None
    ):
        """
        List runs, optionally filtered by funnel, contact and status
        """
        try:
            return await funnel_run_service.list_runs(funnel_id=funnelId, contact_id=contactId, status=status)
        except FunnelException as e:
            log_util.error(service_name="RunAPI", message=f"Error getting runs list: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/execute/{run_id}", response_model=FunnelRun)
    async def execute_run(run_id: str):
        """
        Step a run now. Answers 409 while another step holds the run.
        """
        try:
            return await funnel_run_service.execute_run(run_id)
        except FunnelException as e:
            log_util.error(service_name="RunAPI", message=f"Error executing run {run_id}: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/cancel/{run_id}", response_model=FunnelRun)
    async def cancel_run(run_id: str):
        try:
            return await funnel_run_service.cancel_run(run_id)
        except FunnelException as e:
            log_util.error(service_name="RunAPI", message=f"Error cancelling run {run_id}: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    return router
