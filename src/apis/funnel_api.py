from fastapi import APIRouter, Request
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.funnel_service import FunnelService

# Models
from models.funnel_document import funnel_to_document
from models.request.funnel_status_request import FunnelStatusRequest
from models.response.funnel_save_response import FunnelSaveResponse

# Exceptions
from exceptions.funnel_exception import FunnelException, FunnelValidationException


def _editor_id(request: Request) -> str:
    user_id = request.headers.get("x-user-id")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


def create_funnel_api(
    log_util: LogUtil,
    funnel_service: FunnelService
) -> APIRouter:
    router = APIRouter(
        prefix="/funnel",
        tags=["funnel"],
    )

    def _raise_http(e: FunnelException, action: str):
        log_util.error(service_name="FunnelAPI", message=f"Error {action}: {e.message}")
        if isinstance(e, FunnelValidationException) and e.violations:
            raise HTTPException(
                status_code=e.status_code,
                detail={
                    "message": e.message,
                    "violations": [violation.model_dump(mode="json") for violation in e.violations]
                }
            )
        raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/save", response_model=FunnelSaveResponse)
    async def save_funnel(request: Request, funnel_data: dict):
        """
        Create or replace a funnel from its editor document.
        Drafts are saved with their violations; activation requires a valid graph.
        """
        try:
            editor_id = _editor_id(request)
            funnel, validation = await funnel_service.save_funnel(funnel_data, editor_id=editor_id)
            return FunnelSaveResponse(
                funnel=funnel_to_document(funnel),
                valid=validation.is_ok,
                violations=validation.violations
            )
        except FunnelException as e:
            _raise_http(e, "saving funnel")
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FunnelAPI", message=f"Error saving funnel: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/validate", response_model=FunnelSaveResponse)
    async def validate_funnel(funnel_data: dict):
        try:
            funnel, validation = funnel_service.validate_funnel(funnel_data)
            return FunnelSaveResponse(
                funnel=funnel_to_document(funnel),
                valid=validation.is_ok,
                violations=validation.violations
            )
        except FunnelException as e:
            _raise_http(e, "validating funnel")

    @router.get("/list")
    async def get_funnels_list(request: Request):
        try:
            _editor_id(request)
            funnels = await funnel_service.list_funnels()
            return [funnel_to_document(funnel) for funnel in funnels]
        except FunnelException as e:
            _raise_http(e, "getting funnels list")
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FunnelAPI", message=f"Error getting funnels list: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/detail/{funnel_id}")
    async def get_funnel_detail(request: Request, funnel_id: str):
        try:
            _editor_id(request)
            funnel = await funnel_service.get_funnel_detail(funnel_id=funnel_id)
            return funnel_to_document(funnel)
        except FunnelException as e:
            _raise_http(e, "getting funnel detail")

    @router.delete("/delete/{funnel_id}")
    async def delete_funnel(request: Request, funnel_id: str):
        try:
            editor_id = _editor_id(request)
            await funnel_service.delete_funnel(funnel_id=funnel_id, editor_id=editor_id)
            return {"status": "success", "message": f"Funnel {funnel_id} deleted"}
        except FunnelException as e:
            _raise_http(e, "deleting funnel")

    @router.post("/status/{funnel_id}")
    async def update_funnel_status(request: Request, funnel_id: str, status_data: FunnelStatusRequest):
        """
        Activate or deactivate a funnel.

        Request body:
        {
            "isActive": true | false
        }
        """
        try:
            editor_id = _editor_id(request)
            funnel = await funnel_service.update_funnel_status(
                funnel_id=funnel_id,
                is_active=status_data.isActive,
                editor_id=editor_id
            )
            return funnel_to_document(funnel)
        except FunnelException as e:
            _raise_http(e, "updating funnel status")

    @router.post("/lock/{funnel_id}")
    async def lock_funnel(request: Request, funnel_id: str):
        try:
            editor_id = _editor_id(request)
            return await funnel_service.lock_funnel(funnel_id=funnel_id, editor_id=editor_id)
        except FunnelException as e:
            _raise_http(e, "locking funnel")

    @router.post("/unlock/{funnel_id}")
    async def unlock_funnel(request: Request, funnel_id: str):
        try:
            editor_id = _editor_id(request)
            return await funnel_service.unlock_funnel(funnel_id=funnel_id, editor_id=editor_id)
        except FunnelException as e:
            _raise_http(e, "unlocking funnel")

    @router.post("/default/post-update")
    async def create_default_post_update_funnel(request: Request):
        try:
            editor_id = _editor_id(request)
            funnel = await funnel_service.create_default_post_update_funnel(editor_id=editor_id)
            return funnel_to_document(funnel)
        except FunnelException as e:
            _raise_http(e, "creating default post update funnel")

    return router
