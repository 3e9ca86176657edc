from typing import List, Dict, Any, Tuple
from datetime import datetime
from contextlib import asynccontextmanager
from pydantic import ValidationError

# Utils
from utils.log_utils import LogUtil

# Database
from database.funnel_store import FunnelStore

# Services
from services.funnel_validation_service import FunnelValidationService

# Models
from models.funnel_data import FunnelData, FunnelTrigger, EmailNode, NodePosition
from models.funnel_document import funnel_from_document, funnel_to_document
from models.validation_data import ValidationResult

# Exceptions
from exceptions.funnel_exception import (
    FunnelException,
    FunnelServiceException,
    FunnelNotFoundException,
    FunnelValidationException,
)

class FunnelService:
    """
    Editor facing operations on funnel definitions.

    Every write holds the funnel's edit lock. An editor can also keep the lock
    for a whole editing session with lock_funnel / unlock_funnel; writes made
    inside the session leave it in place.
    """
    def __init__(self, log_util: LogUtil, funnel_store: FunnelStore, validation_service: FunnelValidationService):
        self.log_util = log_util
        self.funnel_store = funnel_store
        self.validation_service = validation_service

    @asynccontextmanager
    async def _edit_lock(self, funnel_id: str, editor_id: str, now: datetime):
        acquired = await self.funnel_store.acquire_funnel_lock(funnel_id, holder=editor_id, now=now)
        try:
            yield
        finally:
            if acquired:
                await self.funnel_store.release_funnel_lock(funnel_id, holder=editor_id)

    def decode_funnel(self, funnel_document: Dict[str, Any]) -> FunnelData:
        """
        Decode an editor document. A blank startNodeId is inferred as the first
        node without incoming edges, or the first node when every node has one.
        """
        try:
            funnel = funnel_from_document(funnel_document)
        except (ValueError, ValidationError) as e:
            raise FunnelValidationException(message=f"Invalid funnel document: {str(e)}")

        if not funnel.startNodeId and funnel.nodes:
            roots = self.validation_service.compute_roots(funnel)
            funnel.startNodeId = roots[0] if roots else funnel.nodes[0].id
        return funnel

    def _ensure_activatable(self, funnel: FunnelData, validation: ValidationResult):
        if funnel.isActive and not validation.is_ok:
            raise FunnelValidationException(
                message=f"Funnel '{funnel.name}' cannot be activated, it has {len(validation.violations)} violation(s)",
                violations=validation.violations
            )

    async def save_funnel(self, funnel_document: Dict[str, Any], editor_id: str) -> Tuple[FunnelData, ValidationResult]:
        """
        Create or replace a funnel.

        Drafts (isActive false) are saved with their violations; an active funnel
        is only saved when validation passes.
        """
        funnel = self.decode_funnel(funnel_document)
        now = datetime.utcnow()

        async with self._edit_lock(funnel.id, editor_id, now):
            try:
                validation = self.validation_service.validate(funnel)
                self._ensure_activatable(funnel, validation)

                existing = await self.funnel_store.get_funnel(funnel.id)
                funnel.created_at = existing.created_at if existing and existing.created_at else now
                funnel.updated_at = now

                saved = await self.funnel_store.save_funnel(funnel)

                self.log_util.info(
                    service_name="FunnelService",
                    message=f"Funnel '{saved.name}' saved with ID: {saved.id} (active: {saved.isActive}, violations: {len(validation.violations)})"
                )
                return saved, validation

            except FunnelException:
                raise
            except Exception as e:
                self.log_util.error(
                    service_name="FunnelService",
                    message=f"Error saving funnel: {str(e)}"
                )
                raise FunnelServiceException(message=f"Error saving funnel: {str(e)}")

    def validate_funnel(self, funnel_document: Dict[str, Any]) -> Tuple[FunnelData, ValidationResult]:
        funnel = self.decode_funnel(funnel_document)
        return funnel, self.validation_service.validate(funnel)

    async def list_funnels(self) -> List[FunnelData]:
        try:
            return await self.funnel_store.list_funnels()
        except FunnelException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FunnelService",
                message=f"Error getting funnels list: {str(e)}"
            )
            raise FunnelServiceException(message=f"Error getting funnels list: {str(e)}")

    async def get_funnel_detail(self, funnel_id: str) -> FunnelData:
        funnel = await self.funnel_store.get_funnel(funnel_id)
        if funnel is None:
            raise FunnelNotFoundException(message=f"Funnel {funnel_id} not found")
        return funnel

    async def delete_funnel(self, funnel_id: str, editor_id: str) -> bool:
        """
        Delete a funnel. Runs already started fail on their next step.
        """
        async with self._edit_lock(funnel_id, editor_id, datetime.utcnow()):
            deleted = await self.funnel_store.delete_funnel(funnel_id)
        if not deleted:
            raise FunnelNotFoundException(message=f"Funnel {funnel_id} not found")
        self.log_util.info(service_name="FunnelService", message=f"Funnel {funnel_id} deleted")
        return True

    async def update_funnel_status(self, funnel_id: str, is_active: bool, editor_id: str) -> FunnelData:
        """
        Activate or deactivate a funnel.
        Activation re-validates the stored graph; deactivation leaves started runs running.
        """
        now = datetime.utcnow()
        async with self._edit_lock(funnel_id, editor_id, now):
            funnel = await self.get_funnel_detail(funnel_id)
            previous = funnel.isActive
            funnel.isActive = is_active

            if is_active:
                self._ensure_activatable(funnel, self.validation_service.validate(funnel))

            funnel.updated_at = now
            saved = await self.funnel_store.save_funnel(funnel)

        self.log_util.info(
            service_name="FunnelService",
            message=f"Funnel '{saved.name}' status changed with ID: {funnel_id} (active: {previous} -> {is_active})"
        )
        return saved

    async def lock_funnel(self, funnel_id: str, editor_id: str) -> Dict[str, Any]:
        await self.get_funnel_detail(funnel_id)
        await self.funnel_store.acquire_funnel_lock(funnel_id, holder=editor_id, now=datetime.utcnow())
        self.log_util.info(service_name="FunnelService", message=f"Funnel {funnel_id} locked by {editor_id}")
        return {"funnelId": funnel_id, "locked": True, "holder": editor_id}

    async def unlock_funnel(self, funnel_id: str, editor_id: str) -> Dict[str, Any]:
        released = await self.funnel_store.release_funnel_lock(funnel_id, holder=editor_id)
        if released:
            self.log_util.info(service_name="FunnelService", message=f"Funnel {funnel_id} unlocked by {editor_id}")
        return {"funnelId": funnel_id, "locked": False, "released": released}

    async def create_default_post_update_funnel(self, editor_id: str) -> FunnelData:
        """
        Return the funnel bound to new_post_published, creating the default
        one-email notification funnel when there is none.
        """
        for funnel in await self.list_funnels():
            if funnel.trigger == FunnelTrigger.NEW_POST_PUBLISHED:
                return funnel

        email_node = EmailNode(
            id="new-post-email",
            position=NodePosition(x=250, y=100),
            label="New post notification",
            subject="New on the blog: {{postTitle}}",
            content="We just published {{postTitle}}. Read it here: {{postUrl}}"
        )
        funnel = FunnelData(
            name="New Post Distribution",
            trigger=FunnelTrigger.NEW_POST_PUBLISHED,
            isActive=True,
            startNodeId=email_node.id,
            nodes=[email_node]
        )
        saved, _ = await self.save_funnel(funnel_to_document(funnel), editor_id=editor_id)
        self.log_util.info(service_name="FunnelService", message=f"Default post update funnel created with ID: {saved.id}")
        return saved
