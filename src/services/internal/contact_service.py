from typing import Optional, Dict, Any
import httpx

# Utils
from utils.log_utils import LogUtil


class ContactService:
    """Service for reading contact attributes used by condition nodes."""
    def __init__(self, log_util: LogUtil, contact_service_url: str, timeout_seconds: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.contact_service_url = contact_service_url
        self.log_util = log_util
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def get_attributes(self, contact_id: str) -> Dict[str, Any]:
        contact_url = f"{self.contact_service_url}/{contact_id}/attributes"
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.get(contact_url)
            if response.status_code == 200:
                return dict(response.json())
            if response.status_code == 404:
                self.log_util.warning(service_name="ContactService", message=f"Contact {contact_id} not found")
                return {}
            response.raise_for_status()
            return {}
