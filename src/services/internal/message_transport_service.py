from typing import Optional, Dict, Any
import httpx

# Utils
from utils.log_utils import LogUtil

# Models
from models.transport_data import SendRequest, TransportResult


class MessageTransportService:
    """
    Client of the channel services that actually deliver WhatsApp templates and emails.
    Calls may repeat for the same node (at-least-once), deduplication belongs to the channel service.
    """

    # Statuses worth another attempt, everything else non-2xx is final
    RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}

    def __init__(
        self,
        log_util: LogUtil,
        whatsapp_service_url: str,
        email_service_url: str,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.log_util = log_util
        self.channel_endpoints = {
            "WHATSAPP": whatsapp_service_url,
            "EMAIL": email_service_url,
        }
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def send(self, node_type: str, recipient_contact: str, content: Dict[str, Any],
                   request: Optional[SendRequest] = None) -> TransportResult:
        """
        Deliver one message.

        Args:
            node_type: EMAIL or WHATSAPP
            recipient_contact: Contact id, resolved to an address by the channel service
            content: Channel specific content (subject/content or template fields)
            request: Full send request, forwarded for tracing and templating
        """
        endpoint = self.channel_endpoints.get(node_type)
        if endpoint is None:
            return TransportResult.permanent(reason=f"Unsupported channel: {node_type}")

        body = {
            "channel": node_type,
            "contactId": recipient_contact,
            "content": content,
        }
        if request is not None:
            body.update({
                "funnelId": request.funnelId,
                "runId": request.runId,
                "nodeId": request.nodeId,
                "attempt": request.attempt,
                "payload": request.payload,
            })

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(endpoint, json=body, headers={"Content-Type": "application/json"})
        except httpx.TimeoutException:
            self.log_util.error(
                service_name="MessageTransportService",
                message=f"Timeout calling {node_type} service for contact {recipient_contact}"
            )
            return TransportResult.transient(reason=f"Timeout calling {node_type} service")
        except httpx.RequestError as e:
            self.log_util.error(
                service_name="MessageTransportService",
                message=f"Error calling {node_type} service: {str(e)}"
            )
            return TransportResult.transient(reason=f"Error calling {node_type} service: {str(e)}")

        if 200 <= response.status_code < 300:
            self.log_util.info(
                service_name="MessageTransportService",
                message=f"{node_type} message accepted for contact {recipient_contact}"
            )
            return TransportResult.ok()

        reason = f"{node_type} service returned {response.status_code}: {response.text}"
        self.log_util.error(service_name="MessageTransportService", message=reason)
        if response.status_code in self.RETRYABLE_STATUS_CODES:
            return TransportResult.transient(reason=reason)
        return TransportResult.permanent(reason=reason)
