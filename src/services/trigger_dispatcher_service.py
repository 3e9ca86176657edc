from typing import Optional, List, TYPE_CHECKING
from datetime import datetime

# Utils
from utils.log_utils import LogUtil

# Database
from database.funnel_store import FunnelStore

# Exceptions
from exceptions.funnel_exception import FunnelException, FunnelServiceException

# Models
from models.funnel_run_data import FunnelRun, RunStatus
from models.request.trigger_event_request import TriggerEventRequest

if TYPE_CHECKING:
    from services.run_scheduler_service import RunSchedulerService


class TriggerDispatcherService:
    """
    Starts funnel runs for external events (lead subscribed, new post published).
    Repeated deliveries of one event start repeated runs, deduplication is the caller's job.
    """

    def __init__(
        self,
        log_util: LogUtil,
        funnel_store: FunnelStore,
        run_scheduler: Optional["RunSchedulerService"] = None
    ):
        self.log_util = log_util
        self.funnel_store = funnel_store
        self.run_scheduler = run_scheduler

    def set_run_scheduler(self, run_scheduler: "RunSchedulerService"):
        self.run_scheduler = run_scheduler

    async def dispatch(self, event: TriggerEventRequest, now: Optional[datetime] = None) -> List[FunnelRun]:
        """
        Create one RUNNING run per active funnel bound to the event's trigger,
        anchored at the funnel's start node, and enqueue it for immediate execution.

        Returns:
            The newly created runs
        """
        now = now or datetime.utcnow()
        try:
            self.log_util.info(
                service_name="TriggerDispatcherService",
                message=f"[TRIGGER] {event.triggerKind.value} for contact {event.contactId} (idempotency key: {event.idempotencyKey})"
            )

            funnels = await self.funnel_store.get_active_funnels_by_trigger(event.triggerKind)
            if not funnels:
                self.log_util.info(
                    service_name="TriggerDispatcherService",
                    message=f"[TRIGGER] No active funnel for trigger {event.triggerKind.value}"
                )
                return []

            created: List[FunnelRun] = []
            for funnel in funnels:
                run = FunnelRun(
                    funnelId=funnel.id,
                    contactId=event.contactId,
                    currentNodeId=funnel.startNodeId,
                    status=RunStatus.RUNNING,
                    payload=dict(event.payload),
                    history=[],
                    created_at=now,
                    updated_at=now
                )
                run = await self.funnel_store.create_run(run)
                created.append(run)

                self.log_util.info(
                    service_name="TriggerDispatcherService",
                    message=f"[TRIGGER] Run {run.id} created for funnel '{funnel.name}' ({funnel.id}) at node {funnel.startNodeId}"
                )

                if self.run_scheduler is not None:
                    self.run_scheduler.enqueue(run.id)

            return created

        except FunnelException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="TriggerDispatcherService",
                message=f"Error dispatching {event.triggerKind.value} event: {str(e)}"
            )
            raise FunnelServiceException(message=f"Error dispatching event: {str(e)}")
