"""
Funnel Run Service
Executes funnel runs under the store's per-run lock.
"""
from typing import Optional, List, Dict, Any, TYPE_CHECKING
from datetime import datetime
import uuid

# Utils
from utils.log_utils import LogUtil

# Database
from database.funnel_store import FunnelStore

# Exceptions
from exceptions.funnel_exception import FunnelException, FunnelServiceException, RunNotFoundException

# Models
from models.funnel_data import ConditionNode
from models.funnel_run_data import FunnelRun, RunStatus, RunOutcome, RunHistoryEntry

# Services
from services.funnel_interpreter_service import FunnelInterpreterService

if TYPE_CHECKING:
    from services.internal.contact_service import ContactService


class FunnelRunService:
    """
    Runs the interpreter against stored runs.

    execute_run holds the run lock from read to final write; a run whose lock is
    taken is rejected with RunLockedException and picked up on a later poll.
    """

    def __init__(
        self,
        log_util: LogUtil,
        funnel_store: FunnelStore,
        interpreter: FunnelInterpreterService,
        contact_service: "ContactService"
    ):
        self.log_util = log_util
        self.funnel_store = funnel_store
        self.interpreter = interpreter
        self.contact_service = contact_service
        self.worker_id = f"worker-{uuid.uuid4().hex[:8]}"

    async def execute_run(self, run_id: str, now: Optional[datetime] = None) -> FunnelRun:
        """
        Step a run until it waits, schedules a retry or terminates.

        Raises:
            RunLockedException: another step holds the run
            RunNotFoundException: the run does not exist
        """
        now = now or datetime.utcnow()
        owner = f"{self.worker_id}:{uuid.uuid4().hex[:8]}"
        run = await self.funnel_store.acquire_run(run_id, owner=owner, now=now)

        try:
            run = await self._drive(run, owner, now)
        except FunnelException:
            await self._release_latest(run, owner)
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FunnelRunService",
                message=f"Error executing run {run_id}: {str(e)}"
            )
            await self._release_latest(run, owner)
            raise FunnelServiceException(message=f"Error executing run {run_id}: {str(e)}")

        return await self.funnel_store.release_run(run, owner=owner)

    async def _release_latest(self, run: FunnelRun, owner: str):
        # Steps already saved under the lock must survive the release
        latest = await self.funnel_store.get_run(run.id)
        await self.funnel_store.release_run(latest or run, owner=owner)

    async def _drive(self, run: FunnelRun, owner: str, now: datetime) -> FunnelRun:
        funnel = await self.funnel_store.get_funnel(run.funnelId)
        if funnel is None:
            if run.is_terminal():
                return run
            self.log_util.error(
                service_name="FunnelRunService",
                message=f"Run {run.id}: funnel {run.funnelId} no longer exists"
            )
            failed = run.model_copy(deep=True)
            failed.history.append(RunHistoryEntry(
                nodeId=run.currentNodeId,
                enteredAt=now,
                outcome=RunOutcome.FUNNEL_NOT_FOUND,
                reason=f"Funnel {run.funnelId} not found"
            ))
            failed.status = RunStatus.FAILED
            failed.updated_at = now
            return failed

        # The graph is acyclic, so a run visits each node at most once per execution
        for _ in range(len(funnel.nodes) + 1):
            if not self.interpreter.is_eligible(run, now):
                break

            attributes: Dict[str, Any] = {}
            node = funnel.get_node(run.currentNodeId)
            if isinstance(node, ConditionNode):
                try:
                    attributes = await self.contact_service.get_attributes(run.contactId)
                except Exception as e:
                    self.log_util.warning(
                        service_name="FunnelRunService",
                        message=f"Run {run.id}: could not read attributes of contact {run.contactId}: {str(e)}"
                    )
                    result = self.interpreter.attributes_unavailable(
                        run, node, now, reason=f"Contact attributes unavailable: {str(e)}"
                    )
                    run = await self.funnel_store.save_run(result.run, owner=owner)
                    break

            result = await self.interpreter.step(run, funnel, now, contact_attributes=attributes)
            run = await self.funnel_store.save_run(result.run, owner=owner)

            if run.status != RunStatus.RUNNING or run.nextAttemptAt is not None:
                break

        self.log_util.info(
            service_name="FunnelRunService",
            message=f"Run {run.id} for contact {run.contactId} is {run.status.value} at node {run.currentNodeId}"
        )
        return run

    async def cancel_run(self, run_id: str, now: Optional[datetime] = None) -> FunnelRun:
        """
        Cancel a run. Only allowed while no step holds the run's lock.
        Terminal runs are returned unchanged.
        """
        now = now or datetime.utcnow()
        owner = f"{self.worker_id}:cancel:{uuid.uuid4().hex[:8]}"
        run = await self.funnel_store.acquire_run(run_id, owner=owner, now=now)

        if not run.is_terminal():
            run.history.append(RunHistoryEntry(
                nodeId=run.currentNodeId,
                enteredAt=now,
                outcome=RunOutcome.CANCELLED
            ))
            run.status = RunStatus.FAILED
            run.resumeAt = None
            run.nextAttemptAt = None
            run.updated_at = now
            self.log_util.info(service_name="FunnelRunService", message=f"Run {run_id} cancelled")

        return await self.funnel_store.release_run(run, owner=owner)

    async def get_run(self, run_id: str) -> FunnelRun:
        run = await self.funnel_store.get_run(run_id)
        if run is None:
            raise RunNotFoundException(message=f"Run {run_id} not found")
        return run

    async def list_runs(self, funnel_id: Optional[str] = None, contact_id: Optional[str] = None,
                        status: Optional[RunStatus] = None) -> List[FunnelRun]:
        return await self.funnel_store.list_runs(funnel_id=funnel_id, contact_id=contact_id, status=status)
