"""
Run Scheduler Service
Background service that executes new runs immediately and resumes due runs.
"""
import asyncio
import traceback
from typing import Optional, List
from datetime import datetime

from utils.log_utils import LogUtil
from database.funnel_store import FunnelStore
from exceptions.funnel_exception import RunLockedException, RunNotFoundException
from models.funnel_run_data import FunnelRun
from services.funnel_run_service import FunnelRunService


class RunSchedulerService:
    """
    Background service that drives funnel runs.

    Runs enqueued by the trigger dispatcher are executed on the next pass, which
    starts as soon as something is enqueued. Every check_interval_seconds the
    store is polled for WAITING runs whose resumeAt has passed and RUNNING runs
    whose retry is due.
    """

    def __init__(
        self,
        log_util: LogUtil,
        funnel_store: FunnelStore,
        funnel_run_service: FunnelRunService,
        check_interval_seconds: int = 60,
        batch_size: int = 100
    ):
        self.log_util = log_util
        self.funnel_store = funnel_store
        self.funnel_run_service = funnel_run_service
        self.check_interval_seconds = check_interval_seconds
        self.batch_size = batch_size
        self._pending: List[str] = []
        self._wakeup = asyncio.Event()
        self._running = False
        self._task = None

    def enqueue(self, run_id: str):
        """
        Request immediate execution of a run.
        """
        if run_id not in self._pending:
            self._pending.append(run_id)
        self._wakeup.set()

    async def start(self):
        """
        Start the background scheduler task.
        """
        if self._running:
            self.log_util.warning(
                service_name="RunSchedulerService",
                message="Scheduler is already running"
            )
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        self.log_util.info(
            service_name="RunSchedulerService",
            message=f"Run scheduler started, checking every {self.check_interval_seconds} seconds"
        )

    async def stop(self):
        """
        Stop the background scheduler task.
        """
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.log_util.info(
            service_name="RunSchedulerService",
            message="Run scheduler stopped"
        )

    async def _scheduler_loop(self):
        """
        Main scheduler loop.
        """
        while self._running:
            try:
                await self.run_once()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.check_interval_seconds)
                except asyncio.TimeoutError:
                    pass
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log_util.error(
                    service_name="RunSchedulerService",
                    message=f"Error in scheduler loop: {str(e)}"
                )
                self.log_util.error(
                    service_name="RunSchedulerService",
                    message=f"Traceback: {traceback.format_exc()}"
                )
                # Wait before retrying to avoid tight error loop
                await asyncio.sleep(self.check_interval_seconds)

    async def run_once(self, now: Optional[datetime] = None) -> List[FunnelRun]:
        """
        Execute every enqueued run, then every due run.

        Returns:
            Runs executed in this pass
        """
        now = now or datetime.utcnow()
        self._wakeup.clear()

        run_ids = list(self._pending)
        self._pending.clear()

        due_run_ids = await self.funnel_store.get_due_run_ids(now=now, limit=self.batch_size)
        run_ids.extend(run_id for run_id in due_run_ids if run_id not in run_ids)

        if run_ids:
            self.log_util.info(
                service_name="RunSchedulerService",
                message=f"Executing {len(run_ids)} run(s)"
            )

        executed = []
        for run_id in run_ids:
            try:
                executed.append(await self.funnel_run_service.execute_run(run_id, now=now))
            except RunLockedException:
                self.log_util.info(
                    service_name="RunSchedulerService",
                    message=f"Run {run_id} is locked by another step, skipping until next pass"
                )
            except RunNotFoundException:
                self.log_util.warning(
                    service_name="RunSchedulerService",
                    message=f"Run {run_id} not found, dropping it"
                )
            except Exception as e:
                self.log_util.error(
                    service_name="RunSchedulerService",
                    message=f"Error executing run {run_id}: {str(e)}"
                )
                self.log_util.error(
                    service_name="RunSchedulerService",
                    message=f"Traceback: {traceback.format_exc()}"
                )
        return executed
