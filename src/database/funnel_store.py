"""
Funnel Store
Persistence boundary for funnel definitions and funnel runs.

FunnelDB (MongoDB) and InMemoryFunnelStore implement the same contract:
- a funnel definition has at most one editor lock holder at a time
- a run has at most one step in flight: acquire_run locks on read,
  release_run persists and unlocks, contention is rejected immediately
"""
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime, timedelta
import copy

# Utils
from utils.log_utils import LogUtil

# Exceptions
from exceptions.funnel_exception import FunnelLockedException, RunLockedException, RunNotFoundException

# Models
from models.funnel_data import FunnelData, FunnelTrigger
from models.funnel_document import funnel_to_document, funnel_from_document
from models.funnel_run_data import FunnelRun, RunStatus


class FunnelStore(ABC):

    # Funnel definitions
    @abstractmethod
    async def save_funnel(self, funnel: FunnelData) -> FunnelData:
        """Insert or replace a funnel by id"""

    @abstractmethod
    async def get_funnel(self, funnel_id: str) -> Optional[FunnelData]:
        """Get a funnel by id"""

    @abstractmethod
    async def list_funnels(self) -> List[FunnelData]:
        """All funnels"""

    @abstractmethod
    async def delete_funnel(self, funnel_id: str) -> bool:
        """Delete a funnel, runs already created keep their own state"""

    @abstractmethod
    async def get_active_funnels_by_trigger(self, trigger: FunnelTrigger) -> List[FunnelData]:
        """Active funnels bound to a trigger"""

    # Editor lock
    @abstractmethod
    async def acquire_funnel_lock(self, funnel_id: str, holder: str, now: datetime) -> bool:
        """
        Take (or refresh) the edit lock, FunnelLockedException when another holder owns it.
        Returns False when holder already had the lock.
        """

    @abstractmethod
    async def release_funnel_lock(self, funnel_id: str, holder: str) -> bool:
        """Release the edit lock if held by holder"""

    # Funnel runs
    @abstractmethod
    async def create_run(self, run: FunnelRun) -> FunnelRun:
        """Persist a new run"""

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[FunnelRun]:
        """Read a run without locking it"""

    @abstractmethod
    async def list_runs(self, funnel_id: Optional[str] = None, contact_id: Optional[str] = None,
                        status: Optional[RunStatus] = None) -> List[FunnelRun]:
        """Runs filtered by funnel, contact and status"""

    @abstractmethod
    async def get_due_run_ids(self, now: datetime, limit: int) -> List[str]:
        """Unlocked runs the scheduler should step now"""

    @abstractmethod
    async def acquire_run(self, run_id: str, owner: str, now: datetime) -> FunnelRun:
        """Lock and read a run, RunLockedException when a step already holds it"""

    @abstractmethod
    async def save_run(self, run: FunnelRun, owner: str) -> FunnelRun:
        """Persist a run while keeping its lock"""

    @abstractmethod
    async def release_run(self, run: FunnelRun, owner: str) -> FunnelRun:
        """Persist a run and release its lock"""

    async def close(self):
        return None


def is_run_due(run: FunnelRun, now: datetime) -> bool:
    if run.status == RunStatus.WAITING:
        return run.resumeAt is not None and run.resumeAt <= now
    if run.status == RunStatus.RUNNING:
        return run.nextAttemptAt is None or run.nextAttemptAt <= now
    return False


class InMemoryFunnelStore(FunnelStore):
    """
    Process local store, used for development (STORE_BACKEND=memory) and tests.
    Funnels are kept in their persisted document form like in MongoDB.
    Methods never await while touching state, so each one is atomic on the event loop.
    """

    def __init__(self, log_util: LogUtil, run_lock_ttl_seconds: int = 300, funnel_lock_ttl_seconds: int = 900):
        self.log_util = log_util
        self.run_lock_ttl = timedelta(seconds=run_lock_ttl_seconds)
        self.funnel_lock_ttl = timedelta(seconds=funnel_lock_ttl_seconds)
        self.funnels: Dict[str, Dict[str, Any]] = {}
        self.runs: Dict[str, Dict[str, Any]] = {}
        self.run_locks: Dict[str, Tuple[str, datetime]] = {}
        self.funnel_locks: Dict[str, Tuple[str, datetime]] = {}

    async def save_funnel(self, funnel: FunnelData) -> FunnelData:
        self.funnels[funnel.id] = copy.deepcopy(funnel_to_document(funnel))
        return funnel_from_document(copy.deepcopy(self.funnels[funnel.id]))

    async def get_funnel(self, funnel_id: str) -> Optional[FunnelData]:
        document = self.funnels.get(funnel_id)
        if document is None:
            return None
        return funnel_from_document(copy.deepcopy(document))

    async def list_funnels(self) -> List[FunnelData]:
        return [funnel_from_document(copy.deepcopy(document)) for document in self.funnels.values()]

    async def delete_funnel(self, funnel_id: str) -> bool:
        self.funnel_locks.pop(funnel_id, None)
        return self.funnels.pop(funnel_id, None) is not None

    async def get_active_funnels_by_trigger(self, trigger: FunnelTrigger) -> List[FunnelData]:
        return [
            funnel_from_document(copy.deepcopy(document))
            for document in self.funnels.values()
            if document.get("isActive") and document.get("trigger") == FunnelTrigger(trigger).value
        ]

    async def acquire_funnel_lock(self, funnel_id: str, holder: str, now: datetime) -> bool:
        current = self.funnel_locks.get(funnel_id)
        if current is not None:
            current_holder, acquired_at = current
            if current_holder != holder and acquired_at + self.funnel_lock_ttl > now:
                raise FunnelLockedException(message=f"Funnel {funnel_id} is being edited by {current_holder}")
        self.funnel_locks[funnel_id] = (holder, now)
        return current is None or current[0] != holder

    async def release_funnel_lock(self, funnel_id: str, holder: str) -> bool:
        current = self.funnel_locks.get(funnel_id)
        if current is None or current[0] != holder:
            return False
        del self.funnel_locks[funnel_id]
        return True

    async def create_run(self, run: FunnelRun) -> FunnelRun:
        self.runs[run.id] = run.model_dump()
        return FunnelRun.model_validate(copy.deepcopy(self.runs[run.id]))

    async def get_run(self, run_id: str) -> Optional[FunnelRun]:
        document = self.runs.get(run_id)
        if document is None:
            return None
        return FunnelRun.model_validate(copy.deepcopy(document))

    async def list_runs(self, funnel_id: Optional[str] = None, contact_id: Optional[str] = None,
                        status: Optional[RunStatus] = None) -> List[FunnelRun]:
        runs = [FunnelRun.model_validate(copy.deepcopy(document)) for document in self.runs.values()]
        if funnel_id is not None:
            runs = [run for run in runs if run.funnelId == funnel_id]
        if contact_id is not None:
            runs = [run for run in runs if run.contactId == contact_id]
        if status is not None:
            runs = [run for run in runs if run.status == status]
        return runs

    async def get_due_run_ids(self, now: datetime, limit: int) -> List[str]:
        due = []
        for run_id, document in self.runs.items():
            if self._is_locked(run_id, now):
                continue
            if is_run_due(FunnelRun.model_validate(document), now):
                due.append(run_id)
            if len(due) >= limit:
                break
        return due

    async def acquire_run(self, run_id: str, owner: str, now: datetime) -> FunnelRun:
        if run_id not in self.runs:
            raise RunNotFoundException(message=f"Run {run_id} not found")
        if self._is_locked(run_id, now):
            raise RunLockedException(message=f"Run {run_id} already has a step in flight")
        self.run_locks[run_id] = (owner, now)
        return FunnelRun.model_validate(copy.deepcopy(self.runs[run_id]))

    async def save_run(self, run: FunnelRun, owner: str) -> FunnelRun:
        self._check_owner(run.id, owner)
        self.runs[run.id] = run.model_dump()
        return FunnelRun.model_validate(copy.deepcopy(self.runs[run.id]))

    async def release_run(self, run: FunnelRun, owner: str) -> FunnelRun:
        saved = await self.save_run(run, owner)
        self.run_locks.pop(run.id, None)
        return saved

    def _is_locked(self, run_id: str, now: datetime) -> bool:
        current = self.run_locks.get(run_id)
        return current is not None and current[1] + self.run_lock_ttl > now

    def _check_owner(self, run_id: str, owner: str):
        current = self.run_locks.get(run_id)
        if current is None or current[0] != owner:
            raise RunLockedException(message=f"Run {run_id} is not locked by {owner}")
