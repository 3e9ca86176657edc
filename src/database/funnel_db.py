from motor.motor_asyncio import AsyncIOMotorClient
import urllib.parse
import threading
import asyncio
from typing import Optional, List, Dict, Any
from datetime import datetime, timedelta
import weakref
from pymongo import ReturnDocument
from pymongo.errors import NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure, DuplicateKeyError

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Store contract
from database.funnel_store import FunnelStore

# Exceptions
from exceptions.funnel_exception import (
    FunnelException,
    FunnelDBException,
    FunnelLockedException,
    RunLockedException,
    RunNotFoundException,
)

# Models
from models.funnel_data import FunnelData, FunnelTrigger
from models.funnel_document import funnel_to_document, funnel_from_document
from models.funnel_run_data import FunnelRun, RunStatus

"""
Database class for funnel operations
"""
class FunnelDB(FunnelStore):
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):

        # Initialize logger
        self.log_util = log_util

        # Initialize environment utils
        self.environment_utils = environment_utils

        # Mongo credentials
        self.username = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_USERNAME"))
        self.password = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_PASSWORD"))
        self.auth_source = self.environment_utils.get_env_variable("MONGO_AUTH_SOURCE")
        self.host = self.environment_utils.get_env_variable("MONGO_HOST")
        self.port = int(self.environment_utils.get_env_variable("MONGO_PORT"))
        self.db_name = self.environment_utils.get_env_variable("MONGO_DB_NAME")

        # Lock expiry, a crashed worker must not hold a run forever
        self.run_lock_ttl = timedelta(seconds=self.environment_utils.get_env_variable("RUN_LOCK_TTL_SECONDS"))
        self.funnel_lock_ttl = timedelta(seconds=self.environment_utils.get_env_variable("FUNNEL_LOCK_TTL_SECONDS"))

        # Mongo Connection Pool Configs
        self.max_pool_size = 50
        self.min_pool_size = 0  # Create connections on-demand instead of at startup
        self.max_idle_time_ms = 30000
        self.wait_queue_timeout_ms = 10000
        self.connect_timeout_ms = 10000
        self.server_selection_timeout_ms = 10000
        self.socket_timeout_ms = 10000

        # MongoDB client - will be initialized lazily on first use
        # Use a dictionary keyed by event loop ID to support multiple event loops
        self._clients = {}  # {loop_id: {client, db, collections, loop}}

        # Thread-safe initialization lock
        self._client_lock = threading.Lock()

    def _get_client_for_current_loop(self) -> Dict[str, Any]:
        """
        Thread-safe method to get the MongoDB client and collections for the current event loop.
        Each event loop gets its own motor client.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("No event loop available. Database methods must be called from an async context.")

        loop_id = id(loop)

        # Check if we already have a client for this event loop
        if loop_id in self._clients:
            return self._clients[loop_id]

        with self._client_lock:
            # Double-check after acquiring lock (another thread might have created it)
            if loop_id in self._clients:
                return self._clients[loop_id]

            client = AsyncIOMotorClient(
                f"mongodb://{self.username}:{self.password}@{self.host}:{self.port}/?authSource={self.auth_source}",
                maxPoolSize=self.max_pool_size,
                minPoolSize=self.min_pool_size,
                maxIdleTimeMS=self.max_idle_time_ms,
                waitQueueTimeoutMS=self.wait_queue_timeout_ms,
                connectTimeoutMS=self.connect_timeout_ms,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                socketTimeoutMS=self.socket_timeout_ms,
                retryWrites=True,
                retryReads=True
            )
            db = client[self.db_name]

            client_data = {
                'client': client,
                'db': db,
                'collections': {
                    'funnels': db.funnels,
                    'funnel_runs': db.funnel_runs,
                    'funnel_locks': db.funnel_locks,
                },
                'loop': weakref.ref(loop)  # Weak reference to avoid circular references
            }
            self._clients[loop_id] = client_data

            self.log_util.info(
                service_name="FunnelDB",
                message=f"MongoDB client initialized for event loop {loop_id} (lazy initialization)"
            )

            return client_data

    async def close(self):
        """
        Close all MongoDB clients and cleanup resources
        """
        with self._client_lock:
            for loop_id, client_data in self._clients.items():
                try:
                    client_data['client'].close()
                except Exception as e:
                    self.log_util.warning(
                        service_name="FunnelDB",
                        message=f"Error closing client for loop {loop_id}: {str(e)}"
                    )
            self._clients.clear()
            self.log_util.info(service_name="FunnelDB", message="All MongoDB clients closed")

    def _handle_db_operation(self, operation_name: str, error: Exception) -> None:
        """
        Handle database operation errors with appropriate logging and exception wrapping.

        Args:
            operation_name: Name of the operation that failed
            error: The exception that occurred
        """
        if isinstance(error, FunnelException):
            raise error
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)):
            self.log_util.error(
                service_name="FunnelDB",
                message=f"Database connection error in {operation_name}: {str(error)}"
            )
            raise FunnelDBException(
                message=f"Database connection error: {str(error)}",
                status_code=503  # Service Unavailable
            )
        self.log_util.error(
            service_name="FunnelDB",
            message=f"Error in {operation_name}: {str(error)}"
        )
        raise FunnelDBException(message=f"Database error: {str(error)}", status_code=500)

    @staticmethod
    def _funnel_from_row(row: Dict[str, Any]) -> FunnelData:
        return funnel_from_document(row, funnel_id=str(row["_id"]))

    @staticmethod
    def _run_to_row(run: FunnelRun) -> Dict[str, Any]:
        row = run.model_dump(exclude={"id"})
        row["status"] = run.status.value
        row["history"] = [
            {**entry.model_dump(), "outcome": entry.outcome.value} for entry in run.history
        ]
        return row

    @staticmethod
    def _run_from_row(row: Dict[str, Any]) -> FunnelRun:
        row["id"] = str(row["_id"])
        return FunnelRun.model_validate(row)

    # Funnel CRUD operations
    async def save_funnel(self, funnel: FunnelData) -> FunnelData:
        client_data = self._get_client_for_current_loop()
        try:
            document = funnel_to_document(funnel)
            document.pop("id")
            await client_data['collections']['funnels'].replace_one({"_id": funnel.id}, document, upsert=True)
            document["_id"] = funnel.id
            return self._funnel_from_row(document)
        except Exception as e:
            self._handle_db_operation("save_funnel", e)

    async def get_funnel(self, funnel_id: str) -> Optional[FunnelData]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['funnels'].find_one({"_id": funnel_id})
            if result is None:
                return None
            return self._funnel_from_row(result)
        except Exception as e:
            self._handle_db_operation("get_funnel", e)

    async def list_funnels(self) -> List[FunnelData]:
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['funnels'].find({}).sort("created_at", 1)
            return [self._funnel_from_row(row) async for row in cursor]
        except Exception as e:
            self._handle_db_operation("list_funnels", e)

    async def delete_funnel(self, funnel_id: str) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['funnels'].delete_one({"_id": funnel_id})
            await client_data['collections']['funnel_locks'].delete_one({"_id": funnel_id})
            return result.deleted_count > 0
        except Exception as e:
            self._handle_db_operation("delete_funnel", e)

    async def get_active_funnels_by_trigger(self, trigger: FunnelTrigger) -> List[FunnelData]:
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['funnels'].find({
                "isActive": True,
                "trigger": FunnelTrigger(trigger).value
            })
            return [self._funnel_from_row(row) async for row in cursor]
        except Exception as e:
            self._handle_db_operation("get_active_funnels_by_trigger", e)

    # Editor lock operations
    async def acquire_funnel_lock(self, funnel_id: str, holder: str, now: datetime) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            # Matches a lock we already hold or an expired one, otherwise the upsert collides on _id
            previous = await client_data['collections']['funnel_locks'].find_one_and_update(
                {
                    "_id": funnel_id,
                    "$or": [{"holder": holder}, {"acquired_at": {"$lte": now - self.funnel_lock_ttl}}]
                },
                {"$set": {"holder": holder, "acquired_at": now}},
                upsert=True
            )
            return previous is None or previous.get("holder") != holder
        except DuplicateKeyError:
            raise FunnelLockedException(message=f"Funnel {funnel_id} is being edited by another user")
        except Exception as e:
            self._handle_db_operation("acquire_funnel_lock", e)

    async def release_funnel_lock(self, funnel_id: str, holder: str) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['funnel_locks'].delete_one({"_id": funnel_id, "holder": holder})
            return result.deleted_count > 0
        except Exception as e:
            self._handle_db_operation("release_funnel_lock", e)

    # Funnel run operations
    async def create_run(self, run: FunnelRun) -> FunnelRun:
        client_data = self._get_client_for_current_loop()
        try:
            row = self._run_to_row(run)
            row["_id"] = run.id
            row["lock_owner"] = None
            row["lock_acquired_at"] = None
            await client_data['collections']['funnel_runs'].insert_one(row)
            return self._run_from_row(row)
        except Exception as e:
            self._handle_db_operation("create_run", e)

    async def get_run(self, run_id: str) -> Optional[FunnelRun]:
        client_data = self._get_client_for_current_loop()
        try:
            row = await client_data['collections']['funnel_runs'].find_one({"_id": run_id})
            if row is None:
                return None
            return self._run_from_row(row)
        except Exception as e:
            self._handle_db_operation("get_run", e)

    async def list_runs(self, funnel_id: Optional[str] = None, contact_id: Optional[str] = None,
                        status: Optional[RunStatus] = None) -> List[FunnelRun]:
        client_data = self._get_client_for_current_loop()
        try:
            query: Dict[str, Any] = {}
            if funnel_id is not None:
                query["funnelId"] = funnel_id
            if contact_id is not None:
                query["contactId"] = contact_id
            if status is not None:
                query["status"] = RunStatus(status).value
            cursor = client_data['collections']['funnel_runs'].find(query).sort("created_at", 1)
            return [self._run_from_row(row) async for row in cursor]
        except Exception as e:
            self._handle_db_operation("list_runs", e)

    async def get_due_run_ids(self, now: datetime, limit: int) -> List[str]:
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['funnel_runs'].find(
                {
                    "$and": [
                        {"$or": [
                            {"lock_owner": None},
                            {"lock_acquired_at": {"$lte": now - self.run_lock_ttl}}
                        ]},
                        {"$or": [
                            {"status": RunStatus.WAITING.value, "resumeAt": {"$lte": now}},
                            {"status": RunStatus.RUNNING.value, "nextAttemptAt": None},
                            {"status": RunStatus.RUNNING.value, "nextAttemptAt": {"$lte": now}}
                        ]}
                    ]
                },
                {"_id": 1}
            ).limit(limit)
            return [str(row["_id"]) async for row in cursor]
        except Exception as e:
            self._handle_db_operation("get_due_run_ids", e)

    async def acquire_run(self, run_id: str, owner: str, now: datetime) -> FunnelRun:
        client_data = self._get_client_for_current_loop()
        try:
            row = await client_data['collections']['funnel_runs'].find_one_and_update(
                {
                    "_id": run_id,
                    "$or": [
                        {"lock_owner": None},
                        {"lock_acquired_at": {"$lte": now - self.run_lock_ttl}}
                    ]
                },
                {"$set": {"lock_owner": owner, "lock_acquired_at": now}},
                return_document=ReturnDocument.AFTER
            )
            if row is not None:
                return self._run_from_row(row)

            exists = await client_data['collections']['funnel_runs'].find_one({"_id": run_id}, {"_id": 1})
            if exists is None:
                raise RunNotFoundException(message=f"Run {run_id} not found")
            raise RunLockedException(message=f"Run {run_id} already has a step in flight")
        except Exception as e:
            self._handle_db_operation("acquire_run", e)

    async def save_run(self, run: FunnelRun, owner: str) -> FunnelRun:
        return await self._write_run(run, owner, {}, "save_run")

    async def release_run(self, run: FunnelRun, owner: str) -> FunnelRun:
        return await self._write_run(run, owner, {"lock_owner": None, "lock_acquired_at": None}, "release_run")

    async def _write_run(self, run: FunnelRun, owner: str, lock_fields: Dict[str, Any], operation_name: str) -> FunnelRun:
        client_data = self._get_client_for_current_loop()
        try:
            row = self._run_to_row(run)
            result = await client_data['collections']['funnel_runs'].update_one(
                {"_id": run.id, "lock_owner": owner},
                {"$set": {**row, **lock_fields}}
            )
            if result.matched_count == 0:
                raise RunLockedException(message=f"Run {run.id} is not locked by {owner}")
            return run
        except Exception as e:
            self._handle_db_operation(operation_name, e)
