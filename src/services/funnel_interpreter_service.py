"""
Funnel Interpreter Service
Walks a funnel run through its funnel one node per step.
"""
from typing import Optional, Dict, Any, TYPE_CHECKING
from datetime import datetime, timedelta

from utils.log_utils import LogUtil

from models.funnel_data import (
    FunnelData,
    EmailNode,
    WhatsAppNode,
    DelayNode,
    ConditionNode,
    ConditionOperator,
)
from models.funnel_run_data import FunnelRun, RunStatus, RunOutcome, RunHistoryEntry, StepResult
from models.transport_data import SendRequest, TransportResult, DispatchErrorKind

if TYPE_CHECKING:
    from services.internal.message_transport_service import MessageTransportService


class FunnelInterpreterService:
    """
    State machine of a funnel run.

    step() never mutates the run it receives and never blocks: waiting is the
    persisted WAITING status plus resumeAt, retries are nextAttemptAt.
    Every step either advances the run, parks it (WAITING or a scheduled retry)
    or ends it (COMPLETED / FAILED).
    """

    def __init__(
        self,
        log_util: LogUtil,
        message_transport: "MessageTransportService",
        max_attempts: int = 3,
        backoff_seconds: int = 60
    ):
        self.log_util = log_util
        self.message_transport = message_transport
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    async def step(
        self,
        run: FunnelRun,
        funnel: FunnelData,
        now: datetime,
        contact_attributes: Optional[Dict[str, Any]] = None
    ) -> StepResult:
        """
        Process the run's current node.

        Args:
            run: Run to advance, left untouched
            funnel: Current definition of the run's funnel
            now: Step time
            contact_attributes: Attribute snapshot of the contact, read by condition nodes only

        Returns:
            StepResult with the updated run copy and the dispatched send request, if any
        """
        if not self.is_eligible(run, now):
            return StepResult(run=run.model_copy(deep=True))

        updated = self._resume(run, now)

        node = funnel.get_node(updated.currentNodeId)
        if node is None:
            # The definition changed under the run, e.g. a node deleted mid-run
            self.log_util.warning(
                service_name="FunnelInterpreterService",
                message=f"Run {run.id}: node {updated.currentNodeId} no longer exists in funnel {funnel.id}"
            )
            self._record(updated, now, RunOutcome.DANGLING_EDGE,
                         reason=f"Node {updated.currentNodeId} not found in funnel {funnel.id}")
            updated.status = RunStatus.FAILED
            return StepResult(run=updated)

        if isinstance(node, ConditionNode):
            return StepResult(run=self._process_condition(updated, node, now, contact_attributes or {}))
        if isinstance(node, DelayNode):
            return StepResult(run=self._process_delay(updated, node, now))
        return await self._process_send(updated, node, funnel, now)

    def _resume(self, run: FunnelRun, now: datetime) -> FunnelRun:
        updated = run.model_copy(deep=True)
        updated.updated_at = now
        if updated.status == RunStatus.WAITING:
            updated.status = RunStatus.RUNNING
            updated.resumeAt = None
        return updated

    def is_eligible(self, run: FunnelRun, now: datetime) -> bool:
        """
        Whether a step at `now` would change the run.
        """
        if run.is_terminal():
            return False
        if run.status == RunStatus.WAITING:
            return run.resumeAt is None or now >= run.resumeAt
        return run.nextAttemptAt is None or now >= run.nextAttemptAt

    def _record(self, run: FunnelRun, now: datetime, outcome: RunOutcome, reason: Optional[str] = None):
        run.history.append(RunHistoryEntry(nodeId=run.currentNodeId, enteredAt=now, outcome=outcome, reason=reason))

    def _advance(self, run: FunnelRun, target: Optional[str]):
        run.attempts = 0
        run.nextAttemptAt = None
        if target is None:
            run.status = RunStatus.COMPLETED
            return
        run.currentNodeId = target
        run.status = RunStatus.RUNNING

    def _process_condition(self, run: FunnelRun, node: ConditionNode, now: datetime,
                           contact_attributes: Dict[str, Any]) -> FunnelRun:
        result = self.evaluate_condition(node, contact_attributes)
        self._record(run, now, RunOutcome.BRANCH_TRUE if result else RunOutcome.BRANCH_FALSE)
        target = node.trueNodeId if result else node.falseNodeId

        self.log_util.info(
            service_name="FunnelInterpreterService",
            message=f"Run {run.id}: condition {node.id} evaluated to {str(result).lower()}, next node: {target}"
        )
        self._advance(run, target)
        return run

    def _process_delay(self, run: FunnelRun, node: DelayNode, now: datetime) -> FunnelRun:
        if node.nextNodeId is None:
            # Nothing follows the delay, waiting would not change the outcome
            self._record(run, now, RunOutcome.COMPLETED, reason="Delay has no successor")
            self._advance(run, None)
            return run

        self._record(run, now, RunOutcome.WAITING)
        run.currentNodeId = node.nextNodeId
        run.status = RunStatus.WAITING
        run.resumeAt = now + timedelta(hours=node.hours)
        run.attempts = 0
        run.nextAttemptAt = None

        self.log_util.info(
            service_name="FunnelInterpreterService",
            message=f"Run {run.id}: waiting {node.hours}h at delay {node.id}, resumes at {run.resumeAt.isoformat()}"
        )
        return run

    async def _process_send(self, run: FunnelRun, node, funnel: FunnelData, now: datetime) -> StepResult:
        attempt = run.attempts + 1
        request = SendRequest(
            channel=node.type,
            contactId=run.contactId,
            content=self.build_content(node),
            funnelId=funnel.id,
            runId=run.id,
            nodeId=node.id,
            attempt=attempt,
            payload=run.payload
        )

        try:
            result = await self.message_transport.send(node.type, run.contactId, request.content, request=request)
        except Exception as e:
            result = TransportResult.transient(reason=f"Transport error: {str(e)}")

        if result.success:
            self._record(run, now, RunOutcome.SENT)
            self.log_util.info(
                service_name="FunnelInterpreterService",
                message=f"Run {run.id}: {node.type} node {node.id} sent to contact {run.contactId}"
            )
            self._advance(run, node.nextNodeId)
            return StepResult(run=run, side_effect=request)

        self._fail_attempt(run, node, now, result)
        return StepResult(run=run, side_effect=request)

    def _fail_attempt(self, run: FunnelRun, node, now: datetime, result: TransportResult):
        attempt = run.attempts + 1
        run.attempts = attempt
        if result.errorKind == DispatchErrorKind.PERMANENT_DISPATCH or attempt >= self.max_attempts:
            self._record(run, now, RunOutcome.DISPATCH_FAILED, reason=result.reason)
            run.status = RunStatus.FAILED
            run.nextAttemptAt = None
            self.log_util.error(
                service_name="FunnelInterpreterService",
                message=f"Run {run.id}: {node.type} node {node.id} failed after {attempt} attempt(s): {result.reason}"
            )
        else:
            self._record(run, now, RunOutcome.RETRY, reason=result.reason)
            run.nextAttemptAt = now + timedelta(seconds=self.backoff_seconds * 2 ** (attempt - 1))
            self.log_util.warning(
                service_name="FunnelInterpreterService",
                message=f"Run {run.id}: {node.type} node {node.id} attempt {attempt} failed, retrying at {run.nextAttemptAt.isoformat()}: {result.reason}"
            )

    def attributes_unavailable(self, run: FunnelRun, node: ConditionNode, now: datetime, reason: str) -> StepResult:
        """
        Record that the contact attributes a condition needs could not be read.
        Counts as a transient failed attempt at the current node.
        """
        if not self.is_eligible(run, now):
            return StepResult(run=run.model_copy(deep=True))

        updated = self._resume(run, now)
        self._fail_attempt(updated, node, now, TransportResult.transient(reason=reason))
        return StepResult(run=updated)

    def build_content(self, node) -> Dict[str, Any]:
        if isinstance(node, EmailNode):
            return {"subject": node.subject, "content": node.content}
        if isinstance(node, WhatsAppNode):
            return {"templateId": node.templateId, "templateTitle": node.templateTitle, "sendTime": node.sendTime}
        return {}

    def evaluate_condition(self, node: ConditionNode, contact_attributes: Dict[str, Any]) -> bool:
        """
        Compare a contact attribute with the node's value.
        Text comparisons ignore case; greater/less than compare numbers and are
        false for non-numeric values. List attributes (e.g. tags) match when any
        member matches.
        """
        actual = contact_attributes.get(node.target)
        expected = "" if node.value is None else str(node.value)
        operator = node.operator

        if isinstance(actual, (list, tuple, set)):
            members = [self._to_text(member) for member in actual]
            if operator == ConditionOperator.EQUALS.value:
                return expected.lower() in members
            if operator == ConditionOperator.NOT_EQUALS.value:
                return expected.lower() not in members
            if operator == ConditionOperator.CONTAINS.value:
                return any(expected.lower() in member for member in members)
            return False

        actual_text = self._to_text(actual)
        if operator == ConditionOperator.EQUALS.value:
            return actual_text == expected.lower()
        if operator == ConditionOperator.NOT_EQUALS.value:
            return actual_text != expected.lower()
        if operator == ConditionOperator.CONTAINS.value:
            return expected.lower() in actual_text
        if operator in (ConditionOperator.GREATER_THAN.value, ConditionOperator.LESS_THAN.value):
            try:
                actual_number = float(actual)
                expected_number = float(expected)
            except (ValueError, TypeError) as e:
                self.log_util.warning(
                    service_name="FunnelInterpreterService",
                    message=f"Condition {node.id}: non-numeric comparison of '{actual}' and '{expected}': {str(e)}"
                )
                return False
            if operator == ConditionOperator.GREATER_THAN.value:
                return actual_number > expected_number
            return actual_number < expected_number

        self.log_util.warning(
            service_name="FunnelInterpreterService",
            message=f"Condition {node.id}: unknown operator '{operator}', defaulting to false"
        )
        return False

    @staticmethod
    def _to_text(value: Any) -> str:
        if value is None:
            return ""
        return str(value).lower()
