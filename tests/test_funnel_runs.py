# file: tests/test_funnel_runs.py
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from exceptions.funnel_exception import RunLockedException, RunNotFoundException
from models.funnel_data import FunnelData, FunnelTrigger, EmailNode, ConditionNode
from models.funnel_run_data import FunnelRun, RunStatus, RunOutcome
from models.request.trigger_event_request import TriggerEventRequest
from models.transport_data import TransportResult

from conftest import T0, delay_then_whatsapp_funnel, vip_condition_funnel


def lead_event(contact_id="contact-1"):
    return TriggerEventRequest(triggerKind=FunnelTrigger.LEAD_SUBSCRIBED, contactId=contact_id, payload={"source": "form"})


class TestTriggerDispatcher:

    @pytest.mark.asyncio
    async def test_creates_run_at_start_node_and_enqueues_it(self, store, dispatcher, scheduler):
        await store.save_funnel(delay_then_whatsapp_funnel())

        runs = await dispatcher.dispatch(lead_event(), now=T0)

        assert len(runs) == 1
        run = runs[0]
        assert run.funnelId == "welcome"
        assert run.currentNodeId == "d1"
        assert run.status == RunStatus.RUNNING
        assert run.history == []
        assert run.payload == {"source": "form"}
        assert await store.get_run(run.id) == run
        assert scheduler._pending == [run.id]

    @pytest.mark.asyncio
    async def test_ignores_inactive_and_other_trigger_funnels(self, store, dispatcher):
        await store.save_funnel(delay_then_whatsapp_funnel(isActive=False))
        await store.save_funnel(vip_condition_funnel())

        assert await dispatcher.dispatch(lead_event(), now=T0) == []

    @pytest.mark.asyncio
    async def test_one_run_per_matching_funnel(self, store, dispatcher):
        await store.save_funnel(delay_then_whatsapp_funnel())
        await store.save_funnel(delay_then_whatsapp_funnel(id="welcome-2"))

        runs = await dispatcher.dispatch(lead_event(), now=T0)

        assert sorted(run.funnelId for run in runs) == ["welcome", "welcome-2"]

    @pytest.mark.asyncio
    async def test_repeated_delivery_starts_repeated_runs(self, store, dispatcher):
        await store.save_funnel(delay_then_whatsapp_funnel())

        first = await dispatcher.dispatch(lead_event(), now=T0)
        second = await dispatcher.dispatch(lead_event(), now=T0)

        assert first[0].id != second[0].id
        assert len(await store.list_runs(funnel_id="welcome")) == 2


@pytest.mark.asyncio
async def test_lead_waits_a_day_then_gets_the_welcome_template(store, dispatcher, scheduler, transport):
    await store.save_funnel(delay_then_whatsapp_funnel())
    run = (await dispatcher.dispatch(lead_event(), now=T0))[0]

    await scheduler.run_once(now=T0)
    waiting = await store.get_run(run.id)
    assert waiting.status == RunStatus.WAITING
    assert waiting.resumeAt == T0 + timedelta(hours=24)
    transport.send.assert_not_called()

    # Nothing is due before resumeAt
    assert await scheduler.run_once(now=T0 + timedelta(hours=12)) == []

    await scheduler.run_once(now=T0 + timedelta(hours=24))
    done = await store.get_run(run.id)
    assert done.status == RunStatus.COMPLETED
    transport.send.assert_awaited_once()
    assert transport.send.await_args.args[2]["templateId"] == "welcome"


@pytest.mark.asyncio
async def test_condition_reads_contact_attributes(store, run_service, contact_service, transport):
    await store.save_funnel(vip_condition_funnel())
    vip = await store.create_run(FunnelRun(funnelId="vip-post", contactId="ana", currentNodeId="c1"))
    regular = await store.create_run(FunnelRun(funnelId="vip-post", contactId="bob", currentNodeId="c1"))
    contact_service.get_attributes = AsyncMock(side_effect=lambda contact_id: {"tag": "vip" if contact_id == "ana" else "lead"})

    vip_run = await run_service.execute_run(vip.id, now=T0)
    regular_run = await run_service.execute_run(regular.id, now=T0)

    assert [entry.outcome for entry in vip_run.history] == [RunOutcome.BRANCH_TRUE, RunOutcome.SENT]
    assert vip_run.status == RunStatus.COMPLETED
    assert [entry.outcome for entry in regular_run.history] == [RunOutcome.BRANCH_FALSE]
    assert regular_run.status == RunStatus.COMPLETED
    transport.send.assert_awaited_once()
    assert transport.send.await_args.args[1] == "ana"


@pytest.mark.asyncio
async def test_three_transient_failures_fail_the_run(store, dispatcher, scheduler, transport):
    transport.send = AsyncMock(return_value=TransportResult.transient(reason="WHATSAPP service returned 503"))
    await store.save_funnel(delay_then_whatsapp_funnel(startNodeId="w1", nodes=delay_then_whatsapp_funnel().nodes[1:]))
    run = (await dispatcher.dispatch(lead_event(), now=T0))[0]

    await scheduler.run_once(now=T0)
    await scheduler.run_once(now=T0 + timedelta(seconds=60))
    retrying = await store.get_run(run.id)
    assert retrying.status == RunStatus.RUNNING
    assert retrying.attempts == 2

    await scheduler.run_once(now=T0 + timedelta(seconds=180))
    failed = await store.get_run(run.id)

    assert failed.status == RunStatus.FAILED
    assert [entry.outcome for entry in failed.history] == [RunOutcome.RETRY, RunOutcome.RETRY, RunOutcome.DISPATCH_FAILED]
    assert failed.history[-1].reason == "WHATSAPP service returned 503"
    assert transport.send.await_count == 3


@pytest.mark.asyncio
async def test_contact_attributes_down_on_every_attempt_fail_the_run(store, scheduler, contact_service, transport):
    await store.save_funnel(vip_condition_funnel())
    run = await store.create_run(FunnelRun(funnelId="vip-post", contactId="ana", currentNodeId="c1"))
    contact_service.get_attributes = AsyncMock(side_effect=RuntimeError("contact service down"))

    scheduler.enqueue(run.id)
    await scheduler.run_once(now=T0)
    await scheduler.run_once(now=T0 + timedelta(seconds=60))
    retrying = await store.get_run(run.id)
    assert retrying.status == RunStatus.RUNNING
    assert retrying.attempts == 2
    assert retrying.nextAttemptAt == T0 + timedelta(seconds=180)

    await scheduler.run_once(now=T0 + timedelta(seconds=180))
    failed = await store.get_run(run.id)

    assert failed.status == RunStatus.FAILED
    assert failed.nextAttemptAt is None
    assert [entry.outcome for entry in failed.history] == [RunOutcome.RETRY, RunOutcome.RETRY, RunOutcome.DISPATCH_FAILED]
    assert "contact service down" in failed.history[-1].reason
    assert contact_service.get_attributes.await_count == 3
    transport.send.assert_not_called()


class TestFunnelRunService:

    @pytest.mark.asyncio
    async def test_concurrent_step_is_rejected(self, store, run_service):
        await store.save_funnel(delay_then_whatsapp_funnel())
        run = await store.create_run(FunnelRun(funnelId="welcome", contactId="c", currentNodeId="d1"))
        await store.acquire_run(run.id, owner="other-worker", now=T0)

        with pytest.raises(RunLockedException):
            await run_service.execute_run(run.id, now=T0)

    @pytest.mark.asyncio
    async def test_unknown_run(self, run_service):
        with pytest.raises(RunNotFoundException):
            await run_service.execute_run("missing", now=T0)
        with pytest.raises(RunNotFoundException):
            await run_service.get_run("missing")

    @pytest.mark.asyncio
    async def test_deleted_funnel_fails_the_run(self, store, run_service):
        run = await store.create_run(FunnelRun(funnelId="gone", contactId="c", currentNodeId="d1"))

        result = await run_service.execute_run(run.id, now=T0)

        assert result.status == RunStatus.FAILED
        assert result.history[-1].outcome == RunOutcome.FUNNEL_NOT_FOUND

    @pytest.mark.asyncio
    async def test_lock_is_released_after_execution(self, store, run_service):
        await store.save_funnel(delay_then_whatsapp_funnel())
        run = await store.create_run(FunnelRun(funnelId="welcome", contactId="c", currentNodeId="d1"))

        await run_service.execute_run(run.id, now=T0)

        assert run.id not in store.run_locks

    @pytest.mark.asyncio
    async def test_unreadable_contact_attributes_schedule_a_retry(self, store, run_service, contact_service):
        await store.save_funnel(FunnelData(id="mail-then-check", startNodeId="e0", nodes=[
            EmailNode(id="e0", subject="Hi", nextNodeId="c1"),
            ConditionNode(id="c1", target="tag", operator="equals", value="vip"),
        ]))
        run = await store.create_run(FunnelRun(funnelId="mail-then-check", contactId="c", currentNodeId="e0"))
        contact_service.get_attributes = AsyncMock(side_effect=RuntimeError("contact service down"))

        result = await run_service.execute_run(run.id, now=T0)

        stored = await store.get_run(run.id)
        assert stored == result
        assert stored.status == RunStatus.RUNNING
        assert stored.currentNodeId == "c1"
        assert [entry.outcome for entry in stored.history] == [RunOutcome.SENT, RunOutcome.RETRY]
        assert "contact service down" in stored.history[-1].reason
        assert stored.attempts == 1
        assert stored.nextAttemptAt == T0 + timedelta(seconds=60)
        assert run.id not in store.run_locks

    @pytest.mark.asyncio
    async def test_cancel_run(self, store, run_service):
        await store.save_funnel(delay_then_whatsapp_funnel())
        run = await store.create_run(FunnelRun(funnelId="welcome", contactId="c", currentNodeId="d1"))
        await run_service.execute_run(run.id, now=T0)

        cancelled = await run_service.cancel_run(run.id, now=T0 + timedelta(hours=1))

        assert cancelled.status == RunStatus.FAILED
        assert cancelled.resumeAt is None
        assert cancelled.history[-1].outcome == RunOutcome.CANCELLED
        assert await store.get_due_run_ids(now=T0 + timedelta(days=2), limit=10) == []

    @pytest.mark.asyncio
    async def test_list_runs_filters(self, store, run_service):
        await store.create_run(FunnelRun(funnelId="a", contactId="c1", currentNodeId="n"))
        await store.create_run(FunnelRun(funnelId="a", contactId="c2", currentNodeId="n", status=RunStatus.COMPLETED))
        await store.create_run(FunnelRun(funnelId="b", contactId="c1", currentNodeId="n"))

        assert len(await run_service.list_runs(funnel_id="a")) == 2
        assert len(await run_service.list_runs(contact_id="c1")) == 2
        assert len(await run_service.list_runs(funnel_id="a", status=RunStatus.COMPLETED)) == 1


class TestRunScheduler:

    @pytest.mark.asyncio
    async def test_locked_run_is_skipped(self, store, dispatcher, scheduler):
        await store.save_funnel(delay_then_whatsapp_funnel())
        run = (await dispatcher.dispatch(lead_event(), now=T0))[0]
        await store.acquire_run(run.id, owner="other-worker", now=T0)

        assert await scheduler.run_once(now=T0) == []
        assert (await store.get_run(run.id)).status == RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_missing_enqueued_run_is_dropped(self, scheduler):
        scheduler.enqueue("missing")

        assert await scheduler.run_once(now=T0) == []
        assert scheduler._pending == []

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler):
        await scheduler.start()
        assert scheduler._running
        await scheduler.stop()
        assert scheduler._task is None
