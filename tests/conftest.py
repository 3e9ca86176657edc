import os
import sys
from datetime import datetime
from unittest.mock import Mock, AsyncMock

import pytest

# Ensure src/ is on sys.path so imports like `from services...` work as they do in main.py
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from database.funnel_store import InMemoryFunnelStore
from models.funnel_data import FunnelData, FunnelTrigger, EmailNode, WhatsAppNode, DelayNode, ConditionNode
from models.transport_data import TransportResult
from services.funnel_validation_service import FunnelValidationService
from services.funnel_interpreter_service import FunnelInterpreterService
from services.funnel_run_service import FunnelRunService
from services.run_scheduler_service import RunSchedulerService
from services.trigger_dispatcher_service import TriggerDispatcherService


T0 = datetime(2026, 3, 2, 9, 0, 0)


@pytest.fixture
def log_util():
    return Mock()


@pytest.fixture
def store(log_util):
    return InMemoryFunnelStore(log_util=log_util)


@pytest.fixture
def transport():
    mock_transport = Mock()
    mock_transport.send = AsyncMock(return_value=TransportResult.ok())
    return mock_transport


@pytest.fixture
def contact_service():
    mock_contacts = Mock()
    mock_contacts.get_attributes = AsyncMock(return_value={})
    return mock_contacts


@pytest.fixture
def validator(log_util):
    return FunnelValidationService(log_util=log_util)


@pytest.fixture
def interpreter(log_util, transport):
    return FunnelInterpreterService(log_util=log_util, message_transport=transport, max_attempts=3, backoff_seconds=60)


@pytest.fixture
def run_service(log_util, store, interpreter, contact_service):
    return FunnelRunService(log_util=log_util, funnel_store=store, interpreter=interpreter, contact_service=contact_service)


@pytest.fixture
def scheduler(log_util, store, run_service):
    return RunSchedulerService(log_util=log_util, funnel_store=store, funnel_run_service=run_service, check_interval_seconds=1)


@pytest.fixture
def dispatcher(log_util, store, scheduler):
    return TriggerDispatcherService(log_util=log_util, funnel_store=store, run_scheduler=scheduler)


def delay_then_whatsapp_funnel(**overrides) -> FunnelData:
    """lead_subscribed: wait 24h, then send the welcome template."""
    fields = dict(
        id="welcome",
        name="Welcome",
        trigger=FunnelTrigger.LEAD_SUBSCRIBED,
        isActive=True,
        startNodeId="d1",
        nodes=[
            DelayNode(id="d1", hours=24, nextNodeId="w1"),
            WhatsAppNode(id="w1", templateId="welcome", templateTitle="Welcome", sendTime="09:00"),
        ],
    )
    fields.update(overrides)
    return FunnelData(**fields)


def vip_condition_funnel(**overrides) -> FunnelData:
    """new_post_published: email VIP contacts only."""
    fields = dict(
        id="vip-post",
        name="VIP post",
        trigger=FunnelTrigger.NEW_POST_PUBLISHED,
        isActive=True,
        startNodeId="c1",
        nodes=[
            ConditionNode(id="c1", target="tag", operator="equals", value="vip", trueNodeId="e1", falseNodeId=None),
            EmailNode(id="e1", subject="Early access", content="Read it first"),
        ],
    )
    fields.update(overrides)
    return FunnelData(**fields)

