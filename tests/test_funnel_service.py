# file: tests/test_funnel_service.py
import pytest

from exceptions.funnel_exception import FunnelLockedException, FunnelNotFoundException, FunnelValidationException
from models.funnel_data import FunnelTrigger
from models.funnel_document import funnel_to_document
from models.validation_data import ViolationKind
from services.funnel_service import FunnelService

from conftest import delay_then_whatsapp_funnel, vip_condition_funnel


@pytest.fixture
def funnel_service(log_util, store, validator):
    return FunnelService(log_util=log_util, funnel_store=store, validation_service=validator)


@pytest.mark.asyncio
async def test_save_valid_active_funnel(funnel_service, store):
    saved, validation = await funnel_service.save_funnel(funnel_to_document(delay_then_whatsapp_funnel()), editor_id="ana")

    assert validation.is_ok
    assert saved.isActive is True
    assert saved.created_at is not None
    assert saved.created_at == saved.updated_at
    assert (await store.get_funnel("welcome")).isActive is True
    assert store.funnel_locks == {}


@pytest.mark.asyncio
async def test_draft_is_saved_with_its_violations(funnel_service, store):
    document = funnel_to_document(vip_condition_funnel(isActive=False))

    saved, validation = await funnel_service.save_funnel(document, editor_id="ana")

    assert [violation.kind for violation in validation.violations] == [ViolationKind.INCOMPLETE_BRANCH]
    assert await store.get_funnel(saved.id) is not None


@pytest.mark.asyncio
async def test_invalid_funnel_cannot_be_saved_active(funnel_service, store):
    with pytest.raises(FunnelValidationException) as exc_info:
        await funnel_service.save_funnel(funnel_to_document(vip_condition_funnel()), editor_id="ana")

    assert exc_info.value.status_code == 400
    assert exc_info.value.violations[0].kind == ViolationKind.INCOMPLETE_BRANCH
    assert await store.get_funnel("vip-post") is None
    assert store.funnel_locks == {}


@pytest.mark.asyncio
async def test_resave_keeps_created_at(funnel_service):
    first, _ = await funnel_service.save_funnel(funnel_to_document(delay_then_whatsapp_funnel()), editor_id="ana")
    document = funnel_to_document(first)
    document["name"] = "Welcome v2"

    second, _ = await funnel_service.save_funnel(document, editor_id="ana")

    assert second.name == "Welcome v2"
    assert second.created_at == first.created_at


@pytest.mark.asyncio
async def test_blank_start_node_is_inferred(funnel_service):
    document = funnel_to_document(delay_then_whatsapp_funnel(isActive=False))
    document["startNodeId"] = ""
    document["nodes"].reverse()

    saved, validation = await funnel_service.save_funnel(document, editor_id="ana")

    assert saved.startNodeId == "d1"
    assert validation.is_ok


def test_malformed_document_is_a_validation_error(funnel_service):
    with pytest.raises(FunnelValidationException):
        funnel_service.validate_funnel({"nodes": [{"id": "x", "type": "SMS"}]})


@pytest.mark.asyncio
async def test_save_is_rejected_while_another_editor_holds_the_lock(funnel_service, store):
    await funnel_service.save_funnel(funnel_to_document(delay_then_whatsapp_funnel()), editor_id="ana")
    await funnel_service.lock_funnel("welcome", editor_id="ana")

    with pytest.raises(FunnelLockedException):
        await funnel_service.save_funnel(funnel_to_document(delay_then_whatsapp_funnel()), editor_id="bob")


@pytest.mark.asyncio
async def test_save_inside_a_session_keeps_the_lock(funnel_service, store):
    await funnel_service.save_funnel(funnel_to_document(delay_then_whatsapp_funnel()), editor_id="ana")
    await funnel_service.lock_funnel("welcome", editor_id="ana")

    await funnel_service.save_funnel(funnel_to_document(delay_then_whatsapp_funnel(name="Edited")), editor_id="ana")

    assert store.funnel_locks["welcome"][0] == "ana"
    released = await funnel_service.unlock_funnel("welcome", editor_id="ana")
    assert released["released"] is True
    assert store.funnel_locks == {}


@pytest.mark.asyncio
async def test_lock_unknown_funnel(funnel_service):
    with pytest.raises(FunnelNotFoundException):
        await funnel_service.lock_funnel("missing", editor_id="ana")


@pytest.mark.asyncio
async def test_activation_revalidates(funnel_service, store):
    await store.save_funnel(vip_condition_funnel(isActive=False))

    with pytest.raises(FunnelValidationException):
        await funnel_service.update_funnel_status("vip-post", is_active=True, editor_id="ana")
    assert (await store.get_funnel("vip-post")).isActive is False

    deactivated = await funnel_service.update_funnel_status("vip-post", is_active=False, editor_id="ana")
    assert deactivated.isActive is False


@pytest.mark.asyncio
async def test_status_of_unknown_funnel(funnel_service, store):
    with pytest.raises(FunnelNotFoundException):
        await funnel_service.update_funnel_status("missing", is_active=True, editor_id="ana")
    assert store.funnel_locks == {}


@pytest.mark.asyncio
async def test_delete_funnel(funnel_service, store):
    await store.save_funnel(delay_then_whatsapp_funnel())

    assert await funnel_service.delete_funnel("welcome", editor_id="ana") is True
    with pytest.raises(FunnelNotFoundException):
        await funnel_service.get_funnel_detail("welcome")
    with pytest.raises(FunnelNotFoundException):
        await funnel_service.delete_funnel("welcome", editor_id="ana")


@pytest.mark.asyncio
async def test_default_post_update_funnel_is_created_once(funnel_service):
    first = await funnel_service.create_default_post_update_funnel(editor_id="setup")
    second = await funnel_service.create_default_post_update_funnel(editor_id="setup")

    assert first.id == second.id
    assert first.trigger == FunnelTrigger.NEW_POST_PUBLISHED
    assert first.isActive is True
    assert [node.type for node in first.nodes] == ["EMAIL"]
    assert len(await funnel_service.list_funnels()) == 1
