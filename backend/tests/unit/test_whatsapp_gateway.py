# backend/tests/unit/test_whatsapp_gateway.py
import pytest
from unittest.mock import AsyncMock, MagicMock

from telepharma.config.settings import settings
from telepharma.models.messages import OutboundMessage
from telepharma.services.whatsapp_service import WhatsAppService, plain_text_rendering
from telepharma.utils.errors import DeliveryFailure


def ok_response(wamid="wamid_123"):
    return MagicMock(status_code=200, json=lambda: {"messages": [{"id": wamid}]})


def error_response(status_code=400, message="Invalid parameter"):
    return MagicMock(status_code=status_code, json=lambda: {"error": {"message": message}})


@pytest.fixture
def service():
    return WhatsAppService(settings.whatsapp_access_token, settings.whatsapp_phone_id)


@pytest.fixture
def alert(mocker):
    return mocker.patch("telepharma.services.whatsapp_service.alerting_service.send_critical_alert",
                        new_callable=AsyncMock)


@pytest.mark.asyncio
async def test_quick_replies_are_sent_as_buttons(service, mocker):
    api_call = mocker.patch.object(WhatsAppService, "resilient_api_call", AsyncMock(return_value=ok_response()))

    message = OutboundMessage(recipient="+26771234567", body="Main Menu:",
                              quick_replies=["Place an Order", "View Order Status", "More"])
    wamid = await service.send(message)

    assert wamid == "wamid_123"
    payload = api_call.call_args.kwargs["json"]
    assert payload["type"] == "interactive"
    assert [b["reply"]["title"] for b in payload["interactive"]["action"]["buttons"]] == message.quick_replies


@pytest.mark.asyncio
async def test_plain_message_is_sent_as_text(service, mocker):
    api_call = mocker.patch.object(WhatsAppService, "resilient_api_call", AsyncMock(return_value=ok_response()))

    await service.send(OutboundMessage(recipient="26771234567", body="Hello"))

    payload = api_call.call_args.kwargs["json"]
    assert payload["type"] == "text"
    assert payload["text"]["body"] == "Hello"
    assert payload["to"] == "+26771234567"


@pytest.mark.asyncio
async def test_rejected_buttons_fall_back_to_plain_text(service, mocker, alert):
    api_call = mocker.patch.object(
        WhatsAppService, "resilient_api_call", AsyncMock(side_effect=[error_response(), ok_response("wamid_fb")])
    )
    message = OutboundMessage(recipient="+26771234567", body="Where to?", quick_replies=["Work", "Home"])

    wamid = await service.send(message)

    assert wamid == "wamid_fb"
    fallback = api_call.call_args_list[1].kwargs["json"]
    assert fallback["type"] == "text"
    assert fallback["text"]["body"] == plain_text_rendering(message)
    assert "- Work\n- Home" in fallback["text"]["body"]
    alert.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_fallback_raises_delivery_failure(service, mocker, alert):
    mocker.patch.object(WhatsAppService, "resilient_api_call",
                        AsyncMock(side_effect=[error_response(500), error_response(500)]))

    with pytest.raises(DeliveryFailure) as exc_info:
        await service.send(OutboundMessage(recipient="+26771234567", body="Hello"))

    assert exc_info.value.recipient == "+26771234567"
    alert.assert_awaited_once()


@pytest.mark.asyncio
async def test_unauthorized_token_raises_an_alert(service, mocker, alert):
    mocker.patch.object(WhatsAppService, "resilient_api_call",
                        AsyncMock(side_effect=[error_response(401, "bad token"), error_response(401, "bad token")]))

    with pytest.raises(DeliveryFailure):
        await service.send(OutboundMessage(recipient="+26771234567", body="Hello"))

    messages = [c.args[0] for c in alert.await_args_list]
    assert "WhatsApp authentication failed" in messages
    assert "WhatsApp delivery failed" in messages


def test_plain_text_rendering_without_options():
    assert plain_text_rendering(OutboundMessage(recipient="+1", body="Hi")) == "Hi"
