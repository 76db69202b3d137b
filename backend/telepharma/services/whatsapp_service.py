# /telepharma/services/whatsapp_service.py

import httpx
import logging
import re
import tenacity
from typing import Optional

from telepharma.config.settings import settings
from telepharma.models.messages import OutboundMessage
from telepharma.utils.alerting import alerting_service
from telepharma.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from telepharma.utils.errors import DeliveryFailure
from telepharma.utils.metrics import outbound_messages_counter

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 4096
MAX_INTERACTIVE_BODY_LENGTH = 1024
MAX_BUTTON_TITLE_LENGTH = 20


class WhatsAppAPIError(Exception):
    """The Cloud API answered with a non-success status."""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{status_code} - {detail}")


SEND_ERRORS = (WhatsAppAPIError, httpx.HTTPError, CircuitOpenError)


def plain_text_rendering(message: OutboundMessage) -> str:
    """The message body with its quick replies listed, for channels without buttons."""
    if not message.quick_replies:
        return message.body
    options = "\n".join(f"- {reply}" for reply in message.quick_replies)
    return f"{message.body}\n\nReply with one of:\n{options}"


class WhatsAppService:
    def __init__(self, access_token: str, phone_id: str, base_url: str = "https://graph.facebook.com/v18.0"):
        self.access_token = access_token
        self.phone_id = phone_id
        self.base_url = base_url
        self.http_client = httpx.AsyncClient(timeout=15.0)
        self.circuit_breaker = CircuitBreaker("whatsapp")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send_whatsapp_request(self, payload: dict) -> Optional[str]:
        """Posts one message payload and returns its wamid. Raises on any failure."""
        url = f"{self.base_url}/{self.phone_id}/messages"
        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
        response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)

        if response.status_code == 200:
            message_id = response.json().get("messages", [{}])[0].get("id")
            logger.info(f"WhatsApp message sent to {payload.get('to')}, wamid: {message_id}")
            return message_id

        try:
            error_message = (response.json().get("error") or {}).get("message", "Unknown error")
        except ValueError:
            error_message = response.text
        if response.status_code == 401:
            await alerting_service.send_critical_alert("WhatsApp authentication failed", {"error": "Invalid access token"})
        raise WhatsAppAPIError(response.status_code, error_message)

    async def send(self, message: OutboundMessage) -> Optional[str]:
        """
        Delivers one outbound message: reply buttons when it carries quick
        replies, plain text otherwise. If that fails, the message is sent once
        more as plain text with the options written out. If the fallback also
        fails, an alert is raised and DeliveryFailure propagates.
        """
        to_phone = self._clean_phone(message.recipient)
        try:
            message_id = await self.send_whatsapp_request(self._payload(to_phone, message))
            outbound_messages_counter.labels(status="sent").inc()
            return message_id
        except SEND_ERRORS as e:
            logger.warning(f"whatsapp_send_failed to {to_phone}: {e}; retrying as plain text")

        try:
            message_id = await self.send_whatsapp_request(self._text_payload(to_phone, plain_text_rendering(message)))
            outbound_messages_counter.labels(status="fallback").inc()
            return message_id
        except SEND_ERRORS as e:
            outbound_messages_counter.labels(status="failed").inc()
            logger.error(f"whatsapp_fallback_failed to {to_phone}: {e}")
            await alerting_service.send_critical_alert(
                "WhatsApp delivery failed", {"phone": to_phone, "error": str(e)}
            )
            raise DeliveryFailure(message.recipient, str(e)) from e

    async def get_media_url(self, media_id: str) -> Optional[str]:
        """Fetches a temporary URL for a media object from WhatsApp."""
        try:
            url = f"{self.base_url}/{media_id}"
            headers = {"Authorization": f"Bearer {self.access_token}"}
            resp = await self.http_client.get(url, headers=headers)
            resp.raise_for_status()
            return resp.json().get("url")
        except httpx.HTTPError as e:
            logger.error(f"get_media_url_failed for {media_id}: {e}")
            return None

    async def close(self):
        await self.http_client.aclose()

    def _payload(self, to_phone: str, message: OutboundMessage) -> dict:
        if not message.quick_replies:
            return self._text_payload(to_phone, message.body)
        buttons = [
            {"type": "reply", "reply": {"id": f"option_{index}", "title": title[:MAX_BUTTON_TITLE_LENGTH]}}
            for index, title in enumerate(message.quick_replies, start=1)
        ]
        return {
            "messaging_product": "whatsapp", "recipient_type": "individual", "to": to_phone, "type": "interactive",
            "interactive": {
                "type": "button",
                "body": {"text": message.body[:MAX_INTERACTIVE_BODY_LENGTH]},
                "action": {"buttons": buttons},
            },
        }

    @staticmethod
    def _text_payload(to_phone: str, body: str) -> dict:
        return {
            "messaging_product": "whatsapp", "recipient_type": "individual", "to": to_phone,
            "type": "text", "text": {"body": body[:MAX_TEXT_LENGTH]},
        }

    @staticmethod
    def _clean_phone(phone: str) -> str:
        clean_phone = re.sub(r"[^\d+]", "", phone)
        if not clean_phone.startswith("+"):
            clean_phone = "+" + clean_phone.lstrip("+")
        return clean_phone


# Globally accessible instance
whatsapp_service = WhatsAppService(
    settings.whatsapp_access_token,
    settings.whatsapp_phone_id,
    settings.whatsapp_api_base_url,
)
