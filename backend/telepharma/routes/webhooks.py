# /telepharma/routes/webhooks.py

import json
import asyncio
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from telepharma.config.settings import settings
from telepharma.models.messages import InboundEvent
from telepharma.services.cache_service import CacheKeys, cache_service
from telepharma.services.conversation_service import conversation_service
from telepharma.utils.dependencies import verify_webhook_signature
from telepharma.utils.metrics import inbound_events_counter, response_time_histogram

# WhatsApp Cloud API webhook endpoints. The POST handler only verifies,
# de-duplicates and normalizes; each message is then processed in its own
# background task so Meta gets its 200 immediately.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)

# Strong references to in-flight tasks so they are not garbage collected.
_background_tasks: set = set()


@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and settings.whatsapp_verify_token and hub_verify_token == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


def schedule(event: InboundEvent):
    task = asyncio.create_task(conversation_service.handle_event(event))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


@router.post("/whatsapp")
async def handle_whatsapp_webhook(verified_body: bytes = Depends(verify_webhook_signature)):
    """Accepts message notifications and schedules one conversation task per message."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        try:
            data = json.loads(verified_body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.warning("Webhook body is not valid JSON.")
            raise HTTPException(status_code=400, detail="Invalid payload")

        scheduled = 0
        for entry in data.get("entry", []):
            for change in entry.get("changes", []):
                if change.get("field") != "messages":
                    log.debug("Ignoring non-message change", change=change)
                    continue

                value = change.get("value", {})
                incoming_phone_id = (value.get("metadata") or {}).get("phone_number_id")
                expected_phone_id = settings.whatsapp_phone_id
                if incoming_phone_id and expected_phone_id and incoming_phone_id != expected_phone_id:
                    log.info("Ignored event for different phone ID.", incoming_id=incoming_phone_id)
                    continue

                for message in value.get("messages", []):
                    event = InboundEvent.from_whatsapp(message)
                    if event is None:
                        inbound_events_counter.labels(outcome="unsupported").inc()
                        log.info("Ignoring unsupported message", message_type=message.get("type"))
                        continue

                    if event.message_id:
                        claim_key = CacheKeys.PROCESSED_MESSAGE.format(message_id=event.message_id)
                        if not await cache_service.claim(claim_key, ttl=24 * 3600):
                            inbound_events_counter.labels(outcome="duplicate").inc()
                            log.info("Ignoring redelivered message", message_id=event.message_id)
                            continue

                    schedule(event)
                    scheduled += 1

        log.info("Webhook processing complete.", scheduled=scheduled)
        return JSONResponse({"status": "success"})
