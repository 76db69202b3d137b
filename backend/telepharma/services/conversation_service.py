# /telepharma/services/conversation_service.py

import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
import tenacity
from pymongo.errors import PyMongoError

from telepharma.config import strings
from telepharma.config.settings import settings
from telepharma.models.contact import Contact
from telepharma.models.flow import ConversationState, utc_now
from telepharma.models.messages import InboundEvent, OutboundMessage
from telepharma.models.order import DeliveryMethod, OrderType, ServiceRequest
from telepharma.services.contact_locks import ContactLocks, contact_locks
from telepharma.services.db_service import DatabaseService, db_service
from telepharma.services.order_finalizer import OrderFinalizer
from telepharma.services.order_history import OrderHistory, order_history
from telepharma.services.session_governor import SessionGovernor
from telepharma.services.whatsapp_service import WhatsAppService, whatsapp_service
from telepharma.utils.errors import CatalogDefect, DeliveryFailure, PersistenceConflict
from telepharma.utils.metrics import (
    event_processing_histogram,
    inbound_events_counter,
    service_requests_counter,
    validation_rejections_counter,
)
from telepharma.workflows.definitions import ORDER_FLOW, Option, TerminalAction
from telepharma.workflows.engine import Completion, EngineResult, FlowEngine
from telepharma.workflows.fields import EMPTY_INPUT, INVALID_CHOICE, INVALID_DATE, RESERVED_TOKEN, UNSUPPORTED_INPUT

log = structlog.get_logger(__name__)

REJECTION_CODES = frozenset({EMPTY_INPUT, INVALID_DATE, INVALID_CHOICE, RESERVED_TOKEN, UNSUPPORTED_INPUT})

# Actions whose side effect must not be repeated by a retry.
EFFECTFUL_ACTIONS = frozenset({TerminalAction.FINALIZE_ORDER, TerminalAction.SUBMIT_SERVICE_REQUEST})

COMPLETION_FAILURE_MESSAGES = {
    TerminalAction.FINALIZE_ORDER: strings.ORDER_FAILED,
    TerminalAction.LOOKUP_ORDER_STATUS: strings.LOOKUP_FAILED,
    TerminalAction.SUBMIT_SERVICE_REQUEST: strings.ERROR_GENERAL,
}


class ConversationService:
    """
    Runs one inbound event end to end:
    lock contact -> load or create -> governor/engine -> terminal action ->
    compare-and-swap save -> send messages in order.
    """

    def __init__(
        self,
        db: DatabaseService,
        gateway: WhatsAppService,
        finalizer: OrderFinalizer,
        history: OrderHistory,
        governor: SessionGovernor,
        locks: ContactLocks,
        max_attempts: int = 3,
    ):
        self.db = db
        self.gateway = gateway
        self.finalizer = finalizer
        self.history = history
        self.governor = governor
        self.locks = locks
        self.max_attempts = max_attempts

    @property
    def engine(self) -> FlowEngine:
        return self.governor.engine

    async def handle_event(self, event: InboundEvent):
        phone = event.contact_identity
        started = time.perf_counter()
        outcome = "processed"

        async with self.locks.hold(phone):
            try:
                event = await self.resolve_attachment(event)
                messages = await self._process_with_retry(event)
            except Exception:
                # The conversation must stay responsive whatever went wrong.
                outcome = "error"
                log.exception("conversation_event_failed", phone=phone, message_id=event.message_id)
                messages = [OutboundMessage(recipient=phone, body=strings.ERROR_GENERAL)]
            await self._deliver(messages)

        inbound_events_counter.labels(outcome=outcome).inc()
        event_processing_histogram.observe(time.perf_counter() - started)

    async def resolve_attachment(self, event: InboundEvent) -> InboundEvent:
        """Swaps a media id placeholder for the temporary download URL when the API provides one."""
        attachment = event.attachment
        if attachment is None or not attachment.media_id or not attachment.url.startswith("whatsapp-media:"):
            return event
        url = await self.gateway.get_media_url(attachment.media_id)
        if not url:
            return event
        return event.model_copy(update={"attachment": attachment.model_copy(update={"url": url})})

    async def _process_with_retry(self, event: InboundEvent) -> List[OutboundMessage]:
        async for attempt in tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception_type(PersistenceConflict),
            stop=tenacity.stop_after_attempt(self.max_attempts),
            wait=tenacity.wait_random(min=0, max=0.05),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    log.info("conversation_state_conflict_retry", phone=event.contact_identity,
                             attempt=attempt.retry_state.attempt_number)
                return await self._process_once(event)

    async def _process_once(self, event: InboundEvent) -> List[OutboundMessage]:
        now = utc_now()
        phone = event.contact_identity

        contact = await self.db.get_contact(phone)
        expected_version: Optional[int] = None
        if contact is None:
            contact = Contact(
                phone_number=phone,
                created_at=now,
                last_interaction=now,
                conversation_state=ConversationState(last_updated=now),
            )
        else:
            expected_version = contact.conversation_state.version

        context = await self._context_for(contact)
        result = self.governor.process(contact, event, now, context)
        if not result["applied"] and result["reason"] in REJECTION_CODES:
            validation_rejections_counter.labels(error_code=result["reason"]).inc()

        side_effect = False
        if result["completion"] is not None:
            checkout_key = f"{phone}:{expected_version}" if expected_version is not None else None
            result, side_effect = await self._run_completion(contact, result, now, context, checkout_key)

        updated = result["contact"]
        updated.last_interaction = now
        try:
            await self.db.upsert_contact(updated, expected_version)
        except (PersistenceConflict, PyMongoError) as e:
            if not side_effect:
                raise
            # The record is committed; resending the same answer finds it by its checkout key.
            log.error("conversation_state_save_failed_after_side_effect", phone=phone, error=str(e))

        state = updated.conversation_state
        log.info("conversation_event_processed", phone=phone, flow=state.flow, step=state.step,
                 applied=result["applied"], reason=result["reason"])
        return result["messages"]

    async def _context_for(self, contact: Contact) -> Dict[str, Any]:
        """Per-contact data the catalog refers to through ``options_from``."""
        if contact.conversation_state.flow != ORDER_FLOW:
            return {}
        orders = await self.history.recent_orders(contact.phone_number)
        return {
            "refill_options": [
                Option(
                    token=strings.REFILL_OPTION.format(
                        order_number=order.order_number,
                        medication=order.medication_summary or strings.UNSPECIFIED_MEDICATION,
                    ),
                    value=order.order_number,
                )
                for order in orders
            ]
        }

    async def _run_completion(
        self,
        original: Contact,
        result: EngineResult,
        now: datetime,
        context: Dict[str, Any],
        checkout_key: Optional[str] = None,
    ) -> Tuple[EngineResult, bool]:
        completion: Completion = result["completion"]
        advanced = result["contact"]
        try:
            if completion.action == TerminalAction.FINALIZE_ORDER:
                messages = await self._finalize_order(advanced, completion, now, checkout_key)
            elif completion.action == TerminalAction.LOOKUP_ORDER_STATUS:
                messages = await self._lookup_order(advanced, completion)
            elif completion.action == TerminalAction.SUBMIT_SERVICE_REQUEST:
                messages = await self._submit_service_request(advanced, completion, now, checkout_key)
            else:
                raise CatalogDefect(f"no handler for terminal action '{completion.action}'")
        except CatalogDefect as e:
            log.error("terminal_action_defect", phone=original.phone_number, flow=completion.flow, error=str(e))
            return self.engine.reset_to_root(original, now, notice=strings.ERROR_RETURNING_TO_MENU), False
        except (PyMongoError, PersistenceConflict) as e:
            log.error("terminal_action_failed", phone=original.phone_number, action=completion.action.value,
                      error=str(e))
            return self._keep_position(original, now, context, COMPLETION_FAILURE_MESSAGES[completion.action]), False

        return self.governor.complete(advanced, completion, now, messages), completion.action in EFFECTFUL_ACTIONS

    def _keep_position(self, contact: Contact, now: datetime, context: Dict[str, Any], notice: str) -> EngineResult:
        """Leaves the contact on its pre-finalization step so the last answer can simply be resent."""
        kept = contact.model_copy(deep=True)
        kept.conversation_state.last_updated = now
        state = kept.conversation_state
        messages = [OutboundMessage(recipient=kept.phone_number, body=notice)]
        messages.extend(self.engine.render_prompt(kept, state.flow, state.step, context))
        return {"applied": False, "reason": "completion_failed", "contact": kept, "messages": messages,
                "completion": None}

    async def _finalize_order(
        self, contact: Contact, completion: Completion, now: datetime, checkout_key: Optional[str]
    ) -> List[str]:
        values = completion.values
        refill_source = None
        if values.get("refill_of"):
            refill_source = await self.history.find(contact.phone_number, values["refill_of"])

        order = await self.finalizer.finalize(contact.phone_number, values, now, refill_source, checkout_key)

        if order.order_type == OrderType.NEW_PRESCRIPTION.value:
            template = strings.ORDER_CONFIRMED_PRESCRIPTION
        elif order.delivery_method == DeliveryMethod.PICKUP.value:
            template = strings.ORDER_CONFIRMED_PICKUP
        else:
            template = strings.ORDER_CONFIRMED_DELIVERY
        return [template.format(first_name=contact.first_name or "", order_number=order.order_number)]

    async def _lookup_order(self, contact: Contact, completion: Completion) -> List[str]:
        order_number = completion.values["order_number"].strip()
        orders = await self.db.find_orders(contact.phone_number, {"order_number": order_number}, limit=1)
        if not orders:
            return [strings.ORDER_NOT_FOUND]
        return [strings.ORDER_STATUS.format(order_number=order_number, status=orders[0].status)]

    async def _submit_service_request(
        self, contact: Contact, completion: Completion, now: datetime, checkout_key: Optional[str]
    ) -> None:
        if checkout_key and await self.db.find_service_request(contact.phone_number, checkout_key):
            log.info("service_request_already_recorded", phone=contact.phone_number, key=checkout_key)
            return None

        request = ServiceRequest(
            contact_phone=contact.phone_number,
            service_type=completion.flow,
            notes=completion.values["notes"],
            created_at=now,
            idempotency_key=checkout_key,
        )
        await self.db.create_service_request(request)
        service_requests_counter.labels(service_type=request.service_type).inc()
        log.info("service_request_created", phone=contact.phone_number, service_type=request.service_type)
        # None keeps the flow's own acknowledgement message.
        return None

    async def _deliver(self, messages: List[OutboundMessage]):
        for message in messages:
            try:
                await self.gateway.send(message)
            except DeliveryFailure as e:
                # Remaining messages are dropped; the state is already saved.
                log.error("outbound_delivery_failed", phone=e.recipient, cause=e.cause)
                break


flow_engine = FlowEngine.from_settings(settings)
session_governor = SessionGovernor(flow_engine, timedelta(minutes=settings.session_timeout_minutes))
order_finalizer = OrderFinalizer(db_service, order_history)

# Globally accessible instance
conversation_service = ConversationService(
    db_service, whatsapp_service, order_finalizer, order_history, session_governor, contact_locks
)
