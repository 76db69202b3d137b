# /telepharma/services/session_governor.py

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from telepharma.config import strings
from telepharma.models.contact import Contact
from telepharma.models.flow import ConversationState
from telepharma.models.messages import InboundEvent
from telepharma.services.contact_locks import ContactLocks
from telepharma.services.db_service import DatabaseService
from telepharma.utils.errors import CatalogDefect, PersistenceConflict
from telepharma.utils.metrics import flow_transitions_counter, sweep_resets_counter
from telepharma.workflows.engine import Completion, EngineResult, FlowEngine

logger = logging.getLogger(__name__)


def is_stale(state: ConversationState, now: datetime, timeout: timedelta) -> bool:
    """True when the contact is inside a flow and has been idle longer than ``timeout``."""
    return state.flow is not None and now - state.last_updated > timeout


class SessionGovernor:
    """
    Policy wrapper around the FlowEngine: expires idle sessions before any
    input is interpreted, and turns catalog defects found at runtime into a
    reset to the root menu instead of a stuck conversation.
    """

    def __init__(self, engine: FlowEngine, session_timeout: timedelta):
        self.engine = engine
        self.session_timeout = session_timeout

    def process(
        self,
        contact: Contact,
        event: InboundEvent,
        now: datetime,
        context: Optional[Dict[str, Any]] = None,
    ) -> EngineResult:
        state = contact.conversation_state
        if is_stale(state, now, self.session_timeout):
            logger.info(f"Session for {contact.phone_number} expired in {state.flow}.{state.step}")
            flow_transitions_counter.labels(kind="timeout").inc()
            return self.engine.reset_to_root(contact, now, notice=strings.SESSION_EXPIRED)

        try:
            result = self.engine.advance(contact, event, now, context)
        except CatalogDefect as e:
            return self._recover(contact, now, e)

        flow_transitions_counter.labels(kind=self._transition_kind(state.flow, result)).inc()
        return result

    def complete(
        self,
        contact: Contact,
        completion: Completion,
        now: datetime,
        messages=None,
    ) -> EngineResult:
        try:
            result = self.engine.complete(contact, completion, now, messages)
        except CatalogDefect as e:
            return self._recover(contact, now, e)
        flow_transitions_counter.labels(kind="finish").inc()
        return result

    def _recover(self, contact: Contact, now: datetime, error: CatalogDefect) -> EngineResult:
        state = contact.conversation_state
        logger.error(
            f"Catalog defect for {contact.phone_number} at {state.flow}.{state.step}: {error}",
            exc_info=True,
        )
        flow_transitions_counter.labels(kind="defect_reset").inc()
        return self.engine.reset_to_root(contact, now, notice=strings.ERROR_RETURNING_TO_MENU)

    @staticmethod
    def _transition_kind(previous_flow: Optional[str], result: EngineResult) -> str:
        if not result["applied"]:
            return "rejected"
        if result["reason"] in ("back", "abort"):
            return result["reason"]
        if result["completion"] is not None:
            return "completion_pending"
        if result["contact"].conversation_state.flow != previous_flow:
            return "switch"
        return "forward"


async def sweep_stale_sessions(
    db: DatabaseService,
    locks: ContactLocks,
    engine: FlowEngine,
    now: datetime,
    stale_after: timedelta,
    page_size: int = 100,
) -> int:
    """
    Silently returns every contact idle in a flow for longer than
    ``stale_after`` to the root menu, walking the matches page by page.
    Each reset runs under the contact's lock and re-reads the contact first,
    so a message that arrived in the meantime wins. Returns the number of
    contacts reset.
    """
    cutoff = now - stale_after
    reset = 0
    after = None
    while True:
        page = await db.find_stale_contacts(cutoff, limit=page_size, after=after)
        if not page:
            break
        for candidate in page:
            if await _reset_if_stale(db, locks, engine, candidate.phone_number, now, stale_after):
                reset += 1
        if len(page) < page_size:
            break
        after = page[-1].phone_number

    if reset:
        sweep_resets_counter.inc(reset)
        logger.info(f"Session sweep reset {reset} stale conversation(s).")
    return reset


async def _reset_if_stale(
    db: DatabaseService,
    locks: ContactLocks,
    engine: FlowEngine,
    phone_number: str,
    now: datetime,
    stale_after: timedelta,
) -> bool:
    async with locks.hold(phone_number):
        contact = await db.get_contact(phone_number)
        if contact is None or not is_stale(contact.conversation_state, now, stale_after):
            return False
        result = engine.reset_to_root(contact, now)
        try:
            await db.upsert_contact(result["contact"], contact.conversation_state.version)
        except PersistenceConflict as e:
            logger.info(f"Skipped sweeping {phone_number}: {e}")
            return False
        return True
