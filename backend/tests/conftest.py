# backend/tests/conftest.py
import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError
from unittest.mock import AsyncMock, MagicMock

# Load environment variables FIRST, before any app imports, so the settings
# object and the module-level services see the test configuration.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "..", ".env.test"), override=True)

from telepharma.models.contact import Contact  # noqa: E402
from telepharma.models.flow import ConversationState, utc_now  # noqa: E402
from telepharma.models.messages import Attachment, InboundEvent, OutboundMessage  # noqa: E402
from telepharma.models.order import Order, ServiceRequest  # noqa: E402
from telepharma.services.cache_service import CacheService  # noqa: E402
from telepharma.services.contact_locks import ContactLocks  # noqa: E402
from telepharma.services.conversation_service import ConversationService  # noqa: E402
from telepharma.services.order_finalizer import OrderFinalizer  # noqa: E402
from telepharma.services.order_history import OrderHistory  # noqa: E402
from telepharma.services.session_governor import SessionGovernor  # noqa: E402
from telepharma.utils.errors import DeliveryFailure, PersistenceConflict  # noqa: E402
from telepharma.workflows.definitions import Branch, FieldType, Flow, Option, ROOT_FLOW, Step, SwitchTo  # noqa: E402
from telepharma.workflows.engine import FlowEngine  # noqa: E402

PHONE = "+26771234567"
NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class InMemoryRepository:
    """Stands in for DatabaseService with the same version compare-and-swap rules."""

    def __init__(self):
        self.contacts: Dict[str, Contact] = {}
        self.orders: List[Order] = []
        self.service_requests: List[ServiceRequest] = []
        self.pending_conflicts = 0
        self.fail_order_writes = False
        self.failing_contact_writes = 0
        self.upserts = 0

    def save(self, contact: Contact) -> Contact:
        self.contacts[contact.phone_number] = contact.model_copy(deep=True)
        return contact

    def stored(self, phone: str = PHONE) -> Optional[Contact]:
        return self.contacts.get(phone)

    async def get_contact(self, phone_number: str) -> Optional[Contact]:
        contact = self.contacts.get(phone_number)
        return contact.model_copy(deep=True) if contact else None

    async def upsert_contact(self, contact: Contact, expected_version: Optional[int]) -> Contact:
        self.upserts += 1
        if self.failing_contact_writes:
            self.failing_contact_writes -= 1
            raise PyMongoError("contact write failed")
        if self.pending_conflicts:
            self.pending_conflicts -= 1
            raise PersistenceConflict(PersistenceConflict.VERSION_MISMATCH, contact.phone_number)

        current = self.contacts.get(contact.phone_number)
        if expected_version is None:
            if current is not None:
                raise PersistenceConflict(PersistenceConflict.DUPLICATE_CONTACT, contact.phone_number)
            new_version = 1
        else:
            if current is None or current.conversation_state.version != expected_version:
                raise PersistenceConflict(PersistenceConflict.VERSION_MISMATCH, contact.phone_number)
            new_version = expected_version + 1

        contact.conversation_state.version = new_version
        self.contacts[contact.phone_number] = contact.model_copy(deep=True)
        return contact

    async def find_stale_contacts(self, cutoff: datetime, limit: int = 100, after: Optional[str] = None) -> List[Contact]:
        stale = sorted(
            (
                c.model_copy(deep=True) for c in self.contacts.values()
                if c.conversation_state.flow is not None and c.conversation_state.last_updated < cutoff
                and (after is None or c.phone_number > after)
            ),
            key=lambda c: c.phone_number,
        )
        return stale[:limit]

    async def create_order(self, order: Order) -> Order:
        if self.fail_order_writes:
            raise PyMongoError("write failed")
        if any(o.order_number == order.order_number for o in self.orders):
            raise PersistenceConflict(PersistenceConflict.DUPLICATE_ORDER_NUMBER, order.order_number)
        self.orders.append(order.model_copy(deep=True))
        return order

    async def find_orders(self, contact_phone: str, filters: Optional[dict] = None, limit: int = 5) -> List[Order]:
        filters = filters or {}
        matches = [
            o for o in self.orders
            if o.contact_phone == contact_phone and all(getattr(o, k) == v for k, v in filters.items())
        ]
        matches.sort(key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in matches[:limit]]

    async def create_service_request(self, request: ServiceRequest) -> ServiceRequest:
        self.service_requests.append(request)
        return request

    async def find_service_request(self, contact_phone: str, idempotency_key: str) -> Optional[ServiceRequest]:
        for request in self.service_requests:
            if request.contact_phone == contact_phone and request.idempotency_key == idempotency_key:
                return request
        return None


class RecordingGateway:
    """Collects outbound messages; fails every send from attempt ``fail_from`` on."""

    def __init__(self, fail_from: Optional[int] = None, media_delay: float = 0):
        self.sent: List[OutboundMessage] = []
        self.attempts = 0
        self.fail_from = fail_from
        self.media_delay = media_delay

    async def get_media_url(self, media_id: str) -> Optional[str]:
        await asyncio.sleep(self.media_delay)
        return f"https://cdn.example.com/{media_id}.jpg"

    async def send(self, message: OutboundMessage):
        self.attempts += 1
        if self.fail_from is not None and self.attempts >= self.fail_from:
            raise DeliveryFailure(message.recipient, "channel down")
        self.sent.append(message)
        return f"wamid.{self.attempts}"

    @property
    def bodies(self) -> List[str]:
        return [m.body for m in self.sent]


def make_contact(
    registered: bool = True,
    flow: Optional[str] = None,
    step: Optional[str] = None,
    scratch: Optional[dict] = None,
    last_updated: datetime = NOW,
    phone: str = PHONE,
    version: int = 1,
) -> Contact:
    profile = {}
    if registered:
        profile = {
            "first_name": "Kabo",
            "surname": "Molefe",
            "date_of_birth": datetime(1990, 4, 15, tzinfo=timezone.utc),
            "gender": "MALE",
            "medical_aid_provider": "BOMAID",
            "medical_aid_number": "BM-1001",
            "registration_complete": True,
        }
    return Contact(
        phone_number=phone,
        conversation_state=ConversationState(
            flow=flow, step=step, scratch=scratch or {}, version=version, last_updated=last_updated
        ),
        **profile,
    )


def text(body: str, phone: str = PHONE) -> InboundEvent:
    return InboundEvent(contact_identity=phone, text=body)


def image(url: str = "https://cdn.example.com/rx.jpg", phone: str = PHONE) -> InboundEvent:
    return InboundEvent(contact_identity=phone, attachment=Attachment(url=url, content_type="image/jpeg"))


def looping_catalog():
    """A catalog whose two automatic steps feed each other forever."""
    menu = Step(
        id="MENU", prompt="Menu", field_type=FieldType.CHOICE,
        options=(Option("Loop", "LOOP"),), next=Branch(on=None, cases={"LOOP": SwitchTo("LOOP")}),
    )
    return {
        ROOT_FLOW: Flow(id=ROOT_FLOW, entry="MENU", steps={"MENU": menu}),
        "LOOP": Flow(id="LOOP", entry="ASK", steps={
            "ASK": Step(id="ASK", prompt="Say something", field="said", next="PING"),
            "PING": Step(id="PING", prompt="ping", field_type=FieldType.AUTO, next="PONG"),
            "PONG": Step(id="PONG", prompt="pong", field_type=FieldType.AUTO, next="PING"),
        }),
    }


@pytest.fixture
def engine():
    return FlowEngine()


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def conversation(repo, gateway, engine):
    """A ConversationService wired to in-memory collaborators and a cache without Redis."""
    history = OrderHistory(repo, CacheService(None), limit=5, ttl_seconds=300)
    governor = SessionGovernor(engine, timedelta(minutes=30))
    return ConversationService(
        repo, gateway, OrderFinalizer(repo, history), history, governor, ContactLocks(), max_attempts=3
    )


@pytest.fixture
def fresh_contact():
    """A registered contact at the root whose state was touched just now."""
    return make_contact(last_updated=utc_now())


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    Provides a TestClient for API integration tests.
    Startup still validates the flow catalog; database indexes, the sweep
    scheduler and client shutdown are mocked out.
    """
    from telepharma.main import app

    mocker.patch("telepharma.utils.lifecycle.db_service.create_indexes", new_callable=AsyncMock)
    mocker.patch("telepharma.utils.lifecycle.db_service.client", MagicMock())
    mocker.patch("telepharma.utils.lifecycle.session_sweeper.start")
    mocker.patch("telepharma.utils.lifecycle.session_sweeper.stop")
    mocker.patch("telepharma.utils.lifecycle.whatsapp_service.close", new_callable=AsyncMock)
    mocker.patch("telepharma.utils.lifecycle.cache_service.close", new_callable=AsyncMock)
    mocker.patch("telepharma.utils.lifecycle.alerting_service.cleanup", new_callable=AsyncMock)

    # The app's lifespan (startup/shutdown events) is managed by the TestClient
    with TestClient(app) as client:
        yield client
