# backend/tests/unit/test_session_governor.py
from datetime import timedelta

import pytest

from conftest import NOW, looping_catalog, make_contact, text
from telepharma.config import strings
from telepharma.models.flow import ChoiceValue
from telepharma.services.contact_locks import ContactLocks
from telepharma.services.session_governor import SessionGovernor, is_stale, sweep_stale_sessions
from telepharma.workflows.engine import FlowEngine

TIMEOUT = timedelta(minutes=30)


@pytest.fixture
def governor(engine):
    return SessionGovernor(engine, TIMEOUT)


def in_order_flow(idle: timedelta, **kwargs):
    return make_contact(
        flow="PLACE_ORDER", step="DELIVERY_METHOD", last_updated=NOW - idle,
        scratch={"medication_type": ChoiceValue(value="OTC")}, **kwargs,
    )


def test_is_stale_is_strict_and_ignores_the_root():
    assert not is_stale(in_order_flow(TIMEOUT).conversation_state, NOW, TIMEOUT)
    assert is_stale(in_order_flow(TIMEOUT + timedelta(seconds=1)).conversation_state, NOW, TIMEOUT)
    assert not is_stale(make_contact(last_updated=NOW - timedelta(days=3)).conversation_state, NOW, TIMEOUT)


def test_timed_out_session_resets_before_reading_input(governor):
    result = governor.process(in_order_flow(timedelta(minutes=31)), text("Pickup"), NOW)

    assert result["completion"] is None
    assert result["contact"].conversation_state.flow is None
    assert result["contact"].conversation_state.scratch == {}
    assert result["messages"][0].body == strings.SESSION_EXPIRED
    assert result["messages"][1].body == strings.MAIN_MENU


def test_active_session_input_is_interpreted(governor):
    result = governor.process(in_order_flow(timedelta(minutes=29)), text("Pickup"), NOW)
    assert result["completion"] is not None


def test_catalog_defect_becomes_a_reset(governor):
    contact = make_contact(flow="LOYALTY", step="START")
    result = governor.process(contact, text("1"), NOW)

    assert result["contact"].conversation_state.flow is None
    assert result["messages"][0].body == strings.ERROR_RETURNING_TO_MENU


def test_depth_guard_becomes_a_reset():
    governor = SessionGovernor(FlowEngine(workflows=looping_catalog()), TIMEOUT)
    result = governor.process(make_contact(flow="LOOP", step="ASK"), text("anything"), NOW)

    assert result["contact"].conversation_state.flow is None
    assert result["messages"][0].body == strings.ERROR_RETURNING_TO_MENU


@pytest.mark.asyncio
async def test_sweep_resets_only_stale_sessions(repo, engine, gateway):
    repo.save(in_order_flow(timedelta(hours=2), phone="+26770000001"))
    repo.save(in_order_flow(timedelta(minutes=10), phone="+26770000002"))
    repo.save(make_contact(last_updated=NOW - timedelta(days=2), phone="+26770000003"))

    reset = await sweep_stale_sessions(repo, ContactLocks(), engine, NOW, timedelta(minutes=60))

    assert reset == 1
    swept = repo.stored("+26770000001").conversation_state
    assert (swept.flow, swept.step, swept.scratch, swept.version) == (None, None, {}, 2)
    assert repo.stored("+26770000002").conversation_state.flow == "PLACE_ORDER"
    assert repo.stored("+26770000003").conversation_state.version == 1
    # Sweeping is silent.
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_sweep_skips_contacts_that_moved_on(repo, engine):
    repo.save(in_order_flow(timedelta(hours=2)))
    repo.pending_conflicts = 1

    reset = await sweep_stale_sessions(repo, ContactLocks(), engine, NOW, timedelta(minutes=60))

    assert reset == 0
    assert repo.stored().conversation_state.flow == "PLACE_ORDER"


@pytest.mark.asyncio
async def test_sweep_walks_every_page(repo, engine):
    phones = [f"+2677000010{i}" for i in range(7)]
    for phone in phones:
        repo.save(in_order_flow(timedelta(hours=2), phone=phone))

    reset = await sweep_stale_sessions(repo, ContactLocks(), engine, NOW, timedelta(minutes=60), page_size=3)

    assert reset == 7
    assert all(repo.stored(phone).conversation_state.flow is None for phone in phones)


@pytest.mark.asyncio
async def test_sweep_pages_past_contacts_it_could_not_reset(repo, engine):
    phones = [f"+2677000020{i}" for i in range(4)]
    for phone in phones:
        repo.save(in_order_flow(timedelta(hours=2), phone=phone))
    repo.pending_conflicts = 2

    reset = await sweep_stale_sessions(repo, ContactLocks(), engine, NOW, timedelta(minutes=60), page_size=2)

    assert reset == 2
    assert [repo.stored(phone).conversation_state.flow for phone in phones] == [
        "PLACE_ORDER", "PLACE_ORDER", None, None,
    ]
