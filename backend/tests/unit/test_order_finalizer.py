# backend/tests/unit/test_order_finalizer.py
import re

import pytest

from conftest import NOW, PHONE
from telepharma.config import strings
from telepharma.models.order import Medication, Order, OrderType
from telepharma.services.cache_service import CacheService
from telepharma.services.order_finalizer import OrderFinalizer, build_order, generate_order_number
from telepharma.services.order_history import OrderHistory
from telepharma.utils.errors import CatalogDefect, IncompleteOrder, PersistenceConflict

PICKUP_OTC = {"medication_type": "OTC", "medications": "Panado x2", "delivery_method": "PICKUP"}


def test_order_number_format():
    assert re.fullmatch(r"ORD-\d{13}-\d{1,3}", generate_order_number())


def test_otc_pickup():
    order = build_order(PHONE, PICKUP_OTC, NOW, "ORD-1")

    assert order.order_type == OrderType.OVER_THE_COUNTER
    assert [m.name for m in order.medications] == ["Panado x2"]
    assert order.delivery_method == "PICKUP"
    assert order.delivery_address is None
    assert order.status == "PENDING"
    assert order.created_at == order.updated_at == NOW


def test_otc_without_medication_text_is_unspecified():
    values = {k: v for k, v in PICKUP_OTC.items() if k != "medications"}
    order = build_order(PHONE, values, NOW, "ORD-1")
    assert order.medications[0].name == strings.UNSPECIFIED_MEDICATION


def test_delivery_records_the_address():
    values = {**PICKUP_OTC, "delivery_method": "DELIVERY", "address_type": "HOME", "delivery_address": "Plot 5"}
    order = build_order(PHONE, values, NOW, "ORD-1")
    assert order.delivery_address.type == "HOME"
    assert order.delivery_address.address == "Plot 5"


def test_new_prescription_from_photo_for_a_dependant():
    values = {
        "medication_type": "PRESCRIPTION",
        "prescription_option": "NEW",
        "prescription": {"url": "https://cdn.example.com/rx.jpg", "content_type": "image/jpeg"},
        "prescription_for": "DEPENDANT",
        "delivery_method": "PICKUP",
    }
    order = build_order(PHONE, values, NOW, "ORD-1")

    assert order.order_type == OrderType.NEW_PRESCRIPTION
    assert order.prescription_image.url == "https://cdn.example.com/rx.jpg"
    assert order.prescription_text is None
    assert order.for_dependant


def test_new_prescription_typed_out():
    values = {
        "medication_type": "PRESCRIPTION",
        "prescription_option": "NEW",
        "prescription": "Amoxicillin 500mg tds",
        "prescription_for": "PRINCIPAL",
        "delivery_method": "PICKUP",
    }
    order = build_order(PHONE, values, NOW, "ORD-1")
    assert order.prescription_text == "Amoxicillin 500mg tds"
    assert not order.for_dependant


def test_refill_copies_the_source_medications():
    source = Order(order_number="ORD-0", contact_phone=PHONE, order_type=OrderType.OVER_THE_COUNTER,
                   medications=[Medication(name="Ventolin", quantity=2)], delivery_method="PICKUP")
    values = {"medication_type": "PRESCRIPTION", "prescription_option": "REFILL", "refill_of": "ORD-0",
              "delivery_method": "PICKUP"}
    order = build_order(PHONE, values, NOW, "ORD-1", refill_source=source)

    assert order.order_type == OrderType.PRESCRIPTION_REFILL
    assert order.refill_of == "ORD-0"
    assert [(m.name, m.quantity) for m in order.medications] == [("Ventolin", 2)]


@pytest.mark.parametrize("values", [
    {"delivery_method": "PICKUP"},
    {"medication_type": "PRESCRIPTION", "delivery_method": "PICKUP"},
    {"medication_type": "OTC"},
    {"medication_type": "OTC", "delivery_method": "DELIVERY", "address_type": "HOME"},
    {"medication_type": "PRESCRIPTION", "prescription_option": "REFILL", "delivery_method": "PICKUP"},
    {"medication_type": "PRESCRIPTION", "prescription_option": "NEW", "delivery_method": "PICKUP"},
])
def test_missing_required_values(values):
    with pytest.raises(IncompleteOrder):
        build_order(PHONE, values, NOW, "ORD-1")


def test_incomplete_order_is_a_catalog_defect():
    assert issubclass(IncompleteOrder, CatalogDefect)


@pytest.mark.asyncio
async def test_duplicate_order_number_is_regenerated_once(repo):
    repo.orders.append(build_order(PHONE, PICKUP_OTC, NOW, "ORD-1"))
    numbers = iter(["ORD-1", "ORD-2"])
    finalizer = OrderFinalizer(repo, OrderHistory(repo, CacheService(None)), number_factory=lambda: next(numbers))

    order = await finalizer.finalize(PHONE, PICKUP_OTC, NOW)

    assert order.order_number == "ORD-2"
    assert [o.order_number for o in repo.orders] == ["ORD-1", "ORD-2"]


@pytest.mark.asyncio
async def test_second_clash_propagates(repo):
    repo.orders.append(build_order(PHONE, PICKUP_OTC, NOW, "ORD-1"))
    finalizer = OrderFinalizer(repo, OrderHistory(repo, CacheService(None)), number_factory=lambda: "ORD-1")

    with pytest.raises(PersistenceConflict) as exc_info:
        await finalizer.finalize(PHONE, PICKUP_OTC, NOW)
    assert exc_info.value.reason == PersistenceConflict.DUPLICATE_ORDER_NUMBER
    assert len(repo.orders) == 1


@pytest.mark.asyncio
async def test_finalize_invalidates_the_recent_orders_cache(repo, mocker):
    history = OrderHistory(repo, CacheService(None))
    invalidate = mocker.patch.object(history, "invalidate", new_callable=mocker.AsyncMock)

    await OrderFinalizer(repo, history).finalize(PHONE, PICKUP_OTC, NOW)

    invalidate.assert_awaited_once_with(PHONE)


@pytest.mark.asyncio
async def test_repeated_checkout_returns_the_stored_order(repo):
    numbers = iter(["ORD-1", "ORD-2"])
    finalizer = OrderFinalizer(repo, OrderHistory(repo, CacheService(None)), number_factory=lambda: next(numbers))

    first = await finalizer.finalize(PHONE, PICKUP_OTC, NOW, idempotency_key=f"{PHONE}:4")
    again = await finalizer.finalize(PHONE, PICKUP_OTC, NOW, idempotency_key=f"{PHONE}:4")
    other = await finalizer.finalize(PHONE, PICKUP_OTC, NOW, idempotency_key=f"{PHONE}:5")

    assert first.order_number == again.order_number == "ORD-1"
    assert other.order_number == "ORD-2"
    assert len(repo.orders) == 2
