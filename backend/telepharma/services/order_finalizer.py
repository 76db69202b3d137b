# /telepharma/services/order_finalizer.py

import logging
import random
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from telepharma.config import strings
from telepharma.models.order import (
    AddressType,
    DeliveryAddress,
    DeliveryMethod,
    Medication,
    Order,
    OrderType,
    PrescriptionImage,
)
from telepharma.services.db_service import DatabaseService
from telepharma.services.order_history import OrderHistory
from telepharma.utils.errors import IncompleteOrder, PersistenceConflict
from telepharma.utils.metrics import orders_created_counter

logger = logging.getLogger(__name__)


def generate_order_number() -> str:
    """ORD-<epoch milliseconds>-<0..999>."""
    return f"ORD-{int(time.time() * 1000)}-{random.randint(0, 999)}"


def derive_order_type(values: Dict[str, Any]) -> OrderType:
    medication_type = values.get("medication_type")
    if medication_type == "OTC":
        return OrderType.OVER_THE_COUNTER
    if medication_type == "PRESCRIPTION":
        option = values.get("prescription_option")
        if option == "REFILL":
            return OrderType.PRESCRIPTION_REFILL
        if option == "NEW":
            return OrderType.NEW_PRESCRIPTION
        raise IncompleteOrder("prescription order without a prescription option")
    raise IncompleteOrder("order without a medication type")


def build_order(
    contact_phone: str,
    values: Dict[str, Any],
    now: datetime,
    order_number: str,
    refill_source: Optional[Order] = None,
) -> Order:
    """
    Turns the values collected by the ordering flow into an Order.

    Required: medication type (and prescription option for prescriptions),
    delivery method, and for deliveries exactly one address. The only
    default filled in is the "unspecified" medication of an OTC order that
    recorded no medication text.

    Raises:
        IncompleteOrder: a required value is missing
    """
    order_type = derive_order_type(values)

    delivery_method = values.get("delivery_method")
    if delivery_method not in (DeliveryMethod.DELIVERY.value, DeliveryMethod.PICKUP.value):
        raise IncompleteOrder("order without a delivery method")

    delivery_address = None
    if delivery_method == DeliveryMethod.DELIVERY.value:
        address_type = values.get("address_type")
        address = values.get("delivery_address")
        if address_type not in (AddressType.HOME.value, AddressType.WORK.value) or not address:
            raise IncompleteOrder("delivery order without a delivery address")
        delivery_address = DeliveryAddress(type=address_type, address=address)

    order = Order(
        order_number=order_number,
        contact_phone=contact_phone,
        order_type=order_type,
        delivery_method=delivery_method,
        delivery_address=delivery_address,
        created_at=now,
        updated_at=now,
    )

    if order_type == OrderType.OVER_THE_COUNTER:
        text = values.get("medications")
        order.medications = [Medication(name=text or strings.UNSPECIFIED_MEDICATION)]

    elif order_type == OrderType.PRESCRIPTION_REFILL:
        refill_of = values.get("refill_of")
        if not refill_of:
            raise IncompleteOrder("refill order without a source order")
        order.refill_of = refill_of
        if refill_source is not None:
            order.medications = [m.model_copy() for m in refill_source.medications]

    else:
        prescription = values.get("prescription")
        if isinstance(prescription, dict):
            order.prescription_image = PrescriptionImage(**prescription)
        elif prescription:
            order.prescription_text = prescription
        else:
            raise IncompleteOrder("new prescription order without a prescription")
        order.for_dependant = values.get("prescription_for") == "DEPENDANT"

    return order


class OrderFinalizer:
    """Persists orders built from a finished ordering flow."""

    def __init__(
        self,
        db: DatabaseService,
        history: OrderHistory,
        number_factory: Callable[[], str] = generate_order_number,
    ):
        self.db = db
        self.history = history
        self.number_factory = number_factory

    async def finalize(
        self,
        contact_phone: str,
        values: Dict[str, Any],
        now: datetime,
        refill_source: Optional[Order] = None,
        idempotency_key: Optional[str] = None,
    ) -> Order:
        """
        Builds and stores the order. A clash on the order number is retried
        once with a fresh number; any other failure propagates and nothing is
        stored, so the caller can leave the conversation where it was.

        When ``idempotency_key`` names a checkout that already produced an
        order, that order is returned and nothing new is stored.
        """
        if idempotency_key:
            existing = await self._existing(contact_phone, idempotency_key)
            if existing is not None:
                return existing

        order = build_order(contact_phone, values, now, self.number_factory(), refill_source)
        order.idempotency_key = idempotency_key
        try:
            await self.db.create_order(order)
        except PersistenceConflict as e:
            if e.reason == PersistenceConflict.DUPLICATE_CHECKOUT and idempotency_key:
                existing = await self._existing(contact_phone, idempotency_key)
                if existing is not None:
                    return existing
            if e.reason != PersistenceConflict.DUPLICATE_ORDER_NUMBER:
                raise
            logger.warning(f"Order number {order.order_number} already taken; regenerating once.")
            order = order.model_copy(update={"order_number": self.number_factory()})
            await self.db.create_order(order)

        orders_created_counter.labels(order_type=order.order_type).inc()
        logger.info(f"Order {order.order_number} created for {contact_phone} ({order.order_type})")
        await self.history.invalidate(contact_phone)
        return order

    async def _existing(self, contact_phone: str, idempotency_key: str) -> Optional[Order]:
        orders = await self.db.find_orders(contact_phone, {"idempotency_key": idempotency_key}, limit=1)
        if orders:
            logger.info(f"Checkout {idempotency_key} already produced order {orders[0].order_number}.")
            return orders[0]
        return None
