# /telepharma/services/order_history.py

import logging
from typing import List

from telepharma.config.settings import settings
from telepharma.models.order import Order
from telepharma.services.cache_service import CacheKeys, CacheService, cache_service
from telepharma.services.db_service import DatabaseService, db_service

logger = logging.getLogger(__name__)


class OrderHistory:
    """
    Read-through cache of each contact's most recent orders, used to offer
    refills. The repository stays the system of record: a cold or missing
    cache only costs one extra query.
    """

    def __init__(self, db: DatabaseService, cache: CacheService, limit: int = 5, ttl_seconds: int = 300):
        self.db = db
        self.cache = cache
        self.limit = limit
        self.ttl_seconds = ttl_seconds

    async def recent_orders(self, phone: str) -> List[Order]:
        async def fetch():
            orders = await self.db.find_orders(phone, limit=self.limit)
            return [order.model_dump(mode="json") for order in orders]

        documents = await self.cache.get_or_set(CacheKeys.RECENT_ORDERS.format(phone=phone), fetch, self.ttl_seconds)
        return [Order.model_validate(document) for document in documents or []]

    async def find(self, phone: str, order_number: str) -> Order | None:
        """Finds one of the contact's orders, preferring the cached list."""
        for order in await self.recent_orders(phone):
            if order.order_number == order_number:
                return order
        orders = await self.db.find_orders(phone, {"order_number": order_number}, limit=1)
        return orders[0] if orders else None

    async def invalidate(self, phone: str):
        await self.cache.delete(CacheKeys.RECENT_ORDERS.format(phone=phone))


# Globally accessible instance
order_history = OrderHistory(db_service, cache_service, settings.recent_orders_limit, settings.recent_orders_ttl_seconds)
