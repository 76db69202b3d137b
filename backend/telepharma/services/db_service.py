# /telepharma/services/db_service.py

import logging
from datetime import datetime
from typing import List, Optional, Dict, Any

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from telepharma.config.settings import settings
from telepharma.models.contact import Contact
from telepharma.models.order import Order, ServiceRequest
from telepharma.utils.errors import PersistenceConflict
from telepharma.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT = 100


class DatabaseService:
    """
    Contact, order and service request persistence on MongoDB.

    Contacts are written with a compare-and-swap on
    ``conversation_state.version`` so two workers can never both apply a
    transition computed from the same stored state.
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_tls,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    async def create_indexes(self):
        """Creates the indexes the service relies on. Safe to run on every startup."""
        try:
            await self.db.contacts.create_index("phone_number", unique=True)
            await self.db.contacts.create_index(
                [("conversation_state.flow", ASCENDING), ("conversation_state.last_updated", ASCENDING)]
            )
            await self.db.orders.create_index("order_number", unique=True)
            await self.db.orders.create_index([("contact_phone", ASCENDING), ("created_at", DESCENDING)])
            await self.db.service_requests.create_index([("created_at", DESCENDING)])
            for collection in (self.db.orders, self.db.service_requests):
                await collection.create_index(
                    "idempotency_key", unique=True,
                    partialFilterExpression={"idempotency_key": {"$type": "string"}},
                )
            logger.info("Database indexes ensured.")
        except PyMongoError as e:
            logger.error(f"Failed to create database indexes: {e}")
            raise

    async def health_check(self) -> bool:
        await self.db.command("ping")
        return True

    # ==================== Contacts ====================

    async def get_contact(self, phone_number: str) -> Optional[Contact]:
        try:
            document = await self.db.contacts.find_one({"phone_number": phone_number})
            database_operations_counter.labels(operation="get_contact", status="success").inc()
        except PyMongoError:
            database_operations_counter.labels(operation="get_contact", status="error").inc()
            raise
        return Contact.from_document(document) if document else None

    async def upsert_contact(self, contact: Contact, expected_version: Optional[int]) -> Contact:
        """
        Persists a contact.

        Args:
            contact: The contact to write
            expected_version: The state version it was loaded with, or None for a new contact

        Returns:
            The contact with its stored ``conversation_state.version``

        Raises:
            PersistenceConflict: another writer created the contact or moved its state first
        """
        document = contact.to_document()

        if expected_version is None:
            document["conversation_state"]["version"] = 1
            try:
                await self.db.contacts.insert_one(document)
            except DuplicateKeyError:
                database_operations_counter.labels(operation="upsert_contact", status="conflict").inc()
                raise PersistenceConflict(PersistenceConflict.DUPLICATE_CONTACT, contact.phone_number)
            contact.conversation_state.version = 1
            database_operations_counter.labels(operation="upsert_contact", status="success").inc()
            return contact

        new_version = expected_version + 1
        document["conversation_state"]["version"] = new_version
        result = await self.db.contacts.update_one(
            {"phone_number": contact.phone_number, "conversation_state.version": expected_version},
            {"$set": document},
        )
        if result.matched_count == 0:
            database_operations_counter.labels(operation="upsert_contact", status="conflict").inc()
            raise PersistenceConflict(
                PersistenceConflict.VERSION_MISMATCH,
                f"{contact.phone_number} is no longer at version {expected_version}",
            )
        contact.conversation_state.version = new_version
        database_operations_counter.labels(operation="upsert_contact", status="success").inc()
        return contact

    async def find_stale_contacts(
        self,
        cutoff: datetime,
        limit: int = DEFAULT_QUERY_LIMIT,
        after: Optional[str] = None,
    ) -> List[Contact]:
        """
        One page of contacts still inside a flow whose state was last touched
        before ``cutoff``, ordered by phone number. Pass the last phone number
        of a page as ``after`` to fetch the next one.
        """
        query: Dict[str, Any] = {
            "conversation_state.flow": {"$ne": None},
            "conversation_state.last_updated": {"$lt": cutoff},
        }
        if after is not None:
            query["phone_number"] = {"$gt": after}
        cursor = self.db.contacts.find(query).sort("phone_number", ASCENDING).limit(limit)
        return [Contact.from_document(document) async for document in cursor]

    # ==================== Orders ====================

    async def create_order(self, order: Order) -> Order:
        try:
            await self.db.orders.insert_one(order.to_document())
        except DuplicateKeyError as e:
            database_operations_counter.labels(operation="create_order", status="conflict").inc()
            if _violates_idempotency_key(e):
                raise PersistenceConflict(PersistenceConflict.DUPLICATE_CHECKOUT, order.idempotency_key or "")
            raise PersistenceConflict(PersistenceConflict.DUPLICATE_ORDER_NUMBER, order.order_number)
        database_operations_counter.labels(operation="create_order", status="success").inc()
        return order

    async def find_orders(
        self,
        contact_phone: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 5,
    ) -> List[Order]:
        """A contact's orders matching ``filters``, newest first."""
        query = {"contact_phone": contact_phone, **(filters or {})}
        cursor = self.db.orders.find(query).sort("created_at", DESCENDING).limit(limit)
        return [Order.from_document(document) async for document in cursor]

    # ==================== Service requests ====================

    async def create_service_request(self, request: ServiceRequest) -> ServiceRequest:
        try:
            await self.db.service_requests.insert_one(request.model_dump())
        except DuplicateKeyError:
            database_operations_counter.labels(operation="create_service_request", status="conflict").inc()
            raise PersistenceConflict(PersistenceConflict.DUPLICATE_CHECKOUT, request.idempotency_key or "")
        database_operations_counter.labels(operation="create_service_request", status="success").inc()
        return request

    async def find_service_request(self, contact_phone: str, idempotency_key: str) -> Optional[ServiceRequest]:
        document = await self.db.service_requests.find_one(
            {"contact_phone": contact_phone, "idempotency_key": idempotency_key}
        )
        return ServiceRequest.model_validate({k: v for k, v in document.items() if k != "_id"}) if document else None


def _violates_idempotency_key(error: DuplicateKeyError) -> bool:
    return "idempotency_key" in ((error.details or {}).get("keyPattern") or {})


# Globally accessible instance
db_service = DatabaseService(settings.mongo_uri)
