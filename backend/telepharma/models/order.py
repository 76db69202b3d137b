# /telepharma/models/order.py

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict

from telepharma.models.flow import utc_now


class OrderType(str, Enum):
    PRESCRIPTION_REFILL = "PRESCRIPTION_REFILL"
    NEW_PRESCRIPTION = "NEW_PRESCRIPTION"
    OVER_THE_COUNTER = "OVER_THE_COUNTER"


class DeliveryMethod(str, Enum):
    DELIVERY = "DELIVERY"
    PICKUP = "PICKUP"


class AddressType(str, Enum):
    HOME = "HOME"
    WORK = "WORK"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value})


class Medication(BaseModel):
    name: str
    quantity: int = 1
    instructions: Optional[str] = None


class PrescriptionImage(BaseModel):
    url: str
    content_type: Optional[str] = None


class DeliveryAddress(BaseModel):
    type: AddressType
    address: str

    model_config = ConfigDict(use_enum_values=True)


class Order(BaseModel):
    """
    A placed order. Immutable once created; only ``status`` is advanced later,
    by pharmacy staff outside this service.
    """
    order_number: str
    contact_phone: str = Field(..., description="Phone number of the contact that placed the order")
    order_type: OrderType
    medications: List[Medication] = Field(default_factory=list)
    prescription_image: Optional[PrescriptionImage] = None
    prescription_text: Optional[str] = None
    for_dependant: bool = False
    refill_of: Optional[str] = None
    delivery_method: DeliveryMethod
    delivery_address: Optional[DeliveryAddress] = None
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    # Identifies the checkout (contact + stored state version) that produced it.
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    @property
    def medication_summary(self) -> str:
        return ", ".join(m.name for m in self.medications)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump()

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Order":
        return cls.model_validate({k: v for k, v in document.items() if k != "_id"})


class ServiceType(str, Enum):
    PHARMACY_CONSULTATION = "PHARMACY_CONSULTATION"
    DOCTOR_CONSULTATION = "DOCTOR_CONSULTATION"
    GENERAL_ENQUIRY = "GENERAL_ENQUIRY"


class ServiceRequestStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ServiceRequest(BaseModel):
    """A consultation or enquiry raised from the chat, picked up by staff."""
    contact_phone: str
    service_type: ServiceType
    notes: str
    status: ServiceRequestStatus = ServiceRequestStatus.PENDING
    priority: Priority = Priority.MEDIUM
    created_at: datetime = Field(default_factory=utc_now)
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True, validate_default=True)
