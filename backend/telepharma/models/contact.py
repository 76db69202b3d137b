# /telepharma/models/contact.py

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, ConfigDict

from telepharma.models.flow import ConversationState, utc_now


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"


class MedicalAidProvider(str, Enum):
    BOMAID = "BOMAID"
    PULA = "PULA"
    BPOMAS = "BPOMAS"
    BOTSOGO = "BOTSOGO"


class NotificationPreference(str, Enum):
    SMS = "SMS"
    WHATSAPP = "WhatsApp"
    EMAIL = "Email"


class Addresses(BaseModel):
    home: Optional[str] = None
    work: Optional[str] = None


class Preferences(BaseModel):
    notification_preference: NotificationPreference = NotificationPreference.WHATSAPP
    language: str = "English"

    model_config = ConfigDict(use_enum_values=True, validate_default=True)


# Profile attributes a registration flow may commit, keyed by scratch field id.
PROFILE_FIELDS = (
    "first_name",
    "surname",
    "date_of_birth",
    "gender",
    "medical_aid_provider",
    "medical_aid_number",
    "scheme",
    "dependent_number",
)

REQUIRED_PROFILE_FIELDS = (
    "first_name",
    "surname",
    "date_of_birth",
    "medical_aid_provider",
    "medical_aid_number",
)


class Contact(BaseModel):
    """One external identity (phone number) the service converses with."""
    phone_number: str = Field(..., description="Contact identity (E.164 phone number)")
    first_name: Optional[str] = None
    surname: Optional[str] = None
    date_of_birth: Optional[datetime] = None
    gender: Optional[Gender] = None
    medical_aid_provider: Optional[MedicalAidProvider] = None
    medical_aid_number: Optional[str] = None
    scheme: Optional[str] = None
    dependent_number: Optional[str] = None
    addresses: Addresses = Field(default_factory=Addresses)
    preferences: Preferences = Field(default_factory=Preferences)
    registration_complete: bool = False
    last_interaction: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    conversation_state: ConversationState = Field(default_factory=ConversationState)

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True)

    def apply_profile(self, values: Dict[str, Any]) -> None:
        """
        Commits collected registration values onto the profile and marks the
        registration complete. Raises ValueError if a required field is
        still missing afterwards; the contact is left untouched in that case.
        """
        updates = {field: values[field] for field in PROFILE_FIELDS if field in values}
        merged = {field: updates.get(field, getattr(self, field)) for field in REQUIRED_PROFILE_FIELDS}
        missing = [field for field, value in merged.items() if value in (None, "")]
        if missing:
            raise ValueError(f"All required fields must be filled before completing registration: {', '.join(missing)}")

        for field, value in updates.items():
            setattr(self, field, value)
        self.registration_complete = True

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump()

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Contact":
        document = {k: v for k, v in document.items() if k != "_id"}
        return cls.model_validate(document)
