# /telepharma/models/flow.py

from typing import Optional, Dict, Union, Literal, Any
from datetime import datetime, timezone
from pydantic import BaseModel, Field
from typing_extensions import Annotated


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TextValue(BaseModel):
    kind: Literal["text"] = "text"
    value: str


class DateValue(BaseModel):
    kind: Literal["date"] = "date"
    value: datetime


class ChoiceValue(BaseModel):
    kind: Literal["choice"] = "choice"
    value: str


class AttachmentValue(BaseModel):
    kind: Literal["attachment"] = "attachment"
    url: str
    content_type: Optional[str] = None

    @property
    def value(self) -> Dict[str, Any]:
        return {"url": self.url, "content_type": self.content_type}


# One collected field; the Flow Catalog entry that produced it fixes the kind.
ScratchValue = Annotated[
    Union[TextValue, DateValue, ChoiceValue, AttachmentValue],
    Field(discriminator="kind"),
]


class ConversationState(BaseModel):
    """
    Position of a contact inside the flow catalog.

    This is a PURE DATA model. ``flow is None`` means the contact sits at the
    root menu, in which case ``step`` is None and ``scratch`` is empty.
    ``version`` increments on every persisted transition and is used as the
    compare-and-swap token by the repository.
    """
    flow: Optional[str] = Field(default=None, description="Current flow identifier")
    step: Optional[str] = Field(default=None, description="Current step inside the flow")
    scratch: Dict[str, ScratchValue] = Field(default_factory=dict, description="Values collected in this flow instance")
    version: int = Field(default=1, description="Conversation state version")
    last_updated: datetime = Field(default_factory=utc_now, description="Timestamp of last transition")

    def plain_scratch(self) -> Dict[str, Any]:
        """Scratch values without their tags, keyed by field id."""
        return {field: entry.value for field, entry in self.scratch.items()}
