# /telepharma/models/messages.py

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class Attachment(BaseModel):
    url: str
    content_type: Optional[str] = None
    media_id: Optional[str] = None


class InboundEvent(BaseModel):
    """A normalized inbound message from one contact."""
    contact_identity: str
    text: Optional[str] = None
    selected_option_token: Optional[str] = None
    attachment: Optional[Attachment] = None
    message_id: Optional[str] = None

    @property
    def effective_input(self) -> Optional[str]:
        """The textual payload; a selected option wins over typed text."""
        if self.selected_option_token is not None:
            return self.selected_option_token
        return self.text

    @classmethod
    def from_whatsapp(cls, message: Dict[str, Any]) -> Optional["InboundEvent"]:
        """
        Builds an event from one entry of a Cloud API ``messages`` array.
        Returns None for message types the conversation does not handle
        (reactions, stickers, locations, ...).
        """
        sender = message.get("from")
        if not sender:
            return None

        identity = sender if sender.startswith("+") else f"+{sender}"
        message_type = message.get("type")
        base = {"contact_identity": identity, "message_id": message.get("id")}

        if message_type == "text":
            return cls(text=(message.get("text") or {}).get("body", ""), **base)

        if message_type == "interactive":
            interactive = message.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            title = reply.get("title")
            if title is None:
                return None
            return cls(selected_option_token=title, **base)

        if message_type == "button":
            return cls(selected_option_token=(message.get("button") or {}).get("text"), **base)

        if message_type in ("image", "document"):
            media = message.get(message_type) or {}
            media_id = media.get("id")
            if not media_id:
                return None
            attachment = Attachment(
                url=media.get("link") or f"whatsapp-media:{media_id}",
                content_type=media.get("mime_type"),
                media_id=media_id,
            )
            caption = media.get("caption")
            return cls(attachment=attachment, text=caption or None, **base)

        return None


class OutboundMessage(BaseModel):
    recipient: str
    body: str
    quick_replies: Optional[List[str]] = Field(default=None, description="Reply button titles, if any")
