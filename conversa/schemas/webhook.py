from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

MEDIA_TYPES = {"image", "video", "audio", "document", "sticker"}


class WebhookProfile(BaseModel):
    name: Optional[str] = None


class WebhookContact(BaseModel):
    wa_id: str
    profile: Optional[WebhookProfile] = None


class WebhookMetadata(BaseModel):
    display_phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None


class InboundMessage(BaseModel):
    """One entry of value.messages. Type-specific sections (text, image, interactive, ...) are kept as extras."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    sender: str = Field(validation_alias=AliasChoices("from", "sender"), serialization_alias="from")
    timestamp: Optional[str] = None
    type: str = "text"

    def section(self, name: Optional[str] = None) -> dict:
        value = (self.model_extra or {}).get(name or self.type)
        return value if isinstance(value, dict) else {}

    def raw(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    def is_form_reply(self) -> bool:
        return self.type == "interactive" and self.section().get("type") == "nfm_reply"

    def extract_content(self) -> Optional[str]:
        section = self.section()
        if self.type == "text":
            return section.get("body")
        if self.type in ("image", "video", "document"):
            return section.get("caption")
        if self.type == "location":
            if section.get("latitude") is None or section.get("longitude") is None:
                return None
            return f"{section['latitude']},{section['longitude']}"
        if self.type == "button":
            return section.get("text")
        if self.type == "interactive" and not self.is_form_reply():
            reply = section.get("button_reply") or section.get("list_reply") or {}
            return reply.get("title")
        return None

    def extract_media(self) -> Optional[dict]:
        if self.type not in MEDIA_TYPES:
            return None
        section = self.section()
        media = {
            "id": section.get("id"),
            "mime_type": section.get("mime_type"),
            "sha256": section.get("sha256"),
            "caption": section.get("caption"),
        }
        if section.get("filename"):
            media["filename"] = section["filename"]
        return media


class StatusEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None
    errors: list[dict[str, Any]] = Field(default_factory=list)


class ChangeValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    messaging_product: Optional[str] = None
    metadata: Optional[WebhookMetadata] = None
    contacts: list[WebhookContact] = Field(default_factory=list)
    messages: list[InboundMessage] = Field(default_factory=list)
    statuses: list[StatusEvent] = Field(default_factory=list)


class WebhookChange(BaseModel):
    field: Optional[str] = None
    value: ChangeValue = Field(default_factory=ChangeValue)


class WebhookEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WebhookChange] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    object: Optional[str] = None
    entry: list[WebhookEntry] = Field(default_factory=list)


class WebhookAck(BaseModel):
    success: bool
    job_id: Optional[str] = None
    message: Optional[str] = None
