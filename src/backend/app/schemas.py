from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ----------------------- Inbound WhatsApp messages -----------------------
class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class TextBody(_Payload):
    body: str = ""


class MediaPayload(_Payload):
    id: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None


class LocationPayload(_Payload):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None
    address: Optional[str] = None


class ButtonPayload(_Payload):
    text: Optional[str] = None
    payload: Optional[str] = None


class Reply(_Payload):
    id: Optional[str] = None
    title: str = ""
    description: Optional[str] = None


class InteractivePayload(_Payload):
    type: Optional[str] = None
    button_reply: Optional[Reply] = None
    list_reply: Optional[Reply] = None


class ContactName(_Payload):
    formatted_name: Optional[str] = None


class ContactCard(_Payload):
    name: Optional[ContactName] = None


class _Message(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    from_: str = Field(alias="from")
    timestamp: Optional[str] = None
    type: str

    def content(self) -> str:
        return f"[{self.type.upper()}]"

    def raw(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class TextMessage(_Message):
    type: Literal["text"]
    text: TextBody = Field(default_factory=TextBody)

    def content(self) -> str:
        return self.text.body or ""


class ImageMessage(_Message):
    type: Literal["image"]
    image: Optional[MediaPayload] = None

    def content(self) -> str:
        return (self.image and self.image.caption) or "[Image]"


class AudioMessage(_Message):
    type: Literal["audio"]
    audio: Optional[MediaPayload] = None

    def content(self) -> str:
        return "[Audio]"


class VoiceMessage(_Message):
    type: Literal["voice"]
    voice: Optional[MediaPayload] = None

    def content(self) -> str:
        return "[Audio]"


class VideoMessage(_Message):
    type: Literal["video"]
    video: Optional[MediaPayload] = None

    def content(self) -> str:
        return (self.video and self.video.caption) or "[Video]"


class DocumentMessage(_Message):
    type: Literal["document"]
    document: Optional[MediaPayload] = None

    def content(self) -> str:
        name = (self.document and self.document.filename) or "file"
        return f"[Document: {name}]"


class LocationMessage(_Message):
    type: Literal["location"]
    location: Optional[LocationPayload] = None

    def content(self) -> str:
        loc = self.location or LocationPayload()
        lat = "N/A" if loc.latitude is None else loc.latitude
        lng = "N/A" if loc.longitude is None else loc.longitude
        return f"[Location: {lat}, {lng}]"


class ButtonMessage(_Message):
    type: Literal["button"]
    button: Optional[ButtonPayload] = None

    def content(self) -> str:
        if self.button:
            return self.button.text or self.button.payload or "[Button]"
        return "[Button]"


class InteractiveMessage(_Message):
    type: Literal["interactive"]
    interactive: Optional[InteractivePayload] = None

    def content(self) -> str:
        if self.interactive and self.interactive.button_reply:
            return self.interactive.button_reply.title
        if self.interactive and self.interactive.list_reply:
            return self.interactive.list_reply.title
        return "[Interactive]"


class ContactsMessage(_Message):
    type: Literal["contacts"]
    contacts: List[ContactCard] = Field(default_factory=list)

    def content(self) -> str:
        first = self.contacts[0] if self.contacts else None
        name = (first and first.name and first.name.formatted_name) or "contact"
        return f"[Contact: {name}]"


class UnknownMessage(_Message):
    """Any message type without a dedicated model; extra fields are kept as-is."""


KnownMessage = Annotated[
    Union[
        TextMessage,
        ImageMessage,
        AudioMessage,
        VoiceMessage,
        VideoMessage,
        DocumentMessage,
        LocationMessage,
        ButtonMessage,
        InteractiveMessage,
        ContactsMessage,
    ],
    Field(discriminator="type"),
]
InboundMessage = Union[
    TextMessage,
    ImageMessage,
    AudioMessage,
    VoiceMessage,
    VideoMessage,
    DocumentMessage,
    LocationMessage,
    ButtonMessage,
    InteractiveMessage,
    ContactsMessage,
    UnknownMessage,
]

KNOWN_TYPES = frozenset(
    {"text", "image", "audio", "voice", "video", "document", "location", "button", "interactive", "contacts"}
)
_known_adapter = TypeAdapter(KnownMessage)


def parse_message(payload: Union[Mapping[str, Any], _Message]) -> InboundMessage:
    if isinstance(payload, _Message):
        return payload  # type: ignore[return-value]
    if payload.get("type") in KNOWN_TYPES:
        return _known_adapter.validate_python(dict(payload))
    return UnknownMessage.model_validate(dict(payload))


# ----------------------- Conversation queries -----------------------
class ConversationSearchParams(BaseModel):
    phone_number: Optional[str] = None
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    message_type: Optional[str] = None
    intent_detected: Optional[str] = None
    is_from_user: Optional[bool] = None
    limit: Optional[int] = Field(None, ge=1, le=1000)
    offset: Optional[int] = Field(None, ge=0)


class ConversationPage(BaseModel):
    messages: List[Dict[str, Any]]
    total: int
    has_more: bool


# ----------------------- Billing requests -----------------------
class CheckoutRequest(BaseModel):
    plan_id: str
    customer_email: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    customer_id: Optional[str] = None
    return_url: Optional[str] = None


class CancelRequest(BaseModel):
    subscription_id: str
    reason: Optional[str] = None
    immediately: bool = False


class ChangePlanRequest(BaseModel):
    subscription_id: str
    plan_id: str


class ReactivateRequest(BaseModel):
    subscription_id: str


class CleanupRequest(BaseModel):
    retention_days: int = Field(60, ge=1, le=3650)
