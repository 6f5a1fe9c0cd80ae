import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)

# Keys a Chatwoot delivery must carry before it is considered at all
REQUIRED_FIELDS = ('event', 'id', 'content', 'message_type', 'sender', 'conversation', 'account')

ExternalId = Union[int, str]

class ChatwootModel(BaseModel):
    model_config = ConfigDict(extra='allow')

class Sender(ChatwootModel):
    id: ExternalId
    name: Optional[str] = None
    type: Optional[str] = None  # "contact" | "user"
    phone_number: Optional[str] = None
    additional_attributes: Optional[Dict[str, Any]] = None

class ContactInbox(ChatwootModel):
    source_id: Optional[str] = None

class Conversation(ChatwootModel):
    id: ExternalId
    channel: Optional[str] = None  # "Channel::Whatsapp", "Channel::Api", ...
    status: Optional[str] = None
    contact_inbox: Optional[ContactInbox] = None
    additional_attributes: Optional[Dict[str, Any]] = None

class Account(ChatwootModel):
    id: ExternalId
    name: Optional[str] = None
    additional_attributes: Optional[Dict[str, Any]] = None

class Inbox(ChatwootModel):
    id: ExternalId
    name: Optional[str] = None

class Attachment(ChatwootModel):
    id: ExternalId
    message_id: Optional[ExternalId] = None
    file_type: Optional[str] = None  # "audio" | "image" | "video" | "file" | "location" | ...
    data_url: Optional[str] = None  # null for location and fallback attachments
    file_size: Optional[int] = None
    meta: Optional[Dict[str, Any]] = None
    transcribed_text: Optional[str] = None

    @property
    def is_audio(self) -> bool:
        return self.file_type == 'audio'

class ChatwootWebhookPayload(ChatwootModel):
    """Chatwoot webhook delivery. Unknown keys are kept so the stored copy is complete."""

    event: str
    id: ExternalId
    content: Optional[str]
    message_type: Optional[Union[str, int]]
    sender: Sender
    conversation: Conversation
    account: Account
    created_at: Optional[Any] = None
    content_type: Optional[str] = None
    content_attributes: Optional[Dict[str, Any]] = None
    source_id: Optional[str] = None
    inbox: Optional[Inbox] = None
    attachments: Optional[List[Attachment]] = None

    @property
    def audio_attachments(self) -> List[Attachment]:
        audio = []
        for attachment in self.attachments or []:
            if not attachment.is_audio:
                continue
            if not attachment.data_url:
                logger.warning(f"Skipping audio attachment {attachment.id} of message {self.id}: no data_url")
                continue
            audio.append(attachment)
        return audio

    def to_document(self) -> Dict[str, Any]:
        """The payload as it was delivered, without defaults filled in"""
        return self.model_dump(mode='json', exclude_unset=True)

def validate_payload(raw: Any) -> Tuple[Optional[ChatwootWebhookPayload], Optional[str]]:
    """
    Structural check of a raw delivery.

    Returns ``(payload, None)`` when the delivery can be processed, or
    ``(None, reason)`` describing why it was rejected.
    """
    if not isinstance(raw, dict):
        return None, 'Invalid webhook payload structure: expected a JSON object'

    missing = [field for field in REQUIRED_FIELDS if field not in raw]
    if missing:
        return None, f"Invalid webhook payload structure: missing {', '.join(missing)}"

    try:
        return ChatwootWebhookPayload.model_validate(raw), None
    except ValidationError as e:
        fields = sorted({'.'.join(str(part) for part in err['loc']) for err in e.errors()})
        return None, f"Invalid webhook payload structure: bad {', '.join(fields)}"
