import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import aiohttp

from api.models import ChatwootWebhookPayload, validate_payload
from api.services.audio import AudioTranscriptionPipeline
from api.services.buckets import BucketManager
from api.services.identity import IdentityResolver, ResolvedIdentity
from api.services.records import RecordStore
from api.services.storage import GCSStorageGateway, gcs_uri
from lib.config import Settings
from lib.error_handler import AppError
from lib.gcs_auth import GCSTokenProvider
from lib.openai_client import TranscriptionClient

logger = logging.getLogger(__name__)

SUPPORTED_EVENTS = ('message_created',)
WHATSAPP_CHANNEL = 'Channel::Whatsapp'

CONTENT_PLACEHOLDERS = {
    'audio': '[Audio Message]',
    'image': '[Image Message]',
    'video': '[Video Message]',
    'file': '[File Attachment]',
}
DEFAULT_PLACEHOLDER = '[Media Message]'

@dataclass
class ProcessingResult:
    success: bool
    message: str
    status_code: int = 200
    user_id: Optional[str] = None
    bucket_name: Optional[str] = None
    whatsapp_number: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {'success': self.success, 'message': self.message}
        if self.success and self.bucket_name:
            body.update({
                'userId': self.user_id,
                'bucketName': self.bucket_name,
                'whatsappNumber': self.whatsapp_number,
            })
        return body

def is_whatsapp_message(payload: ChatwootWebhookPayload) -> bool:
    return payload.event in SUPPORTED_EVENTS and payload.conversation.channel == WHATSAPP_CHANNEL

def message_content(payload: ChatwootWebhookPayload) -> str:
    """Text to store for a message; media without a caption gets a placeholder"""
    if payload.content and payload.content.strip():
        return payload.content
    return CONTENT_PLACEHOLDERS.get(payload.content_type or '', DEFAULT_PLACEHOLDER)

def message_object_path(payload: ChatwootWebhookPayload, day: str) -> str:
    return f"whatsapp-messages/{day}/{payload.conversation.id}/{payload.id}.json"

class ChatwootWebhookProcessor:
    def __init__(self, records: RecordStore, identity: IdentityResolver, buckets: BucketManager,
                 storage: GCSStorageGateway, audio: AudioTranscriptionPipeline,
                 clock: Optional[Callable[[], datetime]] = None):
        self.records = records
        self.identity = identity
        self.buckets = buckets
        self.storage = storage
        self.audio = audio
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings: Settings, records: RecordStore, session: aiohttp.ClientSession,
                      transcriber: Optional[TranscriptionClient] = None) -> 'ChatwootWebhookProcessor':
        """Wire up the pipeline for one invocation sharing a single HTTP session"""
        storage = GCSStorageGateway(settings, session, GCSTokenProvider(settings, session))
        return cls(
            records=records,
            identity=IdentityResolver(records, settings.default_country_code),
            buckets=BucketManager(records, storage, settings.gcs_bucket_prefix),
            storage=storage,
            audio=AudioTranscriptionPipeline(
                settings, session, storage, transcriber or TranscriptionClient(settings), records
            ),
        )

    async def process_webhook(self, raw: Any) -> ProcessingResult:
        payload, reason = validate_payload(raw)
        if payload is None:
            logger.warning(f"Rejected webhook: {reason}")
            return ProcessingResult(success=False, message=reason, status_code=400)

        logger.info(f"Processing Chatwoot webhook: {payload.event} {payload.id}")

        if not is_whatsapp_message(payload):
            logger.info(f"Ignoring {payload.event} on channel {payload.conversation.channel}")
            return ProcessingResult(success=True, message='Event not applicable for WhatsApp processing')

        try:
            identity = await self.identity.resolve_user(payload)
            bucket = await self.buckets.ensure_user_bucket(identity.user_id, identity.contact_id)
            processed_at = self.clock()
            message_path = await self._store_message(payload, identity, bucket.bucket_name, processed_at)
        except AppError as e:
            logger.error(f"Aborted processing of message {payload.id}: {e.message}")
            return ProcessingResult(success=False, message=e.message, status_code=e.status_code)

        audio_attachments = payload.audio_attachments
        if audio_attachments:
            logger.info(f"Processing {len(audio_attachments)} audio attachments")
        for attachment in audio_attachments:
            try:
                ok = await self.audio.process_attachment(
                    attachment, payload, bucket.bucket_name, identity.user_id,
                    identity.contact_id, message_path, processed_at
                )
            except Exception as e:
                logger.error(f"Error processing audio attachment {attachment.id}: {str(e)}", exc_info=True)
                ok = False
            if not ok:
                logger.warning(f"Audio attachment {attachment.id} failed, but message {payload.id} was stored")

        return ProcessingResult(
            success=True,
            message=f"WhatsApp message {payload.id} processed and stored in bucket {bucket.bucket_name}",
            user_id=identity.user_id,
            bucket_name=bucket.bucket_name,
            whatsapp_number=identity.normalized_number or identity.whatsapp_number
        )

    async def _store_message(self, payload: ChatwootWebhookPayload, identity: ResolvedIdentity,
                             bucket_name: str, processed_at: datetime) -> str:
        """Write the object first, then the row that points at it. Returns the gs:// path."""
        object_path = message_object_path(payload, processed_at.date().isoformat())
        message_path = gcs_uri(bucket_name, object_path)
        logger.info(f"Storing message {payload.id} at {message_path}")

        envelope = {
            'webhook_payload': payload.to_document(),
            'processed_at': processed_at.isoformat(),
            'message_metadata': {
                'account_id': payload.account.id,
                'conversation_id': payload.conversation.id,
                'message_id': payload.id,
                'message_type': payload.message_type,
                'sender_type': payload.sender.type,
                'sender_id': payload.sender.id,
            },
        }
        if not await self.storage.upload_json(bucket_name, object_path, envelope):
            raise AppError('Failed to store message in GCS', status_code=502)

        try:
            self.records.insert_message({
                'user_id': identity.user_id,
                'contact_identifier': identity.contact_id,
                'chatwoot_conversation_id': str(payload.conversation.id),
                'chatwoot_message_id': str(payload.id),
                'chatwoot_contact_id': str(payload.sender.id),
                'content': message_content(payload),
                'source_type': 'whatsapp',
                'message_type': payload.message_type,
                'gcs_storage_path': message_path,
                'processing_status': 'stored',
                'metadata': {
                    'chatwoot_payload': payload.to_document(),
                    'sender_name': payload.sender.name,
                    'conversation_status': payload.conversation.status,
                    'account_id': payload.account.id,
                    'inbox_id': payload.inbox.id if payload.inbox else None,
                    'content_type': payload.content_type,
                    'original_content': payload.content,
                    'whatsapp_number': identity.whatsapp_number,
                },
                'processed_at': processed_at.isoformat(),
            })
        except AppError as e:
            logger.error(f"Message object {message_path} left without a database row: {e.message}")
            raise AppError('Failed to store message in database', status_code=e.status_code)

        return message_path
