import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import aiohttp

from api.models import Attachment, ChatwootWebhookPayload
from api.services.records import RecordStore, utc_now
from api.services.storage import GCSStorageGateway, gcs_uri
from lib.config import Settings
from lib.error_handler import HTTP_ERRORS, AppError, ErrorHandler
from lib.openai_client import Transcription, TranscriptionClient

logger = logging.getLogger(__name__)

# Chatwoot sometimes emits attachment URLs with an empty host
MISSING_HOST = re.compile(r'^https?:///')
DEFAULT_AUDIO_TYPE = 'audio/mpeg'

AUDIO_EXTENSIONS = {
    'audio/amr': 'amr',
    'audio/amr-wb': 'amr',
    'audio/mp3': 'mp3',
    'audio/mpeg': 'mp3',
    'audio/ogg': 'ogg',
    'audio/opus': 'ogg',
    'audio/wav': 'wav',
    'audio/x-wav': 'wav',
    'audio/webm': 'webm',
    'audio/aac': 'aac',
    'audio/m4a': 'm4a',
    'audio/mp4': 'm4a',
}

def audio_extension(content_type: str) -> str:
    extension = AUDIO_EXTENSIONS.get((content_type or '').lower())
    if not extension:
        logger.warning(f"Unknown content type: {content_type}, defaulting to mp3")
        return 'mp3'
    return extension

def audio_object_path(payload: ChatwootWebhookPayload, attachment: Attachment, day: str) -> str:
    return f"whatsapp-audio/{day}/{payload.conversation.id}/{payload.id}_{attachment.id}.mp3"

class AudioTranscriptionPipeline:
    def __init__(self, settings: Settings, session: aiohttp.ClientSession, storage: GCSStorageGateway,
                 transcriber: TranscriptionClient, records: RecordStore):
        self.base_url = settings.chatwoot_base_url
        self.session = session
        self.storage = storage
        self.transcriber = transcriber
        self.records = records
        logger.info(f"Audio pipeline initialized with Chatwoot base URL: {self.base_url or '(none)'}")

    def resolve_attachment_url(self, data_url: str) -> str:
        if MISSING_HOST.match(data_url):
            return self.base_url + MISSING_HOST.sub('/', data_url)
        return data_url

    async def process_attachment(
        self,
        attachment: Attachment,
        payload: ChatwootWebhookPayload,
        bucket_name: str,
        user_id: Optional[str],
        contact_id: str,
        message_path: str,
        processed_at: datetime
    ) -> bool:
        """
        Store, transcribe and record one audio attachment.

        Returns False when the attachment could not be fully processed;
        never raises, so one bad attachment does not affect the others.
        """
        logger.info(f"Processing audio attachment {attachment.id} from {attachment.data_url}")

        downloaded = await self._download_audio(self.resolve_attachment_url(attachment.data_url))
        if not downloaded:
            logger.error(f"Failed to download audio file: {attachment.data_url}")
            return False
        audio_data, content_type = downloaded

        object_path = audio_object_path(payload, attachment, processed_at.date().isoformat())
        try:
            stored = await self.storage.upload_object(bucket_name, object_path, audio_data, content_type)
        except AppError as e:
            ErrorHandler.handle_storage_error(e)
            stored = False
        if not stored:
            logger.error(f"Failed to store audio in GCS: {gcs_uri(bucket_name, object_path)}")
            return False

        transcription, model = await self._transcribe(attachment, audio_data, content_type)

        meeting_note_id = self.records.find_message_id(str(payload.id), contact_id)
        if not meeting_note_id:
            logger.error(f"Failed to find stored message {payload.id} for audio attachment {attachment.id}")
            return False

        audio_path = gcs_uri(bucket_name, object_path)
        try:
            self.records.insert_audio_file({
                'user_id': user_id,
                'contact_identifier': contact_id,
                'meeting_note_id': meeting_note_id,
                'chatwoot_attachment_id': attachment.id,
                'chatwoot_attachment_url': attachment.data_url,
                'file_path': audio_path,
                'transcription': transcription.text or None,
                'transcription_status': 'completed' if transcription.succeeded else 'error',
                'transcription_error': transcription.error,
                'openai_model': model,
                'original_file_size': attachment.file_size,
                'duration_seconds': None,
                'processed_at': processed_at.isoformat(),
            })
        except AppError as e:
            logger.error(f"Failed to store audio record for attachment {attachment.id}: {e.message}")
            return False

        if not user_id:
            logger.info("No registered user for this contact; skipping knowledge base copy")
            return True
        if not transcription.succeeded:
            return True

        try:
            self.records.insert_knowledge_file(self._knowledge_file(
                attachment, payload, bucket_name, audio_path, user_id, contact_id,
                meeting_note_id, message_path, transcription, model, processed_at
            ))
        except AppError as e:
            logger.error(f"Failed to mirror audio {attachment.id} into knowledge base: {e.message}")
            return False

        logger.info(f"Successfully processed audio attachment {attachment.id}")
        return True

    async def _download_audio(self, url: str) -> Optional[Tuple[bytes, str]]:
        logger.info(f"Downloading audio from: {url}")
        try:
            async with self.session.get(url) as response:
                if response.status != 200:
                    logger.error(f"Failed to download audio: {response.status}")
                    return None
                audio_data = await response.read()
                content_type = response.headers.get('Content-Type', '').split(';')[0].strip()
        except HTTP_ERRORS as e:
            ErrorHandler.handle_download_error(url, e)
            return None

        logger.info(f"Audio file downloaded: {len(audio_data)} bytes, type: {content_type or 'unknown'}")
        return audio_data, content_type or DEFAULT_AUDIO_TYPE

    async def _transcribe(self, attachment: Attachment, audio_data: bytes,
                          content_type: str) -> Tuple[Transcription, str]:
        filename = f"audio.{audio_extension(content_type)}"
        transcription = await self.transcriber.transcribe_audio(audio_data, filename, content_type)
        if transcription.succeeded:
            return transcription, self.transcriber.model

        fallback = (attachment.transcribed_text or '').strip()
        if fallback:
            logger.warning(
                f"Transcription failed for attachment {attachment.id} ({transcription.error}); "
                f"using Chatwoot transcription"
            )
            return Transcription(text=fallback), 'chatwoot'
        return transcription, self.transcriber.model

    def _knowledge_file(self, attachment: Attachment, payload: ChatwootWebhookPayload, bucket_name: str,
                        audio_path: str, user_id: str, contact_id: str, meeting_note_id: str,
                        message_path: str, transcription: Transcription, model: str,
                        processed_at: datetime) -> Dict[str, Any]:
        return {
            'user_id': user_id,
            'name': f"WhatsApp Audio - {processed_at.date().isoformat()} - {contact_id}.mp3",
            'type': 'audio',
            'size': attachment.file_size,
            'url': audio_path,
            'storage_path': audio_path,
            'gcs_bucket': bucket_name,
            'gcs_path': audio_path,
            'content_extracted': True,
            'extracted_content': transcription.text,
            'extraction_metadata': {
                'method': 'openai_transcription' if model != 'chatwoot' else 'chatwoot_transcription',
                'model': model,
                'extracted_at': utc_now(),
            },
            'metadata': {
                'source': 'whatsapp_audio',
                'chatwoot_message_id': str(payload.id),
                'chatwoot_conversation_id': str(payload.conversation.id),
                'chatwoot_attachment_id': attachment.id,
                'contact_identifier': contact_id,
                'meeting_note_id': meeting_note_id,
                'message_gcs_path': message_path,
            },
        }
