from dataclasses import dataclass
from typing import Optional
import logging

from openai import AsyncOpenAI

from lib.config import Settings
from lib.error_handler import ErrorHandler

logger = logging.getLogger(__name__)

@dataclass
class Transcription:
    text: str
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return bool(self.text) and not self.error

class TranscriptionClient:
    """Speech-to-text over the OpenAI audio transcription endpoint"""

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        self.model = settings.transcription_model
        self.api_key = settings.openai_api_key
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def transcribe_audio(self, audio_data: bytes, filename: str = 'audio.mp3',
                               content_type: str = 'audio/mpeg') -> Transcription:
        """
        Transcribe raw audio bytes. Failures are returned as an error
        string on the result instead of being raised.
        """
        if self._client is None and not self.api_key:
            logger.error("OpenAI API key not configured")
            return Transcription(text='', error='OpenAI API key not configured')

        try:
            logger.info(f"Transcribing audio with {self.model} ({len(audio_data)} bytes)")
            response = await self.client.audio.transcriptions.create(
                model=self.model,
                file=(filename, audio_data, content_type)
            )
        except Exception as e:
            return Transcription(text='', error=ErrorHandler.handle_transcription_error(e))

        text = (getattr(response, 'text', None) or '').strip()
        logger.info(f"Transcription complete: {text[:50]}...")
        return Transcription(text=text)
