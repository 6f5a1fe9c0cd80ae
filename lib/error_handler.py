import asyncio
import logging

import aiohttp

logger = logging.getLogger(__name__)

# Transport failures of an outbound call; aiohttp reports a total timeout as asyncio.TimeoutError
HTTP_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)

class AppError(Exception):
    """Unrecoverable pipeline failure; status_code is the HTTP status reported to Chatwoot"""

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

class ErrorHandler:
    @staticmethod
    def describe(error: Exception) -> str:
        return str(error) or type(error).__name__

    @staticmethod
    def handle_transcription_error(error: Exception) -> str:
        logger.error(f"Transcription error: {ErrorHandler.describe(error)}")
        return f"Transcription failed: {ErrorHandler.describe(error)}"

    @staticmethod
    def handle_storage_error(error: Exception) -> str:
        logger.error(f"Storage error: {ErrorHandler.describe(error)}")
        return f"Storage failed: {ErrorHandler.describe(error)}"

    @staticmethod
    def handle_download_error(url: str, error: Exception) -> str:
        logger.error(f"Download error for {url}: {ErrorHandler.describe(error)}")
        return f"Download failed: {ErrorHandler.describe(error)}"
