import logging
import time
from typing import Optional

import aiohttp
import jwt

from lib.config import Settings
from lib.error_handler import HTTP_ERRORS, ErrorHandler

logger = logging.getLogger(__name__)

TOKEN_URI = 'https://oauth2.googleapis.com/token'
STORAGE_SCOPE = 'https://www.googleapis.com/auth/cloud-platform'
JWT_BEARER_GRANT = 'urn:ietf:params:oauth:grant-type:jwt-bearer'
TOKEN_LIFETIME = 3600
# Refresh a cached token this many seconds before it expires
EXPIRY_MARGIN = 60

class GCSTokenProvider:
    """
    Exchanges a signed service-account assertion for a short-lived
    bearer token usable against the Cloud Storage JSON API.

    Tokens are cached for the lifetime of the provider, which is a single
    webhook invocation, so one delivery performs at most one exchange.
    """

    def __init__(self, settings: Settings, session: aiohttp.ClientSession):
        self.settings = settings
        self.session = session
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def build_assertion(self, now: Optional[int] = None) -> str:
        """Build and sign the RS256 JWT assertion for the token endpoint"""
        now = int(time.time()) if now is None else now
        claims = {
            'iss': self.settings.gcs_client_email,
            'scope': STORAGE_SCOPE,
            'aud': TOKEN_URI,
            'iat': now,
            'exp': now + TOKEN_LIFETIME,
        }
        headers = {'kid': self.settings.gcs_private_key_id} if self.settings.gcs_private_key_id else None
        return jwt.encode(claims, self.settings.gcs_private_key, algorithm='RS256', headers=headers)

    async def get_access_token(self) -> Optional[str]:
        """Return a bearer token, or None when any step of the exchange fails"""
        if self._token and time.time() < self._expires_at - EXPIRY_MARGIN:
            return self._token

        try:
            assertion = self.build_assertion()
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            logger.error(f"Failed to sign service account assertion: {str(e)}")
            return None

        try:
            async with self.session.post(
                TOKEN_URI,
                data={'grant_type': JWT_BEARER_GRANT, 'assertion': assertion}
            ) as response:
                if response.status != 200:
                    logger.error(f"Token request failed: {response.status} - {await response.text()}")
                    return None
                token_data = await response.json()
        except HTTP_ERRORS as e:
            logger.error(f"Error requesting access token: {ErrorHandler.describe(e)}")
            return None

        token = token_data.get('access_token')
        if not token:
            logger.error("Token response did not include an access_token")
            return None

        self._token = token
        self._expires_at = time.time() + int(token_data.get('expires_in', TOKEN_LIFETIME))
        logger.info("Obtained GCS access token")
        return token
