import json
import logging
from enum import Enum
from typing import Any, Dict
from urllib.parse import quote

import aiohttp

from lib.config import Settings
from lib.error_handler import HTTP_ERRORS, AppError, ErrorHandler
from lib.gcs_auth import GCSTokenProvider

logger = logging.getLogger(__name__)

STORAGE_API = 'https://storage.googleapis.com/storage/v1'
UPLOAD_API = 'https://storage.googleapis.com/upload/storage/v1'

# Age in days after which objects move to a cheaper storage class
LIFECYCLE_TIERS = (
    (30, 'NEARLINE'),
    (90, 'COLDLINE'),
    (365, 'ARCHIVE'),
)

class BucketExistence(Enum):
    EXISTS = 'exists'
    NOT_EXISTS = 'not_exists'
    ASSUME_EXISTS = 'assume_exists'

def classify_existence_response(status: int) -> BucketExistence:
    """
    Map a bucket metadata response status to an existence verdict.

    Only a 404 means the bucket is absent. Anything ambiguous (403, 5xx,
    rate limiting) is reported as ASSUME_EXISTS so that concurrent or
    retried deliveries never race to create the same bucket twice.
    """
    if status == 200:
        return BucketExistence.EXISTS
    if status == 404:
        return BucketExistence.NOT_EXISTS
    return BucketExistence.ASSUME_EXISTS

def bucket_config(bucket_name: str, location: str) -> Dict[str, Any]:
    return {
        'name': bucket_name,
        'location': location,
        'storageClass': 'STANDARD',
        'lifecycle': {
            'rule': [
                {
                    'action': {'type': 'SetStorageClass', 'storageClass': storage_class},
                    'condition': {'age': age},
                }
                for age, storage_class in LIFECYCLE_TIERS
            ]
        },
    }

def gcs_uri(bucket_name: str, object_path: str) -> str:
    return f"gs://{bucket_name}/{object_path}"

class GCSStorageGateway:
    def __init__(self, settings: Settings, session: aiohttp.ClientSession, token_provider: GCSTokenProvider):
        self.project_id = settings.gcs_project_id
        self.location = settings.gcs_location
        self.session = session
        self.token_provider = token_provider

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self.token_provider.get_access_token()
        if not token:
            raise AppError("Failed to get GCS access token", status_code=502)
        return {'Authorization': f"Bearer {token}"}

    async def bucket_exists(self, bucket_name: str) -> bool:
        headers = await self._auth_headers()
        try:
            async with self.session.get(f"{STORAGE_API}/b/{bucket_name}", headers=headers) as response:
                verdict = classify_existence_response(response.status)
                if verdict is BucketExistence.ASSUME_EXISTS:
                    logger.warning(
                        f"Ambiguous response checking bucket {bucket_name}: "
                        f"{response.status} - {await response.text()}; assuming it exists"
                    )
        except HTTP_ERRORS as e:
            logger.warning(f"Error checking bucket {bucket_name}: {ErrorHandler.describe(e)}; assuming it exists")
            return True

        logger.info(f"Bucket {bucket_name}: {verdict.value}")
        return verdict is not BucketExistence.NOT_EXISTS

    async def create_bucket(self, bucket_name: str) -> bool:
        headers = await self._auth_headers()
        headers['Content-Type'] = 'application/json'
        logger.info(f"Creating bucket: {bucket_name}")
        try:
            async with self.session.post(
                f"{STORAGE_API}/b",
                params={'project': self.project_id},
                headers=headers,
                data=json.dumps(bucket_config(bucket_name, self.location))
            ) as response:
                if response.status in (200, 201):
                    logger.info(f"Bucket {bucket_name} created successfully")
                    return True
                logger.error(f"Error creating bucket {bucket_name}: {response.status} - {await response.text()}")
                return False
        except HTTP_ERRORS as e:
            logger.error(f"Error creating bucket {bucket_name}: {ErrorHandler.describe(e)}")
            return False

    async def upload_object(self, bucket_name: str, object_path: str, data: bytes, content_type: str) -> bool:
        headers = await self._auth_headers()
        headers['Content-Type'] = content_type
        url = f"{UPLOAD_API}/b/{bucket_name}/o?uploadType=media&name={quote(object_path, safe='')}"
        try:
            async with self.session.post(url, headers=headers, data=data) as response:
                if 200 <= response.status < 300:
                    logger.info(f"Stored {gcs_uri(bucket_name, object_path)} ({len(data)} bytes)")
                    return True
                logger.error(
                    f"Error storing {gcs_uri(bucket_name, object_path)}: "
                    f"{response.status} - {await response.text()}"
                )
                return False
        except HTTP_ERRORS as e:
            logger.error(f"Error storing {gcs_uri(bucket_name, object_path)}: {ErrorHandler.describe(e)}")
            return False

    async def upload_json(self, bucket_name: str, object_path: str, document: Dict[str, Any]) -> bool:
        body = json.dumps(document, default=str).encode('utf-8')
        return await self.upload_object(bucket_name, object_path, body, 'application/json')
