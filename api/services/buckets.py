import logging
import re
from dataclasses import dataclass
from typing import Optional

from api.services.records import RecordStore
from api.services.storage import GCSStorageGateway
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

BASE36_DIGITS = '0123456789abcdefghijklmnopqrstuvwxyz'
INVALID_BUCKET_CHARS = re.compile(r'[^a-z0-9-]')

@dataclass
class BucketInfo:
    bucket_name: str
    created: bool = False

def to_base36(value: int) -> str:
    if value == 0:
        return '0'
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_DIGITS[remainder])
    return ''.join(reversed(digits))

def hash_user_id(user_id: str) -> str:
    """Stable 32-bit string hash of a user id, rendered in base 36"""
    value = 0
    for char in user_id:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return to_base36(abs(value))

def user_bucket_name(prefix: str, user_id: str) -> str:
    return f"{prefix}-user-{hash_user_id(user_id)}".lower()

def contact_bucket_name(prefix: str, contact_id: str) -> str:
    return f"{prefix}-contact-{INVALID_BUCKET_CHARS.sub('-', contact_id.lower())}".lower()

class BucketManager:
    """Resolves, and if needed provisions, the bucket a user's messages go to"""

    def __init__(self, records: RecordStore, storage: GCSStorageGateway, prefix: str):
        self.records = records
        self.storage = storage
        self.prefix = prefix

    async def ensure_user_bucket(self, user_id: Optional[str], contact_id: str) -> BucketInfo:
        if not user_id:
            return await self._ensure_contact_bucket(contact_id)

        mapped = self.records.get_bucket_for_user(user_id)
        if mapped:
            logger.info(f"Using mapped bucket {mapped} for user {user_id}")
            return BucketInfo(bucket_name=mapped)

        bucket_name = user_bucket_name(self.prefix, user_id)
        logger.info(f"Generated bucket name {bucket_name} for user {user_id}")

        existing = self.records.get_bucket_mapping_by_name(bucket_name)
        if existing:
            # hash collision with another user
            logger.warning(
                f"Bucket {bucket_name} is already mapped to user {existing.get('user_id')}; "
                f"reusing it for user {user_id}"
            )
            self.records.save_bucket_mapping(user_id, bucket_name)
            return BucketInfo(bucket_name=bucket_name)

        if await self.storage.bucket_exists(bucket_name):
            logger.info(f"Bucket {bucket_name} exists without a mapping; backfilling")
            self.records.save_bucket_mapping(user_id, bucket_name)
            return BucketInfo(bucket_name=bucket_name)

        if not await self.storage.create_bucket(bucket_name):
            raise AppError(f"Failed to create bucket: {bucket_name}", status_code=502)

        self.records.save_bucket_mapping(user_id, bucket_name)
        return BucketInfo(bucket_name=bucket_name, created=True)

    async def _ensure_contact_bucket(self, contact_id: str) -> BucketInfo:
        bucket_name = contact_bucket_name(self.prefix, contact_id)
        logger.info(f"Using contact-based bucket {bucket_name}")

        if await self.storage.bucket_exists(bucket_name):
            return BucketInfo(bucket_name=bucket_name)

        if not await self.storage.create_bucket(bucket_name):
            raise AppError(f"Failed to create bucket: {bucket_name}", status_code=502)
        return BucketInfo(bucket_name=bucket_name, created=True)
