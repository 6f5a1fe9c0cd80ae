import logging
import time
import uuid
from typing import Any, Dict, Optional

from api.services.buckets import BucketManager
from api.services.identity import IdentityResolver

logger = logging.getLogger(__name__)

IDENTIFY_AND_ENSURE_BUCKET = 'identify-and-ensure-bucket'

def generate_contact_id() -> str:
    return f"contact_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

class UserBucketHandler:
    """Identify a user by WhatsApp number and make sure their bucket exists"""

    def __init__(self, identity: IdentityResolver, buckets: BucketManager):
        self.identity = identity
        self.buckets = buckets

    async def identify_and_ensure_bucket(self, whatsapp_number: Optional[str] = None,
                                         contact_id: Optional[str] = None,
                                         user_id: Optional[str] = None) -> Dict[str, Any]:
        logger.info(f"Identify and ensure bucket: number={whatsapp_number} contact={contact_id} user={user_id}")

        normalized = None
        if whatsapp_number and not user_id:
            user_id, normalized = self.identity.identify_by_number(whatsapp_number)

        contact_id = contact_id or generate_contact_id()
        bucket = await self.buckets.ensure_user_bucket(user_id, contact_id)

        return {
            'userId': user_id,
            'contactId': contact_id,
            'bucketName': bucket.bucket_name,
            'isNewBucket': bucket.created,
            'whatsappNumber': whatsapp_number,
            'normalizedNumber': normalized,
        }
