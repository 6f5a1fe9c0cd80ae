import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from api.models import ChatwootWebhookPayload, ExternalId
from api.services.records import RecordStore

logger = logging.getLogger(__name__)

NON_PHONE_CHARS = re.compile(r'[^\d+]')
SEPARATORS = re.compile(r'[\s\-().]')
PHONE_LIKE = re.compile(r'^\+?\d{8,15}$')
# A run of digits with optional separators, long enough to be a phone number
PHONE_IN_TEXT = re.compile(r'\+?\d[\d\s\-().]{6,}\d')

# Profile columns probed, in order, for every number variation
PROFILE_PHONE_COLUMNS = ('whatsapp_number', 'phone_number')

# Digit counts of a national number without trunk prefix or country code
NATIONAL_LENGTHS = (10, 11)

@dataclass
class ResolvedIdentity:
    user_id: Optional[str]
    contact_id: str
    whatsapp_number: Optional[str] = None
    normalized_number: Optional[str] = None

def build_contact_identifier(sender_id: ExternalId, account_id: ExternalId) -> str:
    return f"contact_{sender_id}_account_{account_id}"

def looks_like_phone(value: str) -> bool:
    return bool(PHONE_LIKE.match(SEPARATORS.sub('', value)))

def find_phone_in_text(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    for match in PHONE_IN_TEXT.finditer(text):
        candidate = match.group(0).strip()
        if looks_like_phone(candidate):
            return candidate
    return None

def _attr(attributes: Optional[dict], key: str = 'phone_number') -> Optional[str]:
    value = (attributes or {}).get(key)
    return str(value) if value not in (None, '') else None

def phone_candidates(payload: ChatwootWebhookPayload) -> Iterable[Tuple[str, Optional[str]]]:
    contact_inbox = payload.conversation.contact_inbox
    yield 'sender.phone_number', payload.sender.phone_number
    yield 'conversation.contact_inbox.source_id', contact_inbox.source_id if contact_inbox else None
    yield 'sender.additional_attributes', _attr(payload.sender.additional_attributes)
    yield 'conversation.additional_attributes', _attr(payload.conversation.additional_attributes)
    yield 'account.additional_attributes', _attr(payload.account.additional_attributes)
    yield 'sender.name', find_phone_in_text(payload.sender.name)
    yield 'source_id', find_phone_in_text(payload.source_id)

def extract_phone_number(payload: ChatwootWebhookPayload) -> Optional[str]:
    """First phone-looking value found in the payload, in priority order"""
    for source, value in phone_candidates(payload):
        if value and value.strip() and looks_like_phone(value.strip()):
            logger.info(f"Found WhatsApp number in {source}")
            return value.strip()
    return None

def normalize_phone_number(number: str, country_code: str = '55') -> str:
    """
    Canonical form of a phone number.

    National numbers are assumed to belong to ``country_code``: a number
    with a single leading trunk ``0`` loses the ``0`` and gets the code
    prepended, as does a bare 10 or 11 digit number (landline and mobile
    national lengths). Longer bare numbers are taken to already include a
    country code.
    """
    normalized = NON_PHONE_CHARS.sub('', number)

    if normalized.startswith('00'):
        return '+' + normalized[2:]
    if normalized.startswith('+'):
        return normalized
    if normalized.startswith('0') and len(normalized) > 1:
        return f"+{country_code}{normalized[1:]}"
    if len(normalized) in NATIONAL_LENGTHS:
        return f"+{country_code}{normalized}"
    if len(normalized) > max(NATIONAL_LENGTHS):
        return '+' + normalized
    return normalized

def generate_number_variations(number: str, country_code: str = '55') -> List[str]:
    """Representations a stored number may have been saved under, canonical form first"""
    variations = [number]

    local_prefix = f"+{country_code}"
    if number.startswith(local_prefix):
        national = number[len(local_prefix):]
        variations.append(national)
        if national.startswith('0'):
            variations.append(national[1:])
        else:
            variations.append('0' + national)

    if number.startswith('+'):
        variations.append(number[1:])
    else:
        variations.append('+' + number)

    return list(dict.fromkeys(v for v in variations if v))

class IdentityResolver:
    def __init__(self, records: RecordStore, country_code: str = '55'):
        self.records = records
        self.country_code = country_code

    async def resolve_user(self, payload: ChatwootWebhookPayload) -> ResolvedIdentity:
        """
        Work out which registered user sent this message.

        Falls back to an anonymous contact identity; never raises for a
        missing match.
        """
        contact_id = build_contact_identifier(payload.sender.id, payload.account.id)
        whatsapp_number = extract_phone_number(payload)

        user_id = None
        normalized = None
        if whatsapp_number:
            user_id, normalized = self.identify_by_number(
                whatsapp_number,
                chatwoot_contact_id=str(payload.sender.id),
                chatwoot_account_id=str(payload.account.id)
            )
        else:
            logger.info(f"No WhatsApp number found in payload for {contact_id}")

        if not user_id:
            user_id = self.records.find_user_for_contact(contact_id)
            if user_id:
                logger.info(f"Found existing user mapping via message history: {user_id}")

        if not user_id:
            logger.info(f"Using contact identifier {contact_id} for anonymous sender")

        return ResolvedIdentity(
            user_id=user_id,
            contact_id=contact_id,
            whatsapp_number=whatsapp_number,
            normalized_number=normalized
        )

    def identify_by_number(self, whatsapp_number: str,
                           chatwoot_contact_id: Optional[str] = None,
                           chatwoot_account_id: Optional[str] = None) -> Tuple[Optional[str], str]:
        """Returns ``(user_id or None, canonical number)``"""
        normalized = normalize_phone_number(whatsapp_number, self.country_code)
        variations = generate_number_variations(normalized, self.country_code)
        logger.info(f"Identifying user by WhatsApp number {normalized} ({len(variations)} variations)")

        # The exact canonical number is checked in every table before any alternate form
        for candidates in (variations[:1], variations[1:]):
            user_id = self._match_mapping(candidates) or self._match_profile(
                candidates, normalized, chatwoot_contact_id, chatwoot_account_id
            )
            if user_id:
                return user_id, normalized

        logger.info(f"No user found for WhatsApp number: {normalized}")
        return None, normalized

    def _match_mapping(self, candidates: List[str]) -> Optional[str]:
        for variation in candidates:
            user_id = self.records.find_user_by_whatsapp_mapping(variation)
            if user_id:
                logger.info(f"Found existing WhatsApp mapping: {user_id} for number: {variation}")
                return user_id
        return None

    def _match_profile(self, candidates: List[str], normalized: str,
                       chatwoot_contact_id: Optional[str],
                       chatwoot_account_id: Optional[str]) -> Optional[str]:
        for column in PROFILE_PHONE_COLUMNS:
            for variation in candidates:
                profile = self.records.find_profile(column, variation)
                if not profile:
                    continue
                user_id = profile['user_id']
                logger.info(f"Found user profile by {column}: {user_id} for number: {variation}")
                if column == 'phone_number' and not profile.get('whatsapp_number'):
                    self.records.set_profile_whatsapp_number(user_id, normalized)
                self.records.save_whatsapp_mapping(
                    user_id, normalized,
                    chatwoot_contact_id=chatwoot_contact_id,
                    chatwoot_account_id=chatwoot_account_id
                )
                return user_id
        return None
