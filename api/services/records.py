import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from supabase import Client, create_client

from lib.config import Settings
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()

class RecordStore:
    """
    Table access for the ingestion pipeline.

    Lookups never raise: a failed query is logged and treated as "not
    found". Mapping writes are best-effort. Message, audio and knowledge
    inserts raise AppError because callers must know whether the row exists.
    """

    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client
        self.bucket_mapping_table = 'user_bucket_mapping'
        self.whatsapp_mapping_table = 'whatsapp_user_mapping'
        self.profiles_table = 'profiles'
        self.messages_table = 'meeting_notes'
        self.audio_table = 'audio_files'
        self.knowledge_table = 'knowledge_files'

    @classmethod
    def from_settings(cls, settings: Settings) -> 'RecordStore':
        logger.info("Initializing Supabase client...")
        client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        return cls(client)

    def _first(self, query, description: str) -> Optional[Dict[str, Any]]:
        try:
            result = query.limit(1).execute()
        except Exception as e:
            logger.error(f"Lookup failed ({description}): {str(e)}")
            return None
        return result.data[0] if result.data else None

    def _insert(self, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self.supabase.table(table).insert(data).execute()
        except Exception as e:
            logger.error(f"Failed to insert into {table}: {str(e)}")
            raise AppError(f"Database insert into {table} failed: {str(e)}", status_code=502)
        if not result.data:
            raise AppError(f"Database insert into {table} returned no rows", status_code=502)
        return result.data[0]

    # user_bucket_mapping

    def get_bucket_for_user(self, user_id: str) -> Optional[str]:
        row = self._first(
            self.supabase.table(self.bucket_mapping_table).select('bucket_name').eq('user_id', user_id),
            f"bucket mapping for user {user_id}"
        )
        return row['bucket_name'] if row else None

    def get_bucket_mapping_by_name(self, bucket_name: str) -> Optional[Dict[str, Any]]:
        return self._first(
            self.supabase.table(self.bucket_mapping_table).select('user_id, bucket_name').eq('bucket_name', bucket_name),
            f"bucket mapping for bucket {bucket_name}"
        )

    def save_bucket_mapping(self, user_id: str, bucket_name: str) -> bool:
        data = {
            'user_id': user_id,
            'bucket_name': bucket_name,
            'created_at': utc_now(),
        }
        try:
            self.supabase.table(self.bucket_mapping_table).upsert(
                data, on_conflict='user_id', ignore_duplicates=True
            ).execute()
        except Exception as e:
            logger.error(f"Failed to store bucket mapping {user_id} -> {bucket_name}: {str(e)}")
            return False
        logger.info(f"Stored bucket mapping {user_id} -> {bucket_name}")
        return True

    # whatsapp_user_mapping and profiles

    def find_user_by_whatsapp_mapping(self, whatsapp_number: str) -> Optional[str]:
        row = self._first(
            self.supabase.table(self.whatsapp_mapping_table).select('user_id').eq('whatsapp_number', whatsapp_number),
            f"whatsapp mapping for {whatsapp_number}"
        )
        return row['user_id'] if row else None

    def save_whatsapp_mapping(self, user_id: str, whatsapp_number: str,
                              chatwoot_contact_id: Optional[str] = None,
                              chatwoot_account_id: Optional[str] = None) -> bool:
        data = {
            'user_id': user_id,
            'whatsapp_number': whatsapp_number,
            'chatwoot_contact_id': chatwoot_contact_id,
            'chatwoot_account_id': chatwoot_account_id,
            'is_verified': False,
            'created_at': utc_now(),
        }
        try:
            self.supabase.table(self.whatsapp_mapping_table).insert(data).execute()
        except Exception as e:
            logger.error(f"Error creating WhatsApp mapping for user {user_id}: {str(e)}")
            return False
        logger.info(f"Created WhatsApp mapping for user {user_id}")
        return True

    def find_profile(self, column: str, value: str) -> Optional[Dict[str, Any]]:
        """Look up a profile by ``whatsapp_number`` or ``phone_number``"""
        return self._first(
            self.supabase.table(self.profiles_table).select('user_id, whatsapp_number, phone_number').eq(column, value),
            f"profile by {column}"
        )

    def set_profile_whatsapp_number(self, user_id: str, whatsapp_number: str) -> None:
        try:
            self.supabase.table(self.profiles_table).update(
                {'whatsapp_number': whatsapp_number}
            ).eq('user_id', user_id).execute()
        except Exception as e:
            logger.warning(f"Could not backfill whatsapp_number on profile {user_id}: {str(e)}")

    # meeting_notes

    def find_user_for_contact(self, contact_identifier: str) -> Optional[str]:
        row = self._first(
            self.supabase.table(self.messages_table)
                .select('user_id')
                .eq('contact_identifier', contact_identifier)
                .not_.is_('user_id', 'null'),
            f"historical messages for {contact_identifier}"
        )
        return row['user_id'] if row else None

    def insert_message(self, data: Dict[str, Any]) -> Dict[str, Any]:
        row = self._insert(self.messages_table, data)
        logger.info(f"Message stored in database: {row.get('id')}")
        return row

    def find_message_id(self, chatwoot_message_id: str, contact_identifier: str) -> Optional[str]:
        row = self._first(
            self.supabase.table(self.messages_table)
                .select('id')
                .eq('chatwoot_message_id', chatwoot_message_id)
                .eq('contact_identifier', contact_identifier),
            f"message {chatwoot_message_id}"
        )
        return row['id'] if row else None

    # audio_files and knowledge_files

    def insert_audio_file(self, data: Dict[str, Any]) -> Dict[str, Any]:
        row = self._insert(self.audio_table, data)
        logger.info(f"Audio record stored in database: {row.get('id')}")
        return row

    def insert_knowledge_file(self, data: Dict[str, Any]) -> Dict[str, Any]:
        row = self._insert(self.knowledge_table, data)
        logger.info(f"Knowledge file stored for user {data.get('user_id')}: {row.get('id')}")
        return row
