import copy
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from api.services.storage import gcs_uri
from lib.config import Settings
from lib.error_handler import AppError
from lib.openai_client import Transcription

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

class FakeResponse:
    """Stands in for an aiohttp response used as an async context manager"""

    def __init__(self, status=200, json_data=None, body=b'', text='', headers=None):
        self.status = status
        self._json = json_data
        self._body = body
        self._text = text
        self.headers = headers or {}

    async def json(self):
        return self._json

    async def read(self):
        return self._body

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

class FakeSession:
    """Routes requests by method and URL prefix; the most recently added route wins"""

    def __init__(self):
        self.routes = []
        self.requests = []

    def add(self, method, url_prefix, response):
        self.routes.insert(0, (method, url_prefix, response))

    def _request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        for route_method, prefix, response in self.routes:
            if route_method == method and url.startswith(prefix):
                if isinstance(response, Exception):
                    raise response
                return response
        raise AssertionError(f"Unexpected request: {method} {url}")

    def get(self, url, **kwargs):
        return self._request('GET', url, **kwargs)

    def post(self, url, **kwargs):
        return self._request('POST', url, **kwargs)

class FakeStorage:
    """In-memory bucket store with the GCSStorageGateway interface"""

    def __init__(self):
        self.buckets = set()
        self.objects = {}
        self.created = []
        self.exists_checks = []
        self.assume_exists = False
        self.create_ok = True
        self.fail_prefixes = ()

    async def bucket_exists(self, bucket_name):
        self.exists_checks.append(bucket_name)
        return self.assume_exists or bucket_name in self.buckets

    async def create_bucket(self, bucket_name):
        self.created.append(bucket_name)
        if self.create_ok:
            self.buckets.add(bucket_name)
        return self.create_ok

    async def upload_object(self, bucket_name, object_path, data, content_type):
        if object_path.startswith(self.fail_prefixes):
            return False
        self.objects[gcs_uri(bucket_name, object_path)] = (data, content_type)
        return True

    async def upload_json(self, bucket_name, object_path, document):
        body = json.dumps(document, default=str).encode('utf-8')
        return await self.upload_object(bucket_name, object_path, body, 'application/json')

class FakeRecordStore:
    """In-memory tables with the RecordStore interface"""

    def __init__(self):
        self.bucket_mappings = {}
        self.whatsapp_mappings = []
        self.profiles = []
        self.messages = []
        self.audio_files = []
        self.knowledge_files = []
        self.fail_tables = set()

    def _insert(self, table, rows, data):
        if table in self.fail_tables:
            raise AppError(f"Database insert into {table} failed: simulated", status_code=502)
        row = dict(data, id=f"{table}-{len(rows) + 1}")
        rows.append(row)
        return row

    def get_bucket_for_user(self, user_id):
        return self.bucket_mappings.get(user_id)

    def get_bucket_mapping_by_name(self, bucket_name):
        for user_id, name in self.bucket_mappings.items():
            if name == bucket_name:
                return {'user_id': user_id, 'bucket_name': name}
        return None

    def save_bucket_mapping(self, user_id, bucket_name):
        self.bucket_mappings.setdefault(user_id, bucket_name)
        return True

    def find_user_by_whatsapp_mapping(self, whatsapp_number):
        for row in self.whatsapp_mappings:
            if row['whatsapp_number'] == whatsapp_number:
                return row['user_id']
        return None

    def save_whatsapp_mapping(self, user_id, whatsapp_number, chatwoot_contact_id=None, chatwoot_account_id=None):
        self.whatsapp_mappings.append({
            'user_id': user_id,
            'whatsapp_number': whatsapp_number,
            'chatwoot_contact_id': chatwoot_contact_id,
            'chatwoot_account_id': chatwoot_account_id,
            'is_verified': False,
        })
        return True

    def find_profile(self, column, value):
        for profile in self.profiles:
            if profile.get(column) == value:
                return profile
        return None

    def set_profile_whatsapp_number(self, user_id, whatsapp_number):
        for profile in self.profiles:
            if profile['user_id'] == user_id:
                profile['whatsapp_number'] = whatsapp_number

    def find_user_for_contact(self, contact_identifier):
        for row in self.messages:
            if row['contact_identifier'] == contact_identifier and row.get('user_id'):
                return row['user_id']
        return None

    def insert_message(self, data):
        return self._insert('meeting_notes', self.messages, data)

    def find_message_id(self, chatwoot_message_id, contact_identifier):
        for row in self.messages:
            if row['chatwoot_message_id'] == chatwoot_message_id and row['contact_identifier'] == contact_identifier:
                return row['id']
        return None

    def insert_audio_file(self, data):
        return self._insert('audio_files', self.audio_files, data)

    def insert_knowledge_file(self, data):
        return self._insert('knowledge_files', self.knowledge_files, data)

@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        supabase_url='https://test.supabase.co',
        supabase_service_role_key='service-role-key',
        gcs_bucket_prefix='pacelane-whatsapp',
        gcs_project_id='test-project',
        gcs_client_email='ingest@test-project.iam.gserviceaccount.com',
        openai_api_key='test-openai-key',
        chatwoot_base_url='https://chat.example.com',
        default_country_code='55'
    )

@pytest.fixture
def records():
    return FakeRecordStore()

@pytest.fixture
def storage():
    return FakeStorage()

@pytest.fixture
def session():
    return FakeSession()

@pytest.fixture
def token_provider():
    provider = MagicMock()
    provider.get_access_token = AsyncMock(return_value='test-token')
    return provider

@pytest.fixture
def transcriber():
    client = MagicMock()
    client.model = 'whisper-1'
    client.transcribe_audio = AsyncMock(return_value=Transcription(text='Remind me to call the bank'))
    return client

SAMPLE_PAYLOAD = {
    'event': 'message_created',
    'id': 1001,
    'content': 'Hello from WhatsApp',
    'content_type': 'text',
    'message_type': 'incoming',
    'created_at': '2024-05-01T11:59:58Z',
    'source_id': 'wamid.HBgMNTUxMTk4NzY1NDMyFQIAEhgg',
    'sender': {
        'id': 42,
        'name': 'Maria Silva',
        'type': 'contact',
        'phone_number': '+5511987654321',
    },
    'conversation': {
        'id': 7,
        'channel': 'Channel::Whatsapp',
        'status': 'open',
        'contact_inbox': {'source_id': '5511987654321'},
    },
    'account': {'id': 3, 'name': 'Pacelane'},
    'inbox': {'id': 9, 'name': 'WhatsApp'},
}

AUDIO_ATTACHMENT = {
    'id': 555,
    'message_id': 1001,
    'file_type': 'audio',
    'data_url': 'https:///rails/active_storage/blobs/voice.ogg',
    'file_size': 2048,
}

@pytest.fixture
def webhook_payload():
    return copy.deepcopy(SAMPLE_PAYLOAD)

@pytest.fixture
def audio_attachment():
    return copy.deepcopy(AUDIO_ATTACHMENT)
