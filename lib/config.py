from functools import lru_cache

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    # Supabase settings
    supabase_url: str = ''
    supabase_service_role_key: str = ''

    # Google Cloud Storage settings
    gcs_bucket_prefix: str = 'pacelane-whatsapp'
    gcs_project_id: str = ''
    gcs_client_email: str = ''
    gcs_private_key: str = ''
    gcs_private_key_id: str = ''
    gcs_location: str = 'US-CENTRAL1'

    # OpenAI settings
    openai_api_key: str = ''
    transcription_model: str = 'whisper-1'

    # Chatwoot settings
    chatwoot_base_url: str = ''

    # Phone numbers without a country code are assumed to belong here
    default_country_code: str = '55'

    log_level: str = 'INFO'

    @field_validator('gcs_private_key')
    @classmethod
    def expand_newlines(cls, value: str) -> str:
        # Keys pasted into env files usually carry literal "\n" sequences
        return value.replace('\\n', '\n')

    @field_validator('chatwoot_base_url')
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip('/')

    @field_validator('default_country_code')
    @classmethod
    def strip_plus(cls, value: str) -> str:
        return value.lstrip('+')

@lru_cache
def get_settings() -> Settings:
    return Settings()
