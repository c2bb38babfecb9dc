from functools import lru_cache

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    # Supabase settings
    supabase_url: str = ''
    supabase_service_role_key: str = ''
    audio_bucket: str = 'audio-recordings'
    message_audio_bucket: str = 'provider-messages'

    # OpenAI settings
    openai_api_key: str = ''
    chat_model: str = 'gpt-5-mini'
    transcription_model: str = 'gpt-4o-transcribe'
    embedding_model: str = 'text-embedding-3-large'

    # Twilio settings
    twilio_account_sid: str = ''
    twilio_auth_token: str = ''
    twilio_phone_number: str = ''

    # Pinecone settings
    pinecone_api_key: str = ''
    pinecone_index: str = ''
    pinecone_namespace: str = 'trauma_informed_youth_mental_health_companion_v250420'

    # Access code lookups
    access_code_max_failures: int = 10
    access_code_window_seconds: int = 3600
    access_code_max_failures_per_client: int = 30

    # Task outbox
    outbox_max_attempts: int = 5
    outbox_backoff_seconds: int = 30
    outbox_batch_size: int = 20
    outbox_lease_seconds: int = 600

    # Memory processing
    memory_batch_size: int = 10
    scheduled_memory_days: int = 7
    memory_job_timeout_seconds: int = 900

    expose_error_details: bool = False
    app_base_url: str = 'http://localhost:8000'

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @property
    def pinecone_configured(self) -> bool:
        return bool(self.pinecone_api_key and self.pinecone_index)

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_phone_number)

@lru_cache
def get_settings() -> Settings:
    return Settings()
