import pytest
from unittest.mock import MagicMock
import sys
from pathlib import Path

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from lib.config import Settings
from api.routes import build_services, create_app
from tests.fake_supabase import FakeSupabase

def seed_prompt(db, category, content, version_number=1, is_active=True, created_at='2025-01-01T00:00:00+00:00'):
    prompt = db.seed('prompts', {'category': category, 'is_active': is_active, 'created_at': created_at})[0]
    db.seed('prompt_versions', {'prompt_id': prompt['id'], 'content': content, 'version_number': version_number})
    return prompt

@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        supabase_url='https://test.supabase.co',
        supabase_service_role_key='test-service-key',
        openai_api_key='test-openai-key',
        twilio_account_sid='ACtest',
        twilio_auth_token='test-token',
        twilio_phone_number='+15550000000',
        pinecone_api_key='',
        pinecone_index='',
        app_base_url='https://app.test'
    )

@pytest.fixture
def fake_db():
    return FakeSupabase()

@pytest.fixture
def mock_openai():
    client = MagicMock()
    client.chat_completion = MagicMock(return_value="Generated text")
    client.transcribe = MagicMock(return_value="Patient reports trouble sleeping.")
    client.embed = MagicMock(return_value=[0.1] * 8)
    return client

@pytest.fixture
def mock_twilio():
    client = MagicMock()
    client.send_message = MagicMock(return_value='SM123')
    return client

@pytest.fixture
def services(settings, fake_db, mock_openai, mock_twilio):
    return build_services(
        settings,
        supabase_client=fake_db,
        openai_client=mock_openai,
        twilio_client=mock_twilio
    )

@pytest.fixture
def app(services, settings):
    app = create_app(services=services, settings=settings)
    app.config['TESTING'] = True
    return app

@pytest.fixture
def test_client(app):
    return app.test_client()
