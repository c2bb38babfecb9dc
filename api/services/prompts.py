import logging
from typing import Optional

from lib.database import first_row
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

class PromptNotFoundError(AppError):
    status_code = 500

    def __init__(self, category: str):
        message = f"Could not find active prompt for category: {category}"
        super().__init__(message, user_message=message)
        self.category = category

class PromptService:
    """Versioned prompt templates: ``prompts`` rows keyed by category, content in ``prompt_versions``."""

    def __init__(self, supabase_client):
        self.supabase = supabase_client

    def find_prompt(self, category: str) -> Optional[str]:
        prompt = first_row(
            self.supabase.table('prompts')
            .select('id, category, created_at')
            .eq('category', category)
            .eq('is_active', True)
            .order('created_at', desc=True)
            .limit(1)
            .execute()
        )
        if not prompt:
            return None

        version = first_row(
            self.supabase.table('prompt_versions')
            .select('content, version_number')
            .eq('prompt_id', prompt['id'])
            .order('version_number', desc=True)
            .limit(1)
            .execute()
        )
        if not version or not version.get('content'):
            logger.warning(f"Prompt {prompt['id']} ({category}) has no versions with content")
            return None

        logger.info(f"Loaded prompt {category} v{version.get('version_number')} ({len(version['content'])} chars)")
        return version['content']

    def get_prompt(self, category: str) -> str:
        content = self.find_prompt(category)
        if content is None:
            raise PromptNotFoundError(category)
        return content
