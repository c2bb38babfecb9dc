import json
import logging
from typing import Any, Dict

from lib.database import db_error, first_row, utc_now
from lib.error_handler import NotFoundError, UpstreamError, ValidationError
from lib.monitoring import FlaggedLogger

logger = logging.getLogger(__name__)
handoff_log = FlaggedLogger('WARM_HANDOFF', 'warm_handoff')

PROFILE_PLACEHOLDER = '{PROFILE_DATA}'

def render_user_prompt(template: str, profile_data: Dict[str, Any]) -> str:
    """
    Substitute the profile into the user template. Templates saved without the
    placeholder get the profile appended instead of being sent without it.
    """
    profile_json = json.dumps(profile_data or {}, indent=2)
    if PROFILE_PLACEHOLDER in template:
        return template.replace(PROFILE_PLACEHOLDER, profile_json)

    logger.warning(f"Warm handoff user template has no {PROFILE_PLACEHOLDER} placeholder, appending profile")
    return f"{template}\n\nUser profile:\n{profile_json}"

class WarmHandoffService:
    def __init__(self, supabase_client, openai_client, prompt_service, profile_service):
        self.supabase = supabase_client
        self.openai = openai_client
        self.prompts = prompt_service
        self.profiles = profile_service

    async def generate(self, user_id: str) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("userId is required")

        profile = self.profiles.get_profile(user_id)
        if not profile:
            raise NotFoundError("No profile found for this user.")

        system_prompt = self.prompts.get_prompt('warm_handoff_system')
        user_template = self.prompts.get_prompt('warm_handoff_user')

        handoff_log.log(f"Profile {profile['id']} v{profile.get('version')} loaded for {user_id}",
                        f"keys={sorted((profile.get('profile_data') or {}).keys())}")
        handoff_log.log(f"User template before substitution ({len(user_template)} chars),",
                        f"placeholder present: {PROFILE_PLACEHOLDER in user_template}")

        user_prompt = render_user_prompt(user_template, profile.get('profile_data'))

        handoff_log.log(f"User prompt after substitution ({len(user_prompt)} chars),",
                        f"placeholder remaining: {PROFILE_PLACEHOLDER in user_prompt}")

        handoff_text = self.openai.chat_completion([
            {'role': 'system', 'content': system_prompt},
            {'role': 'user', 'content': user_prompt}
        ])
        handoff_log.log(f"Generated handoff of {len(handoff_text)} chars")

        try:
            saved = first_row(self.supabase.table('warm_handoffs').insert({
                'user_id': user_id,
                'handoff_text': handoff_text,
                'source_memory_id': profile['id'],
                'profile_version': profile.get('version'),
                'created_at': utc_now()
            }).execute())
        except Exception as e:
            handoff_log.error(f"Failed to store handoff for {user_id}: {str(e)}")
            raise db_error("Save warm handoff", e)
        if not saved:
            raise UpstreamError("Warm handoff insert returned no row", user_message="Failed to save warm handoff")

        logger.info(f"Stored warm handoff {saved['id']} for {user_id}")
        return {
            'success': True,
            'handoffId': saved['id'],
            'handoffText': handoff_text,
            'sourceMemoryId': profile['id'],
            'createdAt': saved.get('created_at')
        }

    async def latest(self, user_id: str) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("userId is required")
        try:
            handoff = first_row(
                self.supabase.table('warm_handoffs')
                .select('*')
                .eq('user_id', user_id)
                .order('created_at', desc=True)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch warm handoff", e)
        if not handoff:
            raise NotFoundError("No warm handoff found for this user")
        return {'success': True, 'handoff': handoff}
