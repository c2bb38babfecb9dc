import logging
from typing import Any, Callable, Dict, Optional

from lib.database import db_error, first_row, is_unique_violation, utc_now
from lib.error_handler import ConflictError, NotFoundError, ValidationError
from lib.monitoring import FlaggedLogger

logger = logging.getLogger(__name__)
memory_log = FlaggedLogger('USER_MEMORY', 'user_memory')

MAX_VERSION_ATTEMPTS = 5

DEFAULT_AI_INSTRUCTIONS = (
    "You are a warm, supportive companion. Listen carefully, reflect back what you hear, "
    "ask one gentle question at a time and never give medical diagnoses. If the user "
    "mentions self-harm or danger, encourage them to contact emergency services or a crisis line."
)

def is_anonymous_user(user_id: Optional[str]) -> bool:
    return not user_id or user_id.startswith('anonymous-')

def enhance_prompt_with_memory(prompt: str, summary: str) -> str:
    """Append the user's memory summary to a prompt template"""
    return (
        f"{prompt}\n\n"
        "=== USER MEMORY CONTEXT ===\n"
        "The following is what you remember about this user from previous conversations. "
        "Use it naturally, without reciting it back.\n\n"
        f"{summary}\n"
        "=== END USER MEMORY CONTEXT ==="
    )

class ProfileService:
    def __init__(self, supabase_client, prompt_service):
        self.supabase = supabase_client
        self.prompts = prompt_service
        self.table = 'user_profiles'

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return first_row(
                self.supabase.table(self.table)
                .select('*')
                .eq('user_id', user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch user profile", e)

    def get_ai_instructions_summary(self, user_id: str) -> Optional[str]:
        profile = self.get_profile(user_id)
        summary = (profile or {}).get('ai_instructions_summary')
        if summary and summary.strip():
            return summary
        return None

    async def get_user_profile(self, user_id: str) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("userId is required")
        profile = self.get_profile(user_id)
        return {'success': True, 'profile': profile}

    async def resolve_ai_instructions(self, user_id: Optional[str], anonymous: bool = False) -> Dict[str, Any]:
        """User summary first, then the global ai_instructions prompt, then built-in defaults"""
        if not user_id and not anonymous:
            raise ValidationError("Either userId or anonymous flag is required")

        if user_id and not anonymous:
            summary = self.get_ai_instructions_summary(user_id)
            memory_log.log(f"AI instructions lookup for {user_id}: {'found' if summary else 'none'}")
            if summary:
                return {'success': True, 'promptContent': summary, 'source': 'user_profile'}

        global_prompt = self.prompts.find_prompt('ai_instructions')
        if global_prompt:
            return {'success': True, 'promptContent': global_prompt, 'source': 'global'}

        logger.info("No stored AI instructions, using defaults")
        return {'success': True, 'promptContent': DEFAULT_AI_INSTRUCTIONS, 'source': 'default'}

    async def load_prompt(self, prompt_type: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        if not prompt_type:
            raise ValidationError("Prompt type is required")

        content = self.prompts.find_prompt(prompt_type)
        if content is None:
            raise NotFoundError(f"No active prompt found for type: {prompt_type}")

        has_memory = False
        if not is_anonymous_user(user_id):
            try:
                summary = self.get_ai_instructions_summary(user_id)
            except Exception as e:
                logger.error(f"Failed to load memory for {user_id}, serving base prompt: {str(e)}")
                summary = None
            if summary:
                content = enhance_prompt_with_memory(content, summary)
                has_memory = True
                memory_log.log(f"Enhanced {prompt_type} prompt with {len(summary)} chars of memory for {user_id}")

        return {
            'success': True,
            'prompt': {'type': prompt_type, 'content': content, 'hasMemory': has_memory}
        }

    def _update_versioned(
        self,
        user_id: str,
        build_update: Callable[[Dict[str, Any]], Dict[str, Any]],
        create_missing: bool = False
    ) -> Dict[str, Any]:
        """
        Apply an update guarded by the row's current version, bumping it by one.
        Lost races are retried; ConflictError after MAX_VERSION_ATTEMPTS.
        """
        for attempt in range(MAX_VERSION_ATTEMPTS):
            current = self.get_profile(user_id)

            if current is None:
                if not create_missing:
                    raise NotFoundError("No profile found for this user.")
                record = {**build_update({}), 'user_id': user_id, 'version': 1,
                          'created_at': utc_now(), 'updated_at': utc_now()}
                try:
                    created = first_row(self.supabase.table(self.table).insert(record).execute())
                except Exception as e:
                    if is_unique_violation(e):
                        logger.info(f"Profile for {user_id} created concurrently, retrying as update")
                        continue
                    raise db_error("Create user profile", e)
                return created or record

            old_version = current.get('version')
            update = {
                **build_update(current),
                'version': (old_version or 0) + 1,
                'updated_at': utc_now()
            }
            query = self.supabase.table(self.table).update(update).eq('user_id', user_id)
            if old_version is None:
                query = query.is_('version', 'null')
            else:
                query = query.eq('version', old_version)
            try:
                updated = first_row(query.execute())
            except Exception as e:
                raise db_error("Update user profile", e)
            if updated:
                return updated
            memory_log.log(f"Profile version for {user_id} moved during update (attempt {attempt + 1}), retrying")

        raise ConflictError("User profile was modified concurrently, please retry")

    def save_profile(
        self,
        user_id: str,
        profile_data: Dict[str, Any],
        extra: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        extra = extra or {}

        def build(current):
            update = {'profile_data': profile_data}
            for key, value in extra.items():
                # counters accumulate onto whatever the row held when it was read
                if key in ('conversation_count', 'message_count'):
                    update[key] = (current.get(key) or 0) + value
                else:
                    update[key] = value
            return update

        return self._update_versioned(user_id, build, create_missing=True)

    def save_ai_summary(self, user_id: str, summary: str) -> Dict[str, Any]:
        return self._update_versioned(user_id, lambda current: {'ai_instructions_summary': summary})

    async def clear_profile(self, user_id: str, reset_tracker: bool = False) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("userId is required")

        cleared = self._update_versioned(
            user_id,
            lambda current: {'profile_data': {}, 'ai_instructions_summary': None}
        )
        logger.info(f"Cleared profile for {user_id}, now at version {cleared.get('version')}")

        response = {
            'success': True,
            'message': 'User profile cleared successfully',
            'version': cleared.get('version')
        }

        if reset_tracker:
            failures = []
            for table in ('processed_conversations', 'conversation_analyses'):
                try:
                    self.supabase.table(table).delete().eq('user_id', user_id).execute()
                except Exception as e:
                    logger.warning(f"Failed to reset {table} for {user_id}: {str(e)}")
                    failures.append(table)
            if failures:
                response['warning'] = f"Profile cleared, but failed to reset: {', '.join(failures)}"
            else:
                response['message'] = 'User profile and processing history cleared successfully'

        return response
