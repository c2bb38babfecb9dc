import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from lib.database import db_error, first_row, rows, utc_now
from lib.error_handler import NotFoundError, ValidationError
from lib.monitoring import FlaggedLogger

logger = logging.getLogger(__name__)
resume_log = FlaggedLogger('RESUME_CONVERSATION', 'resume_conversation')

MESSAGE_ROLES = ('user', 'assistant', 'system')
DEFAULT_SPECIALIST = 'triage'

class ConversationService:
    def __init__(self, supabase_client, memory_service=None):
        self.supabase = supabase_client
        self.memory = memory_service
        self.conversations_table = 'conversations'
        self.messages_table = 'messages'

    def create_conversation(self, human_id: str, conversation_id: Optional[str] = None) -> Dict[str, Any]:
        """Insert an active conversation row; raises on database failure."""
        now = utc_now()
        record = {
            'id': conversation_id or str(uuid4()),
            'human_id': human_id,
            'is_active': True,
            'current_specialist': DEFAULT_SPECIALIST,
            'specialist_history': [],
            'created_at': now,
            'last_activity_at': now
        }
        try:
            result = self.supabase.table(self.conversations_table).insert(record).execute()
        except Exception as e:
            raise db_error("Create conversation", e)
        return first_row(result) or record

    def get_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        try:
            result = self.supabase.table(self.messages_table)\
                .select('id, conversation_id, role, content, routing_metadata, created_at')\
                .eq('conversation_id', conversation_id)\
                .order('created_at')\
                .execute()
        except Exception as e:
            raise db_error("Fetch messages", e)
        return rows(result)

    async def save_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        routing_metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Append a message to a conversation"""
        if not conversation_id:
            raise ValidationError("Conversation ID is required")
        if role not in MESSAGE_ROLES:
            raise ValidationError(f"Invalid role: {role}. Must be one of {', '.join(MESSAGE_ROLES)}")
        if content is None or not str(content).strip():
            raise ValidationError("Message content is required")

        now = utc_now()
        data = {
            'conversation_id': conversation_id,
            'role': role,
            'content': content,
            'routing_metadata': routing_metadata,
            'created_at': now
        }
        try:
            result = self.supabase.table(self.messages_table).insert(data).execute()
        except Exception as e:
            raise db_error("Save message", e)

        update = {'last_activity_at': now}
        specialist = (routing_metadata or {}).get('specialist')
        if specialist:
            update['current_specialist'] = specialist
        try:
            self.supabase.table(self.conversations_table).update(update).eq('id', conversation_id).execute()
        except Exception as e:
            logger.warning(f"Failed to bump activity for conversation {conversation_id}: {str(e)}")

        return first_row(result) or data

    async def get_resumable_conversation(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Most recent conversation for the user, with its messages in order"""
        if not user_id:
            raise ValidationError("User ID is required")

        try:
            conversation = first_row(
                self.supabase.table(self.conversations_table)
                .select('*')
                .eq('human_id', user_id)
                .order('created_at', desc=True)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch conversations", e)

        if not conversation:
            resume_log.log(f"No conversation found for user {user_id}")
            return None

        messages = self.get_messages(conversation['id'])
        resume_log.log(f"Resumable conversation {conversation['id']} has {len(messages)} messages")
        return {**conversation, 'messages': messages}

    async def resume_conversation(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        if not user_id or not conversation_id:
            raise ValidationError("User ID and conversation ID are required")

        try:
            conversation = first_row(
                self.supabase.table(self.conversations_table)
                .select('*')
                .eq('id', conversation_id)
                .eq('human_id', user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch conversation", e)

        if not conversation:
            resume_log.error(f"Conversation {conversation_id} not found for user {user_id}")
            raise NotFoundError("Conversation not found or access denied")

        messages = self.get_messages(conversation_id)
        try:
            self.supabase.table(self.conversations_table)\
                .update({'last_activity_at': utc_now()})\
                .eq('id', conversation_id)\
                .execute()
        except Exception as e:
            raise db_error("Update conversation", e)

        specialist = conversation.get('current_specialist') or DEFAULT_SPECIALIST
        resume_log.log(f"Resuming {conversation_id} with {specialist}, {len(messages)} messages")
        return {
            'id': conversation['id'],
            'currentSpecialist': specialist,
            'specialistHistory': conversation.get('specialist_history') or [],
            'createdAt': conversation.get('created_at'),
            'lastActivityAt': conversation.get('last_activity_at'),
            'messages': messages
        }

    async def end_conversation(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        """Close a conversation and queue memory processing for its owner"""
        if not user_id or not conversation_id:
            raise ValidationError("User ID and conversation ID are required")

        try:
            result = self.supabase.table(self.conversations_table)\
                .update({'is_active': False, 'ended_at': utc_now()})\
                .eq('id', conversation_id)\
                .eq('human_id', user_id)\
                .execute()
        except Exception as e:
            raise db_error("End conversation", e)

        if not rows(result):
            raise NotFoundError("Conversation not found or access denied")

        memory_job_id = None
        if self.memory is not None:
            try:
                job = await self.memory.create_job(user_id)
                memory_job_id = job['id'] if job else None
            except Exception as e:
                logger.error(f"Failed to queue memory processing for {user_id}: {str(e)}")

        return {'conversationId': conversation_id, 'isActive': False, 'memoryJobId': memory_job_id}
