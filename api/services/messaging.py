import logging
import os
from typing import Any, Dict, Optional
from uuid import uuid4

from lib.database import db_error, first_row, rows, utc_now
from lib.error_handler import ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ROLES = ('provider', 'patient')

class MessagingService:
    """Audio messages between a provider and a patient, stored in ``provider_patient_messages``."""

    def __init__(self, supabase_client, audio_service, outbox_service, bucket: str):
        self.supabase = supabase_client
        self.audio = audio_service
        self.outbox = outbox_service
        self.bucket = bucket
        self.table = 'provider_patient_messages'

    async def send_audio_message(
        self,
        sender_role: str,
        provider_user_id: str,
        patient_user_id: str,
        audio: bytes,
        filename: str,
        content_type: str,
        intake_id: Optional[str] = None,
        sender_name: Optional[str] = None
    ) -> Dict[str, Any]:
        if sender_role not in ROLES:
            raise ValidationError(f"Invalid sender role: {sender_role}")
        if not provider_user_id or not patient_user_id:
            raise ValidationError("provider_user_id and patient_user_id are required")
        if not audio:
            raise ValidationError("Audio file is required")

        sender_id = provider_user_id if sender_role == 'provider' else patient_user_id
        extension = os.path.splitext(filename or '')[1] or '.webm'
        path = f"{sender_role}/{sender_id}/{uuid4()}{extension}"

        await self.audio.upload(path, audio, content_type or 'audio/webm', bucket=self.bucket)
        duration = self.audio.probe_duration(audio)

        try:
            message = first_row(self.supabase.table(self.table).insert({
                'provider_user_id': provider_user_id,
                'patient_user_id': patient_user_id,
                'intake_id': intake_id,
                'sender_type': sender_role,
                'audio_path': path,
                'duration_seconds': duration,
                'is_read': False,
                'created_at': utc_now()
            }).execute())
        except Exception as e:
            raise db_error("Save message", e)

        recipient_role = 'patient' if sender_role == 'provider' else 'provider'
        recipient_id = patient_user_id if recipient_role == 'patient' else provider_user_id
        try:
            self.outbox.enqueue('sms_notification', {
                'recipient_user_id': recipient_id,
                'recipient_role': recipient_role,
                'sender_name': sender_name
            })
        except Exception as e:
            logger.error(f"Failed to queue notification for message {message['id']}: {str(e)}")

        logger.info(f"Stored {sender_role} audio message {message['id']} ({duration}s)")
        return {'success': True, 'message': message}

    async def list_messages(self, role: str, user_id: str) -> Dict[str, Any]:
        if role not in ROLES:
            raise ValidationError(f"Invalid role: {role}")
        if not user_id:
            raise ValidationError(f"{role}_user_id is required")
        try:
            messages = rows(
                self.supabase.table(self.table)
                .select('*')
                .eq(f"{role}_user_id", user_id)
                .order('created_at', desc=True)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch messages", e)
        unread = sum(1 for m in messages if not m.get('is_read') and m.get('sender_type') != role)
        return {'success': True, 'messages': messages, 'unread_count': unread}

    async def mark_read(self, message_id: str, reader_role: str, reader_user_id: str) -> Dict[str, Any]:
        if not message_id or not reader_user_id:
            raise ValidationError("message_id and user id are required")
        if reader_role not in ROLES:
            raise ValidationError(f"Invalid role: {reader_role}")

        try:
            message = first_row(
                self.supabase.table(self.table).select('*').eq('id', message_id).limit(1).execute()
            )
        except Exception as e:
            raise db_error("Fetch message", e)
        if not message:
            raise NotFoundError("Message not found")

        is_recipient = (
            message.get('sender_type') != reader_role
            and message.get(f"{reader_role}_user_id") == reader_user_id
        )
        if not is_recipient:
            raise ForbiddenError("Only the recipient can mark this message as read")

        if message.get('is_read'):
            return {'success': True, 'message': message}

        try:
            updated = first_row(
                self.supabase.table(self.table)
                .update({'is_read': True, 'read_at': utc_now()})
                .eq('id', message_id)
                .execute()
            )
        except Exception as e:
            raise db_error("Mark message read", e)
        return {'success': True, 'message': updated or message}
