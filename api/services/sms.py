import logging
import asyncio
from typing import Any, Dict, Optional

from lib.database import db_error, first_row
from lib.error_handler import ValidationError

logger = logging.getLogger(__name__)

class SMSService:
    def __init__(self, supabase_client, twilio_client, app_base_url: str = ''):
        self.supabase = supabase_client
        self.client = twilio_client
        self.app_base_url = app_base_url.rstrip('/')
        logger.info("SMS service initialized")

    def _recipient_phone(self, recipient_user_id: str, recipient_role: str) -> Optional[str]:
        """Phone number to notify, or None when the recipient has SMS turned off"""
        try:
            if recipient_role == 'patient':
                prefs = first_row(
                    self.supabase.table('patient_details')
                    .select('phone, notification_phone, sms_notifications')
                    .eq('user_id', recipient_user_id)
                    .limit(1)
                    .execute()
                )
                if not prefs or not prefs.get('sms_notifications'):
                    return None
                return prefs.get('notification_phone') or prefs.get('phone')

            prefs = first_row(
                self.supabase.table('provider_notification_preferences')
                .select('phone_number, sms_enabled')
                .eq('provider_user_id', recipient_user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch notification preferences", e)
        if not prefs or not prefs.get('sms_enabled'):
            return None
        return prefs.get('phone_number')

    async def send_message_notification(
        self,
        recipient_user_id: str,
        recipient_role: str,
        sender_name: Optional[str] = None
    ) -> Dict[str, Any]:
        """Text the recipient that a new audio message is waiting"""
        if not recipient_user_id:
            raise ValidationError("recipient_user_id is required")
        if recipient_role not in ('patient', 'provider'):
            raise ValidationError(f"Invalid recipient role: {recipient_role}")

        phone = self._recipient_phone(recipient_user_id, recipient_role)
        if not phone:
            logger.info(f"SMS notifications disabled for {recipient_role} {recipient_user_id}")
            return {'sent': False, 'reason': 'sms_disabled'}

        path = '/provider/messages' if recipient_role == 'provider' else '/patient/messages'
        body = (
            f"You have a new audio message from {sender_name or 'your care team'}. "
            f"Listen here: {self.app_base_url}{path}"
        )
        await self.send_message(phone, body)
        return {'sent': True}

    async def send_message(self, to: str, body: str) -> str:
        """Send an SMS message using Twilio"""
        logger.info(f"Sending message to {to[:5]}***")
        # Run Twilio API call in an executor to prevent blocking
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self.client.send_message(to, body))
