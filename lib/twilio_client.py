from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from typing import Optional
import logging

from lib.config import Settings
from lib.error_handler import AppError, UpstreamError

logger = logging.getLogger(__name__)

class TwilioClient:
    def __init__(self, settings: Settings, client: Optional[Client] = None):
        if client is None and not settings.twilio_configured:
            raise AppError("Twilio configuration missing")
        self.client = client or Client(
            settings.twilio_account_sid,
            settings.twilio_auth_token
        )
        self.phone_number = settings.twilio_phone_number

    def send_message(self, to_number: str, message: str) -> str:
        """Send an SMS message and return the message SID."""
        try:
            sent = self.client.messages.create(
                body=message,
                from_=self.phone_number,
                to=to_number
            )
            logger.info(f"Message sent successfully to {to_number[:5]}***")
            return sent.sid
        except TwilioRestException as e:
            logger.error(f"Twilio error sending message: {str(e)}")
            if e.code == 21608:  # Unverified number
                raise UpstreamError("This phone number is not verified with our test account.")
            elif e.code == 21211:  # Invalid phone number
                raise UpstreamError("Invalid phone number format.")
            else:
                raise UpstreamError(f"Failed to send message: {str(e)}")
