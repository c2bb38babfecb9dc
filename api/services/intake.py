import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from lib.database import db_error, first_row, rows, utc_now
from lib.error_handler import NotFoundError, RateLimitError, UpstreamError, ValidationError
from lib.monitoring import FlaggedLogger

logger = logging.getLogger(__name__)
intake_log = FlaggedLogger('INTAKE', 'intake')

REQUIRED_FIELDS = [
    'userId',
    'fullLegalName',
    'dateOfBirth',
    'email',
    'phone',
    'state',
    'city',
    'zipCode',
    'insuranceProvider',
    'sessionPreference',
]

# request field -> patient_details column
PATIENT_COLUMNS = {
    'fullLegalName': 'full_legal_name',
    'preferredName': 'preferred_name',
    'pronouns': 'pronouns',
    'dateOfBirth': 'date_of_birth',
    'gender': 'gender',
    'email': 'email',
    'phone': 'phone',
    'state': 'state',
    'city': 'city',
    'zipCode': 'zip_code',
    'insuranceProvider': 'insurance_provider',
    'insurancePlan': 'insurance_plan',
    'insuranceId': 'insurance_id',
    'isPrimaryInsured': 'is_primary_insured',
    'sessionPreference': 'session_preference',
    'availability': 'availability',
    'availabilityOther': 'availability_other',
    'emailNotifications': 'email_notifications',
    'smsNotifications': 'sms_notifications',
    'notificationPhone': 'notification_phone',
}

ACCESS_CODE_PATTERN = re.compile(r'^[0-9]{5}$')

def validate_intake(data: Dict[str, Any]) -> None:
    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(f"{field} is required")

    if not data.get('availability') and not data.get('availabilityOther'):
        raise ValidationError(
            "At least one availability slot must be selected, or specify other availability"
        )

def normalize_access_code(raw: Any) -> Tuple[str, bool]:
    """
    Strip the unverified-provider ``a`` prefix and check the five-digit format.
    Returns (code, unverified_provider); raises ValidationError for anything else.
    """
    code = str(raw or '').strip()
    unverified = False
    if code[:1].lower() == 'a':
        code = code[1:]
        unverified = True
    if not ACCESS_CODE_PATTERN.match(code):
        raise ValidationError("Invalid access code format. Expected 5 digits.")
    return code, unverified

class IntakeService:
    def __init__(self, supabase_client, conversation_service, rate_limiter=None,
                 client_max_failures: Optional[int] = None):
        self.supabase = supabase_client
        self.conversations = conversation_service
        self.rate_limiter = rate_limiter
        self.client_max_failures = client_max_failures

    def _generate_access_code(self) -> str:
        try:
            result = self.supabase.rpc('generate_unique_access_code').execute()
        except Exception as e:
            raise db_error("Generate access code", e)
        code = result.data
        if isinstance(code, list):
            code = code[0] if code else None
        if not code:
            raise UpstreamError("generate_unique_access_code returned no code",
                                user_message="Failed to generate access code")
        return str(code)

    def _create_conversation(self, user_id: str) -> str:
        conversation_id = str(uuid4())
        try:
            self.conversations.create_conversation(user_id, conversation_id)
        except Exception as e:
            logger.error(f"Failed to create conversation {conversation_id} for {user_id}: {str(e)}")
        return conversation_id

    def _unlinked_sessions(self, user_id: str, newest_first: bool = True) -> List[Dict[str, Any]]:
        try:
            result = self.supabase.table('intake_sessions')\
                .select('*')\
                .eq('user_id', user_id)\
                .is_('patient_id', 'null')\
                .order('created_at', desc=newest_first)\
                .execute()
        except Exception as e:
            raise db_error("Fetch intake sessions", e)
        return rows(result)

    def _create_session(self, user_id: str, patient_id: Optional[str]) -> Dict[str, Any]:
        conversation_id = self._create_conversation(user_id)
        access_code = self._generate_access_code()
        record = {
            'user_id': user_id,
            'patient_id': patient_id,
            'access_code': access_code,
            'conversation_id': conversation_id,
            'status': 'pending',
            'created_at': utc_now()
        }
        try:
            result = self.supabase.table('intake_sessions').insert(record).execute()
        except Exception as e:
            raise db_error("Create intake session", e)
        session = first_row(result)
        if not session:
            raise UpstreamError("Intake session insert returned no row",
                                user_message="Failed to create intake session")
        return session

    def _link_session(self, user_id: str, patient_id: str) -> Optional[Dict[str, Any]]:
        """Attach the newest unlinked session to the patient; None when there is none left to claim."""
        for session in self._unlinked_sessions(user_id):
            try:
                result = self.supabase.table('intake_sessions')\
                    .update({'patient_id': patient_id, 'updated_at': utc_now()})\
                    .eq('id', session['id'])\
                    .is_('patient_id', 'null')\
                    .execute()
            except Exception as e:
                raise db_error("Link intake session", e)
            linked = first_row(result)
            if linked:
                return linked
            intake_log.log(f"Session {session['id']} was linked concurrently, trying next")
        return None

    async def submit(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Persist intake answers and attach them to an intake session"""
        validate_intake(data)
        user_id = data['userId']

        details = {column: data[field] for field, column in PATIENT_COLUMNS.items() if field in data}
        details['user_id'] = user_id
        details['updated_at'] = utc_now()
        try:
            result = self.supabase.table('patient_details')\
                .upsert(details, on_conflict='user_id')\
                .execute()
        except Exception as e:
            raise db_error("Save patient details", e)
        patient = first_row(result)
        if not patient:
            raise UpstreamError("Patient details upsert returned no row",
                                user_message="Failed to save patient details")

        session = self._link_session(user_id, patient['id'])
        linked_existing = session is not None
        if linked_existing:
            logger.info(f"Linked intake for {user_id} to existing session {session['id']}")
        else:
            session = self._create_session(user_id, patient['id'])
            logger.info(f"Created intake session {session['id']} for {user_id}")

        return {
            'success': True,
            'intakeId': session['id'],
            'accessCode': session['access_code'],
            'conversationId': session.get('conversation_id'),
            'linkedExistingSession': linked_existing
        }

    async def bootstrap_session(self, user_id: str) -> Dict[str, Any]:
        """Return the user's unlinked session, creating one for a voice session that starts before intake."""
        if not user_id:
            raise ValidationError("userId is required")

        existing = self._unlinked_sessions(user_id)
        if existing:
            session = existing[0]
            intake_log.log(f"Reusing unlinked session {session['id']} for {user_id}")
            return self._session_payload(session, existing=True)

        created = self._create_session(user_id, None)

        # a concurrent bootstrap may have inserted too; keep the oldest
        sessions = self._unlinked_sessions(user_id, newest_first=False)
        keeper = sessions[0] if sessions else created
        for duplicate in sessions[1:]:
            try:
                self.supabase.table('intake_sessions')\
                    .delete()\
                    .eq('id', duplicate['id'])\
                    .is_('patient_id', 'null')\
                    .execute()
                logger.info(f"Removed duplicate unlinked session {duplicate['id']} for {user_id}")
            except Exception as e:
                logger.warning(f"Failed to remove duplicate session {duplicate['id']}: {str(e)}")

        return self._session_payload(keeper, existing=keeper['id'] != created['id'])

    def _session_payload(self, session: Dict[str, Any], existing: bool) -> Dict[str, Any]:
        return {
            'success': True,
            'intakeId': session['id'],
            'accessCode': session['access_code'],
            'conversationId': session.get('conversation_id'),
            'existing': existing
        }

    async def get_intake(self, user_id: str) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("userId is required")
        try:
            session = first_row(
                self.supabase.table('intake_sessions')
                .select('*')
                .eq('user_id', user_id)
                .order('created_at', desc=True)
                .limit(1)
                .execute()
            )
            details = first_row(
                self.supabase.table('patient_details')
                .select('*')
                .eq('user_id', user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch intake", e)

        if not session and not details:
            raise NotFoundError("No intake found for this user")
        return {'session': session, 'patient': details}

    async def get_notification_preferences(self, user_id: str) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("userId is required")
        try:
            details = first_row(
                self.supabase.table('patient_details')
                .select('phone, notification_phone, email_notifications, sms_notifications')
                .eq('user_id', user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch notification preferences", e)
        details = details or {}
        return {
            'phone': details.get('notification_phone') or details.get('phone') or '',
            'emailNotifications': bool(details.get('email_notifications')),
            'smsNotifications': bool(details.get('sms_notifications'))
        }

    async def update_notification_preferences(
        self,
        user_id: str,
        email_notifications: bool,
        sms_notifications: bool,
        phone: Optional[str] = None
    ) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("userId is required")
        if sms_notifications and not phone:
            raise ValidationError("Phone number is required for SMS notifications")

        try:
            result = self.supabase.table('patient_details')\
                .update({
                    'email_notifications': bool(email_notifications),
                    'sms_notifications': bool(sms_notifications),
                    'notification_phone': phone,
                    'updated_at': utc_now()
                })\
                .eq('user_id', user_id)\
                .execute()
        except Exception as e:
            raise db_error("Update notification preferences", e)

        if not rows(result):
            raise NotFoundError("No intake record found for this user")
        return {'success': True}

    def _throttle_keys(self, provider_user_id: str, client_address: Optional[str]) -> List[Tuple[str, Optional[int]]]:
        # provider ids are caller-supplied, so failures also count against the client address
        keys = [(provider_user_id, None)]
        if client_address:
            keys.append((f"ip:{client_address}", self.client_max_failures))
        return keys

    def _record_lookup(self, keys: List[Tuple[str, Optional[int]]], succeeded: bool, code: str) -> None:
        for key, _ in keys:
            self.rate_limiter.record_attempt(key, succeeded, code)

    async def validate_access_code(self, raw_code: Any, provider_user_id: Optional[str],
                                   client_address: Optional[str] = None) -> Dict[str, Any]:
        """Look up an intake session by access code on behalf of a provider"""
        code, unverified = normalize_access_code(raw_code)
        if not provider_user_id:
            raise ValidationError("providerUserId is required")

        keys = self._throttle_keys(provider_user_id, client_address)
        if self.rate_limiter:
            for key, limit in keys:
                if not self.rate_limiter.check_limit(key, limit):
                    logger.warning(f"Access code lookups throttled for {key} (provider {provider_user_id})")
                    raise RateLimitError("Too many invalid access code attempts. Please try again later.")

        try:
            session = first_row(
                self.supabase.table('intake_sessions')
                .select('*')
                .eq('access_code', code)
                .order('created_at', desc=True)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise db_error("Look up access code", e)

        if not session:
            if self.rate_limiter:
                self._record_lookup(keys, False, code)
            raise NotFoundError("Invalid access code")

        patient = None
        if session.get('patient_id'):
            try:
                patient = first_row(
                    self.supabase.table('patient_details')
                    .select('*')
                    .eq('id', session['patient_id'])
                    .limit(1)
                    .execute()
                )
            except Exception as e:
                raise db_error("Fetch patient details", e)

        try:
            self.supabase.table('provider_intake_views').insert({
                'provider_user_id': provider_user_id,
                'intake_id': session['id'],
                'access_code': code,
                'unverified_provider': unverified,
                'viewed_at': utc_now()
            }).execute()
        except Exception as e:
            logger.error(f"Failed to log intake view for session {session['id']}: {str(e)}")

        if self.rate_limiter:
            self._record_lookup(keys, True, code)

        return {
            'valid': True,
            'intakeId': session['id'],
            'accessCode': session['access_code'],
            'conversationId': session.get('conversation_id'),
            'status': session.get('status'),
            'createdAt': session.get('created_at'),
            'unverifiedProvider': unverified,
            'patient': patient
        }
