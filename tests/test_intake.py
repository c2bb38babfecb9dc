import re
import pytest

from lib.error_handler import ValidationError
from api.services.intake import validate_intake

def intake_payload(**overrides):
    payload = {
        'userId': 'user-1',
        'fullLegalName': 'Jordan Rivera',
        'dateOfBirth': '1990-04-12',
        'email': 'jordan@example.com',
        'phone': '+15551234567',
        'state': 'CA',
        'city': 'Oakland',
        'zipCode': '94607',
        'insuranceProvider': 'Aetna',
        'sessionPreference': 'virtual',
        'availability': ['Mon AM'],
        'availabilityOther': False,
    }
    payload.update(overrides)
    return payload

def test_missing_required_field_names_the_field():
    with pytest.raises(ValidationError) as exc:
        validate_intake(intake_payload(email=''))
    assert exc.value.message == "email is required"

def test_empty_availability_without_other_is_rejected():
    with pytest.raises(ValidationError) as exc:
        validate_intake(intake_payload(availability=[], availabilityOther=False))
    assert exc.value.message.startswith("At least one availability slot must be selected")

def test_other_availability_allows_empty_slots():
    validate_intake(intake_payload(availability=[], availabilityOther='Weekends only'))

def test_submit_creates_session_with_access_code(test_client, fake_db):
    response = test_client.post('/api/patient-intake', json=intake_payload())

    assert response.status_code == 201
    body = response.get_json()
    assert body['success'] is True
    assert re.match(r'^\d{5}$', body['accessCode'])
    assert body['linkedExistingSession'] is False

    sessions = fake_db.all('intake_sessions')
    assert len(sessions) == 1
    assert sessions[0]['patient_id'] == fake_db.all('patient_details')[0]['id']
    assert fake_db.all('conversations')[0]['id'] == body['conversationId']

def test_submit_links_existing_unlinked_session(test_client, fake_db):
    fake_db.seed('intake_sessions', {
        'id': 'session-voice',
        'user_id': 'user-1',
        'patient_id': None,
        'access_code': '24680',
        'conversation_id': 'conv-voice',
        'status': 'pending',
        'created_at': '2025-01-01T00:00:00+00:00'
    })

    response = test_client.post('/api/patient-intake', json=intake_payload())

    body = response.get_json()
    assert response.status_code == 201
    assert body['intakeId'] == 'session-voice'
    assert body['accessCode'] == '24680'
    assert body['conversationId'] == 'conv-voice'
    assert body['linkedExistingSession'] is True
    assert len(fake_db.all('intake_sessions')) == 1

def test_resubmission_upserts_patient_details(test_client, fake_db):
    test_client.post('/api/patient-intake', json=intake_payload())
    test_client.post('/api/patient-intake', json=intake_payload(city='Berkeley'))

    details = fake_db.all('patient_details')
    assert len(details) == 1
    assert details[0]['city'] == 'Berkeley'

def test_conversation_failure_does_not_fail_submission(test_client, fake_db):
    fake_db.fail_on('conversations', 'insert')

    response = test_client.post('/api/patient-intake', json=intake_payload())

    assert response.status_code == 201
    assert fake_db.all('conversations') == []
    assert fake_db.all('intake_sessions')[0]['conversation_id'] == response.get_json()['conversationId']

def test_submit_validation_error_returns_400(test_client):
    response = test_client.post('/api/patient-intake', json=intake_payload(availability=[]))
    assert response.status_code == 400
    assert 'At least one availability slot' in response.get_json()['error']

def test_database_error_is_not_echoed(test_client, fake_db):
    fake_db.fail_on('patient_details', 'upsert')

    response = test_client.post('/api/patient-intake', json=intake_payload())

    assert response.status_code == 500
    body = response.get_json()
    assert body['error'] == 'Failed to save patient details'
    assert 'details' not in body

@pytest.mark.asyncio
async def test_bootstrap_reuses_unlinked_session(services, fake_db):
    first = await services['intake'].bootstrap_session('user-2')
    second = await services['intake'].bootstrap_session('user-2')

    assert first['intakeId'] == second['intakeId']
    assert second['existing'] is True
    assert len(fake_db.all('intake_sessions')) == 1

@pytest.mark.asyncio
async def test_bootstrap_collapses_concurrent_duplicates(services, fake_db):
    fake_db.seed('intake_sessions', {
        'id': 'older',
        'user_id': 'user-3',
        'patient_id': None,
        'access_code': '11111',
        'conversation_id': 'conv-old',
        'created_at': '2025-01-01T00:00:00+00:00'
    })
    intake = services['intake']
    lookup = intake._unlinked_sessions

    # the first lookup misses the row another request is writing
    def racing_lookup(user_id, newest_first=True):
        return lookup(user_id, newest_first) if not newest_first else []

    intake._unlinked_sessions = racing_lookup

    result = await intake.bootstrap_session('user-3')

    assert result['intakeId'] == 'older'
    assert [s['id'] for s in fake_db.all('intake_sessions')] == ['older']

def test_notification_preferences_require_phone_for_sms(test_client, fake_db):
    fake_db.seed('patient_details', {'user_id': 'user-1', 'phone': '+15551234567'})

    response = test_client.put('/api/patient-intake/notification-preferences', json={
        'userId': 'user-1', 'smsNotifications': True
    })
    assert response.status_code == 400

    response = test_client.put('/api/patient-intake/notification-preferences', json={
        'userId': 'user-1', 'smsNotifications': True, 'phone': '+15557654321'
    })
    assert response.status_code == 200
    assert fake_db.all('patient_details')[0]['notification_phone'] == '+15557654321'

    prefs = test_client.get('/api/patient-intake/notification-preferences?userId=user-1').get_json()
    assert prefs == {'phone': '+15557654321', 'emailNotifications': False, 'smsNotifications': True}

def test_get_intake_404_for_unknown_user(test_client):
    response = test_client.get('/api/patient-intake?userId=nobody')
    assert response.status_code == 404

def test_get_intake_returns_session_and_patient(test_client):
    submitted = test_client.post('/api/patient-intake', json=intake_payload()).get_json()

    body = test_client.get('/api/patient-intake?userId=user-1').get_json()

    assert body['session']['id'] == submitted['intakeId']
    assert body['patient']['full_legal_name'] == 'Jordan Rivera'
