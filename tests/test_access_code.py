import pytest

from lib.error_handler import ValidationError
from api.services.intake import normalize_access_code

def seed_session(fake_db, code='12345', **overrides):
    patient = fake_db.seed('patient_details', {'user_id': 'patient-1', 'full_legal_name': 'Jordan Rivera'})[0]
    session = {
        'id': 'intake-1',
        'user_id': 'patient-1',
        'patient_id': patient['id'],
        'access_code': code,
        'conversation_id': 'conv-1',
        'status': 'pending',
        'created_at': '2025-02-01T10:00:00+00:00'
    }
    session.update(overrides)
    return fake_db.seed('intake_sessions', session)[0]

@pytest.mark.parametrize('raw, expected', [
    ('12345', ('12345', False)),
    (' 12345 ', ('12345', False)),
    ('a12345', ('12345', True)),
    ('A12345', ('12345', True)),
])
def test_normalize_access_code(raw, expected):
    assert normalize_access_code(raw) == expected

@pytest.mark.parametrize('raw', [
    '1234', '123456', 'abcde', 'a1234', '', None, 'b12345',
    '\u0661\u0662\u0663\u0664\u0665',  # Arabic-Indic digits
    '\uff11\uff12\uff13\uff14\uff15',  # fullwidth digits
])
def test_normalize_rejects_bad_formats(raw):
    with pytest.raises(ValidationError) as exc:
        normalize_access_code(raw)
    assert exc.value.message == "Invalid access code format. Expected 5 digits."

def test_bad_format_is_rejected_before_any_lookup(test_client, fake_db):
    response = test_client.post('/api/provider/validate-intake-code', json={
        'accessCode': '1234', 'providerUserId': 'provider-1'
    })

    assert response.status_code == 400
    assert response.get_json()['error'] == "Invalid access code format. Expected 5 digits."
    assert fake_db.call_count() == 0


def test_non_ascii_digits_are_rejected_before_any_lookup(test_client, fake_db):
    response = test_client.post('/api/provider/validate-intake-code', json={
        'accessCode': '\u0661\u0662\u0663\u0664\u0665', 'providerUserId': 'provider-1'
    })

    assert response.status_code == 400
    assert fake_db.call_count() == 0
    assert fake_db.all('access_code_attempts') == []

def test_valid_code_returns_intake_and_patient(test_client, fake_db):
    seed_session(fake_db)

    response = test_client.post('/api/provider/validate-intake-code', json={
        'accessCode': '12345', 'providerUserId': 'provider-1'
    })

    assert response.status_code == 200
    body = response.get_json()
    assert body['valid'] is True
    assert body['intakeId'] == 'intake-1'
    assert body['conversationId'] == 'conv-1'
    assert body['unverifiedProvider'] is False
    assert body['patient']['full_legal_name'] == 'Jordan Rivera'

    views = fake_db.all('provider_intake_views')
    assert len(views) == 1
    assert views[0]['provider_user_id'] == 'provider-1'

def test_unverified_prefix_is_flagged(test_client, fake_db):
    seed_session(fake_db)

    response = test_client.post('/api/provider/validate-intake-code', json={
        'accessCode': 'a12345', 'providerUserId': 'provider-1'
    })

    assert response.get_json()['unverifiedProvider'] is True
    assert fake_db.all('provider_intake_views')[0]['unverified_provider'] is True

def test_unknown_code_returns_404_and_records_failure(test_client, fake_db):
    response = test_client.post('/api/provider/validate-intake-code', json={
        'accessCode': '99999', 'providerUserId': 'provider-1'
    })

    assert response.status_code == 404
    assert response.get_json()['error'] == "Invalid access code"
    attempts = fake_db.all('access_code_attempts')
    assert [(a['attempt_key'], a['succeeded']) for a in attempts] == [
        ('provider-1', False), ('ip:127.0.0.1', False)
    ]

def test_provider_id_is_required(test_client):
    response = test_client.post('/api/provider/validate-intake-code', json={'accessCode': '12345'})
    assert response.status_code == 400
    assert response.get_json()['error'] == "providerUserId is required"

def test_repeated_failures_are_throttled(test_client, fake_db, settings):
    seed_session(fake_db)
    for _ in range(settings.access_code_max_failures):
        test_client.post('/api/provider/validate-intake-code', json={
            'accessCode': '99999', 'providerUserId': 'provider-1'
        })

    response = test_client.post('/api/provider/validate-intake-code', json={
        'accessCode': '12345', 'providerUserId': 'provider-1'
    })
    assert response.status_code == 429

    # other providers are unaffected
    response = test_client.post('/api/provider/validate-intake-code', json={
        'accessCode': '12345', 'providerUserId': 'provider-2'
    })
    assert response.status_code == 200

def test_rotating_provider_ids_are_throttled_per_client(test_client, fake_db, settings):
    seed_session(fake_db)
    for n in range(settings.access_code_max_failures_per_client):
        test_client.post('/api/provider/validate-intake-code', json={
            'accessCode': '99999', 'providerUserId': f'provider-{n}'
        })

    response = test_client.post('/api/provider/validate-intake-code', json={
        'accessCode': '12345', 'providerUserId': 'fresh-provider'
    })
    assert response.status_code == 429

    response = test_client.post('/api/provider/validate-intake-code', json={
        'accessCode': '12345', 'providerUserId': 'fresh-provider'
    }, environ_base={'REMOTE_ADDR': '10.0.0.7'})
    assert response.status_code == 200

def test_audit_failure_does_not_block_lookup(test_client, fake_db):
    seed_session(fake_db)
    fake_db.fail_on('provider_intake_views', 'insert')

    response = test_client.post('/api/provider/validate-intake-code', json={
        'accessCode': '12345', 'providerUserId': 'provider-1'
    })

    assert response.status_code == 200
    assert response.get_json()['intakeId'] == 'intake-1'

def test_newest_session_wins_for_reused_code(test_client, fake_db):
    seed_session(fake_db)
    fake_db.seed('intake_sessions', {
        'id': 'intake-2',
        'user_id': 'patient-2',
        'patient_id': None,
        'access_code': '12345',
        'created_at': '2025-03-01T10:00:00+00:00'
    })

    response = test_client.post('/api/provider/validate-intake-code', json={
        'accessCode': '12345', 'providerUserId': 'provider-1'
    })

    body = response.get_json()
    assert body['intakeId'] == 'intake-2'
    assert body['patient'] is None
