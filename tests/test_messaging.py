import io
import pytest
from unittest.mock import patch

@pytest.fixture(autouse=True)
def no_ffmpeg():
    with patch('api.services.audio.AudioSegment') as audio_segment:
        audio_segment.from_file.return_value.duration_seconds = 8.0
        yield audio_segment

def upload(test_client, route, **form):
    data = {
        'provider_user_id': 'provider-1',
        'patient_user_id': 'patient-1',
        'sender_name': 'Dr. Lee',
        'audio': (io.BytesIO(b'fake-audio'), 'reply.m4a', 'audio/m4a'),
    }
    data.update(form)
    return test_client.post(route, data=data, content_type='multipart/form-data')

def test_provider_upload_stores_audio_and_queues_sms(test_client, fake_db, settings):
    response = upload(test_client, '/api/provider/upload-audio-response')

    assert response.status_code == 201
    message = response.get_json()['message']
    assert message['sender_type'] == 'provider'
    assert message['duration_seconds'] == 8.0
    assert message['audio_path'].startswith('provider/provider-1/')
    assert message['audio_path'].endswith('.m4a')
    assert fake_db.files[(settings.message_audio_bucket, message['audio_path'])] == b'fake-audio'

    task = fake_db.all('task_outbox')[0]
    assert task['task_type'] == 'sms_notification'
    assert task['payload'] == {
        'recipient_user_id': 'patient-1',
        'recipient_role': 'patient',
        'sender_name': 'Dr. Lee'
    }

def test_upload_without_file_is_rejected(test_client):
    response = test_client.post('/api/patient/send-audio-reply',
                                data={'provider_user_id': 'provider-1', 'patient_user_id': 'patient-1'},
                                content_type='multipart/form-data')
    assert response.status_code == 400
    assert response.get_json()['error'] == "Audio file is required"

def test_notification_failure_does_not_fail_upload(test_client, fake_db):
    fake_db.fail_on('task_outbox', 'insert')

    response = upload(test_client, '/api/patient/send-audio-reply')

    assert response.status_code == 201
    assert len(fake_db.all('provider_patient_messages')) == 1

def test_unread_count_only_counts_incoming(test_client, fake_db):
    fake_db.seed('provider_patient_messages',
                 {'provider_user_id': 'provider-1', 'patient_user_id': 'patient-1', 'sender_type': 'provider',
                  'is_read': False, 'created_at': '2025-01-01T00:00:00+00:00'},
                 {'provider_user_id': 'provider-1', 'patient_user_id': 'patient-1', 'sender_type': 'patient',
                  'is_read': False, 'created_at': '2025-01-02T00:00:00+00:00'})

    body = test_client.get('/api/patient/messages?patient_user_id=patient-1').get_json()

    assert len(body['messages']) == 2
    assert body['unread_count'] == 1

def test_only_recipient_can_mark_read(test_client, fake_db):
    message = fake_db.seed('provider_patient_messages', {
        'provider_user_id': 'provider-1', 'patient_user_id': 'patient-1',
        'sender_type': 'provider', 'is_read': False
    })[0]

    response = test_client.post('/api/provider/mark-message-read', json={
        'message_id': message['id'], 'provider_user_id': 'provider-1'
    })
    assert response.status_code == 403
    assert response.get_json()['error'] == "Only the recipient can mark this message as read"

    response = test_client.post('/api/patient/mark-message-read', json={
        'message_id': message['id'], 'patient_user_id': 'patient-2'
    })
    assert response.status_code == 403

    response = test_client.post('/api/patient/mark-message-read', json={
        'message_id': message['id'], 'patient_user_id': 'patient-1'
    })
    assert response.status_code == 200
    assert fake_db.all('provider_patient_messages')[0]['is_read'] is True
