from flask import Blueprint, jsonify, request
import logging

from lib.error_handler import ValidationError
from .helpers import get_service, json_body

logger = logging.getLogger(__name__)

messaging_bp = Blueprint('messaging', __name__, url_prefix='/api')

async def _receive_audio(sender_role: str):
    audio_file = request.files.get('audio')
    if audio_file is None:
        raise ValidationError("Audio file is required")
    form = request.form
    logger.info(f"Audio message upload from {sender_role}: {audio_file.filename} ({audio_file.mimetype})")
    return await get_service('messaging').send_audio_message(
        sender_role=sender_role,
        provider_user_id=form.get('provider_user_id'),
        patient_user_id=form.get('patient_user_id'),
        audio=audio_file.read(),
        filename=audio_file.filename,
        content_type=audio_file.mimetype,
        intake_id=form.get('intake_id'),
        sender_name=form.get('sender_name')
    )

@messaging_bp.route('/provider/upload-audio-response', methods=['POST'])
async def provider_upload_audio():
    result = await _receive_audio('provider')
    return jsonify(result), 201

@messaging_bp.route('/patient/send-audio-reply', methods=['POST'])
async def patient_send_audio():
    result = await _receive_audio('patient')
    return jsonify(result), 201

@messaging_bp.route('/provider/patient-messages', methods=['GET'])
async def provider_messages():
    result = await get_service('messaging').list_messages('provider', request.args.get('provider_user_id'))
    return jsonify(result)

@messaging_bp.route('/patient/messages', methods=['GET'])
async def patient_messages():
    result = await get_service('messaging').list_messages('patient', request.args.get('patient_user_id'))
    return jsonify(result)

@messaging_bp.route('/provider/mark-message-read', methods=['POST'])
async def provider_mark_read():
    data = json_body()
    result = await get_service('messaging').mark_read(
        data.get('message_id'), 'provider', data.get('provider_user_id')
    )
    return jsonify(result)

@messaging_bp.route('/patient/mark-message-read', methods=['POST'])
async def patient_mark_read():
    data = json_body()
    result = await get_service('messaging').mark_read(
        data.get('message_id'), 'patient', data.get('patient_user_id')
    )
    return jsonify(result)
