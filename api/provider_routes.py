from flask import Blueprint, jsonify, request
import logging

from .helpers import get_service, json_body

logger = logging.getLogger(__name__)

provider_bp = Blueprint('provider', __name__, url_prefix='/api/provider')

@provider_bp.route('/validate-intake-code', methods=['POST'])
async def validate_intake_code():
    data = json_body()
    result = await get_service('intake').validate_access_code(
        data.get('accessCode'),
        data.get('providerUserId'),
        client_address=request.remote_addr
    )
    return jsonify(result)

@provider_bp.route('/transcribe-intake-audio', methods=['POST'])
async def transcribe_intake_audio():
    data = json_body()
    logger.info(f"Transcription requested for intake {data.get('intake_id')}")
    result = await get_service('transcription').transcribe_intake(
        data.get('intake_id'),
        data.get('conversation_id'),
        data.get('combined_audio_path')
    )
    return jsonify(result)

@provider_bp.route('/transcribe-intake-audio', methods=['GET'])
async def transcription_status():
    result = await get_service('transcription').get_status(request.args.get('intake_id'))
    return jsonify(result)

@provider_bp.route('/intake-summary', methods=['GET'])
async def intake_summary():
    result = await get_service('transcription').get_intake_summary(request.args.get('intake_id'))
    return jsonify(result)
