from flask import Blueprint, jsonify, request
import logging

from .helpers import get_service, json_body

logger = logging.getLogger(__name__)

conversation_bp = Blueprint('conversations', __name__, url_prefix='/api/v16')

@conversation_bp.route('/get-resumable-conversation', methods=['GET'])
async def get_resumable_conversation():
    conversation = await get_service('conversations').get_resumable_conversation(request.args.get('userId'))
    return jsonify({'success': True, 'conversation': conversation})

@conversation_bp.route('/resume-conversation', methods=['POST'])
async def resume_conversation():
    data = json_body()
    conversation = await get_service('conversations').resume_conversation(
        data.get('userId'),
        data.get('conversationId')
    )
    return jsonify({'success': True, 'conversation': conversation})

@conversation_bp.route('/save-message', methods=['POST'])
async def save_message():
    data = json_body()
    message = await get_service('conversations').save_message(
        data.get('conversationId'),
        data.get('role'),
        data.get('content'),
        data.get('routingMetadata')
    )
    return jsonify({'success': True, 'message': message}), 201

@conversation_bp.route('/end-conversation', methods=['POST'])
async def end_conversation():
    data = json_body()
    result = await get_service('conversations').end_conversation(
        data.get('userId'),
        data.get('conversationId')
    )
    return jsonify({'success': True, **result})
