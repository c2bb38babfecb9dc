from flask import Blueprint, jsonify, request
import logging

from .helpers import get_service, json_body

logger = logging.getLogger(__name__)

intake_bp = Blueprint('intake', __name__)

@intake_bp.route('/api/patient-intake', methods=['POST'])
async def submit_intake():
    data = json_body()
    logger.info(f"Intake submission received for user {data.get('userId')}")
    result = await get_service('intake').submit(data)
    return jsonify(result), 201

@intake_bp.route('/api/patient-intake', methods=['GET'])
async def get_intake():
    result = await get_service('intake').get_intake(request.args.get('userId'))
    return jsonify(result)

@intake_bp.route('/api/v17/generate-access-code', methods=['POST'])
async def generate_access_code():
    """Voice-session bootstrap: an access code exists before the intake form is filled"""
    data = json_body()
    result = await get_service('intake').bootstrap_session(data.get('userId'))
    return jsonify(result)

@intake_bp.route('/api/patient-intake/notification-preferences', methods=['GET'])
async def get_notification_preferences():
    result = await get_service('intake').get_notification_preferences(request.args.get('userId'))
    return jsonify(result)

@intake_bp.route('/api/patient-intake/notification-preferences', methods=['PUT', 'POST'])
async def update_notification_preferences():
    data = json_body()
    result = await get_service('intake').update_notification_preferences(
        user_id=data.get('userId'),
        email_notifications=bool(data.get('emailNotifications')),
        sms_notifications=bool(data.get('smsNotifications')),
        phone=data.get('phone') or data.get('notificationPhone')
    )
    return jsonify(result)
