from flask import Blueprint, jsonify, request
import logging

from .helpers import get_service, json_body, query_flag

logger = logging.getLogger(__name__)

memory_bp = Blueprint('memory', __name__)

@memory_bp.route('/api/v11/ai-instructions', methods=['GET'])
async def ai_instructions():
    result = await get_service('profile').resolve_ai_instructions(
        request.args.get('userId'),
        anonymous=query_flag('anonymous')
    )
    return jsonify(result)

@memory_bp.route('/api/v16/load-prompt', methods=['GET'])
async def load_prompt():
    result = await get_service('profile').load_prompt(
        request.args.get('type'),
        request.args.get('userId')
    )
    return jsonify(result)

@memory_bp.route('/api/v11/clear-user-profile', methods=['POST'])
async def clear_user_profile():
    data = json_body()
    result = await get_service('profile').clear_profile(
        data.get('userId'),
        reset_tracker=bool(data.get('resetTracker'))
    )
    return jsonify(result)

@memory_bp.route('/api/v16/user/profile', methods=['GET'])
async def user_profile():
    result = await get_service('profile').get_user_profile(request.args.get('userId'))
    return jsonify(result)

@memory_bp.route('/api/v16/memory-jobs/create', methods=['POST'])
async def create_memory_job():
    data = json_body()
    job = await get_service('memory').create_job(data.get('userId'))
    if job is None:
        return jsonify({'success': True, 'skipped': True, 'message': 'Anonymous users are not processed'})
    return jsonify({
        'success': True,
        'jobId': job['id'],
        'status': job['status'],
        'totalConversations': job.get('total_conversations') or 0
    }), 201

@memory_bp.route('/api/v16/memory-jobs/process', methods=['POST'])
async def process_memory_job():
    data = json_body()
    result = await get_service('memory').process_job(data.get('jobId'))
    return jsonify(result)

@memory_bp.route('/api/v16/memory-jobs/status', methods=['GET'])
async def memory_job_status():
    result = await get_service('memory').job_status(request.args.get('jobId'))
    return jsonify(result)

@memory_bp.route('/api/v16/scheduled-memory-processing', methods=['GET'])
async def scheduled_memory_processing():
    """Cron trigger"""
    result = await get_service('memory').scheduled_run()
    return jsonify(result)

@memory_bp.route('/api/v16/generate-warm-handoff', methods=['POST'])
async def generate_warm_handoff():
    data = json_body()
    result = await get_service('warm_handoff').generate(data.get('userId'))
    return jsonify(result)

@memory_bp.route('/api/v16/warm-handoff', methods=['GET'])
async def latest_warm_handoff():
    result = await get_service('warm_handoff').latest(request.args.get('userId'))
    return jsonify(result)
