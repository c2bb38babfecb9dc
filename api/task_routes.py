from flask import Blueprint, jsonify
import logging

from .helpers import get_service

logger = logging.getLogger(__name__)

task_bp = Blueprint('tasks', __name__)

@task_bp.route('/api/tasks/dispatch', methods=['GET', 'POST'])
async def dispatch_tasks():
    """Cron trigger for the task outbox"""
    summary = await get_service('outbox').dispatch_pending()
    return jsonify({'success': True, **summary})
