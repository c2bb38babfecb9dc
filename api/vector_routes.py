from flask import Blueprint, jsonify
import logging

from .helpers import get_service, json_body

logger = logging.getLogger(__name__)

vector_bp = Blueprint('vector', __name__, url_prefix='/api/v16')

@vector_bp.route('/query-content', methods=['POST'])
async def query_content():
    """Semantic search over the knowledge index"""
    data = json_body()
    matches = await get_service('vector').query_content(
        data.get('query'),
        namespace=data.get('namespace'),
        top_k=data.get('top_k', 5),
        filter_metadata=data.get('filter_metadata')
    )
    return jsonify({'success': True, 'matches': matches})
