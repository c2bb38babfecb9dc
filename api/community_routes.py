from flask import Blueprint, jsonify, request
import logging

from .helpers import get_service, json_body, query_int

logger = logging.getLogger(__name__)

community_bp = Blueprint('community', __name__, url_prefix='/api/v16/community')

@community_bp.route('/reactions', methods=['POST'])
async def toggle_reaction():
    data = json_body()
    result = await get_service('community').toggle_reaction(
        data.get('user_id'),
        data.get('post_id'),
        data.get('comment_id'),
        data.get('reaction_type')
    )
    status = 201 if result['action'] == 'created' else 200
    return jsonify(result), status

@community_bp.route('/reactions', methods=['DELETE'])
async def remove_reaction():
    data = json_body() or request.args
    result = await get_service('community').remove_reaction(
        data.get('user_id'),
        data.get('post_id'),
        data.get('comment_id')
    )
    return jsonify(result)

@community_bp.route('/reactions', methods=['GET'])
async def list_reactions():
    result = await get_service('community').list_reactions(
        request.args.get('post_id'),
        request.args.get('comment_id'),
        request.args.get('user_id')
    )
    return jsonify(result)

@community_bp.route('/votes', methods=['POST'])
async def toggle_vote():
    data = json_body()
    result = await get_service('community').toggle_vote(
        data.get('user_id'),
        data.get('post_id'),
        data.get('comment_id'),
        data.get('vote_type')
    )
    status = 201 if result['action'] == 'created' else 200
    return jsonify(result), status

@community_bp.route('/posts', methods=['GET'])
async def list_posts():
    result = await get_service('community').list_posts(
        page=query_int('page', 1),
        limit=query_int('limit', 10),
        sort_by=request.args.get('sort_by', 'hot'),
        circle_id=request.args.get('circle_id'),
        requesting_user_id=request.args.get('requesting_user_id'),
        author_id=request.args.get('user_id')
    )
    return jsonify(result)

@community_bp.route('/posts', methods=['POST'])
async def create_post():
    result = await get_service('community').create_post(json_body())
    return jsonify(result), 201

@community_bp.route('/posts/<post_id>', methods=['GET'])
async def get_post(post_id):
    result = await get_service('community').get_post(post_id)
    return jsonify(result)

@community_bp.route('/posts/<post_id>', methods=['DELETE'])
async def delete_post(post_id):
    user_id = json_body().get('user_id') or request.args.get('user_id')
    result = await get_service('community').delete_post(post_id, user_id)
    return jsonify(result)

@community_bp.route('/comments', methods=['GET'])
async def list_comments():
    result = await get_service('community').list_comments(request.args.get('post_id'))
    return jsonify(result)

@community_bp.route('/comments', methods=['POST'])
async def create_comment():
    result = await get_service('community').create_comment(json_body())
    return jsonify(result), 201

@community_bp.route('/comments/<comment_id>', methods=['DELETE'])
async def delete_comment(comment_id):
    user_id = json_body().get('user_id') or request.args.get('user_id')
    result = await get_service('community').delete_comment(comment_id, user_id)
    return jsonify(result)

@community_bp.route('/circles', methods=['GET'])
async def list_circles():
    result = await get_service('community').list_circles(
        requesting_user_id=request.args.get('requesting_user_id'),
        search=request.args.get('search', '')
    )
    return jsonify(result)

@community_bp.route('/circles', methods=['POST'])
async def create_circle():
    result = await get_service('community').create_circle(json_body())
    return jsonify(result), 201

@community_bp.route('/circles/<circle_id>/join', methods=['POST'])
async def join_circle(circle_id):
    result = await get_service('community').join_circle(circle_id, json_body().get('user_id'))
    return jsonify(result)

@community_bp.route('/circles/<circle_id>/join', methods=['DELETE'])
async def leave_circle(circle_id):
    user_id = json_body().get('user_id') or request.args.get('user_id')
    result = await get_service('community').leave_circle(circle_id, user_id)
    return jsonify(result)
