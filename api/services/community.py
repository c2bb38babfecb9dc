import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from lib.database import db_error, first_row, increment_counter, is_unique_violation, rows, utc_now
from lib.error_handler import AppError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from lib.monitoring import FlaggedLogger

logger = logging.getLogger(__name__)
circle_log = FlaggedLogger('CIRCLE_FILTERING', 'circle_filtering')

REACTION_TYPES = ('care', 'hugs', 'helpful', 'strength', 'relatable', 'thoughtful', 'growth', 'grateful')
VOTE_TYPES = ('upvote', 'downvote')
POST_TYPES = ('text', 'audio')
SORT_OPTIONS = ('new', 'top', 'hot')
CIRCLE_NAME_PATTERN = re.compile(r'^[a-z0-9_-]+$')
MAX_PAGE_SIZE = 50

def resolve_target(post_id: Optional[str], comment_id: Optional[str]) -> Tuple[str, str]:
    """Exactly one of post_id/comment_id; returns (column, id)"""
    if bool(post_id) == bool(comment_id):
        raise ValidationError("Exactly one of post_id or comment_id is required")
    return ('post_id', post_id) if post_id else ('comment_id', comment_id)

class CommunityService:
    def __init__(self, supabase_client):
        self.supabase = supabase_client

    # Reactions

    def _existing_reaction(self, user_id: str, column: str, target_id: str) -> Optional[Dict[str, Any]]:
        return first_row(
            self.supabase.table('post_reactions')
            .select('id, reaction_type')
            .eq('user_id', user_id)
            .eq(column, target_id)
            .limit(1)
            .execute()
        )

    async def toggle_reaction(self, user_id: str, post_id: Optional[str], comment_id: Optional[str],
                              reaction_type: Optional[str]) -> Dict[str, Any]:
        """
        Same type twice removes the reaction, a different type replaces it,
        ``None`` removes whatever is there.
        """
        if not user_id:
            raise ValidationError("Missing required fields")
        column, target_id = resolve_target(post_id, comment_id)

        if reaction_type is None:
            return await self.remove_reaction(user_id, post_id, comment_id)
        if reaction_type not in REACTION_TYPES:
            raise ValidationError("Invalid reaction type")

        try:
            existing = self._existing_reaction(user_id, column, target_id)

            if existing and existing['reaction_type'] == reaction_type:
                self.supabase.table('post_reactions').delete().eq('id', existing['id']).execute()
                return {'success': True, 'message': 'Reaction removed', 'action': 'removed',
                        'reaction_type': reaction_type}

            if existing:
                self.supabase.table('post_reactions')\
                    .update({'reaction_type': reaction_type})\
                    .eq('id', existing['id'])\
                    .execute()
                return {'success': True, 'message': 'Reaction updated', 'action': 'updated',
                        'reaction_type': reaction_type, 'previous_reaction': existing['reaction_type']}

            reaction = first_row(self.supabase.table('post_reactions').insert({
                'user_id': user_id,
                column: target_id,
                'reaction_type': reaction_type,
                'created_at': utc_now()
            }).execute())
        except Exception as e:
            if is_unique_violation(e):
                raise ConflictError("Reaction changed concurrently, please retry")
            raise db_error("Save reaction", e)

        return {'success': True, 'message': 'Reaction created', 'action': 'created',
                'reaction_type': reaction_type, 'reaction': reaction}

    async def remove_reaction(self, user_id: str, post_id: Optional[str], comment_id: Optional[str]) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("Missing required fields")
        column, target_id = resolve_target(post_id, comment_id)
        try:
            self.supabase.table('post_reactions')\
                .delete()\
                .eq('user_id', user_id)\
                .eq(column, target_id)\
                .execute()
        except Exception as e:
            raise db_error("Remove reaction", e)
        return {'success': True, 'message': 'Reaction removed', 'action': 'removed'}

    async def list_reactions(self, post_id: Optional[str], comment_id: Optional[str],
                             user_id: Optional[str] = None) -> Dict[str, Any]:
        column, target_id = resolve_target(post_id, comment_id)
        try:
            reactions = rows(
                self.supabase.table('post_reactions')
                .select('user_id, reaction_type')
                .eq(column, target_id)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch reactions", e)

        counts = {reaction_type: 0 for reaction_type in REACTION_TYPES}
        user_reaction = None
        for reaction in reactions:
            counts[reaction['reaction_type']] = counts.get(reaction['reaction_type'], 0) + 1
            if user_id and reaction['user_id'] == user_id:
                user_reaction = reaction['reaction_type']
        return {'success': True, 'counts': counts, 'total': len(reactions), 'user_reaction': user_reaction}

    # Votes

    async def toggle_vote(self, user_id: str, post_id: Optional[str], comment_id: Optional[str],
                          vote_type: str) -> Dict[str, Any]:
        if not user_id or not vote_type:
            raise ValidationError("Missing required fields")
        column, target_id = resolve_target(post_id, comment_id)
        if vote_type not in VOTE_TYPES:
            raise ValidationError("Invalid vote type")
        table = 'community_posts' if column == 'post_id' else 'post_comments'

        try:
            existing = first_row(
                self.supabase.table('post_votes')
                .select('id, vote_type')
                .eq('user_id', user_id)
                .eq(column, target_id)
                .limit(1)
                .execute()
            )
            if existing and existing['vote_type'] == vote_type:
                self.supabase.table('post_votes').delete().eq('id', existing['id']).execute()
                increment_counter(self.supabase, table, target_id, f"{vote_type}s", -1)
                return {'success': True, 'action': 'removed', 'vote_type': vote_type}

            if existing:
                self.supabase.table('post_votes').update({'vote_type': vote_type}).eq('id', existing['id']).execute()
                increment_counter(self.supabase, table, target_id, f"{existing['vote_type']}s", -1)
                increment_counter(self.supabase, table, target_id, f"{vote_type}s", 1)
                return {'success': True, 'action': 'updated', 'vote_type': vote_type,
                        'previous_vote': existing['vote_type']}

            self.supabase.table('post_votes').insert({
                'user_id': user_id,
                column: target_id,
                'vote_type': vote_type,
                'created_at': utc_now()
            }).execute()
            increment_counter(self.supabase, table, target_id, f"{vote_type}s", 1)
        except AppError:
            raise
        except Exception as e:
            if is_unique_violation(e):
                raise ConflictError("Vote changed concurrently, please retry")
            raise db_error("Save vote", e)

        return {'success': True, 'action': 'created', 'vote_type': vote_type}

    # Posts

    def _member_circle_ids(self, user_id: str) -> List[str]:
        return [
            m['circle_id'] for m in rows(
                self.supabase.table('circle_memberships')
                .select('circle_id')
                .eq('user_id', user_id)
                .execute()
            )
        ]

    def _is_member(self, circle_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return first_row(
            self.supabase.table('circle_memberships')
            .select('id, role')
            .eq('circle_id', circle_id)
            .eq('user_id', user_id)
            .limit(1)
            .execute()
        )

    async def list_posts(self, page: int = 1, limit: int = 10, sort_by: str = 'hot',
                         circle_id: Optional[str] = None, requesting_user_id: Optional[str] = None,
                         author_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Circle feed when circle_id is given, personalised feed (general + member circles)
        for a signed-in user, otherwise the public feed of general posts only.
        """
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        if sort_by not in SORT_OPTIONS:
            sort_by = 'hot'

        query = self.supabase.table('community_posts')\
            .select('*', count='exact')\
            .eq('is_deleted', False)

        try:
            if circle_id:
                circle_log.log(f"Circle feed for {circle_id}")
                query = query.eq('circle_id', circle_id)
            elif requesting_user_id:
                circle_ids = self._member_circle_ids(requesting_user_id)
                circle_log.log(f"Home feed for {requesting_user_id}: member of {len(circle_ids)} circles")
                if circle_ids:
                    query = query.or_(f"circle_id.is.null,circle_id.in.({','.join(circle_ids)})")
                else:
                    query = query.is_('circle_id', 'null')
            else:
                query = query.is_('circle_id', 'null')

            if author_id:
                query = query.eq('user_id', author_id)

            if sort_by == 'new':
                query = query.order('created_at', desc=True)
            elif sort_by == 'top':
                query = query.order('upvotes', desc=True).order('created_at', desc=True)
            else:
                query = query.order('comment_count', desc=True).order('created_at', desc=True)

            start = (page - 1) * limit
            result = query.range(start, start + limit - 1).execute()
        except Exception as e:
            raise db_error("Fetch posts", e)

        posts = rows(result)
        total = result.count if result.count is not None else len(posts)
        return {
            'success': True,
            'posts': posts,
            'pagination': {
                'page': page,
                'limit': limit,
                'total': total,
                'has_more': start + len(posts) < total
            }
        }

    async def create_post(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user_id = data.get('user_id')
        content = data.get('content')
        post_type = data.get('post_type') or 'text'
        if not user_id or not data.get('title') or (post_type == 'text' and not content):
            raise ValidationError("Missing required fields")
        if post_type not in POST_TYPES:
            raise ValidationError("Invalid post type")
        if post_type == 'audio' and not data.get('audio_url'):
            raise ValidationError("audio_url is required for audio posts")

        circle_id = data.get('circle_id')
        if circle_id and not self._is_member(circle_id, user_id):
            raise ForbiddenError("You must be a member of this circle to post")

        record = {
            'user_id': user_id,
            'title': data['title'],
            'content': content,
            'post_type': post_type,
            'audio_url': data.get('audio_url'),
            'audio_duration': data.get('audio_duration'),
            'tags': data.get('tags') or [],
            'circle_id': circle_id or None,
            'upvotes': 0,
            'downvotes': 0,
            'comment_count': 0,
            'view_count': 0,
            'is_deleted': False,
            'created_at': utc_now()
        }
        try:
            post = first_row(self.supabase.table('community_posts').insert(record).execute())
        except Exception as e:
            raise db_error("Create post", e)
        logger.info(f"Created post {post['id']} by {user_id}")
        return {'success': True, 'post': post}

    def _get_live_post(self, post_id: str) -> Dict[str, Any]:
        post = first_row(
            self.supabase.table('community_posts')
            .select('*')
            .eq('id', post_id)
            .eq('is_deleted', False)
            .limit(1)
            .execute()
        )
        if not post:
            raise NotFoundError("Post not found")
        return post

    async def get_post(self, post_id: str) -> Dict[str, Any]:
        post = self._get_live_post(post_id)
        try:
            post['view_count'] = increment_counter(self.supabase, 'community_posts', post_id, 'view_count')
        except Exception as e:
            logger.warning(f"Failed to bump view count for post {post_id}: {str(e)}")
        return {'success': True, 'post': post}

    async def delete_post(self, post_id: str, user_id: str) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("User ID is required")
        post = self._get_live_post(post_id)
        if post['user_id'] != user_id:
            raise ForbiddenError("You can only delete your own posts")
        try:
            self.supabase.table('community_posts')\
                .update({'is_deleted': True, 'deleted_at': utc_now()})\
                .eq('id', post_id)\
                .execute()
        except Exception as e:
            raise db_error("Delete post", e)
        return {'success': True, 'message': 'Post deleted'}

    # Comments

    async def list_comments(self, post_id: str) -> Dict[str, Any]:
        if not post_id:
            raise ValidationError("post_id is required")
        try:
            comments = rows(
                self.supabase.table('post_comments')
                .select('*')
                .eq('post_id', post_id)
                .eq('is_deleted', False)
                .order('created_at')
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch comments", e)
        return {'success': True, 'comments': comments}

    async def create_comment(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user_id, post_id, content = data.get('user_id'), data.get('post_id'), data.get('content')
        if not user_id or not post_id or not content:
            raise ValidationError("Missing required fields")
        self._get_live_post(post_id)

        try:
            comment = first_row(self.supabase.table('post_comments').insert({
                'user_id': user_id,
                'post_id': post_id,
                'parent_comment_id': data.get('parent_comment_id'),
                'content': content,
                'upvotes': 0,
                'downvotes': 0,
                'is_deleted': False,
                'created_at': utc_now()
            }).execute())
        except Exception as e:
            raise db_error("Create comment", e)

        increment_counter(self.supabase, 'community_posts', post_id, 'comment_count', 1)
        return {'success': True, 'comment': comment}

    async def delete_comment(self, comment_id: str, user_id: str) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("User ID is required")
        comment = first_row(
            self.supabase.table('post_comments')
            .select('*')
            .eq('id', comment_id)
            .eq('is_deleted', False)
            .limit(1)
            .execute()
        )
        if not comment:
            raise NotFoundError("Comment not found")
        if comment['user_id'] != user_id:
            raise ForbiddenError("You can only delete your own comments")

        try:
            self.supabase.table('post_comments')\
                .update({'is_deleted': True, 'deleted_at': utc_now()})\
                .eq('id', comment_id)\
                .execute()
        except Exception as e:
            raise db_error("Delete comment", e)
        try:
            increment_counter(self.supabase, 'community_posts', comment['post_id'], 'comment_count', -1)
        except Exception as e:
            logger.warning(f"Failed to decrement comment count for post {comment['post_id']}: {str(e)}")
        return {'success': True, 'message': 'Comment deleted'}

    # Circles

    async def list_circles(self, requesting_user_id: Optional[str] = None, search: str = '') -> Dict[str, Any]:
        try:
            query = self.supabase.table('circles').select('*')
            if search:
                query = query.ilike('display_name', f"%{search}%")
            circles = rows(query.order('member_count', desc=True).execute())
            member_of = set(self._member_circle_ids(requesting_user_id)) if requesting_user_id else set()
        except Exception as e:
            raise db_error("Fetch circles", e)

        # private circles are only listed to their members
        visible = [
            {**c, 'is_member': c['id'] in member_of}
            for c in circles
            if not c.get('is_private') or c['id'] in member_of
        ]
        circle_log.log(f"Listing {len(visible)} of {len(circles)} circles for {requesting_user_id or 'anonymous'}")
        return {'success': True, 'circles': visible}

    async def create_circle(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user_id = data.get('user_id')
        name = data.get('name')
        if not user_id:
            raise ValidationError("User ID is required")
        if not name or not data.get('display_name'):
            raise ValidationError("Missing required fields: name and display_name")
        if not CIRCLE_NAME_PATTERN.match(name):
            raise ValidationError(
                "Circle name must contain only lowercase letters, numbers, underscores, and hyphens"
            )

        try:
            circle = first_row(self.supabase.table('circles').insert({
                'name': name,
                'display_name': data['display_name'],
                'description': data.get('description'),
                'is_private': bool(data.get('is_private')),
                'created_by': user_id,
                'member_count': 1,
                'post_count': 0,
                'created_at': utc_now()
            }).execute())
        except Exception as e:
            if is_unique_violation(e):
                raise ConflictError("A circle with this name already exists")
            raise db_error("Create circle", e)

        try:
            self.supabase.table('circle_memberships').insert({
                'circle_id': circle['id'],
                'user_id': user_id,
                'role': 'admin',
                'joined_at': utc_now()
            }).execute()
        except Exception as e:
            self.supabase.table('circles').delete().eq('id', circle['id']).execute()
            raise db_error("Create circle membership", e)

        return {'success': True, 'circle': circle}

    async def join_circle(self, circle_id: str, user_id: str) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("User ID is required")
        circle = first_row(
            self.supabase.table('circles')
            .select('id, is_private, created_by, member_count')
            .eq('id', circle_id)
            .limit(1)
            .execute()
        )
        if not circle:
            raise NotFoundError("Circle not found")
        if self._is_member(circle_id, user_id):
            raise ConflictError("You are already a member of this circle")

        is_creator = circle.get('created_by') == user_id
        if circle.get('is_private') and not is_creator:
            raise ForbiddenError("This circle is private. Request access from a circle admin.")

        try:
            self.supabase.table('circle_memberships').insert({
                'circle_id': circle_id,
                'user_id': user_id,
                'role': 'admin' if is_creator else 'member',
                'joined_at': utc_now()
            }).execute()
        except Exception as e:
            if is_unique_violation(e):
                raise ConflictError("You are already a member of this circle")
            raise db_error("Join circle", e)

        member_count = increment_counter(self.supabase, 'circles', circle_id, 'member_count', 1)
        return {'success': True, 'message': 'Joined circle', 'member_count': member_count}

    async def leave_circle(self, circle_id: str, user_id: str) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("User ID is required")
        membership = self._is_member(circle_id, user_id)
        if not membership:
            raise NotFoundError("You are not a member of this circle")

        if membership.get('role') == 'admin':
            other_admins = rows(
                self.supabase.table('circle_memberships')
                .select('id')
                .eq('circle_id', circle_id)
                .eq('role', 'admin')
                .neq('user_id', user_id)
                .execute()
            )
            if not other_admins:
                raise ValidationError(
                    "You cannot leave this circle as you are the only admin. "
                    "Please promote another member to admin first or delete the circle."
                )

        try:
            self.supabase.table('circle_memberships').delete().eq('id', membership['id']).execute()
        except Exception as e:
            raise db_error("Leave circle", e)

        member_count = increment_counter(self.supabase, 'circles', circle_id, 'member_count', -1)
        return {'success': True, 'message': 'Left circle', 'member_count': member_count}
