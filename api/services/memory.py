import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from lib.database import db_error, first_row, rows, utc_now
from lib.error_handler import NotFoundError, ValidationError
from lib.monitoring import FlaggedLogger
from lib.openai_client import parse_json_response

from .profile import is_anonymous_user

logger = logging.getLogger(__name__)
memory_log = FlaggedLogger('USER_MEMORY', 'v16_memory')

MIN_MESSAGES = 6
MIN_USER_MESSAGES = 3
MIN_USER_CHARACTERS = 200
ACTIVE_STATUSES = ('pending', 'processing')

def is_quality_conversation(messages: List[Dict[str, Any]]) -> bool:
    user_messages = [m for m in messages if m.get('role') == 'user']
    user_content = ' '.join(m.get('content') or '' for m in user_messages)
    return (
        len(messages) >= MIN_MESSAGES
        and len(user_messages) >= MIN_USER_MESSAGES
        and len(user_content) >= MIN_USER_CHARACTERS
    )

def combine_insights(insights: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Fold per-conversation extractions into one memory document; lists concatenate, later scalars win."""
    combined: Dict[str, Any] = {}
    for insight in insights:
        for key, value in insight.items():
            existing = combined.get(key)
            if isinstance(existing, list) and isinstance(value, list):
                combined[key] = existing + [v for v in value if v not in existing]
            elif isinstance(existing, dict) and isinstance(value, dict):
                combined[key] = {**existing, **value}
            else:
                combined[key] = value
    return combined

class MemoryService:
    """
    Memory processing jobs. Progress lives in ``memory_jobs`` rows so any
    instance can report on or resume a job. Every progress write refreshes
    ``updated_at``; a ``processing`` job that has not written for
    ``job_timeout_seconds`` is treated as abandoned and may be claimed again.
    """

    def __init__(self, supabase_client, openai_client, prompt_service, profile_service,
                 outbox_service=None, batch_size: int = 10, scheduled_days: int = 7,
                 job_timeout_seconds: int = 900):
        self.supabase = supabase_client
        self.openai = openai_client
        self.prompts = prompt_service
        self.profiles = profile_service
        self.outbox = outbox_service
        self.batch_size = batch_size
        self.scheduled_days = scheduled_days
        self.job_timeout_seconds = job_timeout_seconds
        self.table = 'memory_jobs'

    def _get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        try:
            return first_row(
                self.supabase.table(self.table).select('*').eq('id', job_id).limit(1).execute()
            )
        except Exception as e:
            raise db_error("Fetch memory job", e)

    def _update_job(self, job_id: str, update: Dict[str, Any]) -> None:
        update['updated_at'] = utc_now()
        self.supabase.table(self.table).update(update).eq('id', job_id).execute()

    def _is_stale(self, job: Dict[str, Any]) -> bool:
        if job.get('status') != 'processing':
            return False
        heartbeat = job.get('updated_at') or job.get('started_at') or job.get('created_at')
        if not heartbeat:
            return True
        last = datetime.fromisoformat(heartbeat)
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) - last > timedelta(seconds=self.job_timeout_seconds)

    def _expire(self, job: Dict[str, Any]) -> None:
        """Fail an abandoned job unless its worker wrote progress since we read it"""
        query = self.supabase.table(self.table)\
            .update({'status': 'failed', 'error_message': 'Job timed out while processing', 'updated_at': utc_now()})\
            .eq('id', job['id'])\
            .eq('status', 'processing')
        if job.get('updated_at'):
            query = query.eq('updated_at', job['updated_at'])
        if rows(query.execute()):
            logger.warning(f"Memory job {job['id']} for {job['user_id']} timed out, marked failed")

    def _active_job(self, user_id: str) -> Optional[Dict[str, Any]]:
        active = rows(
            self.supabase.table(self.table)
            .select('*')
            .eq('user_id', user_id)
            .in_('status', list(ACTIVE_STATUSES))
            .order('created_at', desc=True)
            .execute()
        )
        for job in active:
            if self._is_stale(job):
                self._expire(job)
                continue
            return job
        return None

    def _unprocessed_conversation_ids(self, user_id: str) -> List[str]:
        """Conversation ids with no analysis row yet, newest first"""
        try:
            conversations = rows(
                self.supabase.table('conversations')
                .select('id, created_at')
                .eq('human_id', user_id)
                .order('created_at', desc=True)
                .execute()
            )
            analysed = rows(
                self.supabase.table('conversation_analyses')
                .select('conversation_id')
                .eq('user_id', user_id)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch conversations", e)
        processed = {row['conversation_id'] for row in analysed}
        return [c['id'] for c in conversations if c['id'] not in processed]

    def _load_messages(self, conversation_ids: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        try:
            result = self.supabase.table('messages')\
                .select('conversation_id, role, content, created_at')\
                .in_('conversation_id', conversation_ids)\
                .order('created_at')\
                .execute()
        except Exception as e:
            raise db_error("Fetch conversation messages", e)
        grouped: Dict[str, List[Dict[str, Any]]] = {cid: [] for cid in conversation_ids}
        for message in rows(result):
            grouped.setdefault(message['conversation_id'], []).append(message)
        return grouped

    def _record_analysis(self, job: Dict[str, Any], conversation_id: str, result: Dict[str, Any],
                         status: str, message_count: int) -> None:
        now = utc_now()
        self.supabase.table('conversation_analyses').upsert({
            'user_id': job['user_id'],
            'conversation_id': conversation_id,
            'analysis_result': result,
            'processing_status': status,
            'message_count': message_count,
            'job_id': job['id'],
            'extracted_at': now
        }, on_conflict='conversation_id', ignore_duplicates=True).execute()
        self.supabase.table('processed_conversations').upsert({
            'user_id': job['user_id'],
            'conversation_id': conversation_id,
            'processed_at': now
        }, on_conflict='conversation_id', ignore_duplicates=True).execute()

    async def create_job(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Queue memory processing for a user; anonymous users are skipped and get None"""
        if not user_id:
            raise ValidationError("User ID is required")
        if is_anonymous_user(user_id):
            memory_log.log(f"Skipping memory job for anonymous user {user_id}")
            return None

        active = self._active_job(user_id)
        if active:
            memory_log.log(f"User {user_id} already has {active['status']} job {active['id']}")
            return active

        unprocessed = self._unprocessed_conversation_ids(user_id)
        try:
            job = first_row(self.supabase.table(self.table).insert({
                'user_id': user_id,
                'status': 'pending',
                'job_type': 'memory_processing',
                'batch_size': self.batch_size,
                'total_conversations': len(unprocessed),
                'processed_conversations': 0,
                'progress_percentage': 0,
                'created_at': utc_now(),
                'updated_at': utc_now()
            }).execute())
        except Exception as e:
            raise db_error("Create memory job", e)

        logger.info(f"Created memory job {job['id']} for {user_id} ({len(unprocessed)} unprocessed conversations)")

        if self.outbox is not None:
            try:
                self.outbox.enqueue('memory_job', {'job_id': job['id']})
            except Exception as e:
                logger.error(f"Failed to enqueue memory job {job['id']}: {str(e)}")
        return job

    async def job_status(self, job_id: str) -> Dict[str, Any]:
        if not job_id:
            raise ValidationError("Job ID is required")
        job = self._get_job(job_id)
        if not job:
            raise NotFoundError("Job not found")
        return {
            'success': True,
            'job': {
                'id': job['id'],
                'status': job['status'],
                'progress': job.get('progress_percentage') or 0,
                'totalConversations': job.get('total_conversations') or 0,
                'processedConversations': job.get('processed_conversations') or 0,
                'details': job.get('processing_details'),
                'error': job.get('error_message'),
                'createdAt': job.get('created_at'),
                'completedAt': job.get('completed_at')
            }
        }

    async def process_job(self, job_id: str) -> Dict[str, Any]:
        if not job_id:
            raise ValidationError("Job ID is required")
        job = self._get_job(job_id)
        if not job:
            raise NotFoundError("Job not found")
        stale = self._is_stale(job)
        if job['status'] not in ('pending', 'failed') and not stale:
            return {'success': True, 'message': f"Job is already {job['status']}"}
        if stale:
            logger.warning(f"Reclaiming abandoned memory job {job_id} (last update {job.get('updated_at')})")

        # only one worker moves the job out of the status it was read in
        query = self.supabase.table(self.table)\
            .update({'status': 'processing', 'started_at': utc_now(), 'error_message': None, 'updated_at': utc_now()})\
            .eq('id', job_id)\
            .eq('status', job['status'])
        if stale and job.get('updated_at'):
            query = query.eq('updated_at', job['updated_at'])
        claimed = first_row(query.execute())
        if not claimed:
            return {'success': True, 'message': 'Job is already being processed'}

        memory_log.log(f"Processing job {job_id} for {job['user_id']}")
        try:
            return self._run_batch(claimed)
        except Exception as e:
            logger.error(f"Memory job {job_id} failed: {str(e)}")
            try:
                self._update_job(job_id, {'status': 'failed', 'error_message': str(e)})
            except Exception as update_error:
                logger.error(f"Failed to mark memory job {job_id} as failed: {str(update_error)}")
            raise

    def _run_batch(self, job: Dict[str, Any]) -> Dict[str, Any]:
        job_id = job['id']
        user_id = job['user_id']
        batch = self._unprocessed_conversation_ids(user_id)[:job.get('batch_size') or self.batch_size]

        if not batch:
            self._update_job(job_id, {
                'status': 'completed',
                'progress_percentage': 100,
                'completed_at': utc_now(),
                'processing_details': {'message': 'No conversations to process'}
            })
            return {'success': True, 'message': 'No conversations to process', 'isComplete': True}

        conversations = self._load_messages(batch)
        quality = {cid: msgs for cid, msgs in conversations.items() if is_quality_conversation(msgs)}
        memory_log.log(f"Job {job_id}: {len(quality)}/{len(batch)} conversations pass quality filter")

        for cid in batch:
            if cid not in quality:
                self._record_analysis(job, cid, {'skipped': True, 'reason': 'insufficient_quality'},
                                      'skipped', len(conversations.get(cid, [])))

        total = len(batch)
        self._update_job(job_id, {
            'total_conversations': max(job.get('total_conversations') or 0, total),
            'processing_details': {
                'currentStep': 'Analyzing conversations with AI...',
                'conversationsExamined': total,
                'qualityConversationsFound': len(quality)
            }
        })

        if not quality:
            self._update_job(job_id, {
                'status': 'completed',
                'processed_conversations': total,
                'progress_percentage': 100,
                'completed_at': utc_now(),
                'processing_details': {
                    'message': 'No quality conversations in this batch',
                    'conversationsExamined': total,
                    'qualityConversationsFound': 0
                }
            })
            return {'success': True, 'message': 'No quality conversations in this batch', 'isComplete': True,
                    'skippedConversations': total}

        extraction_system = self.prompts.get_prompt('memory_extraction_system')
        extraction_user = self.prompts.get_prompt('memory_extraction_user')

        insights = []
        skipped = failed = 0
        message_count = 0
        for index, (cid, messages) in enumerate(quality.items(), start=1):
            transcript = "\n".join(f"{m['role']}: {m.get('content') or ''}" for m in messages)
            message_count += len(messages)
            try:
                reply = self.openai.chat_completion([
                    {'role': 'system', 'content': extraction_system},
                    {'role': 'user', 'content': f"{extraction_user}\n\nConversation:\n{transcript}"}
                ])
                extracted = parse_json_response(reply)
                if extracted.get('skipped') or extracted.get('skip'):
                    status = 'skipped'
                    skipped += 1
                else:
                    status = 'completed'
                    insights.append(extracted)
            except Exception as e:
                logger.warning(f"Extraction failed for conversation {cid}: {str(e)}")
                extracted = {'skipped': True, 'reason': 'processing_error', 'error': str(e)}
                status = 'failed'
                failed += 1

            self._record_analysis(job, cid, extracted, status, len(messages))
            self._update_job(job_id, {
                'processed_conversations': (total - len(quality)) + index,
                'progress_percentage': round(((total - len(quality)) + index) / total * 90),
                'processing_details': {
                    'currentStep': f"Processing conversation {index}/{len(quality)}",
                    'conversationsProcessed': len(insights),
                    'conversationsSkipped': skipped,
                    'conversationsFailed': failed
                }
            })

        profile = None
        if insights:
            profile = self._merge_into_profile(job, combine_insights(insights), len(insights), message_count)

        warning = f"{failed} conversations failed extraction" if failed else None
        self._update_job(job_id, {
            'status': 'completed',
            'progress_percentage': 100,
            'completed_at': utc_now(),
            'error_message': warning,
            'processing_details': {
                'conversationsExamined': total,
                'conversationsProcessed': len(insights),
                'conversationsSkipped': skipped,
                'conversationsFailed': failed,
                'profileId': profile.get('id') if profile else None,
                'profileVersion': profile.get('version') if profile else None
            }
        })
        logger.info(f"Memory job {job_id} completed: {len(insights)} conversations extracted")

        return {
            'success': True,
            'processed': len(insights),
            'profileId': profile.get('id') if profile else None,
            'profileVersion': profile.get('version') if profile else None,
            'isComplete': True
        }

    def _merge_into_profile(self, job: Dict[str, Any], new_memory: Dict[str, Any],
                            conversation_count: int, message_count: int) -> Dict[str, Any]:
        user_id = job['user_id']
        existing = self.profiles.get_profile(user_id)
        final_memory = new_memory

        if existing and existing.get('profile_data'):
            self._update_job(job['id'], {'processing_details': {'currentStep': 'Merging with existing profile...'}})
            merge_system = self.prompts.get_prompt('memory_merge_system')
            merge_user = self.prompts.get_prompt('memory_merge_user')
            reply = self.openai.chat_completion([
                {'role': 'system', 'content': merge_system},
                {'role': 'user', 'content': (
                    f"{merge_user}\n\n"
                    f"Existing Profile:\n{json.dumps(existing['profile_data'], indent=2)}\n\n"
                    f"New Memory Data:\n{json.dumps(new_memory, indent=2)}"
                )}
            ])
            try:
                final_memory = parse_json_response(reply)
            except ValueError as e:
                logger.warning(f"Could not parse merged profile for {user_id}, keeping new data only: {str(e)}")

        saved = self.profiles.save_profile(user_id, final_memory, extra={
            'conversation_count': conversation_count,
            'message_count': message_count,
            'last_analyzed_timestamp': utc_now()
        })

        try:
            summary_prompt = self.prompts.get_prompt('ai_summary')
            summary = self.openai.chat_completion([
                {'role': 'user', 'content': f"{summary_prompt}\n\n{json.dumps(final_memory, indent=2)}"}
            ]).strip()
            saved = self.profiles.save_ai_summary(user_id, summary)
            memory_log.log(f"Saved {len(summary)} char AI summary for {user_id}")
        except Exception as e:
            logger.error(f"Failed to generate AI summary for {user_id}: {str(e)}")

        return saved

    async def scheduled_run(self) -> Dict[str, Any]:
        """Cron entry point: queue a job for every user active in the recent window"""
        since = (datetime.now(timezone.utc) - timedelta(days=self.scheduled_days)).isoformat()
        try:
            recent = rows(
                self.supabase.table('conversations')
                .select('human_id')
                .gte('created_at', since)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch recent conversations", e)

        users = sorted({r['human_id'] for r in recent if not is_anonymous_user(r.get('human_id'))})
        created, skipped, errors = [], [], []
        for user_id in users:
            if self._active_job(user_id):
                skipped.append(user_id)
                continue
            try:
                job = await self.create_job(user_id)
                if job:
                    created.append(job['id'])
            except Exception as e:
                logger.error(f"Scheduled memory job failed for {user_id}: {str(e)}")
                errors.append(user_id)

        logger.info(f"Scheduled memory processing: {len(users)} users, {len(created)} jobs, {len(skipped)} skipped")
        return {
            'success': True,
            'usersConsidered': len(users),
            'jobsCreated': len(created),
            'jobIds': created,
            'skippedUsers': len(skipped),
            'failedUsers': len(errors)
        }
