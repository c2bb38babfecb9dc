import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from lib.database import db_error, first_row, rows, utc_now, utc_offset
from lib.error_handler import ValidationError

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]

class OutboxService:
    """
    Durable side-effect queue in ``task_outbox``.

    Producers enqueue rows; a cron hit on the dispatch endpoint claims due rows
    and runs the registered handler. Failures back off exponentially and end in
    ``dead_letter`` after ``max_attempts``.

    A claim holds the row for ``lease_seconds``. A ``processing`` row whose
    lease has expired (the worker died, or could not record the outcome) is
    claimed again by a later dispatch and that counts as another attempt.
    """

    def __init__(self, supabase_client, max_attempts: int = 5, backoff_seconds: int = 30,
                 batch_size: int = 20, lease_seconds: int = 600):
        self.supabase = supabase_client
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.table = 'task_outbox'
        self.handlers: Dict[str, Handler] = {}

    def register(self, task_type: str, handler: Handler) -> None:
        self.handlers[task_type] = handler

    def enqueue(self, task_type: str, payload: Dict[str, Any], delay_seconds: float = 0) -> Dict[str, Any]:
        if not task_type:
            raise ValidationError("task_type is required")
        record = {
            'task_type': task_type,
            'payload': payload,
            'status': 'pending',
            'attempts': 0,
            'next_attempt_at': utc_offset(delay_seconds),
            'created_at': utc_now()
        }
        try:
            task = first_row(self.supabase.table(self.table).insert(record).execute())
        except Exception as e:
            raise db_error("Enqueue task", e)
        logger.info(f"Enqueued {task_type} task {task['id'] if task else ''}")
        return task or record

    def _claim(self, task: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        # conditional on the status and attempt count we read, so only one worker wins
        attempts = task.get('attempts') or 0
        now = utc_now()
        return first_row(
            self.supabase.table(self.table)
            .update({
                'status': 'processing',
                'attempts': attempts + 1,
                'claimed_at': now,
                'lease_expires_at': utc_offset(self.lease_seconds),
                'updated_at': now
            })
            .eq('id', task['id'])
            .eq('status', task['status'])
            .eq('attempts', attempts)
            .execute()
        )

    def backoff_for(self, attempts: int) -> float:
        return self.backoff_seconds * (2 ** max(attempts - 1, 0))

    def _due_tasks(self) -> List[Dict[str, Any]]:
        now = utc_now()
        try:
            pending = rows(
                self.supabase.table(self.table)
                .select('*')
                .eq('status', 'pending')
                .lte('next_attempt_at', now)
                .order('next_attempt_at')
                .limit(self.batch_size)
                .execute()
            )
            expired = rows(
                self.supabase.table(self.table)
                .select('*')
                .eq('status', 'processing')
                .lte('lease_expires_at', now)
                .order('lease_expires_at')
                .limit(self.batch_size)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch pending tasks", e)
        return (pending + expired)[:self.batch_size]

    async def dispatch_pending(self) -> Dict[str, Any]:
        due = self._due_tasks()

        summary = {'due': len(due), 'completed': 0, 'retried': 0, 'deadLettered': 0, 'skipped': 0, 'reclaimed': 0}
        for task in due:
            reclaimed = task['status'] == 'processing'
            if reclaimed:
                summary['reclaimed'] += 1
                logger.warning(f"{task['task_type']} task {task['id']} lease expired after attempt {task.get('attempts')}")
                if (task.get('attempts') or 0) >= self.max_attempts:
                    self._dead_letter_expired(task)
                    summary['deadLettered'] += 1
                    continue

            try:
                claimed = self._claim(task)
            except Exception as e:
                logger.error(f"Failed to claim task {task['id']}: {str(e)}")
                claimed = None
            if not claimed:
                summary['skipped'] += 1
                continue
            outcome = await self._run(claimed)
            summary[outcome] += 1

        if due:
            logger.info(f"Outbox dispatch: {summary}")
        return summary

    def _dead_letter_expired(self, task: Dict[str, Any]) -> None:
        error = task.get('last_error') or f"Lease expired after {task.get('attempts')} attempts"
        try:
            self.supabase.table(self.table)\
                .update({'status': 'dead_letter', 'last_error': error, 'updated_at': utc_now()})\
                .eq('id', task['id'])\
                .eq('status', 'processing')\
                .eq('attempts', task.get('attempts'))\
                .execute()
        except Exception as e:
            logger.error(f"Failed to dead-letter task {task['id']}: {str(e)}")
            return
        logger.error(f"Dead-lettered {task['task_type']} task {task['id']}: {error}")

    async def _run(self, task: Dict[str, Any]) -> str:
        handler = self.handlers.get(task['task_type'])
        if handler is None:
            self._mark(task['id'], {'status': 'dead_letter', 'last_error': f"No handler for {task['task_type']}"})
            logger.error(f"Dead-lettered task {task['id']}: no handler for {task['task_type']}")
            return 'deadLettered'

        try:
            await handler(task.get('payload') or {})
        except Exception as e:
            attempts = task.get('attempts') or 1
            error = getattr(e, 'message', None) or str(e)
            if attempts >= self.max_attempts:
                self._mark(task['id'], {'status': 'dead_letter', 'last_error': error})
                logger.error(f"Dead-lettered {task['task_type']} task {task['id']} after {attempts} attempts: {error}")
                return 'deadLettered'
            delay = self.backoff_for(attempts)
            self._mark(task['id'], {
                'status': 'pending',
                'last_error': error,
                'next_attempt_at': utc_offset(delay),
                'lease_expires_at': None
            })
            logger.warning(f"{task['task_type']} task {task['id']} failed (attempt {attempts}), retrying in {delay}s: {error}")
            return 'retried'

        self._mark(task['id'], {'status': 'completed', 'completed_at': utc_now(), 'last_error': None,
                                'lease_expires_at': None})
        return 'completed'

    def _mark(self, task_id: str, update: Dict[str, Any]) -> bool:
        """Record a task outcome; on failure the row keeps its lease and is reclaimed once it expires"""
        update['updated_at'] = utc_now()
        try:
            self.supabase.table(self.table).update(update).eq('id', task_id).execute()
        except Exception as e:
            logger.error(f"Failed to record outcome for task {task_id} ({update.get('status')}): {str(e)}")
            return False
        return True
