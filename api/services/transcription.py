import json
import logging
from typing import Any, Dict, Optional

from lib.database import db_error, first_row, rows, utc_now
from lib.error_handler import AppError, NotFoundError, ValidationError
from lib.monitoring import FlaggedLogger
from lib.openai_client import parse_json_response

logger = logging.getLogger(__name__)
transcription_log = FlaggedLogger('AUDIO_TRANSCRIPTION', 'audio_transcription')

PROCESSING = 'processing'
COMPLETED = 'completed'
FAILED = 'failed'

class TranscriptionService:
    """
    One transcript job per intake: none -> processing -> completed | failed,
    plus failed -> processing when a caller retries.
    """

    def __init__(self, supabase_client, audio_service, openai_client=None, prompt_service=None):
        self.supabase = supabase_client
        self.audio = audio_service
        self.openai = openai_client
        self.prompts = prompt_service
        self.table = 'patient_intake_transcripts'

    def _get_job(self, intake_id: str) -> Optional[Dict[str, Any]]:
        try:
            return first_row(
                self.supabase.table(self.table)
                .select('*')
                .eq('intake_id', intake_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch transcript job", e)

    def _claim_job(self, intake_id: str, conversation_id: Optional[str], audio_path: str) -> Optional[Dict[str, Any]]:
        """
        Create the processing row, or reclaim a failed one.
        Returns the row when this caller owns the attempt, None when another caller does.
        """
        existing = self._get_job(intake_id)
        now = utc_now()

        if existing is None:
            row = {
                'intake_id': intake_id,
                'conversation_id': conversation_id,
                'audio_path': audio_path,
                'status': PROCESSING,
                'attempt_count': 1,
                'started_at': now,
                'created_at': now,
                'updated_at': now
            }
            try:
                result = self.supabase.table(self.table)\
                    .upsert(row, on_conflict='intake_id', ignore_duplicates=True)\
                    .execute()
            except Exception as e:
                raise db_error("Create transcript job", e)
            # ignore_duplicates returns no rows when a concurrent caller inserted first
            return first_row(result)

        if existing['status'] != FAILED:
            return None

        try:
            result = self.supabase.table(self.table)\
                .update({
                    'status': PROCESSING,
                    'error_message': None,
                    'audio_path': audio_path,
                    'attempt_count': (existing.get('attempt_count') or 1) + 1,
                    'started_at': now,
                    'updated_at': now
                })\
                .eq('id', existing['id'])\
                .eq('status', FAILED)\
                .execute()
        except Exception as e:
            raise db_error("Retry transcript job", e)
        return first_row(result)

    def _finish_job(self, job_id: str, update: Dict[str, Any]) -> bool:
        update['updated_at'] = utc_now()
        result = self.supabase.table(self.table)\
            .update(update)\
            .eq('id', job_id)\
            .eq('status', PROCESSING)\
            .execute()
        return bool(rows(result))

    def _status_response(self, job: Dict[str, Any]) -> Dict[str, Any]:
        response = {
            'status': job['status'],
            'intake_id': job['intake_id'],
            'job_id': job.get('id')
        }
        if job['status'] == COMPLETED:
            response['transcript'] = job.get('transcript_text')
            response['duration'] = job.get('audio_duration_seconds')
        elif job['status'] == FAILED:
            response['error'] = job.get('error_message')
        return response

    async def transcribe_intake(
        self,
        intake_id: str,
        conversation_id: Optional[str],
        audio_path: str
    ) -> Dict[str, Any]:
        if not intake_id:
            raise ValidationError("intake_id is required")
        if not audio_path:
            raise ValidationError("combined_audio_path is required")

        existing = self._get_job(intake_id)
        if existing and existing['status'] in (PROCESSING, COMPLETED):
            transcription_log.log(f"Job for intake {intake_id} already {existing['status']}")
            return self._status_response(existing)

        job = self._claim_job(intake_id, conversation_id, audio_path)
        if job is None:
            # another request won the race; report whatever it left behind
            current = self._get_job(intake_id)
            return self._status_response(current) if current else {'status': PROCESSING, 'intake_id': intake_id}

        logger.info(f"Transcription job {job['id']} started for intake {intake_id} (attempt {job.get('attempt_count', 1)})")

        try:
            audio = await self.audio.download(audio_path)
            text, duration = await self.audio.transcribe(audio, audio_path)
        except Exception as e:
            message = e.message if isinstance(e, AppError) else str(e)
            logger.error(f"Transcription failed for intake {intake_id}: {message}")
            try:
                self._finish_job(job['id'], {'status': FAILED, 'error_message': message})
            except Exception as update_error:
                logger.error(f"Failed to mark transcript job {job['id']} as failed: {str(update_error)}")
            raise

        try:
            finished = self._finish_job(job['id'], {
                'status': COMPLETED,
                'transcript_text': text,
                'audio_duration_seconds': duration,
                'error_message': None,
                'completed_at': utc_now()
            })
        except Exception as e:
            raise db_error("Save transcript", e)

        if not finished:
            logger.warning(f"Transcript job {job['id']} left processing before completion was recorded")
            current = self._get_job(intake_id)
            return self._status_response(current)

        return {
            'status': COMPLETED,
            'intake_id': intake_id,
            'job_id': job['id'],
            'transcript': text,
            'duration': duration
        }

    async def get_status(self, intake_id: str) -> Dict[str, Any]:
        if not intake_id:
            raise ValidationError("intake_id is required")
        job = self._get_job(intake_id)
        if job is None:
            return {'status': 'not_found', 'intake_id': intake_id}
        return self._status_response(job)

    async def get_intake_summary(self, intake_id: str) -> Dict[str, Any]:
        """Stored provider summary, generated from intake answers and the transcript on first request."""
        if not intake_id:
            raise ValidationError("intake_id is required")

        try:
            stored = first_row(
                self.supabase.table('patient_intake_summaries')
                .select('*')
                .eq('intake_id', intake_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise db_error("Fetch intake summary", e)
        if stored:
            return {'status': 'completed', 'summary': stored.get('summary'), 'cached': True}

        session = first_row(
            self.supabase.table('intake_sessions').select('*').eq('id', intake_id).limit(1).execute()
        )
        if not session:
            raise NotFoundError("Intake not found")

        details = None
        if session.get('patient_id'):
            details = first_row(
                self.supabase.table('patient_details')
                .select('*')
                .eq('id', session['patient_id'])
                .limit(1)
                .execute()
            )

        job = self._get_job(intake_id)
        if job is None or job['status'] == PROCESSING:
            return {'status': 'pending_transcript', 'message': 'Transcript is not ready yet'}

        transcript = job.get('transcript_text') if job['status'] == COMPLETED else None
        if job['status'] == FAILED:
            logger.warning(f"Transcript for intake {intake_id} failed, summarising intake answers only")

        summary = self._generate_summary(details, transcript)

        try:
            self.supabase.table('patient_intake_summaries').upsert({
                'intake_id': intake_id,
                'summary': summary,
                'created_at': utc_now()
            }, on_conflict='intake_id').execute()
        except Exception as e:
            raise db_error("Save intake summary", e)

        return {'status': 'completed', 'summary': summary, 'cached': False}

    def _generate_summary(self, details: Optional[Dict[str, Any]], transcript: Optional[str]) -> Dict[str, Any]:
        template = self.prompts.get_prompt('intake_summary')
        sections = ["Intake form answers:", json.dumps(details or {}, indent=2, default=str)]
        if transcript:
            sections += ["", "Intake conversation transcript:", transcript]
        prompt = template.replace('{{INTAKE_CONTEXT}}', "\n".join(sections))

        reply = self.openai.chat_completion([{'role': 'user', 'content': prompt}])
        try:
            return parse_json_response(reply)
        except ValueError:
            logger.warning("Intake summary was not valid JSON, storing raw text")
            return {'summary': reply}
