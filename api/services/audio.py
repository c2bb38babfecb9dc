import io
import logging
import os
from typing import Optional, Tuple

from pydub import AudioSegment

from lib.error_handler import UpstreamError
from lib.monitoring import FlaggedLogger

logger = logging.getLogger(__name__)
transcription_log = FlaggedLogger('AUDIO_TRANSCRIPTION', 'audio_transcription')

INTAKE_CONTEXT_PROMPT = (
    "This is a recorded mental health intake conversation between a patient and an "
    "AI intake assistant. Topics include symptoms, mood, sleep, medications, insurance, "
    "scheduling availability and therapy preferences."
)

class AudioService:
    def __init__(self, supabase_client, openai_client, bucket: str):
        self.supabase = supabase_client
        self.openai = openai_client
        self.bucket = bucket
        logger.info(f"Audio service initialized with storage bucket: {bucket}")

    async def download(self, path: str) -> bytes:
        """Fetch an uploaded recording from Supabase Storage"""
        transcription_log.log(f"Downloading {self.bucket}/{path}")
        try:
            data = self.supabase.storage.from_(self.bucket).download(path)
        except Exception as e:
            raise UpstreamError(f"Failed to download audio {self.bucket}/{path}: {str(e)}",
                                user_message="Failed to download audio file")
        if not data:
            raise UpstreamError(f"Failed to download audio {self.bucket}/{path}: empty file",
                                user_message="Failed to download audio file")
        transcription_log.log(f"Audio file downloaded: {len(data)} bytes")
        return data

    async def upload(self, path: str, data: bytes, content_type: str, bucket: Optional[str] = None) -> str:
        bucket = bucket or self.bucket
        try:
            self.supabase.storage.from_(bucket).upload(
                path, data, {'content-type': content_type}
            )
        except Exception as e:
            raise UpstreamError(f"Failed to upload audio to {bucket}/{path}: {str(e)}",
                                user_message="Failed to upload audio")
        logger.info(f"Uploaded {len(data)} bytes to {bucket}/{path}")
        return path

    def probe_duration(self, data: bytes) -> float:
        """Duration in seconds, or 0 when the container can't be decoded."""
        try:
            return round(AudioSegment.from_file(io.BytesIO(data)).duration_seconds, 2)
        except Exception as e:
            logger.warning(f"Could not determine audio duration: {str(e)}")
            return 0

    async def transcribe(self, data: bytes, path: str) -> Tuple[str, float]:
        """Transcribe a recording and return (text, duration_seconds)"""
        duration = self.probe_duration(data)
        filename = os.path.basename(path) or 'audio.webm'
        content_type = self._get_content_type(filename)
        transcription_log.log(f"Transcribing {filename} ({content_type}, {duration}s)")

        text = self.openai.transcribe(data, filename, content_type, prompt=INTAKE_CONTEXT_PROMPT)

        logger.info(f"Transcription complete: {len(text)} chars")
        return text, duration

    def _get_content_type(self, filename: str) -> str:
        """Map a file extension to the mime type sent with the upload"""
        content_type_map = {
            'mp3': 'audio/mpeg',
            'mp4': 'audio/mp4',
            'm4a': 'audio/m4a',
            'ogg': 'audio/ogg',
            'wav': 'audio/wav',
            'webm': 'audio/webm',
            'aac': 'audio/aac',
        }
        extension = filename.rsplit('.', 1)[-1].lower() if '.' in filename else ''
        content_type = content_type_map.get(extension)
        if not content_type:
            logger.warning(f"Unknown audio extension: {extension or '(none)'}, defaulting to webm")
            return 'audio/webm'
        return content_type
