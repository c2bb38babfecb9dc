from typing import Dict, List, Optional
import json
import logging
import re

from openai import OpenAI, OpenAIError

from lib.config import Settings
from lib.error_handler import UpstreamError

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json)?\s*|```\s*$")

class OpenAIClient:
    def __init__(self, settings: Settings, client: Optional[OpenAI] = None):
        self.client = client or OpenAI(api_key=settings.openai_api_key)
        self.chat_model = settings.chat_model
        self.transcription_model = settings.transcription_model
        self.embedding_model = settings.embedding_model

    def chat_completion(self, messages: List[Dict[str, str]], model: Optional[str] = None) -> str:
        """
        Run a chat completion and return the first choice's text.
        gpt-5 models only accept the default temperature, so none is sent.
        """
        try:
            response = self.client.chat.completions.create(
                model=model or self.chat_model,
                messages=messages,
            )
        except OpenAIError as e:
            raise UpstreamError(f"OpenAI completion failed: {str(e)}",
                                user_message="AI completion failed")

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise UpstreamError("OpenAI returned an empty completion",
                                user_message="AI completion failed")
        return content

    def transcribe(self, audio: bytes, filename: str, content_type: str, prompt: Optional[str] = None) -> str:
        """
        Transcribe raw audio bytes with the configured speech-to-text model
        """
        try:
            transcript = self.client.audio.transcriptions.create(
                model=self.transcription_model,
                file=(filename, audio, content_type),
                response_format="json",
                **({'prompt': prompt} if prompt else {}),
            )
        except OpenAIError as e:
            raise UpstreamError(f"OpenAI API error: {str(e)}", user_message="Failed to transcribe audio")
        return transcript.text

    def embed(self, text: str) -> List[float]:
        try:
            response = self.client.embeddings.create(model=self.embedding_model, input=text)
        except OpenAIError as e:
            raise UpstreamError(f"Embedding generation failed: {str(e)}",
                                user_message="Embedding generation failed")
        if not response.data:
            raise UpstreamError("No embedding data returned from OpenAI",
                                user_message="Embedding generation failed")
        return response.data[0].embedding

def parse_json_response(text: str) -> Dict:
    """Parse a model reply that should be JSON, tolerating markdown code fences."""
    cleaned = _CODE_FENCE.sub('', text.strip()).strip()
    return json.loads(cleaned)
