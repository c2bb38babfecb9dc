from flask import Flask, jsonify
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from lib.config import Settings, get_settings
from lib.database import create_supabase_client
from lib.error_handler import AppError, register_error_handlers
from lib.openai_client import OpenAIClient
from lib.rate_limiter import RateLimiter
from lib.twilio_client import TwilioClient

from .services.audio import AudioService
from .services.community import CommunityService
from .services.conversations import ConversationService
from .services.handoff import WarmHandoffService
from .services.intake import IntakeService
from .services.memory import MemoryService
from .services.messaging import MessagingService
from .services.outbox import OutboxService
from .services.profile import ProfileService
from .services.prompts import PromptService
from .services.sms import SMSService
from .services.transcription import TranscriptionService
from .services.vector import VectorService

from .community_routes import community_bp
from .conversation_routes import conversation_bp
from .intake_routes import intake_bp
from .memory_routes import memory_bp
from .messaging_routes import messaging_bp
from .provider_routes import provider_bp
from .task_routes import task_bp
from .vector_routes import vector_bp

logger = logging.getLogger(__name__)

def build_services(
    settings: Settings,
    supabase_client=None,
    openai_client: Optional[OpenAIClient] = None,
    twilio_client: Optional[TwilioClient] = None,
    vector_service: Optional[VectorService] = None,
) -> Dict[str, Any]:
    """Wire every service from settings; injected clients replace the real vendors."""
    logger.info("Initializing Supabase client...")
    supabase = supabase_client or create_supabase_client(settings)

    logger.info("Initializing OpenAI client...")
    openai_client = openai_client or OpenAIClient(settings)

    if twilio_client is None and settings.twilio_configured:
        logger.info("Initializing Twilio client...")
        twilio_client = TwilioClient(settings)
    if twilio_client is None:
        logger.warning("Twilio not configured, SMS notifications will be retried until dead-lettered")

    if vector_service is None and settings.pinecone_configured:
        try:
            vector_service = VectorService(
                openai_client,
                api_key=settings.pinecone_api_key,
                index_name=settings.pinecone_index,
                namespace=settings.pinecone_namespace
            )
            logger.info("Pinecone initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize Pinecone: {str(e)}")
            vector_service = None

    logger.info("Initializing services...")
    outbox = OutboxService(
        supabase,
        max_attempts=settings.outbox_max_attempts,
        backoff_seconds=settings.outbox_backoff_seconds,
        batch_size=settings.outbox_batch_size,
        lease_seconds=settings.outbox_lease_seconds
    )
    prompts = PromptService(supabase)
    profile = ProfileService(supabase, prompts)
    memory = MemoryService(
        supabase, openai_client, prompts, profile,
        outbox_service=outbox,
        batch_size=settings.memory_batch_size,
        scheduled_days=settings.scheduled_memory_days,
        job_timeout_seconds=settings.memory_job_timeout_seconds
    )
    conversations = ConversationService(supabase, memory_service=memory)
    audio = AudioService(supabase, openai_client, settings.audio_bucket)
    rate_limiter = RateLimiter(
        supabase, 'access_code_attempts',
        max_failures=settings.access_code_max_failures,
        window_seconds=settings.access_code_window_seconds
    )
    sms = SMSService(supabase, twilio_client, settings.app_base_url) if twilio_client else None

    async def handle_sms_notification(payload):
        if sms is None:
            raise AppError("Twilio is not configured")
        await sms.send_message_notification(**payload)

    async def handle_memory_job(payload):
        await memory.process_job(payload['job_id'])

    outbox.register('sms_notification', handle_sms_notification)
    outbox.register('memory_job', handle_memory_job)

    services = {
        'supabase': supabase,
        'outbox': outbox,
        'prompts': prompts,
        'profile': profile,
        'memory': memory,
        'conversations': conversations,
        'audio': audio,
        'intake': IntakeService(
            supabase, conversations, rate_limiter,
            client_max_failures=settings.access_code_max_failures_per_client
        ),
        'transcription': TranscriptionService(supabase, audio, openai_client, prompts),
        'warm_handoff': WarmHandoffService(supabase, openai_client, prompts, profile),
        'community': CommunityService(supabase),
        'messaging': MessagingService(supabase, audio, outbox, settings.message_audio_bucket),
        'sms': sms,
        'vector': vector_service,
    }
    logger.info("All services initialized successfully")
    return services

def create_app(services: Optional[Dict[str, Any]] = None, settings: Optional[Settings] = None) -> Flask:
    settings = settings or get_settings()
    app = Flask(__name__)
    app.extensions['services'] = services if services is not None else build_services(settings)

    register_error_handlers(app, expose_details=settings.expose_error_details)

    for blueprint in (intake_bp, provider_bp, memory_bp, conversation_bp,
                      community_bp, messaging_bp, task_bp, vector_bp):
        app.register_blueprint(blueprint)

    @app.route("/")
    def home():
        return jsonify({'status': 'ok', 'message': 'Intake handoff service is running'})

    @app.route("/status")
    def status():
        services = app.extensions['services']
        return jsonify({
            "status": "running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": {
                "database": services.get('supabase') is not None,
                "sms": services.get('sms') is not None,
                "vector_store": services.get('vector') is not None
            }
        })

    return app
