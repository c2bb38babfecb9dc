from typing import Any, Dict, Optional
import logging

from flask import Flask, jsonify

logger = logging.getLogger(__name__)

class AppError(Exception):
    status_code = 500
    default_user_message = "An error occurred. Please try again later."

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        user_message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.user_message = user_message or self.default_user_message
        self.payload = payload or {}
        super().__init__(self.message)

    def to_dict(self, expose_details: bool = False) -> Dict[str, Any]:
        if self.status_code < 500:
            body = {'error': self.message}
        else:
            body = {'error': self.user_message}
            if expose_details and self.message != self.user_message:
                body['details'] = self.message
        body.update(self.payload)
        return body

class ValidationError(AppError):
    status_code = 400

class ForbiddenError(AppError):
    status_code = 403

class NotFoundError(AppError):
    status_code = 404

class ConflictError(AppError):
    status_code = 409

class RateLimitError(AppError):
    status_code = 429

class ServiceUnavailableError(AppError):
    status_code = 503

class UpstreamError(AppError):
    """A database or vendor call failed; the raw message stays server-side."""
    status_code = 500

def register_error_handlers(app: Flask, expose_details: bool = False) -> None:
    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        if error.status_code >= 500:
            logger.error(f"{type(error).__name__}: {error.message}")
        else:
            logger.info(f"Request rejected ({error.status_code}): {error.message}")
        return jsonify(error.to_dict(expose_details)), error.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        # Flask routes HTTPExceptions (404 for unknown URLs etc.) here too
        code = getattr(error, 'code', None)
        if isinstance(code, int) and code < 500:
            return jsonify({'error': getattr(error, 'description', str(error))}), code

        logger.error(f"Unhandled error: {str(error)}", exc_info=True)
        body = {'error': 'Internal server error'}
        if expose_details:
            body['details'] = str(error)
        return jsonify(body), 500
