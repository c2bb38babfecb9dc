from typing import Any, Dict

from flask import current_app, request

from lib.error_handler import ServiceUnavailableError, ValidationError

def get_service(name: str):
    """Look up a service built by create_app; 503 when its backing vendor isn't configured."""
    service = current_app.extensions['services'].get(name)
    if service is None:
        raise ServiceUnavailableError(f"{name} is not configured",
                                      user_message=f"{name.replace('_', ' ').capitalize()} is not available")
    return service

def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data

def query_flag(name: str) -> bool:
    return (request.args.get(name) or '').lower() == 'true'

def query_int(name: str, default: int) -> int:
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default
