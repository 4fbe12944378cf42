"""HTTP client infrastructure."""
from infrastructure.http.client import (
    DrawingApiClient,
    error_from_response,
    make_http_session,
)

__all__ = [
    'DrawingApiClient',
    'error_from_response',
    'make_http_session',
]
