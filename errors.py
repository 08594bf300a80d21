# errors.py
from typing import Optional


class ProxyError(Exception):
    """Base of everything the query proxy can report back to the caller."""

    status_code = 500
    default_message = "An error occurred while processing your request"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(ProxyError):
    status_code = 400
    default_message = "Please enter a question or query"


class ServerConfigurationError(ProxyError):
    status_code = 500
    default_message = "Server is not configured"


class UpstreamHttpError(ProxyError):
    status_code = 500

    def __init__(self, status: int, reason: str = ""):
        self.status = status
        self.reason = reason
        super().__init__(f"Gemini API request failed: {status} {reason}".rstrip())


class UpstreamFormatError(ProxyError):
    status_code = 500
    default_message = "Unexpected response format from Gemini API"


class UpstreamTimeout(ProxyError):
    status_code = 500
    default_message = "Gemini API did not respond in time"


class UnknownError(ProxyError):
    status_code = 500
