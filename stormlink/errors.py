"""
Error taxonomy for transport and registry failures.

Transport operations raise these to their caller; the registry translates
them into state transitions and a recorded last error.
"""

from typing import Optional


class StormLinkError(Exception):
    """Base class for all connection manager errors."""

    description = "Connection error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.description
        super().__init__(self.message)


class InvalidURL(StormLinkError):
    description = "Invalid URL"

    def __init__(self, url: str = ""):
        self.url = url
        super().__init__(f"Invalid URL: {url}" if url else None)


class Timeout(StormLinkError):
    description = "Request timed out"

    def __init__(self, seconds: Optional[float] = None):
        self.seconds = seconds
        super().__init__(f"Request timed out after {seconds:g}s" if seconds is not None else None)


class HttpError(StormLinkError):
    description = "HTTP error"

    def __init__(self, status: int, body: bytes = b""):
        self.status = status
        self.body = body
        super().__init__(f"HTTP error: {status}")


class ConnectionNotFound(StormLinkError):
    description = "Connection not found"

    def __init__(self, connection_id: str = ""):
        self.connection_id = connection_id
        super().__init__(f"Connection not found: {connection_id}" if connection_id else None)


class ConnectionAlreadyExists(StormLinkError):
    description = "Connection already exists"

    def __init__(self, world_id: str = ""):
        self.world_id = world_id
        super().__init__(f"Connection already exists for world {world_id}" if world_id else None)


class AuthenticationFailed(StormLinkError):
    description = "Authentication failed"


class ProtocolError(StormLinkError):
    description = "Protocol error"

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(f"Protocol error: {detail}" if detail else None)


class NetworkUnavailable(StormLinkError):
    description = "No network connection"
