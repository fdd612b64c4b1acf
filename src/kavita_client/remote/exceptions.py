"""Exception classes for server registration and local configuration."""

from pathlib import Path
from typing import Optional


class RemoteConfigurationError(Exception):
    """Base exception for server configuration errors.

    ``details`` carries the underlying cause (parser message, OS error) and
    is appended to the message when the error is printed.
    """

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self):
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class URLValidationError(RemoteConfigurationError):
    """A server URL that cannot be used; ``url`` is the rejected input."""

    def __init__(
        self, message: str, details: Optional[str] = None, url: Optional[str] = None
    ):
        super().__init__(message, details)
        self.url = url


class ServerNotFoundError(RemoteConfigurationError):
    """An operation named a server id that is not registered."""

    def __init__(self, server_id: str):
        super().__init__(f"No server registered with id '{server_id}'")
        self.server_id = server_id


class CredentialStoreError(RemoteConfigurationError):
    """The credential store at ``path`` cannot be read or written."""

    def __init__(
        self, message: str, details: Optional[str] = None, path: Optional[Path] = None
    ):
        super().__init__(message, details)
        self.path = path
