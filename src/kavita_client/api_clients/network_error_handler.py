"""Network Error Handler for the Kavita API Client.

Provides the error taxonomy shared by every client operation, classification
of httpx exceptions and HTTP status codes into that taxonomy, and a user
guidance system for presenting failures on the console.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, NoReturn, Optional

import httpx

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Classification attached to every client error."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    MALFORMED_RESPONSE = "malformed_response"
    HTTP = "http"


class APIClientError(Exception):
    """Base exception for API client errors."""

    kind: ErrorKind = ErrorKind.HTTP

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        user_guidance: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.user_guidance = user_guidance or ""

    @property
    def is_retryable(self) -> bool:
        """Whether a caller may reasonably try the same operation again."""
        return self.kind in (
            ErrorKind.NETWORK,
            ErrorKind.TIMEOUT,
            ErrorKind.SERVER_ERROR,
        )


class AuthenticationError(APIClientError):
    """Server rejected the credentials and no refresh could recover them."""

    kind = ErrorKind.UNAUTHORIZED


class NoRefreshTokenError(AuthenticationError):
    """Raised when a token refresh is needed but no refresh token is held."""

    pass


class ForbiddenError(APIClientError):
    """Authenticated but not allowed to access the resource."""

    kind = ErrorKind.FORBIDDEN


class NotFoundError(APIClientError):
    """Requested resource does not exist on the server."""

    kind = ErrorKind.NOT_FOUND


class ServerError(APIClientError):
    """Exception raised for server-side errors (5xx responses)."""

    kind = ErrorKind.SERVER_ERROR


class MalformedResponseError(APIClientError):
    """A 2xx response whose payload shape is not recognized."""

    kind = ErrorKind.MALFORMED_RESPONSE


class NetworkError(APIClientError):
    """Exception raised when the server cannot be reached."""

    kind = ErrorKind.NETWORK


class NetworkConnectionError(NetworkError):
    """Exception raised for connection-related network failures."""

    pass


class DNSResolutionError(NetworkConnectionError):
    """Exception raised for DNS resolution failures."""

    pass


class SSLCertificateError(NetworkConnectionError):
    """Exception raised for SSL certificate verification failures."""

    pass


class NetworkTimeoutError(APIClientError):
    """Exception raised when a request exceeds the fixed deadline."""

    kind = ErrorKind.TIMEOUT


@dataclass
class UserGuidance:
    """User guidance information for client errors."""

    error_type: str
    troubleshooting_steps: List[str]
    additional_notes: List[str] = field(default_factory=list)

    def format_for_console(self) -> str:
        """Format guidance for rich console output."""
        content = []
        content.append(f"[bold red]Error Type:[/bold red] {self.error_type}")
        content.append("")
        content.append("[bold yellow]Troubleshooting Steps:[/bold yellow]")

        for i, step in enumerate(self.troubleshooting_steps, 1):
            content.append(f"{i}. {step}")

        if self.additional_notes:
            content.append("")
            content.append("[bold blue]Additional Notes:[/bold blue]")
            for note in self.additional_notes:
                content.append(f"• {note}")

        return "\n".join(content)


class UserGuidanceProvider:
    """Provides user guidance for each error kind."""

    def __init__(self):
        self._guidance_mapping = {
            ErrorKind.NETWORK: UserGuidance(
                error_type="Network Error",
                troubleshooting_steps=[
                    "Check that the Kavita server is running",
                    "Verify the server address and port",
                    "Make sure you are on the same network as the server",
                    "Try toggling between HTTP and HTTPS",
                ],
            ),
            ErrorKind.TIMEOUT: UserGuidance(
                error_type="Timeout",
                troubleshooting_steps=[
                    "Try again - this may be a temporary issue",
                    "Check if the server is under heavy load",
                    "Consider increasing the timeout in config.json",
                ],
            ),
            ErrorKind.UNAUTHORIZED: UserGuidance(
                error_type="Unauthorized",
                troubleshooting_steps=[
                    "Your session has expired, log in again",
                    "Check your username and password",
                ],
            ),
            ErrorKind.FORBIDDEN: UserGuidance(
                error_type="Forbidden",
                troubleshooting_steps=[
                    "Your account does not have access to this resource",
                    "Ask the server administrator for library access",
                ],
            ),
            ErrorKind.NOT_FOUND: UserGuidance(
                error_type="Not Found",
                troubleshooting_steps=[
                    "The item may have been removed or rescanned on the server",
                    "Refresh the library listing and try again",
                ],
            ),
            ErrorKind.SERVER_ERROR: UserGuidance(
                error_type="Server Error",
                troubleshooting_steps=[
                    "The server is experiencing internal issues",
                    "Please wait a few minutes and try again",
                    "Check the Kavita server logs",
                ],
                additional_notes=["Server errors are typically temporary"],
            ),
            ErrorKind.MALFORMED_RESPONSE: UserGuidance(
                error_type="Unexpected Response",
                troubleshooting_steps=[
                    "The server answered with data this client does not understand",
                    "Check that the server runs a supported Kavita version",
                ],
            ),
        }

    def get_guidance(self, error: Exception) -> UserGuidance:
        """Get user guidance for a specific error."""
        kind = getattr(error, "kind", None)
        guidance = self._guidance_mapping.get(kind) if kind else None
        if guidance is None:
            return UserGuidance(
                error_type="Unexpected Error",
                troubleshooting_steps=[
                    "Check your network connection",
                    "Verify the server is accessible",
                    "Try again in a few minutes",
                ],
            )
        return guidance


class NetworkErrorHandler:
    """Classifies httpx failures and HTTP error responses."""

    def __init__(self):
        self.guidance_provider = UserGuidanceProvider()
        self._dns_error_patterns = [
            r"name.*resolution.*failed",
            r"name.*or.*service.*not.*known",
            r"nodename.*nor.*servname.*provided",
            r"temporary.*failure.*in.*name.*resolution",
            r"getaddrinfo failed",
        ]
        self._ssl_error_patterns = [
            r"ssl.*certificate.*verification.*failed",
            r"certificate.*verify.*failed",
            r"ssl.*handshake.*failed",
            r"bad.*certificate",
        ]

    def _with_guidance(self, error: APIClientError) -> APIClientError:
        error.user_guidance = self.guidance_provider.get_guidance(
            error
        ).format_for_console()
        return error

    def classify_network_error(self, error: Exception) -> NoReturn:
        """Classify a transport-level failure and raise the matching exception.

        Args:
            error: The original httpx exception

        Raises:
            NetworkTimeoutError: For any httpx timeout
            DNSResolutionError: When the host name cannot be resolved
            SSLCertificateError: When TLS verification fails
            MalformedResponseError: When the body cannot be decoded
            NetworkConnectionError: For redirect loops and every other
                transport failure
        """
        error_message = str(error).lower()

        if isinstance(error, httpx.TimeoutException):
            if isinstance(error, httpx.ConnectTimeout):
                message = "Connection timed out. Check your network connection."
            else:
                message = "Request timed out. The server took too long to answer."
            raise self._with_guidance(NetworkTimeoutError(message)) from error

        if any(re.search(p, error_message) for p in self._dns_error_patterns):
            raise self._with_guidance(
                DNSResolutionError(
                    "Cannot resolve server address. Check the server URL."
                )
            ) from error

        if any(re.search(p, error_message) for p in self._ssl_error_patterns):
            raise self._with_guidance(
                SSLCertificateError(
                    "SSL certificate verification failed. "
                    "Server may be using an invalid certificate."
                )
            ) from error

        if isinstance(error, httpx.TooManyRedirects):
            raise self._with_guidance(
                NetworkConnectionError(
                    "Too many redirects. Check the server URL and any reverse proxy."
                )
            ) from error

        if isinstance(error, httpx.DecodingError):
            raise self._with_guidance(
                MalformedResponseError(f"Could not decode the server response: {error}")
            ) from error

        if isinstance(error, httpx.ConnectError):
            raise self._with_guidance(
                NetworkConnectionError(
                    "No response from server. Check your connection."
                )
            ) from error

        raise self._with_guidance(
            NetworkConnectionError(f"Network error: {error}")
        ) from error

    def classify_status(self, response: httpx.Response) -> NoReturn:
        """Raise the classified exception for an error response (>= 400).

        Args:
            response: The httpx response carrying the error status
        """
        status_code = response.status_code
        detail = self._extract_detail(response)

        error: APIClientError
        if status_code == 401:
            error = AuthenticationError(
                "Unauthorized. Please log in again.", status_code
            )
        elif status_code == 403:
            error = ForbiddenError(
                "Forbidden. You do not have permission.", status_code
            )
        elif status_code == 404:
            error = NotFoundError("Resource not found.", status_code)
        elif 500 <= status_code < 600:
            error = ServerError(
                f"Server error. Please try again later. ({detail})", status_code
            )
        elif status_code == 400:
            error = APIClientError(f"Bad Request: {detail}", status_code)
        else:
            error = APIClientError(f"Error {status_code}: {detail}", status_code)

        raise self._with_guidance(error)

    @staticmethod
    def _extract_detail(response: httpx.Response) -> str:
        """Pull the server's message out of an error body."""
        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError):
            return response.text[:200] if response.text else f"HTTP {response.status_code}"

        if isinstance(body, dict):
            for key in ("message", "detail", "title"):
                value = body.get(key)
                if isinstance(value, str) and value:
                    return value
        elif isinstance(body, str) and body:
            return body
        return f"HTTP {response.status_code}"
