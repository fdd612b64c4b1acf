"""URL validation and normalization for Kavita servers."""

import re
from typing import Optional
from urllib.parse import urlparse, urlunparse

from .exceptions import URLValidationError


def validate_and_normalize_server_url(
    server_url: Optional[str], default_scheme: str = "http"
) -> str:
    """Validate and normalize a server URL.

    The result always carries an explicit scheme and never ends with a slash,
    so it can be joined with API paths by plain concatenation.

    Args:
        server_url: The server URL to validate and normalize
        default_scheme: Scheme added when the URL has none

    Returns:
        str: The normalized URL

    Raises:
        URLValidationError: If the URL is invalid or unsupported
    """
    if not server_url:
        raise URLValidationError("Server URL cannot be empty or None")

    server_url = server_url.strip()
    if not server_url:
        raise URLValidationError("Server URL cannot be empty", url=server_url)

    # urlparse treats "host:port" as "scheme:path", so look for "://" instead
    if "://" not in server_url:
        server_url = f"{default_scheme}://{server_url}"

    try:
        parsed = urlparse(server_url)
        # Accessing .port validates the port number
        parsed.port
    except ValueError as e:
        raise URLValidationError(
            f"Invalid URL format: {server_url}", str(e), url=server_url
        )

    scheme = parsed.scheme.lower()
    if scheme not in ("http", "https"):
        raise URLValidationError(
            f"Unsupported protocol '{parsed.scheme}'. Only HTTP and HTTPS are supported",
            url=server_url,
        )

    if not parsed.netloc or not parsed.hostname or parsed.netloc.startswith("."):
        raise URLValidationError(f"Invalid URL format: {server_url}", url=server_url)

    path = parsed.path.rstrip("/")

    return urlunparse((scheme, parsed.netloc, path, "", "", ""))


def build_server_url(address: str, port: Optional[int], use_https: bool = False) -> str:
    """Build a server URL from a bare host and port, as entered on a connect form.

    Any scheme, trailing slash or port typed into the address is discarded in
    favour of the explicit arguments.
    """
    clean = address.strip()
    clean = re.sub(r"^https?://", "", clean)
    clean = clean.rstrip("/")
    clean = re.sub(r":\d+$", "", clean)

    scheme = "https" if use_https else "http"
    if port is None:
        return validate_and_normalize_server_url(f"{scheme}://{clean}")
    return validate_and_normalize_server_url(f"{scheme}://{clean}:{port}")
