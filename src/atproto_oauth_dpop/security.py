"""Security functions for AT Protocol OAuth."""

import logging
from urllib.parse import urlparse

import httpx
import validators
from validators.utils import validator

from .exceptions import SecurityError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


def create_hardened_client(
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Create a hardened HTTP client with security settings and timeouts.

    Args:
        timeout_seconds: Read timeout in seconds, other phases are capped by it
        transport: Optional transport, used to route requests in-process

    Returns:
        Configured httpx.Client instance
    """
    short = min(timeout_seconds, 5.0)
    return httpx.Client(
        timeout=httpx.Timeout(
            connect=short,  # Time to establish connection
            read=timeout_seconds,  # Time to read response
            write=short,  # Time to send request
            pool=short,  # Time to get connection from pool
        ),
        limits=httpx.Limits(
            max_keepalive_connections=5, max_connections=10, keepalive_expiry=30.0
        ),
        follow_redirects=False,  # Don't follow redirects automatically for security
        verify=True,
        http2=transport is None,
        trust_env=False,
        transport=transport,
    )


@validator
def _is_internal_hostname(hostname: str) -> bool:
    """Validate against internal hostnames."""
    if (
        hostname == "localhost"
        or hostname.endswith(".local")
        or hostname.endswith(".internal")
        or hostname.endswith(".arpa")
    ):
        logger.warning("SSRF protection: rejected internal hostname: %s", hostname)
        return False
    return True


@validator
def _check_url_creds(url: str) -> bool:
    url_parts = urlparse(url)
    if url_parts.username or url_parts.password:
        return False
    return True


# Used in the url validator to only allow https
def validate_scheme(scheme: str) -> bool:
    return scheme == "https"


def valid_url(url: str) -> None:
    """
    Validate if a URL is safe to make a request to.

    Implements SSRF protections by:
    - Ensuring HTTPS protocol
    - Rejecting IP addresses, ports and embedded credentials
    - Rejecting localhost and internal hostnames

    Args:
        url: The URL to validate

    Raises:
        SecurityError: If the URL fails security checks
    """
    if not url:
        raise SecurityError("URL cannot be empty")

    checks = (
        validators.url(
            url,
            skip_ipv6_addr=True,
            skip_ipv4_addr=True,
            may_have_port=False,
            validate_scheme=validate_scheme,
        ),
        _check_url_creds(url),
        _is_internal_hostname(urlparse(url).hostname or ""),
    )
    for result in checks:
        if isinstance(result, validators.ValidationError):
            logger.error("URL validation failed for %s", url)
            raise SecurityError(f"Unsafe URL: {url}")
