"""Utility functions for AT Protocol OAuth."""

import logging
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from .exceptions import InvalidParameterError

logger = logging.getLogger(__name__)


def build_auth_url(auth_endpoint: str, client_id: str, request_uri: str) -> str:
    """
    Build an authorization URL with proper URI encoding.

    Query parameters already present on the authorization endpoint are kept.

    Args:
        auth_endpoint: The authorization endpoint URL
        client_id: The client ID
        request_uri: The request URI from the PAR response

    Returns:
        The properly encoded authorization URL

    Raises:
        InvalidParameterError: If any required parameter is missing
    """
    if not auth_endpoint:
        error_msg = "Cannot build authorization URL: auth_endpoint is required"
        logger.error(error_msg)
        raise InvalidParameterError(error_msg)

    if not client_id:
        error_msg = "Cannot build authorization URL: client_id is required"
        logger.error(error_msg)
        raise InvalidParameterError(error_msg)

    if not request_uri:
        error_msg = "Cannot build authorization URL: request_uri is required"
        logger.error(error_msg)
        raise InvalidParameterError(error_msg)

    parsed = urlparse(auth_endpoint)
    query = dict(parse_qsl(parsed.query))
    query.update({"client_id": client_id, "request_uri": request_uri})
    return urlunparse(parsed._replace(query=urlencode(query)))


def strip_query(url: str) -> str:
    """Return ``url`` without its query string and fragment."""
    parsed = urlparse(url)
    return urlunparse(parsed._replace(query="", fragment=""))
