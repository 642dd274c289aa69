"""Identity resolution functions for AT Protocol."""

import logging
import re
from typing import Callable, Optional, Sequence

import httpx

from .security import valid_url
from .exceptions import (
    HandleNotResolvableError,
    HttpTransportError,
    IdentityResolutionError,
    SecurityError,
)

logger = logging.getLogger(__name__)

# Constants
HANDLE_REGEX = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)"
    r"+[a-zA-Z]"
    r"([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)

DID_RE = re.compile(
    r"^did:"  # Required prefix
    r"[a-z]+:"  # method-name (lowercase only)
    r"[a-zA-Z0-9._%:-]{1,2048}"  # method-specific-id with length limit
    r"(?<!:)$"  # Cannot end with colon
)

# A handle resolver returns the DID for a handle, or None when it has no answer.
HandleResolver = Callable[[str], Optional[str]]


def normalize_subject(subject: str) -> str:
    """Strip whitespace and the ``at://`` / ``@`` prefixes users paste in."""
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")
    return subject


def is_did(value: str) -> bool:
    return bool(DID_RE.match(value))


def is_handle(value: str) -> bool:
    return bool(HANDLE_REGEX.match(value))


class WellKnownHandleResolver:
    """Resolve a handle from ``https://{handle}/.well-known/atproto-did``."""

    def __init__(self, client: httpx.Client):
        self.client = client

    def __call__(self, handle: str) -> Optional[str]:
        url = f"https://{handle}/.well-known/atproto-did"
        try:
            valid_url(url)
        except SecurityError:
            logger.warning("Security check failed for URL: %s", url)
            return None

        try:
            response = self.client.get(url)
        except httpx.TransportError as e:
            raise HttpTransportError(f"Request to {url} failed: {e}") from e

        if response.status_code != 200:
            logger.debug("No well-known DID for %s (HTTP %d)", handle, response.status_code)
            return None
        return response.text.strip() or None


class XrpcHandleResolver:
    """Resolve a handle with ``com.atproto.identity.resolveHandle`` on a service."""

    def __init__(self, client: httpx.Client, service_url: str):
        self.client = client
        self.service_url = service_url.rstrip("/")

    def __call__(self, handle: str) -> Optional[str]:
        url = f"{self.service_url}/xrpc/com.atproto.identity.resolveHandle"
        try:
            valid_url(url)
        except SecurityError:
            logger.warning("Security check failed for URL: %s", url)
            return None

        try:
            response = self.client.get(url, params={"handle": handle})
        except httpx.TransportError as e:
            raise HttpTransportError(f"Request to {url} failed: {e}") from e

        if response.status_code != 200:
            logger.debug("resolveHandle failed for %s (HTTP %d)", handle, response.status_code)
            return None
        try:
            data = response.json()
        except ValueError:
            logger.info("Failed to parse JSON response from handle resolution")
            return None
        if not isinstance(data, dict):
            return None
        return data.get("did")


def resolve_identity(username: str, resolvers: Sequence[HandleResolver] = ()) -> str:
    """
    Resolve a username (handle or DID) to a DID.

    A DID is returned as-is without any network access. A handle is passed to
    each resolver in turn and the first syntactically valid DID wins.

    Args:
        username: A string that could be a handle or DID
        resolvers: Handle resolution strategies, tried in order

    Returns:
        The DID if resolution is successful

    Raises:
        HandleNotResolvableError: If no resolver produced a DID
        IdentityResolutionError: If the username is neither a handle nor a DID
        HttpTransportError: If every resolver missed and at least one timed out
    """
    if not username:
        raise IdentityResolutionError("Username cannot be empty")

    subject = normalize_subject(username)

    if is_did(subject):
        logger.info("Username is already a DID: %s", subject)
        return subject

    if not is_handle(subject):
        error_msg = f"Username '{username}' is neither a valid handle nor a DID"
        logger.warning(error_msg)
        raise IdentityResolutionError(error_msg)

    handle = subject.lower()
    transport_error: Optional[HttpTransportError] = None
    for resolver in resolvers:
        try:
            did = resolver(handle)
        except HttpTransportError as e:
            logger.warning("Handle resolver %r failed: %s", resolver, e)
            transport_error = e
            continue

        if did and is_did(did):
            logger.info("Resolved handle %s to DID: %s", handle, did)
            return did
        if did:
            logger.warning("Resolver %r returned an invalid DID for %s", resolver, handle)

    if transport_error is not None:
        raise transport_error

    error_msg = f"Failed to resolve handle: {handle}"
    logger.info(error_msg)
    raise HandleNotResolvableError(error_msg)
