"""Metadata retrieval functions for AT Protocol."""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from .security import valid_url
from .exceptions import (
    AuthorizationServerMetadataUnavailableError,
    HttpTransportError,
    ProtectedResourceUnavailableError,
    SecurityError,
)

logger = logging.getLogger(__name__)

PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"
AUTHORIZATION_SERVER_PATH = "/.well-known/oauth-authorization-server"


@dataclass(frozen=True)
class AuthorizationServerMetadata:
    """The endpoints of an authorization server, valid for one flow."""

    issuer: str
    pushed_authorization_request_endpoint: str
    authorization_endpoint: str
    token_endpoint: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(
        cls, data: Dict[str, Any], expected_issuer: str
    ) -> "AuthorizationServerMetadata":
        """Build from an ``oauth-authorization-server`` document.

        Raises:
            AuthorizationServerMetadataUnavailableError: If the document is
                missing an endpoint, names a different issuer, or contains
                unsafe URLs
        """
        if not isinstance(data, dict):
            raise AuthorizationServerMetadataUnavailableError(
                "Authorization server metadata is not a JSON object"
            )

        issuer = data.get("issuer")
        if not isinstance(issuer, str) or issuer.rstrip("/") != expected_issuer.rstrip("/"):
            error_msg = f"Issuer mismatch: expected {expected_issuer}, got {issuer}"
            logger.error(error_msg)
            raise AuthorizationServerMetadataUnavailableError(error_msg)

        endpoints = {}
        for name in (
            "pushed_authorization_request_endpoint",
            "authorization_endpoint",
            "token_endpoint",
        ):
            value = data.get(name)
            if not value or not isinstance(value, str):
                error_msg = f"Missing {name} in metadata from {issuer}"
                logger.error(error_msg)
                raise AuthorizationServerMetadataUnavailableError(error_msg)
            try:
                valid_url(value)
            except SecurityError as e:
                raise AuthorizationServerMetadataUnavailableError(
                    f"Unsafe {name} in metadata from {issuer}"
                ) from e
            endpoints[name] = value

        return cls(issuer=issuer, raw=data, **endpoints)


def _fetch_json(client: httpx.Client, url: str, error_cls) -> Any:
    # Check URL for SSRF vulnerabilities
    try:
        valid_url(url)
    except SecurityError as e:
        logger.error("Security check failed for URL: %s", url)
        raise error_cls(f"Refusing to fetch {url}") from e

    try:
        response = client.get(url)
    except httpx.TransportError as e:
        error_msg = f"Request error occurred while fetching {url}: {e}"
        logger.error(error_msg)
        raise HttpTransportError(error_msg) from e

    if response.status_code != 200:
        error_msg = f"HTTP error {response.status_code} while fetching {url}"
        logger.error(error_msg)
        raise error_cls(error_msg)

    try:
        return response.json()
    except ValueError as e:
        error_msg = f"Failed to parse JSON response from {url}"
        logger.error(error_msg)
        raise error_cls(error_msg) from e


def get_pds_metadata(pds_url: str, client: httpx.Client) -> Dict[str, Any]:
    """
    Retrieve the OAuth protected resource metadata from the PDS server.

    Args:
        pds_url: The URL of the PDS server
        client: HTTP client to use

    Returns:
        The metadata as a dictionary

    Raises:
        ProtectedResourceUnavailableError: If the metadata cannot be retrieved or parsed
    """
    if not pds_url:
        error_msg = "Cannot get PDS metadata: PDS URL is None"
        logger.error(error_msg)
        raise ProtectedResourceUnavailableError(error_msg)

    metadata_url = f"{pds_url.rstrip('/')}{PROTECTED_RESOURCE_PATH}"
    logger.info("Fetching PDS metadata from: %s", metadata_url)
    metadata = _fetch_json(client, metadata_url, ProtectedResourceUnavailableError)
    if not isinstance(metadata, dict):
        raise ProtectedResourceUnavailableError("PDS metadata is not a JSON object")
    return metadata


def extract_auth_server(metadata: Dict[str, Any]) -> str:
    """
    Extract the authorization server URL from the PDS metadata.

    Raises:
        ProtectedResourceUnavailableError: If no authorization servers can be found
    """
    auth_servers = metadata.get("authorization_servers")
    if auth_servers and isinstance(auth_servers, list) and isinstance(auth_servers[0], str):
        logger.info("Found authorization servers: %s", auth_servers)
        return auth_servers[0]

    error_msg = "No authorization servers found in metadata"
    logger.error(error_msg)
    raise ProtectedResourceUnavailableError(error_msg)


def get_auth_server_metadata(
    auth_server: str, client: httpx.Client
) -> AuthorizationServerMetadata:
    """
    Retrieve the OAuth authorization server metadata.

    Raises:
        AuthorizationServerMetadataUnavailableError: If the metadata cannot be
            retrieved, parsed or validated
    """
    metadata_url = f"{auth_server.rstrip('/')}{AUTHORIZATION_SERVER_PATH}"
    logger.info("Fetching auth server metadata from: %s", metadata_url)
    data = _fetch_json(client, metadata_url, AuthorizationServerMetadataUnavailableError)
    metadata = AuthorizationServerMetadata.from_dict(data, expected_issuer=auth_server)
    logger.info("Successfully retrieved auth server metadata from %s", auth_server)
    return metadata


class MetadataCache:
    """A small thread-safe TTL cache for discovery results."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self.clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        if self.ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (self.clock() + self.ttl, value)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)


class AuthorizationServerDiscovery:
    """Discover the authorization server for a PDS.

    Results are cached per PDS for ``cache_ttl`` seconds; a TTL of zero
    disables caching.
    """

    def __init__(self, client: httpx.Client, cache_ttl: float = 0, clock=time.monotonic):
        self.client = client
        self.cache = MetadataCache(cache_ttl, clock)

    def discover(self, pds_url: str) -> AuthorizationServerMetadata:
        cached = self.cache.get(pds_url)
        if cached is not None:
            logger.debug("Using cached authorization server metadata for %s", pds_url)
            return cached

        pds_metadata = get_pds_metadata(pds_url, self.client)
        auth_server = extract_auth_server(pds_metadata)
        metadata = get_auth_server_metadata(auth_server, self.client)
        self.cache.set(pds_url, metadata)
        return metadata

    def invalidate(self, pds_url: str) -> None:
        logger.info("Invalidating cached authorization server metadata for %s", pds_url)
        self.cache.invalidate(pds_url)
