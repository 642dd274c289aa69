"""Client configuration and the client metadata documents."""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from joserfc.jwk import ECKey

from .did import DEFAULT_PLC_DIRECTORY
from .security import DEFAULT_TIMEOUT_SECONDS
from .exceptions import InvalidParameterError

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "atproto transition:generic"
DEFAULT_HANDLE_RESOLVER = "https://bsky.social"
DEFAULT_FLOW_TTL = 600
LOOPBACK_HOSTS = ("localhost", "127.0.0.1")


@dataclass(frozen=True)
class ClientConfig:
    """Static configuration of a confidential AT Protocol OAuth client."""

    client_id: str
    redirect_uri: str
    signing_key: ECKey
    scope: str = DEFAULT_SCOPE
    client_name: Optional[str] = None
    jwks_uri: Optional[str] = None
    plc_directory: str = DEFAULT_PLC_DIRECTORY
    handle_resolver_url: str = DEFAULT_HANDLE_RESOLVER
    http_timeout: float = DEFAULT_TIMEOUT_SECONDS
    flow_ttl: float = DEFAULT_FLOW_TTL
    metadata_cache_ttl: float = 0

    def __post_init__(self):
        if not self.client_id:
            raise InvalidParameterError("client_id is required")
        if not self.redirect_uri:
            raise InvalidParameterError("redirect_uri is required")
        if not self.scope:
            raise InvalidParameterError("scope is required")
        if self.signing_key is None or not self.signing_key.is_private:
            raise InvalidParameterError("signing_key must be a private EC key")

    @classmethod
    def from_app_url(cls, app_url: str, signing_key: ECKey, **kwargs) -> "ClientConfig":
        """Build client_id and redirect_uri from the application's host.

        Args:
            app_url: The host the application is served from
            signing_key: The client's private signing key
        """
        app_url = app_url.removeprefix("https://").rstrip("/")
        if app_url in LOOPBACK_HOSTS:
            raise InvalidParameterError(
                "Confidential clients need a public https host, not %s" % app_url
            )

        kwargs.setdefault("jwks_uri", f"https://{app_url}/oauth/jwks.json")
        return cls(
            client_id=f"https://{app_url}/oauth/client-metadata.json",
            redirect_uri=f"https://{app_url}/oauth/callback",
            signing_key=signing_key,
            **kwargs,
        )

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Load configuration from the environment and a ``.env`` file.

        Environment Variables:
            APP_URL: The host the application is served from (required)
            CLIENT_SECRET_JWK: The client's private JWK as JSON (required)
            OAUTH_SCOPE, OAUTH_CLIENT_NAME, PLC_DIRECTORY_URL,
            HANDLE_RESOLVER_URL, HTTP_TIMEOUT, OAUTH_FLOW_TTL: optional
        """
        load_dotenv()

        app_url = os.getenv("APP_URL")
        if not app_url:
            raise InvalidParameterError("Missing APP_URL environment variable")

        env_key = os.getenv("CLIENT_SECRET_JWK")
        if not env_key:
            raise InvalidParameterError(
                "CLIENT_SECRET_JWK not set, generate one with examples/generate_jwk.py"
            )
        try:
            signing_key = ECKey.import_key(json.loads(env_key))
        except ValueError as e:
            raise InvalidParameterError("CLIENT_SECRET_JWK is not a valid EC JWK") from e

        kwargs: Dict[str, Any] = {
            "scope": os.getenv("OAUTH_SCOPE", DEFAULT_SCOPE),
            "client_name": os.getenv("OAUTH_CLIENT_NAME"),
            "plc_directory": os.getenv("PLC_DIRECTORY_URL", DEFAULT_PLC_DIRECTORY),
            "handle_resolver_url": os.getenv("HANDLE_RESOLVER_URL", DEFAULT_HANDLE_RESOLVER),
            "http_timeout": float(os.getenv("HTTP_TIMEOUT", DEFAULT_TIMEOUT_SECONDS)),
            "flow_ttl": float(os.getenv("OAUTH_FLOW_TTL", DEFAULT_FLOW_TTL)),
        }
        return cls.from_app_url(app_url, signing_key, **kwargs)

    def client_metadata(self) -> Dict[str, Any]:
        """The document served at ``client_id``."""
        metadata = {
            "client_id": self.client_id,
            "application_type": "web",
            "grant_types": ["authorization_code"],
            "response_types": ["code"],
            "redirect_uris": [self.redirect_uri],
            "scope": self.scope,
            "dpop_bound_access_tokens": True,
            "token_endpoint_auth_method": "private_key_jwt",
            "token_endpoint_auth_signing_alg": "ES256",
        }
        if self.client_name:
            metadata["client_name"] = self.client_name
        if self.jwks_uri:
            metadata["jwks_uri"] = self.jwks_uri
        else:
            metadata["jwks"] = self.jwks()
        return metadata

    def jwks(self) -> Dict[str, Any]:
        """The public signing key set served at ``jwks_uri``."""
        public_key = self.signing_key.as_dict(private=False)
        public_key.update({"use": "sig", "alg": "ES256"})
        return {"keys": [public_key]}
