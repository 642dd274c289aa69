"""AT Protocol OAuth client with DPoP bound tokens.

This package implements the confidential-client side of AT Protocol OAuth:
handle and DID resolution, authorization server discovery, pushed
authorization requests with PKCE and private key JWT client assertions, and
the token exchange, with every request carrying a DPoP proof bound to a key
pair generated for the flow.

Key features:
- Identity resolution (handles to DIDs, DID documents to PDS endpoints)
- Protected resource and authorization server metadata discovery
- OAuth 2.0 PAR + PKCE flow with DPoP nonce handling
- Thread-safe flow state storage with expiry
- Security validation for outbound URLs

Example usage:
    >>> from atproto_oauth_dpop import ClientConfig, OAuthClient
    >>> client = OAuthClient(ClientConfig.from_env())
    >>> redirect_url = client.begin_flow("user.bsky.social")
    >>> # ... user authorizes, the callback delivers state and code ...
    >>> flow = client.complete_flow(state, code, iss=iss)
"""

import logging

from .assertion import client_assertion_jwt
from .config import ClientConfig
from .did import ResolvedIdentity, extract_pds_url, resolve_pds, retrieve_did_document
from .dpop import create_dpop_proof, dpop_request, generate_dpop_key
from .identity import WellKnownHandleResolver, XrpcHandleResolver, resolve_identity
from .metadata import AuthorizationServerDiscovery, AuthorizationServerMetadata
from .oauth import FlowPhase, OAuthClient
from .pkce import generate_code_challenge, generate_oauth_state, generate_pkce_pair
from .security import valid_url
from .store import MemoryStateStore, OAuthFlowState, OAuthStateStore
from .utils import build_auth_url
from .exceptions import (
    AlreadyCompletedError,
    AtprotoOauthError,
    AuthorizationServerMetadataUnavailableError,
    DidDocumentError,
    DidDocumentUnavailableError,
    DpopNonceError,
    FlowInitiationError,
    HandleNotResolvableError,
    HttpTransportError,
    IdentityResolutionError,
    InvalidParameterError,
    IssuerMismatchError,
    MetadataError,
    NoPdsInDocumentError,
    OauthFlowError,
    PARRequestError,
    ProofError,
    ProtectedResourceUnavailableError,
    ProtocolError,
    SecurityError,
    StateError,
    TokenRequestError,
    UnknownOrExpiredStateError,
)

# Set up null handler to prevent "No handler found" warnings
logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.2.0"


__all__ = [
    # Core functionality
    "OAuthClient",
    "ClientConfig",
    "FlowPhase",
    "OAuthFlowState",
    "OAuthStateStore",
    "MemoryStateStore",
    "resolve_identity",
    "resolve_pds",
    "ResolvedIdentity",
    "retrieve_did_document",
    "extract_pds_url",
    "WellKnownHandleResolver",
    "XrpcHandleResolver",
    "AuthorizationServerDiscovery",
    "AuthorizationServerMetadata",
    "generate_oauth_state",
    "generate_pkce_pair",
    "generate_code_challenge",
    "client_assertion_jwt",
    "generate_dpop_key",
    "create_dpop_proof",
    "dpop_request",
    "valid_url",
    "build_auth_url",
    # Exceptions
    "AtprotoOauthError",
    "IdentityResolutionError",
    "HandleNotResolvableError",
    "DidDocumentError",
    "DidDocumentUnavailableError",
    "NoPdsInDocumentError",
    "MetadataError",
    "ProtectedResourceUnavailableError",
    "AuthorizationServerMetadataUnavailableError",
    "OauthFlowError",
    "ProtocolError",
    "PARRequestError",
    "TokenRequestError",
    "DpopNonceError",
    "FlowInitiationError",
    "StateError",
    "UnknownOrExpiredStateError",
    "AlreadyCompletedError",
    "IssuerMismatchError",
    "ProofError",
    "HttpTransportError",
    "SecurityError",
    "InvalidParameterError",
]
