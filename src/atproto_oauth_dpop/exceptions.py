"""Custom exceptions for AT Protocol OAuth."""

from typing import Any, Optional


class AtprotoOauthError(Exception):
    """Base exception for all atproto-oauth-dpop errors."""


class IdentityResolutionError(AtprotoOauthError):
    """Failed to resolve a user identity."""


class HandleNotResolvableError(IdentityResolutionError):
    """The handle could not be resolved to a DID."""


class DidDocumentUnavailableError(IdentityResolutionError):
    """Error retrieving or parsing DID document."""


DidDocumentError = DidDocumentUnavailableError


class NoPdsInDocumentError(IdentityResolutionError):
    """The DID document does not declare a personal data server."""


class MetadataError(AtprotoOauthError):
    """Error retrieving or parsing metadata."""


class ProtectedResourceUnavailableError(MetadataError):
    """The PDS protected resource metadata could not be retrieved."""


class AuthorizationServerMetadataUnavailableError(MetadataError):
    """The authorization server metadata could not be retrieved."""


class OauthFlowError(AtprotoOauthError):
    """Error during OAuth flow."""


class ProtocolError(OauthFlowError):
    """A non-successful response from an OAuth endpoint.

    The raw response body is kept for diagnostics but is never part of the
    message, so ``str(error)`` is safe to show to an end user.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.body = body


class PARRequestError(ProtocolError):
    """The pushed authorization request was rejected."""


class TokenRequestError(ProtocolError):
    """The token request was rejected."""


class DpopNonceError(ProtocolError):
    """The server rejected the DPoP nonce a second time."""


class FlowInitiationError(OauthFlowError):
    """Beginning an OAuth flow failed at a specific step.

    ``step`` is the :class:`~atproto_oauth_dpop.oauth.FlowPhase` that failed,
    the underlying error is chained as ``__cause__``.
    """

    def __init__(self, step, message: str):
        super().__init__(message)
        self.step = step


class StateError(AtprotoOauthError):
    """The callback state does not refer to a usable flow."""


class UnknownOrExpiredStateError(StateError):
    """No flow is stored for this state value."""


class AlreadyCompletedError(StateError):
    """The flow for this state was already completed."""


class IssuerMismatchError(StateError):
    """The callback issuer does not match the flow's authorization server."""


class ProofError(AtprotoOauthError):
    """Key generation or JWT signing failed."""


class HttpTransportError(AtprotoOauthError):
    """Timeout or connection failure talking to a remote server."""

    retryable = True


class SecurityError(AtprotoOauthError):
    """Security-related error."""


class InvalidParameterError(AtprotoOauthError):
    """Invalid parameter provided to a function."""
