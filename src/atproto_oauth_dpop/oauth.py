"""
AT Protocol OAuth client.

The flow runs in two halves separated by the user's browser round-trip:

1. ``begin_flow``: resolve the handle to a DID and PDS, discover the
   authorization server, generate the flow's DPoP key, PKCE pair and state,
   push the authorization request and store the flow under its state.
2. ``complete_flow``: look the flow up by the callback's state and exchange
   the authorization code for an access token bound to the same DPoP key.

Nothing is stored until the PAR succeeds and a token is only attached once
the exchange succeeds.
"""

import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import httpx

from .assertion import CLIENT_ASSERTION_TYPE, client_assertion_jwt
from .config import ClientConfig
from .did import resolve_pds
from .dpop import dpop_request, generate_dpop_key
from .identity import (
    HandleResolver,
    WellKnownHandleResolver,
    XrpcHandleResolver,
    normalize_subject,
)
from .metadata import AuthorizationServerDiscovery
from .pkce import generate_oauth_state, generate_pkce_pair
from .security import create_hardened_client
from .store import MemoryStateStore, OAuthFlowState, OAuthStateStore
from .utils import build_auth_url
from .exceptions import (
    AtprotoOauthError,
    FlowInitiationError,
    InvalidParameterError,
    IssuerMismatchError,
    PARRequestError,
    ProofError,
    StateError,
    TokenRequestError,
    UnknownOrExpiredStateError,
)

logger = logging.getLogger(__name__)


class FlowPhase(str, Enum):
    """The states an OAuth flow moves through."""

    IDLE = "idle"
    RESOLVING = "resolving"
    DISCOVERING = "discovering"
    REQUESTING = "requesting"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING_TOKEN = "exchanging_token"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PARRequestContext:
    """Context for performing a PAR request with all necessary parameters."""

    par_endpoint: str
    code_challenge: str
    state: str
    client_id: str
    redirect_uri: str
    scope: str
    client_assertion: Callable[[], str]
    login_hint: Optional[str] = None
    response_type: str = "code"
    code_challenge_method: str = "S256"
    client_assertion_type: str = CLIENT_ASSERTION_TYPE

    def __post_init__(self):
        """Validate required parameters after initialization."""
        if not self.par_endpoint:
            raise InvalidParameterError("par_endpoint is required")
        if not self.code_challenge:
            raise InvalidParameterError("code_challenge is required")
        if not self.state:
            raise InvalidParameterError("state is required")
        if not self.client_id:
            raise InvalidParameterError("client_id is required")
        if not self.redirect_uri:
            raise InvalidParameterError("redirect_uri is required")
        if not self.scope:
            raise InvalidParameterError("scope is required")

    def par_request_body(self) -> Dict[str, Any]:
        body = {
            "client_id": self.client_id,
            "response_type": self.response_type,
            "scope": self.scope,
            "redirect_uri": self.redirect_uri,
            "state": self.state,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "client_assertion_type": self.client_assertion_type,
            "client_assertion": self.client_assertion,
        }
        if self.login_hint:
            body["login_hint"] = self.login_hint
        return body


def _error_details(response: httpx.Response) -> Tuple[Optional[str], Any]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text
    error = body.get("error") if isinstance(body, dict) else None
    return error, body


class OAuthClient:
    """Drives AT Protocol OAuth flows for one client.

    The client holds no per-flow state of its own; flows live in ``store``
    and several may run concurrently from different threads.

    Args:
        config: The client's static configuration
        store: Flow storage, an in-memory store by default
        http_client: httpx client, a hardened client by default
        resolvers: Handle resolution strategies, tried in order
        clock: Wall clock used for record expiry
    """

    def __init__(
        self,
        config: ClientConfig,
        store: Optional[OAuthStateStore] = None,
        http_client: Optional[httpx.Client] = None,
        resolvers: Optional[Sequence[HandleResolver]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.clock = clock
        self.store = store if store is not None else MemoryStateStore(clock)
        self._owns_http_client = http_client is None
        self.http_client = http_client or create_hardened_client(config.http_timeout)
        if resolvers is None:
            resolvers = (
                WellKnownHandleResolver(self.http_client),
                XrpcHandleResolver(self.http_client, config.handle_resolver_url),
            )
        self.resolvers = tuple(resolvers)
        self.discovery = AuthorizationServerDiscovery(
            self.http_client, cache_ttl=config.metadata_cache_ttl
        )

    def close(self) -> None:
        if self._owns_http_client:
            self.http_client.close()

    def __enter__(self) -> "OAuthClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _client_assertion(self, audience: str) -> Callable[[], str]:
        return lambda: client_assertion_jwt(
            self.config.client_id, audience, self.config.signing_key
        )

    def begin_flow(self, handle: str) -> str:
        """
        Start an authorization flow for a handle or DID.

        Args:
            handle: The user's handle or DID

        Returns:
            The authorization URL to redirect the user to

        Raises:
            FlowInitiationError: If resolution, discovery or the PAR fails;
                ``step`` names the phase and the cause is chained
            ProofError: If keys cannot be generated or used for signing
        """
        self.store.purge_expired()

        phase = FlowPhase.RESOLVING
        pds = None
        try:
            identity = resolve_pds(
                handle, self.http_client, self.resolvers, self.config.plc_directory
            )
            logger.info("Resolved %s to %s on %s", handle, identity.did, identity.pds)
            pds = identity.pds

            phase = FlowPhase.DISCOVERING
            server = self.discovery.discover(pds)
            logger.info("Discovered authorization server %s", server.issuer)

            phase = FlowPhase.REQUESTING
            dpop_key = generate_dpop_key()
            state = generate_oauth_state()
            code_verifier, code_challenge = generate_pkce_pair()

            context = PARRequestContext(
                par_endpoint=server.pushed_authorization_request_endpoint,
                code_challenge=code_challenge,
                state=state,
                client_id=self.config.client_id,
                redirect_uri=self.config.redirect_uri,
                scope=self.config.scope,
                client_assertion=self._client_assertion(server.issuer),
                login_hint=normalize_subject(handle),
            )
            request_uri, dpop_nonce = self._send_par_request(context, dpop_key)
        except ProofError:
            logger.error(
                "OAuth flow for %s is %s while %s", handle, FlowPhase.FAILED.value, phase.value
            )
            raise
        except AtprotoOauthError as e:
            if phase is FlowPhase.REQUESTING:
                self.discovery.invalidate(pds)
            logger.error(
                "OAuth flow for %s is %s while %s: %s",
                handle,
                FlowPhase.FAILED.value,
                phase.value,
                e,
            )
            raise FlowInitiationError(phase, f"OAuth flow failed while {phase.value}") from e

        now = self.clock()
        self.store.put(
            state,
            OAuthFlowState(
                state=state,
                did=identity.did,
                handle=identity.handle,
                pds=identity.pds,
                issuer=server.issuer,
                token_endpoint=server.token_endpoint,
                code_verifier=code_verifier,
                dpop_key=dpop_key,
                dpop_nonce=dpop_nonce,
                created_at=now,
                expires_at=now + self.config.flow_ttl,
            ),
        )
        logger.info("OAuth flow for %s is %s", identity.did, FlowPhase.AWAITING_CALLBACK.value)

        return build_auth_url(server.authorization_endpoint, self.config.client_id, request_uri)

    def _send_par_request(
        self, context: PARRequestContext, dpop_key
    ) -> Tuple[str, Optional[str]]:
        """Push the authorization request, returning (request_uri, dpop_nonce)."""
        logger.info("Sending PAR request to: %s", context.par_endpoint)
        response, dpop_nonce = dpop_request(
            self.http_client,
            "POST",
            context.par_endpoint,
            dpop_key,
            data=context.par_request_body(),
        )

        if not response.is_success:
            error, body = _error_details(response)
            logger.error("PAR request failed with HTTP %d: %s", response.status_code, error)
            raise PARRequestError(
                f"PAR request failed with HTTP {response.status_code}",
                status_code=response.status_code,
                error=error,
                body=body,
            )

        _, data = _error_details(response)
        request_uri = data.get("request_uri") if isinstance(data, dict) else None
        if not request_uri:
            raise PARRequestError(
                "PAR response is missing request_uri",
                status_code=response.status_code,
                body=data,
            )

        logger.info("PAR request successful, expires in %s seconds", data.get("expires_in"))
        return request_uri, dpop_nonce

    def complete_flow(self, state: str, code: str, iss: Optional[str] = None) -> OAuthFlowState:
        """
        Exchange the callback's authorization code for an access token.

        The flow can be completed at most once. On failure the stored flow is
        left untouched; the code is single-use so the caller has to start a
        new flow.

        Args:
            state: The callback's ``state`` parameter
            code: The callback's ``code`` parameter
            iss: The callback's ``iss`` parameter, checked when given

        Returns:
            The completed flow record holding the access token

        Raises:
            UnknownOrExpiredStateError: No flow is stored for ``state``
            AlreadyCompletedError: The flow was already completed
            IssuerMismatchError: ``iss`` is not the flow's issuer
            TokenRequestError: The token endpoint rejected the exchange
        """
        if not state:
            raise UnknownOrExpiredStateError("Missing OAuth state")
        if not code:
            raise InvalidParameterError("Missing authorization code")

        record = self.store.claim(state)
        completed = None
        try:
            if iss is not None and iss.rstrip("/") != record.issuer.rstrip("/"):
                logger.error("Callback issuer %s does not match %s", iss, record.issuer)
                raise IssuerMismatchError("Callback issuer does not match the flow")

            logger.info("OAuth flow for %s is %s", record.did, FlowPhase.EXCHANGING_TOKEN.value)
            token, dpop_nonce = self._initial_token_request(record, code)
            completed = record.with_token(token, self.clock(), dpop_nonce)
        finally:
            self.store.release(state, completed)

        logger.info("OAuth flow for %s is %s", record.did, FlowPhase.COMPLETED.value)
        return completed

    def _initial_token_request(
        self, record: OAuthFlowState, code: str
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        data = {
            "client_id": self.config.client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "code_verifier": record.code_verifier,
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": self._client_assertion(record.issuer),
        }

        # The DPoP key generated for the PAR binds the token to this flow
        response, dpop_nonce = dpop_request(
            self.http_client,
            "POST",
            record.token_endpoint,
            record.dpop_key,
            nonce=record.dpop_nonce,
            data=data,
        )

        error, token = _error_details(response)
        if not response.is_success:
            logger.error("Token request failed with HTTP %d: %s", response.status_code, error)
            raise TokenRequestError(
                f"Token request failed with HTTP {response.status_code}",
                status_code=response.status_code,
                error=error,
                body=token,
            )

        if not isinstance(token, dict) or not token.get("access_token"):
            raise TokenRequestError("Token response is missing access_token", body=token)

        if str(token.get("token_type", "")).lower() != "dpop":
            raise TokenRequestError("Token is not DPoP bound", body=token)

        if token.get("sub") is not None and token["sub"] != record.did:
            logger.error("Token subject %s does not match %s", token["sub"], record.did)
            raise TokenRequestError("Token was issued for a different account", body=token)

        expires_in = token.get("expires_in")
        if expires_in is not None and (
            isinstance(expires_in, bool)
            or not isinstance(expires_in, (int, float))
            or expires_in <= 0
        ):
            raise TokenRequestError("Token response has an invalid expires_in", body=token)

        logger.info("Access token issued for %s", record.did)
        return token, dpop_nonce

    def signed_request(self, state: str, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request authorized with a completed flow's access token.

        The resource server's latest DPoP nonce is kept with the flow and
        sent on the next request.

        Raises:
            UnknownOrExpiredStateError: No flow is stored for ``state``
            StateError: The flow has not been completed
        """
        record = self.store.get(state)
        if record is None:
            raise UnknownOrExpiredStateError("Unknown or expired OAuth state")
        if not record.completed:
            raise StateError("OAuth flow has not been completed")

        response, dpop_nonce = dpop_request(
            self.http_client,
            method,
            url,
            record.dpop_key,
            nonce=record.resource_nonce,
            access_token=record.access_token,
            **kwargs,
        )
        if dpop_nonce != record.resource_nonce:
            self.store.replace(state, dataclasses.replace(record, resource_nonce=dpop_nonce))
        return response

    def end_flow(self, state: str) -> None:
        """Forget a flow and its key material."""
        self.store.delete(state)
