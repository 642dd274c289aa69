"""DPoP (Demonstrating Proof-of-Possession) proofs and signed requests.

Every request to the authorization server, and every request made with an
issued access token, carries a freshly signed proof JWT bound to the flow's
key pair. Servers may answer with a ``use_dpop_nonce`` challenge carrying a
``DPoP-Nonce`` header; :func:`dpop_request` retries exactly once with a new
proof embedding that nonce.
"""

import logging
import time
import urllib.request
from typing import Any, Dict, Optional, Tuple

import httpx
from authlib.common.security import generate_token
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from joserfc import jwt
from joserfc.errors import JoseError
from joserfc.jwk import ECKey

from .security import valid_url
from .utils import strip_query
from .exceptions import DpopNonceError, HttpTransportError, ProofError

logger = logging.getLogger(__name__)

DPOP_PROOF_LIFETIME = 30


def generate_dpop_key() -> ECKey:
    """Generate a fresh P-256 key pair for one authorization flow."""
    try:
        return ECKey.generate_key("P-256", private=True)
    except (JoseError, ValueError) as e:
        raise ProofError("Failed to generate DPoP key pair") from e


def public_jwk(dpop_private_jwk: ECKey) -> Dict[str, Any]:
    """Return the public half of the key as a JWK dict."""
    dpop_pub_jwk = dpop_private_jwk.as_dict(private=False)

    # This should ONLY contain: kty, crv, x, y (no 'd' parameter)
    if "d" in dpop_pub_jwk:
        raise ProofError("Private key material found in public JWK")
    return dpop_pub_jwk


def access_token_hash(access_token: str) -> str:
    """base64url(SHA-256(access_token)), the ``ath`` claim."""
    return create_s256_code_challenge(access_token)


def create_dpop_proof(
    method: str,
    url: str,
    dpop_private_jwk: ECKey,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> str:
    """
    Sign a DPoP proof for a single HTTP request.

    Args:
        method: HTTP method of the request
        url: Target URL; query and fragment are dropped for ``htu``
        dpop_private_jwk: The flow's private DPoP key
        nonce: Server-provided nonce, if one is known
        access_token: Bound access token, adds the ``ath`` claim

    Returns:
        The compact serialized proof

    Raises:
        ProofError: If the proof cannot be signed
    """
    if dpop_private_jwk is None or not dpop_private_jwk.is_private:
        raise ProofError("DPoP proof requires a private key")

    header = {"typ": "dpop+jwt", "alg": "ES256", "jwk": public_jwk(dpop_private_jwk)}

    now = int(time.time())
    body = {
        "jti": generate_token(),
        "htm": method.upper(),
        "htu": strip_query(url),
        "iat": now,
        "exp": now + DPOP_PROOF_LIFETIME,
    }

    if nonce:
        body["nonce"] = nonce

    if access_token:
        body["ath"] = access_token_hash(access_token)

    try:
        dpop_proof = jwt.encode(header, body, dpop_private_jwk)
    except (JoseError, ValueError) as e:
        logger.error("Failed to sign DPoP proof: %s", e)
        raise ProofError("Failed to sign DPoP proof") from e

    return dpop_proof


# A server may signal the need for a [new] DPoP nonce via one of two methods
# 1. WWW-Authenticate header with paramater error="use_dpop_nonce"
#    (see https://datatracker.ietf.org/doc/html/rfc9449#RSNonce)
# 2. JSON response body with field error="use_dpop_nonce"
# The latter is only supposed to be returned by an
# Authorization Server (see https://datatracker.ietf.org/doc/html/rfc9449#name-authorization-server-provid), but we support it anyway.
def use_dpop_nonce_response(resp: httpx.Response) -> bool:
    if resp.status_code not in [400, 401]:
        return False

    www_authenticate = resp.headers.get("WWW-Authenticate")
    if www_authenticate:
        scheme, _, params = www_authenticate.partition(" ")
        items = urllib.request.parse_http_list(params)
        opts = urllib.request.parse_keqv_list(items)
        if scheme.lower() == "dpop" and opts.get("error") == "use_dpop_nonce":
            return True

    try:
        json_body = resp.json()
    except ValueError:
        return False
    if isinstance(json_body, dict) and json_body.get("error") == "use_dpop_nonce":
        return True

    return False


def dpop_request(
    client: httpx.Client,
    method: str,
    url: str,
    dpop_private_jwk: ECKey,
    *,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    **kwargs,
) -> Tuple[httpx.Response, Optional[str]]:
    """
    Send a request carrying a DPoP proof, answering one nonce challenge.

    ``data`` is a dict of form fields; callables in it are called on every
    attempt so per-request values such as client assertions are regenerated
    for the retry.

    Returns:
        A tuple of (response, latest server nonce)

    Raises:
        DpopNonceError: If the server demands a nonce a second time
        HttpTransportError: On timeouts and connection failures
        SecurityError: If the URL is unsafe
    """
    valid_url(url)
    extra_headers = kwargs.pop("headers", None) or {}

    def send(current_nonce: Optional[str]) -> httpx.Response:
        headers = dict(extra_headers)
        headers["DPoP"] = create_dpop_proof(
            method,
            url,
            dpop_private_jwk,
            nonce=current_nonce,
            access_token=access_token,
        )
        if access_token:
            headers["Authorization"] = f"DPoP {access_token}"

        form = None
        if data is not None:
            form = {k: v() if callable(v) else v for k, v in data.items()}

        logger.debug("Sending DPoP %s request to %s", method, url)
        try:
            return client.request(method, url, headers=headers, data=form, **kwargs)
        except httpx.TransportError as e:
            logger.error("Request to %s failed: %s", url, e)
            raise HttpTransportError(f"Request to {url} failed: {e}") from e

    response = send(nonce)
    nonce = response.headers.get("DPoP-Nonce", nonce)

    if use_dpop_nonce_response(response):
        server_nonce = response.headers.get("DPoP-Nonce")
        if not server_nonce:
            raise DpopNonceError(
                "Server requested a DPoP nonce without providing one",
                status_code=response.status_code,
                error="use_dpop_nonce",
            )

        logger.info("Retrying with new DPoP nonce from %s", url)
        response = send(server_nonce)
        nonce = response.headers.get("DPoP-Nonce", server_nonce)

        if use_dpop_nonce_response(response):
            logger.error("DPoP nonce rejected twice by %s", url)
            raise DpopNonceError(
                "Server rejected the DPoP nonce twice",
                status_code=response.status_code,
                error="use_dpop_nonce",
            )

    return response, nonce
