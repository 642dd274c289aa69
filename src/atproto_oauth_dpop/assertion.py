"""Private key JWT client assertions (RFC 7523)."""

import logging
import time

from authlib.common.security import generate_token
from joserfc import jwt
from joserfc.errors import JoseError
from joserfc.jwk import ECKey

from .exceptions import ProofError

logger = logging.getLogger(__name__)

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
CLIENT_ASSERTION_LIFETIME = 60


def client_assertion_jwt(client_id: str, audience: str, client_secret_jwk: ECKey) -> str:
    """
    Sign a client assertion proving possession of the client's key.

    A new assertion with a fresh ``jti`` must be built for every PAR and token
    request; they are never cached.

    Args:
        client_id: The client id, used as issuer and subject
        audience: The authorization server issuer
        client_secret_jwk: The client's private P-256 signing key

    Returns:
        The compact serialized JWT

    Raises:
        ProofError: If the key cannot sign
    """
    if client_secret_jwk is None or not client_secret_jwk.is_private:
        raise ProofError("Client assertion requires a private signing key")

    header = {"alg": "ES256"}
    if client_secret_jwk.kid:
        header["kid"] = client_secret_jwk.kid

    now = int(time.time())
    claims = {
        "iss": client_id,
        "sub": client_id,
        "aud": audience,
        "jti": generate_token(),
        "iat": now,
        "exp": now + CLIENT_ASSERTION_LIFETIME,
    }

    try:
        client_assertion = jwt.encode(header, claims, client_secret_jwk)
    except (JoseError, ValueError) as e:
        logger.error("Failed to sign client assertion: %s", e)
        raise ProofError("Failed to sign client assertion") from e

    logger.debug("Generated client assertion for audience %s", audience)
    return client_assertion
