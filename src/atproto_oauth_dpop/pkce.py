"""PKCE verifier, code challenge and OAuth state generation."""

import logging
from typing import Tuple

from authlib.common.security import generate_token
from authlib.oauth2.rfc7636 import create_s256_code_challenge

logger = logging.getLogger(__name__)

# Authorization servers validate state and verifier against this alphabet
# and length during PAR.
STATE_ALPHABET = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_-"
)
TOKEN_LENGTH = 64


def generate_oauth_state() -> str:
    """
    Generate a secure random state value for OAuth requests.

    The state is the only correlation key between the authorization redirect
    and the callback, so it doubles as the credential for the callback.

    Returns:
        A 64 character string drawn from ``STATE_ALPHABET``
    """
    state = generate_token(TOKEN_LENGTH, chars=STATE_ALPHABET)
    logger.debug("Generated OAuth state parameter (%d characters)", len(state))
    return state


def generate_code_verifier() -> str:
    """Generate a 64 character PKCE code verifier."""
    return generate_token(TOKEN_LENGTH, chars=STATE_ALPHABET)


def generate_code_challenge(code_verifier: str) -> str:
    """
    Generate a code_challenge from a code_verifier for PKCE in OAuth.

    The code_challenge is the SHA-256 hash of the verifier's ASCII bytes,
    base64url-encoded without padding.

    Args:
        code_verifier: The code_verifier string

    Returns:
        The code_challenge string
    """
    code_challenge = create_s256_code_challenge(code_verifier)
    logger.debug("Generated code_challenge (%d characters)", len(code_challenge))
    return code_challenge


def generate_pkce_pair() -> Tuple[str, str]:
    """Return a fresh ``(verifier, challenge)`` pair."""
    code_verifier = generate_code_verifier()
    return code_verifier, generate_code_challenge(code_verifier)
