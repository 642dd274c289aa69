"""
Bluesky Social OAuth Authentication Example

This example demonstrates how to use the atproto-oauth-dpop library to run a
complete OAuth flow against Bluesky Social (or other AT Protocol services).

The script:
1. Loads the client configuration from the environment (see ClientConfig.from_env)
2. Begins a flow for USERNAME and opens the authorization URL in the browser
3. Asks for the URL the browser was redirected to and completes the flow
4. Calls com.atproto.server.getSession with the DPoP bound access token

Required environment variables:
- USERNAME: The Bluesky handle or DID to authenticate (e.g., "user.bsky.social")
- APP_URL: The host serving client-metadata.json and the callback
- CLIENT_SECRET_JWK: The client's private key, see generate_jwk.py

Usage:
    python examples/bluesky_social_auth.py
"""

import logging
import os
import sys
import webbrowser
from urllib.parse import parse_qs, urlparse

from dotenv import load_dotenv

from atproto_oauth_dpop import AtprotoOauthError, ClientConfig, OAuthClient

# Set up logging configuration
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(),  # Output to console
        logging.FileHandler("app.log"),  # Output to file
    ],
)
logger = logging.getLogger(__name__)


def main() -> bool:
    """
    Run an interactive OAuth flow for USERNAME.

    Returns:
        bool: True if the flow completed, False otherwise
    """
    load_dotenv()

    username = os.getenv("USERNAME")
    if not username:
        logger.error("Missing USERNAME environment variable")
        return False

    try:
        config = ClientConfig.from_env()
    except AtprotoOauthError as e:
        logger.error("Invalid configuration: %s", e)
        return False

    with OAuthClient(config) as client:
        try:
            authn_url = client.begin_flow(username)
        except AtprotoOauthError as e:
            logger.error("Could not start the OAuth flow: %s", e)
            return False

        logger.info("Opening %s", authn_url)
        webbrowser.open(authn_url)

        callback_url = input("Paste the URL you were redirected to: ").strip()
        params = {k: v[0] for k, v in parse_qs(urlparse(callback_url).query).items()}
        if "error" in params:
            logger.error("Authorization denied: %s", params.get("error_description", params["error"]))
            return False

        try:
            record = client.complete_flow(params.get("state", ""), params.get("code", ""), params.get("iss"))
            response = client.signed_request(
                record.state, "GET", f"{record.pds}/xrpc/com.atproto.server.getSession"
            )
        except AtprotoOauthError as e:
            logger.error("Could not complete the OAuth flow: %s", e)
            return False
        finally:
            client.end_flow(params.get("state", ""))

        logger.info("Signed in as %s: %s", record.did, response.json())

    return True


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
