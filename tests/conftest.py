"""Pytest configuration and fixtures for atproto-oauth-dpop tests."""

import base64
import json
from typing import Any, Callable, Dict, List, Tuple
from urllib.parse import parse_qsl

import httpx
import pytest
from joserfc import jwt
from joserfc.jwk import ECKey

from atproto_oauth_dpop import ClientConfig, MemoryStateStore, OAuthClient
from atproto_oauth_dpop.security import create_hardened_client

HANDLE = "alice.example"
DID = "did:plc:abc123"
PDS = "https://pds.example"
AUTH_SERVER = "https://auth.example"
PAR_ENDPOINT = f"{AUTH_SERVER}/oauth/par"
TOKEN_ENDPOINT = f"{AUTH_SERVER}/oauth/token"
AUTHORIZATION_ENDPOINT = f"{AUTH_SERVER}/oauth/authorize"
REQUEST_URI = "urn:ietf:params:oauth:request_uri:req-abc123"
CLIENT_ID = "https://app.example.com/oauth/client-metadata.json"
REDIRECT_URI = "https://app.example.com/oauth/callback"


def form_data(request: httpx.Request) -> Dict[str, str]:
    return dict(parse_qsl(request.content.decode()))


def decode_jwt(token: str, key: ECKey = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Verify a compact JWT and return (header, claims).

    Without ``key`` the token is verified with the ``jwk`` from its own
    header, which is how a server checks a DPoP proof.
    """
    if key is None:
        encoded_header = token.split(".")[0]
        encoded_header += "=" * (-len(encoded_header) % 4)
        header = json.loads(base64.urlsafe_b64decode(encoded_header))
        key = ECKey.import_key(header["jwk"])
    decoded = jwt.decode(token, key)
    return decoded.header, decoded.claims


class FakeNetwork:
    """An in-process stand-in for the PLC directory, a PDS and its
    authorization server. Every request is recorded."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}

    def route(self, method: str, url: str, handler) -> None:
        if isinstance(handler, httpx.Response):
            canned = handler

            def handler(request):
                return httpx.Response(
                    canned.status_code, headers=canned.headers, content=canned.content
                )
        self.routes[(method, url)] = handler

    def json(self, method: str, url: str, data: Any, status_code: int = 200, headers=None) -> None:
        self.route(method, url, httpx.Response(status_code, json=data, headers=headers))

    def requests_to(self, url: str) -> List[httpx.Request]:
        return [r for r in self.requests if str(r.url).split("?")[0] == url]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]
        handler = self.routes.get((request.method, url))
        if handler is None:
            return httpx.Response(404, json={"error": "NotFound"})
        return handler(request)


@pytest.fixture
def sample_did_document() -> Dict[str, Any]:
    """Return a sample DID document for testing."""
    return {
        "@context": ["https://www.w3.org/ns/did/v1"],
        "id": DID,
        "alsoKnownAs": [f"at://{HANDLE}"],
        "service": [
            {
                "id": "#atproto_pds",
                "type": "AtprotoPersonalDataServer",
                "serviceEndpoint": PDS,
            }
        ],
    }


@pytest.fixture
def sample_auth_server_metadata() -> Dict[str, Any]:
    """Return a sample auth server metadata response for testing."""
    return {
        "issuer": AUTH_SERVER,
        "authorization_endpoint": AUTHORIZATION_ENDPOINT,
        "token_endpoint": TOKEN_ENDPOINT,
        "pushed_authorization_request_endpoint": PAR_ENDPOINT,
        "require_pushed_authorization_requests": True,
        "dpop_signing_alg_values_supported": ["ES256"],
        "scopes_supported": ["atproto", "transition:generic"],
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
    }


def nonce_challenge(nonce: str) -> httpx.Response:
    return httpx.Response(
        400,
        json={"error": "use_dpop_nonce", "error_description": "Authorization server requires nonce in DPoP proof"},
        headers={"DPoP-Nonce": nonce},
    )


@pytest.fixture
def network(sample_did_document, sample_auth_server_metadata) -> FakeNetwork:
    """A network where alice.example resolves all the way to a working
    authorization server that demands a DPoP nonce on its first request."""
    fake = FakeNetwork()
    fake.route(
        "GET",
        f"https://{HANDLE}/.well-known/atproto-did",
        httpx.Response(200, text=DID),
    )
    fake.json("GET", f"https://plc.directory/{DID}", sample_did_document)
    fake.json(
        "GET",
        f"{PDS}/.well-known/oauth-protected-resource",
        {"resource": PDS, "authorization_servers": [AUTH_SERVER]},
    )
    fake.json(
        "GET",
        f"{AUTH_SERVER}/.well-known/oauth-authorization-server",
        sample_auth_server_metadata,
    )

    def par(request: httpx.Request) -> httpx.Response:
        _, claims = decode_jwt(request.headers["DPoP"])
        if claims.get("nonce") != "nonce-1":
            return nonce_challenge("nonce-1")
        return httpx.Response(
            201,
            json={"request_uri": REQUEST_URI, "expires_in": 299},
            headers={"DPoP-Nonce": "nonce-2"},
        )

    def token(request: httpx.Request) -> httpx.Response:
        _, claims = decode_jwt(request.headers["DPoP"])
        if claims.get("nonce") not in ("nonce-2", "nonce-3"):
            return nonce_challenge("nonce-3")
        return httpx.Response(
            200,
            json={
                "access_token": "access-token-abc",
                "token_type": "DPoP",
                "expires_in": 3600,
                "refresh_token": "refresh-token-abc",
                "scope": "atproto transition:generic",
                "sub": DID,
            },
            headers={"DPoP-Nonce": "nonce-3"},
        )

    fake.route("POST", PAR_ENDPOINT, par)
    fake.route("POST", TOKEN_ENDPOINT, token)
    return fake


@pytest.fixture
def http_client(network) -> httpx.Client:
    client = create_hardened_client(transport=httpx.MockTransport(network))
    yield client
    client.close()


@pytest.fixture
def signing_key() -> ECKey:
    return ECKey.generate_key("P-256", parameters={"kid": "client-key-1"}, private=True)


@pytest.fixture
def config(signing_key) -> ClientConfig:
    return ClientConfig(
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        signing_key=signing_key,
        client_name="Test Client",
    )


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryStateStore:
    return MemoryStateStore(clock)


@pytest.fixture
def oauth_client(config, store, http_client, clock) -> OAuthClient:
    return OAuthClient(config, store=store, http_client=http_client, clock=clock)
