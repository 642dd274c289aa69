"""Tests for metadata retrieval functions."""

import pytest

from atproto_oauth_dpop.metadata import (
    AuthorizationServerDiscovery,
    AuthorizationServerMetadata,
    MetadataCache,
    extract_auth_server,
    get_auth_server_metadata,
    get_pds_metadata,
)
from atproto_oauth_dpop.exceptions import (
    AuthorizationServerMetadataUnavailableError,
    ProtectedResourceUnavailableError,
)

from conftest import AUTH_SERVER, PAR_ENDPOINT, PDS, TOKEN_ENDPOINT, AUTHORIZATION_ENDPOINT

PROTECTED_RESOURCE_URL = f"{PDS}/.well-known/oauth-protected-resource"
AUTH_SERVER_URL = f"{AUTH_SERVER}/.well-known/oauth-authorization-server"


def test_get_pds_metadata(network, http_client):
    """Test retrieving PDS metadata."""
    result = get_pds_metadata(PDS + "/", http_client)
    assert result["authorization_servers"] == [AUTH_SERVER]
    assert len(network.requests_to(PROTECTED_RESOURCE_URL)) == 1


def test_get_pds_metadata_error(network, http_client):
    """Test error handling when retrieving PDS metadata."""
    network.json("GET", PROTECTED_RESOURCE_URL, {}, status_code=503)

    with pytest.raises(ProtectedResourceUnavailableError):
        get_pds_metadata(PDS, http_client)


def test_get_pds_metadata_unsafe_url(http_client):
    with pytest.raises(ProtectedResourceUnavailableError):
        get_pds_metadata("http://pds.example", http_client)


def test_extract_auth_server():
    """Test extracting auth server from PDS metadata."""
    metadata = {"authorization_servers": [AUTH_SERVER, "https://other.example"]}
    assert extract_auth_server(metadata) == AUTH_SERVER


def test_extract_auth_server_missing_auth():
    """Test error handling when auth info is missing from PDS metadata."""
    with pytest.raises(ProtectedResourceUnavailableError):
        extract_auth_server({"resource": PDS})
    with pytest.raises(ProtectedResourceUnavailableError):
        extract_auth_server({"authorization_servers": []})


def test_get_auth_server_metadata(http_client):
    """Test retrieving auth server metadata."""
    result = get_auth_server_metadata(AUTH_SERVER, http_client)

    assert result == AuthorizationServerMetadata(
        issuer=AUTH_SERVER,
        pushed_authorization_request_endpoint=PAR_ENDPOINT,
        authorization_endpoint=AUTHORIZATION_ENDPOINT,
        token_endpoint=TOKEN_ENDPOINT,
    )
    assert result.raw["dpop_signing_alg_values_supported"] == ["ES256"]


def test_get_auth_server_metadata_error(network, http_client):
    network.json("GET", AUTH_SERVER_URL, {}, status_code=404)

    with pytest.raises(AuthorizationServerMetadataUnavailableError):
        get_auth_server_metadata(AUTH_SERVER, http_client)


def test_auth_server_metadata_issuer_mismatch(sample_auth_server_metadata):
    sample_auth_server_metadata["issuer"] = "https://evil.example"

    with pytest.raises(AuthorizationServerMetadataUnavailableError):
        AuthorizationServerMetadata.from_dict(sample_auth_server_metadata, AUTH_SERVER)


@pytest.mark.parametrize(
    "name",
    ["pushed_authorization_request_endpoint", "authorization_endpoint", "token_endpoint"],
)
def test_auth_server_metadata_missing_endpoint(sample_auth_server_metadata, name):
    del sample_auth_server_metadata[name]

    with pytest.raises(AuthorizationServerMetadataUnavailableError):
        AuthorizationServerMetadata.from_dict(sample_auth_server_metadata, AUTH_SERVER)


def test_auth_server_metadata_unsafe_endpoint(sample_auth_server_metadata):
    sample_auth_server_metadata["token_endpoint"] = "http://auth.example/oauth/token"

    with pytest.raises(AuthorizationServerMetadataUnavailableError):
        AuthorizationServerMetadata.from_dict(sample_auth_server_metadata, AUTH_SERVER)


def test_discover(network, http_client):
    discovery = AuthorizationServerDiscovery(http_client)

    metadata = discovery.discover(PDS)
    assert metadata.issuer == AUTH_SERVER
    assert metadata.token_endpoint == TOKEN_ENDPOINT

    # Without a TTL every call fetches again
    discovery.discover(PDS)
    assert len(network.requests_to(PROTECTED_RESOURCE_URL)) == 2


def test_discover_caches_and_invalidates(network, http_client, clock):
    discovery = AuthorizationServerDiscovery(http_client, cache_ttl=300, clock=clock)

    first = discovery.discover(PDS)
    assert discovery.discover(PDS) is first
    assert len(network.requests_to(AUTH_SERVER_URL)) == 1

    discovery.invalidate(PDS)
    discovery.discover(PDS)
    assert len(network.requests_to(AUTH_SERVER_URL)) == 2

    clock.advance(301)
    discovery.discover(PDS)
    assert len(network.requests_to(AUTH_SERVER_URL)) == 3


def test_metadata_cache_expiry(clock):
    cache = MetadataCache(10, clock)
    cache.set("key", "value")
    assert cache.get("key") == "value"

    clock.advance(10)
    assert cache.get("key") is None


def test_metadata_cache_disabled(clock):
    cache = MetadataCache(0, clock)
    cache.set("key", "value")
    assert cache.get("key") is None


@pytest.mark.parametrize(
    "name, value",
    [
        ("issuer", 123),
        ("issuer", None),
        ("issuer", [AUTH_SERVER]),
        ("token_endpoint", 42),
        ("authorization_endpoint", {"url": AUTHORIZATION_ENDPOINT}),
        ("pushed_authorization_request_endpoint", [PAR_ENDPOINT]),
    ],
)
def test_auth_server_metadata_wrong_types(sample_auth_server_metadata, name, value):
    sample_auth_server_metadata[name] = value

    with pytest.raises(AuthorizationServerMetadataUnavailableError):
        AuthorizationServerMetadata.from_dict(sample_auth_server_metadata, AUTH_SERVER)
