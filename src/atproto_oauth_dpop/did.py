"""DID document handling for AT Protocol."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import httpx

from .security import valid_url
from .identity import HandleResolver, resolve_identity
from .exceptions import (
    DidDocumentUnavailableError,
    HttpTransportError,
    NoPdsInDocumentError,
    SecurityError,
)

logger = logging.getLogger(__name__)

DEFAULT_PLC_DIRECTORY = "https://plc.directory"
PDS_SERVICE_TYPE = "AtprotoPersonalDataServer"
PDS_SERVICE_ID = "#atproto_pds"


@dataclass(frozen=True)
class ResolvedIdentity:
    """The identity chain for one user: DID, handle and PDS endpoint."""

    did: str
    pds: str
    handle: Optional[str] = None


def did_document_url(did: str, plc_directory: str = DEFAULT_PLC_DIRECTORY) -> str:
    """Return the URL the DID document for ``did`` is served from."""
    if did.startswith("did:plc:"):
        return f"{plc_directory.rstrip('/')}/{did}"

    if did.startswith("did:web:"):
        parts = did.removeprefix("did:web:").split(":")
        if len(parts) == 1:
            parts.append(".well-known")
        return "https://{inner}/did.json".format(inner="/".join(parts))

    raise DidDocumentUnavailableError(f"Unsupported DID method: {did}")


def retrieve_did_document(
    did: str,
    client: httpx.Client,
    plc_directory: str = DEFAULT_PLC_DIRECTORY,
) -> Dict[str, Any]:
    """
    Retrieve the DID document for a given DID.

    Args:
        did: The DID to retrieve the document for
        client: HTTP client to use
        plc_directory: Base URL of the PLC directory for did:plc

    Returns:
        The DID document as a dictionary

    Raises:
        DidDocumentUnavailableError: If the DID document cannot be retrieved or parsed
        HttpTransportError: On timeouts and connection failures
    """
    if not did:
        raise DidDocumentUnavailableError("DID cannot be empty")

    url = did_document_url(did, plc_directory)

    # Check URL for SSRF vulnerabilities
    try:
        valid_url(url)
    except SecurityError as e:
        logger.error("Security check failed for URL: %s", url)
        raise DidDocumentUnavailableError(f"Refusing to fetch DID document from {url}") from e

    try:
        response = client.get(url)
    except httpx.TransportError as e:
        error_msg = f"Request error occurred while retrieving DID document: {e}"
        logger.error(error_msg)
        raise HttpTransportError(error_msg) from e

    if response.status_code == 404:
        error_msg = f"DID not found: {did}"
        logger.warning(error_msg)
        raise DidDocumentUnavailableError(error_msg)
    if response.status_code == 410:
        error_msg = f"DID not available (tombstone): {did}"
        logger.warning(error_msg)
        raise DidDocumentUnavailableError(error_msg)
    if response.status_code != 200:
        error_msg = f"HTTP error {response.status_code} while retrieving DID document for {did}"
        logger.error(error_msg)
        raise DidDocumentUnavailableError(error_msg)

    try:
        did_document = response.json()
    except ValueError as e:
        error_msg = "Failed to parse JSON response from DID document retrieval"
        logger.error(error_msg)
        raise DidDocumentUnavailableError(error_msg) from e

    if not isinstance(did_document, dict) or did_document.get("id") != did:
        error_msg = f"DID document does not describe {did}"
        logger.error(error_msg)
        raise DidDocumentUnavailableError(error_msg)

    logger.info("Retrieved DID document for %s", did)
    return did_document


def _is_pds_service(service: Any) -> bool:
    return (
        isinstance(service, dict)
        and (
            service.get("type") == PDS_SERVICE_TYPE
            or str(service.get("id", "")).endswith(PDS_SERVICE_ID)
        )
        and isinstance(service.get("serviceEndpoint"), str)
    )


def extract_pds_url(did_document: Dict[str, Any]) -> str:
    """
    Extract the PDS URL from a DID document.

    Raises:
        NoPdsInDocumentError: If no service entry designates a PDS
    """
    services = did_document.get("service") or []
    pds = next(filter(_is_pds_service, services), None)
    if pds is None:
        error_msg = f"Could not find PDS URL in DID document for {did_document.get('id')}"
        logger.warning(error_msg)
        raise NoPdsInDocumentError(error_msg)

    pds_url = pds["serviceEndpoint"].rstrip("/")
    logger.info("User's PDS URL: %s", pds_url)
    return pds_url


def extract_handle(did_document: Dict[str, Any]) -> Optional[str]:
    """Return the handle from the document's ``at://`` alias, if any."""
    for alias in did_document.get("alsoKnownAs") or []:
        if isinstance(alias, str) and alias.startswith("at://"):
            return alias.removeprefix("at://")
    return None


def resolve_pds(
    handle_or_did: str,
    client: httpx.Client,
    resolvers: Sequence[HandleResolver] = (),
    plc_directory: str = DEFAULT_PLC_DIRECTORY,
) -> ResolvedIdentity:
    """Resolve a handle or DID down to its PDS endpoint.

    Any missing link aborts with the matching resolution error.
    """
    did = resolve_identity(handle_or_did, resolvers)
    did_document = retrieve_did_document(did, client, plc_directory)
    pds_url = extract_pds_url(did_document)
    return ResolvedIdentity(did=did, pds=pds_url, handle=extract_handle(did_document))
