"""OAuth flow state and its storage across the redirect round-trip."""

import dataclasses
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

from joserfc.jwk import ECKey

from .exceptions import AlreadyCompletedError, UnknownOrExpiredStateError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OAuthFlowState:
    """Everything a flow needs between the PAR and the callback.

    Records are immutable; completing a flow stores a copy made with
    :meth:`with_token`.
    """

    state: str
    did: str
    pds: str
    issuer: str
    token_endpoint: str
    code_verifier: str = field(repr=False)
    dpop_key: ECKey = field(repr=False)
    expires_at: float
    handle: Optional[str] = None
    dpop_nonce: Optional[str] = None
    resource_nonce: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    token_type: Optional[str] = None
    scope: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.access_token is not None

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def with_token(self, token: Dict[str, Any], now: float, dpop_nonce: Optional[str] = None) -> "OAuthFlowState":
        """Return a completed copy holding the token response values."""
        expires_in = token.get("expires_in")
        expires_at = now + int(expires_in) if expires_in else self.expires_at
        return dataclasses.replace(
            self,
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
            token_type=token.get("token_type"),
            scope=token.get("scope"),
            dpop_nonce=dpop_nonce or self.dpop_nonce,
            expires_at=expires_at,
        )


class OAuthStateStore(ABC):
    """Storage contract for flow records keyed by the OAuth ``state``.

    ``claim`` and ``release`` bracket a completion attempt so that the
    callback for a state can succeed at most once, even when two callbacks
    race. A claim is a marker, not a lock; the token exchange happens
    between the two calls.
    """

    @abstractmethod
    def put(self, state: str, record: OAuthFlowState) -> None:
        """Store a record."""

    @abstractmethod
    def get(self, state: str) -> Optional[OAuthFlowState]:
        """Return the record, or None when unknown or expired."""

    @abstractmethod
    def replace(self, state: str, record: OAuthFlowState) -> None:
        """Replace a record that is still stored; a no-op otherwise."""

    @abstractmethod
    def delete(self, state: str) -> None:
        """Remove a record, dropping its key material."""

    @abstractmethod
    def claim(self, state: str) -> OAuthFlowState:
        """Mark a flow as being completed.

        Raises:
            UnknownOrExpiredStateError: No usable record for ``state``
            AlreadyCompletedError: The flow is completed or being completed
        """

    @abstractmethod
    def release(self, state: str, record: Optional[OAuthFlowState] = None) -> None:
        """End a claim, replacing the record with ``record`` if given."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Remove expired records and return how many were removed."""


class MemoryStateStore(OAuthStateStore):
    """Thread-safe in-process store."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._records: Dict[str, OAuthFlowState] = {}
        self._claims: Set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def put(self, state: str, record: OAuthFlowState) -> None:
        with self._lock:
            self._records[state] = record

    def get(self, state: str) -> Optional[OAuthFlowState]:
        with self._lock:
            return self._get_locked(state)

    def _get_locked(self, state: str) -> Optional[OAuthFlowState]:
        record = self._records.get(state)
        if record is None:
            return None
        if record.is_expired(self.clock()):
            logger.info("Dropping expired OAuth flow for %s", record.did)
            del self._records[state]
            self._claims.discard(state)
            return None
        return record

    def replace(self, state: str, record: OAuthFlowState) -> None:
        with self._lock:
            if state in self._records:
                self._records[state] = record

    def delete(self, state: str) -> None:
        with self._lock:
            self._records.pop(state, None)
            self._claims.discard(state)

    def claim(self, state: str) -> OAuthFlowState:
        with self._lock:
            record = self._get_locked(state)
            if record is None:
                raise UnknownOrExpiredStateError("Unknown or expired OAuth state")
            if record.completed or state in self._claims:
                raise AlreadyCompletedError("OAuth flow was already completed")
            self._claims.add(state)
            return record

    def release(self, state: str, record: Optional[OAuthFlowState] = None) -> None:
        with self._lock:
            self._claims.discard(state)
            if record is not None and state in self._records:
                self._records[state] = record

    def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [s for s, r in self._records.items() if r.is_expired(now)]
            for state in expired:
                del self._records[state]
                self._claims.discard(state)
        if expired:
            logger.info("Purged %d expired OAuth flows", len(expired))
        return len(expired)
