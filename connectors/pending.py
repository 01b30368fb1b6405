"""
In-memory store for pending authorization flows (state -> verifier, redirect).

Used between ``POST /connect/{provider}`` and the provider callback.
Entries live for ``ttl_seconds`` (10 minutes by default) and can be
consumed exactly once.  Loss on restart only fails in-flight handshakes.

This only works for a single process: with several instances behind a
load balancer the callback may land elsewhere, and the store would have
to move to a shared keyed store with native TTL.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from connectors.pkce import generate_pkce

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600


@dataclass(frozen=True)
class PendingAuthorization:
    user_id: str
    provider_name: str
    state: str
    code_verifier: str
    redirect_uri: str
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class PendingAuthorizationStore:
    """Single-use, time-limited OAuth state records.

    ``consume`` pops under a lock, so two callbacks racing on the same
    state value can never both receive the record.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._clock = clock
        self._pending: Dict[str, PendingAuthorization] = {}
        self._lock = threading.Lock()

    def begin(self, user_id: str, provider_name: str, redirect_uri: str) -> PendingAuthorization:
        """Record a new handshake and return it (state + PKCE verifier)."""
        code_verifier, _ = generate_pkce()
        now = self._clock()
        record = PendingAuthorization(
            user_id=user_id,
            provider_name=provider_name,
            state=secrets.token_hex(32),
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
            expires_at=now + self._ttl,
        )
        with self._lock:
            self._purge_locked(now)
            self._pending[record.state] = record
        return record

    def consume(self, state: str) -> Optional[PendingAuthorization]:
        """Atomically take the record for ``state``; None if unknown, used, or expired."""
        if not state:
            return None
        with self._lock:
            record = self._pending.pop(state, None)
        if record is None:
            return None
        if record.expired(self._clock()):
            logger.debug("Pending authorization for %s expired", record.provider_name)
            return None
        return record

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: float) -> int:
        expired = [s for s, rec in self._pending.items() if rec.expired(now)]
        for s in expired:
            del self._pending[s]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
