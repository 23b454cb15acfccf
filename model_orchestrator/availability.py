"""
Availability detection: which providers have credentials configured right now.

Only local configuration is consulted, never live provider health, so a check
never blocks on network I/O. Credential validity is discovered lazily, as an
execution failure. Results are cached for a short TTL.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel, ConfigDict, Field

from model_orchestrator.catalog import ProviderId
from model_orchestrator.config import ProviderCredentials, get_settings
from model_orchestrator.observability import metrics as obs_metrics

logger = structlog.get_logger()


class AvailabilitySnapshot(BaseModel):
    """Point-in-time map from provider id to "usable"."""

    model_config = ConfigDict(frozen=True)

    providers: dict[ProviderId, bool]
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def is_available(self, provider: ProviderId) -> bool:
        return self.providers.get(provider, False)

    @property
    def available(self) -> list[ProviderId]:
        return [p for p, ok in self.providers.items() if ok]

    @property
    def any_available(self) -> bool:
        return any(self.providers.values())


def credential_presence() -> dict[ProviderId, bool]:
    """Read credential presence from the environment (fresh read, no caching)."""
    creds = ProviderCredentials()
    return {p: bool(creds.for_provider(p.value)) for p in ProviderId}


class AvailabilityDetector:
    """TTL-cached availability lookup. Safe to share across concurrent requests."""

    def __init__(
        self,
        ttl_seconds: float | None = None,
        loader: Callable[[], dict[ProviderId, bool]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds is None:
            ttl_seconds = get_settings().routing.availability_ttl_seconds
        self._ttl = ttl_seconds
        self._loader = loader or credential_presence
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: AvailabilitySnapshot | None = None
        self._checked_at = 0.0

    def get_availability(self) -> AvailabilitySnapshot:
        """Return the cached snapshot, refreshing it when older than the TTL."""
        with self._lock:
            now = self._clock()
            if self._cached is not None and (now - self._checked_at) < self._ttl:
                return self._cached
            presence = self._loader()
            snapshot = AvailabilitySnapshot(
                providers={p: bool(presence.get(p, False)) for p in ProviderId}
            )
            self._cached = snapshot
            self._checked_at = now
        obs_metrics.set_provider_availability({p.value: ok for p, ok in snapshot.providers.items()})
        logger.debug(
            "availability_refreshed",
            available=[p.value for p in snapshot.available],
            ttl_seconds=self._ttl,
        )
        return snapshot

    def invalidate(self) -> None:
        """Drop the cached snapshot so the next lookup re-reads configuration."""
        with self._lock:
            self._cached = None
            self._checked_at = 0.0
