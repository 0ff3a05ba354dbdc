"""
Firing guard: at-most-once rule firing per incident state within a re-arm window.

A firing key is (incident_id, rule_id, state_fingerprint). Acquiring it is an
atomic conditional insert that expires after the rule's re-arm window, so
concurrent scanner, event and API paths cannot both dispatch the same rule.
"""

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Dict, Any, Optional
from uuid import UUID

import redis.asyncio as redis

logger = logging.getLogger(__name__)


def firing_key(incident_id: str, rule_id: UUID, fingerprint: str) -> str:
    return f"{incident_id}:{rule_id}:{fingerprint}"


class FiringGuard:
    """Atomic conditional insert keyed by firing key."""

    async def try_acquire(
        self,
        incident_id: str,
        rule_id: UUID,
        fingerprint: str,
        window: timedelta,
        now: datetime
    ) -> bool:
        """Return True if this caller won the firing, False if it is a duplicate."""
        raise NotImplementedError

    async def release(self, incident_id: str, rule_id: UUID, fingerprint: str) -> None:
        """Forget a firing so the rule may fire again immediately."""
        raise NotImplementedError


class InMemoryFiringGuard(FiringGuard):
    """Lock-protected map of firing keys to expiry times."""

    def __init__(self):
        self._expiries: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, incident_id, rule_id, fingerprint, window, now) -> bool:
        key = firing_key(incident_id, rule_id, fingerprint)
        async with self._lock:
            expires_at = self._expiries.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expiries[key] = now + window
            self._prune(now)
            return True

    async def release(self, incident_id, rule_id, fingerprint) -> None:
        async with self._lock:
            self._expiries.pop(firing_key(incident_id, rule_id, fingerprint), None)

    def _prune(self, now: datetime) -> None:
        expired = [key for key, expires_at in self._expiries.items() if expires_at <= now]
        for key in expired:
            del self._expiries[key]


class RedisFiringGuard(FiringGuard):
    """
    Firing guard shared across processes through Redis SET NX EX.

    When Redis is unreachable the fallback guard decides; without one the
    firing is refused.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = "escalation_firing:",
        fallback: Optional[FiringGuard] = None
    ):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.fallback = fallback

    def _create_key(self, incident_id: str, rule_id: UUID, fingerprint: str) -> str:
        key_hash = hashlib.sha256(firing_key(incident_id, rule_id, fingerprint).encode()).hexdigest()
        return f"{self.key_prefix}{key_hash}"

    async def try_acquire(self, incident_id, rule_id, fingerprint, window, now) -> bool:
        key = self._create_key(incident_id, rule_id, fingerprint)
        value = json.dumps({
            'incident_id': incident_id,
            'rule_id': str(rule_id),
            'fingerprint': fingerprint,
            'fired_at': now.isoformat()
        })
        ttl_seconds = max(1, int(window.total_seconds()))

        try:
            acquired = await self.redis.set(key, value, nx=True, ex=ttl_seconds)
        except Exception as e:
            if self.fallback is not None:
                logger.warning(
                    f"Firing guard unavailable for incident {incident_id}, rule {rule_id}, using fallback: {e}"
                )
                return await self.fallback.try_acquire(incident_id, rule_id, fingerprint, window, now)
            logger.error(f"Firing guard unavailable for incident {incident_id}, rule {rule_id}, refusing: {e}")
            return False

        return bool(acquired)

    async def release(self, incident_id, rule_id, fingerprint) -> None:
        if self.fallback is not None:
            await self.fallback.release(incident_id, rule_id, fingerprint)
        await self.redis.delete(self._create_key(incident_id, rule_id, fingerprint))

    async def health_check(self) -> Dict[str, Any]:
        """Check Redis connectivity."""
        try:
            await self.redis.ping()
            return {'status': 'healthy', 'redis_connected': True}
        except Exception as e:
            logger.error(f"Firing guard health check failed: {e}")
            return {'status': 'unhealthy', 'redis_connected': False, 'error': str(e)}

    async def close(self) -> None:
        try:
            await self.redis.close()
            logger.info("Firing guard closed successfully")
        except Exception as e:
            logger.error(f"Error closing firing guard: {e}")
