from datetime import datetime, timedelta, timezone
from uuid import uuid4

from incident_escalation.services.firing_guard import InMemoryFiringGuard, RedisFiringGuard


NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)
WINDOW = timedelta(hours=24)


class TestInMemoryFiringGuard:
    """Unit tests for the in-process firing guard."""

    def setup_method(self):
        self.guard = InMemoryFiringGuard()
        self.rule_id = uuid4()

    async def test_second_acquire_inside_window_is_refused(self):
        assert await self.guard.try_acquire("INC-1", self.rule_id, "fp", WINDOW, NOW) is True
        assert await self.guard.try_acquire("INC-1", self.rule_id, "fp", WINDOW, NOW + timedelta(hours=1)) is False

    async def test_acquire_after_window_succeeds(self):
        await self.guard.try_acquire("INC-1", self.rule_id, "fp", WINDOW, NOW)

        assert await self.guard.try_acquire("INC-1", self.rule_id, "fp", WINDOW, NOW + WINDOW) is True

    async def test_state_change_is_a_new_key(self):
        await self.guard.try_acquire("INC-1", self.rule_id, "fp-open", WINDOW, NOW)

        assert await self.guard.try_acquire("INC-1", self.rule_id, "fp-escalated", WINDOW, NOW) is True

    async def test_keys_are_per_incident_and_rule(self):
        await self.guard.try_acquire("INC-1", self.rule_id, "fp", WINDOW, NOW)

        assert await self.guard.try_acquire("INC-2", self.rule_id, "fp", WINDOW, NOW) is True
        assert await self.guard.try_acquire("INC-1", uuid4(), "fp", WINDOW, NOW) is True

    async def test_release_allows_refire(self):
        await self.guard.try_acquire("INC-1", self.rule_id, "fp", WINDOW, NOW)
        await self.guard.release("INC-1", self.rule_id, "fp")

        assert await self.guard.try_acquire("INC-1", self.rule_id, "fp", WINDOW, NOW) is True


class TestRedisFiringGuard:
    """Unit tests for the Redis-backed firing guard."""

    async def test_uses_set_nx_with_window_ttl(self, mock_redis):
        guard = RedisFiringGuard(mock_redis)
        rule_id = uuid4()

        assert await guard.try_acquire("INC-1", rule_id, "fp", timedelta(hours=2), NOW) is True

        args, kwargs = mock_redis.set.call_args
        assert args[0].startswith("escalation_firing:")
        assert kwargs == {"nx": True, "ex": 7200}

    async def test_existing_key_is_a_duplicate(self, mock_redis):
        mock_redis.set.return_value = None
        guard = RedisFiringGuard(mock_redis)

        assert await guard.try_acquire("INC-1", uuid4(), "fp", WINDOW, NOW) is False

    async def test_redis_error_without_fallback_refuses_firing(self, mock_redis):
        mock_redis.set.side_effect = ConnectionError("redis down")
        guard = RedisFiringGuard(mock_redis)

        assert await guard.try_acquire("INC-1", uuid4(), "fp", WINDOW, NOW) is False

    async def test_redis_error_uses_fallback_guard(self, mock_redis):
        """During an outage the fallback still deduplicates firings."""
        mock_redis.set.side_effect = ConnectionError("redis down")
        guard = RedisFiringGuard(mock_redis, fallback=InMemoryFiringGuard())
        rule_id = uuid4()

        assert await guard.try_acquire("INC-1", rule_id, "fp", WINDOW, NOW) is True
        assert await guard.try_acquire("INC-1", rule_id, "fp", WINDOW, NOW) is False

    async def test_release_clears_fallback_key(self, mock_redis):
        mock_redis.set.side_effect = ConnectionError("redis down")
        guard = RedisFiringGuard(mock_redis, fallback=InMemoryFiringGuard())
        rule_id = uuid4()
        await guard.try_acquire("INC-1", rule_id, "fp", WINDOW, NOW)

        await guard.release("INC-1", rule_id, "fp")

        assert await guard.try_acquire("INC-1", rule_id, "fp", WINDOW, NOW) is True
        mock_redis.delete.assert_awaited_once()

    async def test_health_check(self, mock_redis):
        guard = RedisFiringGuard(mock_redis)

        assert (await guard.health_check())["status"] == "healthy"

        mock_redis.ping.side_effect = ConnectionError("redis down")
        result = await guard.health_check()
        assert result["status"] == "unhealthy"
        assert result["redis_connected"] is False
