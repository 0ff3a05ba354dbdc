"""
Action Scheduler for matched escalation rules.

This module implements the execution side of a rule firing:
- Execution plans listing a rule's actions in stored order
- Inline execution with per-action failure isolation
- Persistent deferred actions for delayed steps (in memory or Redis; SQL in
  the database package)
- A background worker that leases due deferred actions and removes each one
  only after it has been executed
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional
from uuid import UUID

import redis.asyncio as redis

from ..models.history import ActionOutcome, DeferredAction
from ..models.incident import IncidentSnapshot
from ..models.rules import EscalationAction, EscalationRule
from .monitoring import EscalationMetrics


ActionExecutor = Callable[[EscalationRule, EscalationAction, IncidentSnapshot], Awaitable[ActionOutcome]]
DeferredExecutor = Callable[[DeferredAction], Awaitable[Optional[ActionOutcome]]]


@dataclass(frozen=True)
class PlannedAction:
    action: EscalationAction
    position: int
    execute_at: datetime
    deferred: bool


@dataclass
class ExecutionPlan:
    """Ordered execution plan for one rule firing against one incident."""
    rule: EscalationRule
    incident_id: str
    planned_at: datetime
    actions: List[PlannedAction]
    deferred_entries: List[DeferredAction] = field(default_factory=list)

    @property
    def inline_actions(self) -> List[PlannedAction]:
        return [planned for planned in self.actions if not planned.deferred]

    @property
    def deferred_actions(self) -> List[PlannedAction]:
        return [planned for planned in self.actions if planned.deferred]


class DeferredActionStore:
    """
    Persistent store of actions waiting for their delay.

    Claiming leases an entry rather than removing it. The entry stays pending
    until `complete` is called; when a lease runs out before that (worker
    crash, failed execution) the entry becomes claimable again.
    """

    async def add(self, entry: DeferredAction) -> None:
        raise NotImplementedError

    async def claim_due(self, now: datetime, lease: timedelta, limit: int = 100) -> List[DeferredAction]:
        """
        Lease entries due at or before `now` that hold no live lease.

        Each returned entry carries its incremented attempt count; a
        concurrent claimer never receives the same entry within one lease.
        """
        raise NotImplementedError

    async def complete(self, entry: DeferredAction) -> None:
        """Remove an entry whose execution has finished."""
        raise NotImplementedError

    async def cancel_for_incident(self, incident_id: str) -> int:
        raise NotImplementedError

    async def list_pending(self, incident_id: Optional[str] = None) -> List[DeferredAction]:
        raise NotImplementedError

    async def pending_count(self) -> int:
        raise NotImplementedError


class InMemoryDeferredActionStore(DeferredActionStore):
    """Deferred actions held in process memory."""

    def __init__(self):
        self._entries: Dict[UUID, DeferredAction] = {}
        self._leases: Dict[UUID, datetime] = {}
        self._lock = asyncio.Lock()

    async def add(self, entry: DeferredAction) -> None:
        async with self._lock:
            self._entries[entry.deferred_id] = entry

    async def claim_due(self, now: datetime, lease: timedelta, limit: int = 100) -> List[DeferredAction]:
        async with self._lock:
            due = sorted(
                (
                    entry for entry in self._entries.values()
                    if entry.execute_at <= now and self._leases.get(entry.deferred_id, now) <= now
                ),
                key=lambda entry: entry.execute_at
            )[:limit]

            claimed = []
            for entry in due:
                entry = replace(entry, attempts=entry.attempts + 1)
                self._entries[entry.deferred_id] = entry
                self._leases[entry.deferred_id] = now + lease
                claimed.append(entry)
            return claimed

    async def complete(self, entry: DeferredAction) -> None:
        async with self._lock:
            self._entries.pop(entry.deferred_id, None)
            self._leases.pop(entry.deferred_id, None)

    async def cancel_for_incident(self, incident_id: str) -> int:
        async with self._lock:
            cancelled = [key for key, entry in self._entries.items() if entry.incident_id == incident_id]
            for key in cancelled:
                del self._entries[key]
                self._leases.pop(key, None)
            return len(cancelled)

    async def list_pending(self, incident_id: Optional[str] = None) -> List[DeferredAction]:
        async with self._lock:
            entries = list(self._entries.values())
        if incident_id is not None:
            entries = [entry for entry in entries if entry.incident_id == incident_id]
        return sorted(entries, key=lambda entry: entry.execute_at)

    async def pending_count(self) -> int:
        async with self._lock:
            return len(self._entries)


def _decode(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisDeferredActionStore(DeferredActionStore):
    """
    Deferred actions in Redis: a sorted set scored by the time an entry next
    becomes claimable, a hash of payloads, a hash of attempt counts and a
    per-incident index set.

    A claim re-scores the member to its lease expiry inside a Lua script, so
    only one worker wins it and a crashed worker's entry comes due again.
    """

    # Returns the new attempt count, or nil when the member is gone, not yet
    # due, or leased by another worker
    CLAIM_SCRIPT = """
    local score = redis.call('ZSCORE', KEYS[1], ARGV[1])
    if not score or tonumber(score) > tonumber(ARGV[2]) then
        return nil
    end
    redis.call('ZADD', KEYS[1], ARGV[3], ARGV[1])
    return redis.call('HINCRBY', KEYS[2], ARGV[1], 1)
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "escalation:deferred"):
        self.redis = redis_client
        self.schedule_key = f"{key_prefix}:schedule"
        self.payload_key = f"{key_prefix}:payload"
        self.attempts_key = f"{key_prefix}:attempts"
        self.incident_key_prefix = f"{key_prefix}:incident:"
        self._claim_script = None
        self.logger = logging.getLogger(__name__)

    def _incident_key(self, incident_id: str) -> str:
        return f"{self.incident_key_prefix}{incident_id}"

    def _get_claim_script(self):
        if self._claim_script is None:
            self._claim_script = self.redis.register_script(self.CLAIM_SCRIPT)
        return self._claim_script

    async def add(self, entry: DeferredAction) -> None:
        deferred_id = str(entry.deferred_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.payload_key, deferred_id, json.dumps(entry.to_dict()))
            pipe.sadd(self._incident_key(entry.incident_id), deferred_id)
            pipe.zadd(self.schedule_key, {deferred_id: entry.execute_at.timestamp()})
            await pipe.execute()

    async def _remove(self, deferred_id: str, incident_id: Optional[str]) -> bool:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.schedule_key, deferred_id)
            pipe.hdel(self.payload_key, deferred_id)
            pipe.hdel(self.attempts_key, deferred_id)
            if incident_id is not None:
                pipe.srem(self._incident_key(incident_id), deferred_id)
            results = await pipe.execute()
        return bool(results[0])

    async def claim_due(self, now: datetime, lease: timedelta, limit: int = 100) -> List[DeferredAction]:
        members = await self.redis.zrangebyscore(
            self.schedule_key, "-inf", now.timestamp(), start=0, num=limit
        )
        claim = self._get_claim_script()
        lease_until = (now + lease).timestamp()

        claimed = []
        for member in members:
            deferred_id = _decode(member)
            attempts = await claim(
                keys=[self.schedule_key, self.attempts_key],
                args=[deferred_id, now.timestamp(), lease_until]
            )
            if attempts is None:
                continue

            payload = await self.redis.hget(self.payload_key, deferred_id)
            if payload is None:
                self.logger.warning(f"Dropping deferred action {deferred_id} with no stored payload")
                await self._remove(deferred_id, None)
                continue

            entry = DeferredAction.from_dict(json.loads(_decode(payload)))
            claimed.append(replace(entry, attempts=int(attempts)))
        return claimed

    async def complete(self, entry: DeferredAction) -> None:
        await self._remove(str(entry.deferred_id), entry.incident_id)

    async def cancel_for_incident(self, incident_id: str) -> int:
        members = await self.redis.smembers(self._incident_key(incident_id))
        cancelled = 0
        for member in members:
            if await self._remove(_decode(member), incident_id):
                cancelled += 1
        await self.redis.delete(self._incident_key(incident_id))
        return cancelled

    async def list_pending(self, incident_id: Optional[str] = None) -> List[DeferredAction]:
        if incident_id is not None:
            members = [_decode(m) for m in await self.redis.smembers(self._incident_key(incident_id))]
        else:
            members = [_decode(m) for m in await self.redis.zrange(self.schedule_key, 0, -1)]
        entries = []
        for member in members:
            payload = await self.redis.hget(self.payload_key, member)
            if payload is not None:
                entries.append(DeferredAction.from_dict(json.loads(_decode(payload))))
        return sorted(entries, key=lambda entry: entry.execute_at)

    async def pending_count(self) -> int:
        return int(await self.redis.zcard(self.schedule_key))


class ActionScheduler:
    """
    Turns matched rules into execution plans and runs them.

    Responsibilities:
    - Plan a rule's actions in stored order, splitting inline from deferred
    - Execute inline actions sequentially, isolating failures per action
    - Persist deferred actions as snapshots for the DeferredActionWorker
    """

    def __init__(self, deferred_store: DeferredActionStore, metrics: Optional[EscalationMetrics] = None):
        self.deferred_store = deferred_store
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

    def schedule(self, rule: EscalationRule, incident: IncidentSnapshot, now: datetime) -> ExecutionPlan:
        planned = [
            PlannedAction(
                action=action,
                position=position,
                execute_at=now + action.delay if action.is_deferred else now,
                deferred=action.is_deferred
            )
            for position, action in enumerate(sorted(rule.actions, key=lambda a: a.position))
        ]
        return ExecutionPlan(rule=rule, incident_id=incident.incident_id, planned_at=now, actions=planned)

    async def run(
        self,
        plan: ExecutionPlan,
        incident: IncidentSnapshot,
        executor: ActionExecutor
    ) -> List[ActionOutcome]:
        """
        Execute a plan. Inline actions run in order; a failure in one is
        captured into its outcome and the following actions still run.
        """
        outcomes = []

        for planned in plan.actions:
            if planned.deferred:
                entry = DeferredAction.create(
                    incident_id=plan.incident_id,
                    rule_id=plan.rule.rule_id,
                    rule_name=plan.rule.name,
                    action=planned.action,
                    execute_at=planned.execute_at
                )
                await self.deferred_store.add(entry)
                plan.deferred_entries.append(entry)
                self.logger.info(
                    f"Deferred action {planned.position} ({planned.action.action_type.value}) of rule "
                    f"'{plan.rule.name}' for incident {plan.incident_id} until {planned.execute_at.isoformat()}"
                )
                continue

            try:
                outcome = await executor(plan.rule, planned.action, incident)
            except Exception as e:
                self.logger.error(
                    f"Action {planned.position} ({planned.action.action_type.value}) of rule "
                    f"'{plan.rule.name}' failed for incident {plan.incident_id}: {str(e)}"
                )
                outcome = ActionOutcome(
                    incident_id=plan.incident_id,
                    rule_id=plan.rule.rule_id,
                    rule_name=plan.rule.name,
                    action=planned.action,
                    success=False,
                    executed_at=datetime.now(timezone.utc),
                    details="Action execution failed",
                    error_message=str(e)
                )
            outcomes.append(outcome)

        if self.metrics and plan.deferred_entries:
            self.metrics.update_deferred_pending(await self.deferred_store.pending_count())

        return outcomes

    async def cancel_for_incident(self, incident_id: str) -> int:
        """Drop every pending deferred action of an incident."""
        cancelled = await self.deferred_store.cancel_for_incident(incident_id)
        if cancelled:
            self.logger.info(f"Cancelled {cancelled} deferred actions for closed incident {incident_id}")
            if self.metrics:
                for _ in range(cancelled):
                    self.metrics.record_deferred_cancelled()
                self.metrics.update_deferred_pending(await self.deferred_store.pending_count())
        return cancelled


class DeferredActionWorker:
    """
    Polls the deferred store and executes due actions.

    Responsibilities:
    - Lease due entries so concurrent workers never run the same one
    - Hand leased entries to the deferred executor
    - Remove an entry only after its executor returns; a failed entry is
      retried once its lease runs out, up to max_attempts
    """

    def __init__(
        self,
        store: DeferredActionStore,
        executor: DeferredExecutor,
        poll_interval_seconds: float = 30,
        lease_seconds: float = 300,
        max_attempts: int = 5,
        metrics: Optional[EscalationMetrics] = None
    ):
        self.store = store
        self.executor = executor
        self.poll_interval_seconds = poll_interval_seconds
        self.lease = timedelta(seconds=lease_seconds)
        self.max_attempts = max_attempts
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self):
        if self._running:
            self.logger.warning("Deferred action worker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._processing_loop())
        self.logger.info("Started deferred action worker")

    async def stop(self):
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        self.logger.info("Stopped deferred action worker")

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """Execute every entry due at `now`; returns the number claimed."""
        now = now or datetime.now(timezone.utc)
        claimed = await self.store.claim_due(now, self.lease)

        for entry in claimed:
            try:
                await self.executor(entry)
            except Exception as e:
                if entry.attempts < self.max_attempts:
                    self.logger.warning(
                        f"Deferred action {entry.deferred_id} for incident {entry.incident_id} failed "
                        f"(attempt {entry.attempts}/{self.max_attempts}), retrying after lease: {str(e)}"
                    )
                    continue
                self.logger.error(
                    f"Deferred action {entry.deferred_id} for incident {entry.incident_id} failed "
                    f"after {entry.attempts} attempts, dropping it: {str(e)}"
                )

            await self.store.complete(entry)

        if self.metrics:
            self.metrics.update_deferred_pending(await self.store.pending_count())
        return len(claimed)

    async def _processing_loop(self):
        self.logger.info("Starting deferred action loop")

        while self._running:
            try:
                processed = await self.run_due()
                if processed:
                    self.logger.info(f"Processed {processed} due deferred actions")
                await asyncio.sleep(self.poll_interval_seconds)

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in deferred action loop: {str(e)}")
                await asyncio.sleep(self.poll_interval_seconds * 2)

        self.logger.info("Deferred action loop stopped")
