"""
Escalation Engine

Facade wiring the escalation components together and owning their background
tasks:
- An asyncio.Queue of evaluation requests drained by worker tasks
- The OverdueScanner loop feeding the same EvaluationPipeline
- The DeferredActionWorker executing delayed actions
- Manual escalation and delivery status callbacks
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx
import redis.asyncio as redis

from ..config import EscalationConfig
from ..models.history import NotificationHistory, NotificationStatus
from ..models.incident import EvaluationRequest, EvaluationTrigger, IncidentSnapshot
from .action_scheduler import (
    ActionScheduler, DeferredActionStore, DeferredActionWorker, RedisDeferredActionStore
)
from .audit import AuditLogger
from .channel_senders import build_senders
from .evaluation_pipeline import EvaluationOutcome, EvaluationPipeline, IncidentGateway, InMemoryIncidentGateway
from .firing_guard import FiringGuard, RedisFiringGuard
from .history_recorder import AlertHook, HistoryRecorder, HistoryRepository
from .manual_escalation import ManualEscalationHandler, ManualEscalationOutcome
from .monitoring import EscalationMetrics
from .notification_dispatcher import NotificationDispatcher
from .overdue_scanner import OverdueScanner, ScanReport
from .recipients import RecipientDirectory, default_directory
from .rule_matcher import RuleMatcher
from .rule_store import RuleRepository, RuleStore
from .templates import TemplateRenderer


class EscalationEngine:
    """
    Main escalation engine that coordinates all escalation activities.

    Responsibilities:
    - Accept incident events and evaluate them in the background
    - Run overdue scans and deferred actions on their intervals
    - Handle manual escalation and delivery callbacks
    - Provide history and health reporting
    """

    def __init__(
        self,
        config: EscalationConfig,
        rule_store: RuleStore,
        gateway: IncidentGateway,
        dispatcher: NotificationDispatcher,
        firing_guard: FiringGuard,
        deferred_store: DeferredActionStore,
        history_repository: HistoryRepository,
        metrics: Optional[EscalationMetrics] = None,
        alert_hook: Optional[AlertHook] = None
    ):
        self.config = config
        self.rule_store = rule_store
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.firing_guard = firing_guard
        self.metrics = metrics or EscalationMetrics()
        self.logger = logging.getLogger(__name__)

        self.recorder = HistoryRecorder(
            history_repository,
            metrics=self.metrics,
            max_attempts=config.history_write_max_attempts,
            base_delay=config.history_retry_base_delay,
            max_delay=config.history_retry_max_delay,
            alert_hook=alert_hook
        )
        self.scheduler = ActionScheduler(deferred_store, metrics=self.metrics)
        self.pipeline = EvaluationPipeline(
            rule_store=rule_store,
            matcher=RuleMatcher(),
            firing_guard=firing_guard,
            scheduler=self.scheduler,
            dispatcher=dispatcher,
            recorder=self.recorder,
            gateway=gateway,
            default_rearm_window=config.default_rearm_window,
            open_statuses=config.open_statuses,
            metrics=self.metrics
        )
        self.scanner = OverdueScanner(
            rule_store=rule_store,
            gateway=gateway,
            pipeline=self.pipeline,
            open_statuses=config.open_statuses,
            interval_seconds=config.scan_interval_seconds,
            metrics=self.metrics
        )
        self.deferred_worker = DeferredActionWorker(
            deferred_store,
            self.pipeline.execute_deferred,
            poll_interval_seconds=config.deferred_poll_interval_seconds,
            lease_seconds=config.deferred_lease_seconds,
            max_attempts=config.deferred_max_attempts,
            metrics=self.metrics
        )
        self.manual_handler = ManualEscalationHandler(
            gateway=gateway,
            dispatcher=dispatcher,
            recorder=self.recorder,
            targets=config.manual_escalation_targets,
            channels=config.manual_channels,
            template_id=config.manual_escalation_template_id,
            metrics=self.metrics
        )

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=config.evaluation_queue_size)
        self._workers: List[asyncio.Task] = []
        self._running = False
        self._resources: List[Any] = []

    @classmethod
    def from_config(
        cls,
        config: EscalationConfig,
        directory: Optional[RecipientDirectory] = None,
        renderer: Optional[TemplateRenderer] = None,
        gateway: Optional[IncidentGateway] = None,
        rule_repository: Optional[RuleRepository] = None,
        alert_hook: Optional[AlertHook] = None
    ) -> 'EscalationEngine':
        """
        Build an engine with SQL persistence from `database_url` for rules,
        their audit log, history, firings and deferred actions. When
        `redis_url` is set, Redis takes over deferred actions and in-app
        messages and fronts the firing guard, with SQL as its fallback.
        """
        from ..database.repository import (
            SqlDeferredActionStore, SqlFiringGuard, SqlHistoryRepository, SqlRuleRepository
        )
        from ..database.schema import create_engine_from_url, metadata

        sql_engine = create_engine_from_url(config.database_url)
        metadata.create_all(sql_engine)

        redis_client = redis.from_url(config.redis_url) if config.redis_url else None
        http_client = httpx.AsyncClient(timeout=config.channel_timeout_seconds)

        metrics = EscalationMetrics()
        rule_store = RuleStore(
            rule_repository or SqlRuleRepository(sql_engine),
            audit_logger=AuditLogger(),
            refresh_seconds=config.rule_snapshot_refresh_seconds
        )
        dispatcher = NotificationDispatcher(
            directory=directory or default_directory(),
            renderer=renderer or TemplateRenderer(),
            senders=build_senders(config, http_client=http_client, redis_client=redis_client),
            channel_timeout=config.channel_timeout_seconds,
            policy=config.policy,
            incident_base_url=config.incident_base_url,
            metrics=metrics
        )

        if redis_client is not None:
            firing_guard: FiringGuard = RedisFiringGuard(redis_client, fallback=SqlFiringGuard(sql_engine))
            deferred_store: DeferredActionStore = RedisDeferredActionStore(redis_client)
        else:
            firing_guard = SqlFiringGuard(sql_engine)
            deferred_store = SqlDeferredActionStore(sql_engine)

        engine = cls(
            config=config,
            rule_store=rule_store,
            gateway=gateway or InMemoryIncidentGateway(),
            dispatcher=dispatcher,
            firing_guard=firing_guard,
            deferred_store=deferred_store,
            history_repository=SqlHistoryRepository(sql_engine),
            metrics=metrics,
            alert_hook=alert_hook
        )
        engine._resources = [http_client, redis_client, sql_engine]
        return engine

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    async def start(self):
        """Start evaluation workers, the overdue scanner and the deferred worker."""
        if self._running:
            self.logger.warning("Escalation engine already running")
            return

        self._running = True
        self._workers = [
            asyncio.create_task(self._evaluation_worker(index))
            for index in range(self.config.evaluation_workers)
        ]
        await self.scanner.start()
        await self.deferred_worker.start()
        self.logger.info(f"Started escalation engine with {len(self._workers)} evaluation workers")

    async def stop(self):
        """Stop background processing. Queued requests not yet taken are dropped."""
        if not self._running:
            return

        self._running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        await self.scanner.stop()
        await self.deferred_worker.stop()
        self.logger.info("Stopped escalation engine")

    async def close(self):
        """Stop processing and release clients created by from_config."""
        await self.stop()
        for resource in self._resources:
            if resource is None:
                continue
            try:
                if isinstance(resource, httpx.AsyncClient):
                    await resource.aclose()
                elif isinstance(resource, redis.Redis):
                    await resource.close()
                else:
                    resource.dispose()
            except Exception as e:
                self.logger.error(f"Error closing {type(resource).__name__}: {str(e)}")
        self._resources = []

    async def evaluate_incident(
        self,
        incident: IncidentSnapshot,
        trigger: EvaluationTrigger = EvaluationTrigger.UPDATED
    ) -> EvaluationRequest:
        """Queue an incident for background evaluation and return the request."""
        request = EvaluationRequest.for_incident(incident, trigger, datetime.now(timezone.utc))
        await self._queue.put(request)
        self.metrics.update_queue_depth(self._queue.qsize())
        self.logger.debug(f"Queued evaluation {request.request_id} for incident {incident.incident_id}")
        return request

    async def evaluate_now(
        self,
        incident: IncidentSnapshot,
        trigger: EvaluationTrigger = EvaluationTrigger.UPDATED,
        now: Optional[datetime] = None
    ) -> EvaluationOutcome:
        """Evaluate an incident inline, bypassing the queue."""
        request = EvaluationRequest.for_incident(incident, trigger, now or datetime.now(timezone.utc))
        return await self.pipeline.process(request)

    async def join(self):
        """Wait until every queued request has been processed."""
        await self._queue.join()

    async def manual_escalate(self, incident_id: str, reason: str, user_id: str) -> ManualEscalationOutcome:
        return await self.manual_handler.escalate(incident_id, reason, user_id)

    async def scan_overdue(self, now: Optional[datetime] = None) -> ScanReport:
        return await self.scanner.scan_once(now)

    async def run_deferred(self, now: Optional[datetime] = None) -> int:
        return await self.deferred_worker.run_due(now)

    async def update_notification_status(
        self,
        notification_id: UUID,
        status: NotificationStatus,
        error_message: Optional[str] = None
    ) -> Optional[NotificationHistory]:
        return await self.recorder.update_notification_status(notification_id, status, error_message)

    async def get_incident_history(self, incident_id: str) -> Dict[str, Any]:
        history = await self.recorder.get_incident_history(incident_id)
        pending = await self.scheduler.deferred_store.list_pending(incident_id)
        return {
            "incident_id": incident_id,
            "escalations": [row.to_dict() for row in history["escalations"]],
            "notifications": [row.to_dict() for row in history["notifications"]],
            "pending_actions": [entry.to_dict() for entry in pending]
        }

    async def health_check(self) -> Dict[str, Any]:
        status = {
            "status": "healthy" if self._running else "stopped",
            "workers": len(self._workers),
            "queue_depth": self._queue.qsize(),
            "scanner_state": self.scanner.state.value,
            "rule_snapshot_version": self.rule_store.version,
            "last_scan": self.scanner.last_report.to_dict() if self.scanner.last_report else None
        }
        if isinstance(self.firing_guard, RedisFiringGuard):
            status["firing_guard"] = await self.firing_guard.health_check()
        return status

    async def _evaluation_worker(self, worker_id: int):
        self.logger.info(f"Evaluation worker {worker_id} started")

        while self._running:
            try:
                request = await self._queue.get()
            except asyncio.CancelledError:
                break

            try:
                outcome = await self.pipeline.process(request)
                self.logger.debug(
                    f"Worker {worker_id} evaluated incident {outcome.incident_id}: "
                    f"{len(outcome.fired)} rules fired, {len(outcome.suppressed)} suppressed"
                )
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(
                    f"Evaluation of incident {request.incident.incident_id} failed: {str(e)}"
                )
            finally:
                self._queue.task_done()
                self.metrics.update_queue_depth(self._queue.qsize())

        self.logger.info(f"Evaluation worker {worker_id} stopped")
