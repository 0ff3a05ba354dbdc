"""
Overdue Scanner for duration-based escalation.

Periodic control loop with per-tick states Idle -> Querying -> Evaluating -> Idle.
Each tick finds open incidents old enough for the shortest duration rule and
feeds them through the shared EvaluationPipeline. The firing guard inside the
pipeline keeps repeated ticks from re-notifying for the same incident state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional

from ..models.incident import EvaluationRequest, EvaluationTrigger
from .evaluation_pipeline import EvaluationPipeline, IncidentGateway
from .monitoring import EscalationMetrics
from .rule_store import RuleStore


class ScannerState(Enum):
    IDLE = "idle"
    QUERYING = "querying"
    EVALUATING = "evaluating"


@dataclass
class ScanReport:
    """Summary of one scan tick."""
    started_at: datetime
    candidates: int = 0
    evaluated: int = 0
    rules_fired: int = 0
    actions_executed: int = 0
    suppressed: int = 0
    errors: int = 0
    skipped: bool = False
    duration_seconds: float = 0.0
    incident_ids: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "started_at": self.started_at.isoformat(),
            "candidates": self.candidates,
            "evaluated": self.evaluated,
            "rules_fired": self.rules_fired,
            "actions_executed": self.actions_executed,
            "suppressed": self.suppressed,
            "errors": self.errors,
            "skipped": self.skipped,
            "duration_seconds": round(self.duration_seconds, 3)
        }


class OverdueScanner:
    """
    Finds incidents eligible for duration-based escalation.

    Responsibilities:
    - Skip the tick entirely when no active rule has a duration trigger
    - Query open incidents anchored before now minus the shortest trigger
    - Submit each candidate to the evaluation pipeline, isolating failures
    """

    def __init__(
        self,
        rule_store: RuleStore,
        gateway: IncidentGateway,
        pipeline: EvaluationPipeline,
        open_statuses: Iterable[str] = ("open", "in_progress"),
        interval_seconds: float = 300,
        metrics: Optional[EscalationMetrics] = None
    ):
        self.rule_store = rule_store
        self.gateway = gateway
        self.pipeline = pipeline
        self.open_statuses = list(open_statuses)
        self.interval_seconds = interval_seconds
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

        self._state = ScannerState.IDLE
        self._scan_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.last_report: Optional[ScanReport] = None

    @property
    def state(self) -> ScannerState:
        return self._state

    async def scan_once(self, now: Optional[datetime] = None) -> ScanReport:
        """Run one tick. Overlapping calls wait for the running tick to finish."""
        async with self._scan_lock:
            now = now or datetime.now(timezone.utc)
            report = ScanReport(started_at=now)
            start = time.monotonic()

            try:
                self._state = ScannerState.QUERYING
                try:
                    smallest = await self.rule_store.smallest_trigger_after()
                    if smallest is None:
                        report.skipped = True
                        self.logger.debug("No active duration rules; skipping overdue scan")
                        return report

                    candidates = await self.gateway.list_open(self.open_statuses, now - smallest)
                except Exception as e:
                    report.errors += 1
                    self.logger.error(f"Overdue candidate query failed: {str(e)}")
                    return report

                report.candidates = len(candidates)

                self._state = ScannerState.EVALUATING
                for incident in candidates:
                    request = EvaluationRequest.for_incident(incident, EvaluationTrigger.OVERDUE_SCAN, now)
                    try:
                        outcome = await self.pipeline.process(request)
                    except Exception as e:
                        report.errors += 1
                        self.logger.error(f"Overdue evaluation failed for incident {incident.incident_id}: {str(e)}")
                        continue

                    report.evaluated += 1
                    report.rules_fired += len(outcome.fired)
                    report.actions_executed += len(outcome.outcomes)
                    report.suppressed += len(outcome.suppressed)
                    if outcome.fired:
                        report.incident_ids.append(incident.incident_id)

            finally:
                self._state = ScannerState.IDLE
                report.duration_seconds = time.monotonic() - start
                if self.metrics:
                    self.metrics.record_scan_duration(report.duration_seconds)
                self.last_report = report

            self.logger.info(
                f"Overdue scan: {report.candidates} candidates, {report.rules_fired} rules fired, "
                f"{report.suppressed} suppressed, {report.errors} errors"
            )
            return report

    async def start(self):
        if self._running:
            self.logger.warning("Overdue scanner already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._scan_loop())
        self.logger.info(f"Started overdue scanner (interval {self.interval_seconds}s)")

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

        self.logger.info("Stopped overdue scanner")

    async def _scan_loop(self):
        while self._running:
            try:
                await self.scan_once()
                await asyncio.sleep(self.interval_seconds)

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in overdue scan loop: {str(e)}")
                await asyncio.sleep(self.interval_seconds * 2)
