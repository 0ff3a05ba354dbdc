"""
Monitoring and observability for the escalation engine.
"""

from typing import Optional

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest


class EscalationMetrics:
    """Collects Prometheus metrics for evaluation, dispatch and history writes."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._setup_prometheus_metrics()

    def _setup_prometheus_metrics(self):
        """Initialize Prometheus metrics."""
        self.evaluations = Counter(
            'escalation_evaluations_total',
            'Evaluation requests processed',
            ['trigger'],
            registry=self.registry
        )

        self.rules_matched = Counter(
            'escalation_rules_matched_total',
            'Rules matched across evaluations',
            registry=self.registry
        )

        self.rules_rejected = Counter(
            'escalation_rules_rejected_total',
            'Malformed rules rejected at matching time',
            registry=self.registry
        )

        self.firings_suppressed = Counter(
            'escalation_firings_suppressed_total',
            'Rule firings refused by the re-arm guard',
            registry=self.registry
        )

        self.actions_executed = Counter(
            'escalation_actions_executed_total',
            'Escalation actions executed',
            ['action_type', 'result'],
            registry=self.registry
        )

        self.notifications = Counter(
            'escalation_notifications_total',
            'Notification attempts by channel and status',
            ['channel', 'status'],
            registry=self.registry
        )

        self.dispatch_duration = Histogram(
            'escalation_dispatch_duration_seconds',
            'Time spent dispatching one action',
            ['action_type'],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
            registry=self.registry
        )

        self.history_write_failures = Counter(
            'escalation_history_write_failures_total',
            'History write attempts that failed',
            ['final'],
            registry=self.registry
        )

        self.deferred_actions = Gauge(
            'escalation_deferred_actions_pending',
            'Deferred actions waiting for their delay',
            registry=self.registry
        )

        self.deferred_cancelled = Counter(
            'escalation_deferred_actions_cancelled_total',
            'Deferred actions dropped because the incident closed',
            registry=self.registry
        )

        self.scan_duration = Histogram(
            'escalation_scan_duration_seconds',
            'Duration of overdue scan ticks',
            buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0),
            registry=self.registry
        )

        self.queue_depth = Gauge(
            'escalation_queue_depth',
            'Evaluation requests waiting for a worker',
            registry=self.registry
        )

    def record_evaluation(self, trigger: str) -> None:
        self.evaluations.labels(trigger=trigger).inc()

    def record_matches(self, matched: int, rejected: int) -> None:
        if matched:
            self.rules_matched.inc(matched)
        if rejected:
            self.rules_rejected.inc(rejected)

    def record_firing_suppressed(self) -> None:
        self.firings_suppressed.inc()

    def record_action(self, action_type: str, success: bool, duration_seconds: Optional[float] = None) -> None:
        self.actions_executed.labels(
            action_type=action_type,
            result="success" if success else "failure"
        ).inc()
        if duration_seconds is not None:
            self.dispatch_duration.labels(action_type=action_type).observe(duration_seconds)

    def record_notification(self, channel: str, status: str) -> None:
        self.notifications.labels(channel=channel, status=status).inc()

    def record_history_write_failure(self, final: bool) -> None:
        self.history_write_failures.labels(final="true" if final else "false").inc()

    def record_deferred_cancelled(self) -> None:
        self.deferred_cancelled.inc()

    def update_deferred_pending(self, count: int) -> None:
        self.deferred_actions.set(count)

    def update_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)

    def record_scan_duration(self, duration_seconds: float) -> None:
        self.scan_duration.observe(duration_seconds)

    def get_prometheus_metrics(self) -> str:
        """Render metrics in the Prometheus text exposition format."""
        return generate_latest(self.registry).decode('utf-8')
