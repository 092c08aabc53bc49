"""Prometheus metrics for the workflow.

Metrics:
- devpipeline_status_transitions_total: Counter of status changes
- devpipeline_review_status_changes_total: Counter of review status writes
- devpipeline_agent_runs_total: Counter of agent runs by workflow and result
- devpipeline_agent_run_duration_seconds: Histogram of agent run duration
- devpipeline_pr_merges_total: Counter of merges by PR kind
- devpipeline_notification_failures_total: Counter of failed notifications

The /metrics endpoint in main.py serves these via generate_metrics_output().
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from src.devpipeline.events.emitter import EventEmitter
from src.devpipeline.events.models import EventType, WorkflowEvent


logger = logging.getLogger(__name__)

# Agent runs range from seconds (review) to an hour (implementation).
AGENT_DURATION_BUCKETS = (5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0, 1800.0, 3600.0)


class WorkflowMetrics:
    """Container for the workflow's Prometheus metrics.

    Args:
        registry: Optional Prometheus registry. Pass a fresh
            CollectorRegistry in tests to avoid duplicate registration.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.status_transitions_total = Counter(
            "devpipeline_status_transitions_total",
            "Total number of work item status changes",
            labelnames=["from_status", "to_status"],
            registry=self.registry,
        )
        self.review_status_changes_total = Counter(
            "devpipeline_review_status_changes_total",
            "Total number of review status writes",
            labelnames=["review_status"],
            registry=self.registry,
        )
        self.agent_runs_total = Counter(
            "devpipeline_agent_runs_total",
            "Total number of agent runs",
            labelnames=["workflow", "result"],
            registry=self.registry,
        )
        self.agent_run_duration_seconds = Histogram(
            "devpipeline_agent_run_duration_seconds",
            "Agent run duration in seconds",
            labelnames=["workflow"],
            buckets=AGENT_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.pr_merges_total = Counter(
            "devpipeline_pr_merges_total",
            "Total number of pull requests merged by the workflow",
            labelnames=["kind"],
            registry=self.registry,
        )
        self.notification_failures_total = Counter(
            "devpipeline_notification_failures_total",
            "Total number of notifications that could not be delivered",
            registry=self.registry,
        )


_default_metrics: Optional[WorkflowMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> WorkflowMetrics:
    """Get the metrics for the default registry, or new metrics for ``registry``."""
    global _default_metrics

    if registry is not None:
        return WorkflowMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = WorkflowMetrics()
    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Render metrics in the Prometheus text format."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Updates Prometheus metrics from workflow events."""

    def __init__(
        self,
        metrics: Optional[WorkflowMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> WorkflowMetrics:
        return self._metrics

    async def emit(self, event: WorkflowEvent) -> None:
        details = event.details
        try:
            if event.event_type == EventType.STATUS_CHANGED:
                self._metrics.status_transitions_total.labels(
                    from_status=details.get("from_status") or "none",
                    to_status=details.get("to_status") or "none",
                ).inc()
            elif event.event_type == EventType.REVIEW_STATUS_CHANGED:
                self._metrics.review_status_changes_total.labels(
                    review_status=details.get("review_status") or "cleared",
                ).inc()
            elif event.event_type in (EventType.AGENT_RUN_COMPLETED, EventType.AGENT_RUN_FAILED):
                workflow = details.get("workflow", "unknown")
                result = "success" if event.event_type == EventType.AGENT_RUN_COMPLETED else "failure"
                self._metrics.agent_runs_total.labels(workflow=workflow, result=result).inc()
                duration = details.get("duration_seconds")
                if duration is not None:
                    self._metrics.agent_run_duration_seconds.labels(
                        workflow=workflow
                    ).observe(float(duration))
            elif event.event_type == EventType.PR_MERGED:
                self._metrics.pr_merges_total.labels(kind=details.get("kind", "unknown")).inc()
            elif event.event_type == EventType.NOTIFICATION_FAILED:
                self._metrics.notification_failures_total.inc()
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "issue_number": event.issue_number,
                    "error": str(e),
                },
            )
