"""Workflow events: models, emitters and Prometheus metrics."""

from src.devpipeline.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    HistoryEventEmitter,
    LoggingEventEmitter,
    NullEventEmitter,
)
from src.devpipeline.events.metrics import (
    MetricsEventEmitter,
    WorkflowMetrics,
    generate_metrics_output,
    get_metrics,
)
from src.devpipeline.events.models import EventType, WorkflowEvent

__all__ = [
    "CompositeEventEmitter",
    "EventEmitter",
    "EventType",
    "HistoryEventEmitter",
    "LoggingEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "WorkflowEvent",
    "WorkflowMetrics",
    "generate_metrics_output",
    "get_metrics",
]
