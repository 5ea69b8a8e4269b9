"""Durable task queue and the dispatcher that consumes it."""

from src.tasks.broker import Broker, BrokerUnavailable, SkipRetry, TaskNotFoundError
from src.tasks.dispatcher import Dispatcher
from src.tasks.payloads import TYPE_BLOODHOUND_ANALYSIS, AnalysisTaskPayload, TaskInfo

__all__ = [
    "AnalysisTaskPayload",
    "Broker",
    "BrokerUnavailable",
    "Dispatcher",
    "SkipRetry",
    "TYPE_BLOODHOUND_ANALYSIS",
    "TaskInfo",
    "TaskNotFoundError",
]
