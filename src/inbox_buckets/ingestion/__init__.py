"""Ingestion pipeline components."""

from .parser import EmailParser, build_preview
from .state import BucketRefreshThrottle, InFlightFetches
from .tasks import DetachedTaskRunner, FailedTask
from .worker import SyncWorker

__all__ = [
    "BucketRefreshThrottle",
    "DetachedTaskRunner",
    "EmailParser",
    "FailedTask",
    "InFlightFetches",
    "SyncWorker",
    "build_preview",
]
