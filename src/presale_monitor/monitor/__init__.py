"""Presale monitor - classification, metrics and real-time updates."""

from presale_monitor.monitor.aggregator import aggregate
from presale_monitor.monitor.cache import CacheStats, MetricsCache, TransactionCache
from presale_monitor.monitor.classifier import ClassificationError, TransactionClassifier
from presale_monitor.monitor.history import analyze
from presale_monitor.monitor.models import (
    ContributorAggregate,
    ContributorHistory,
    HistoricalAnalysis,
    Metrics,
    MonitorUpdate,
    TokenKind,
    Transaction,
    TransactionKind,
    TransactionStatus,
    UpdateType,
    WalletSnapshot,
)
from presale_monitor.monitor.realtime import RealtimeSubscriber, UpdateStream
from presale_monitor.monitor.registry import MonitorRegistry
from presale_monitor.monitor.service import MonitorDisposedError, PresaleMonitor
from presale_monitor.monitor.snapshot import BalanceSnapshotter

__all__ = [
    # Service
    "MonitorDisposedError",
    "MonitorRegistry",
    "PresaleMonitor",
    # Components
    "BalanceSnapshotter",
    "ClassificationError",
    "RealtimeSubscriber",
    "TransactionClassifier",
    "UpdateStream",
    "aggregate",
    "analyze",
    # Caches
    "CacheStats",
    "MetricsCache",
    "TransactionCache",
    # Models
    "ContributorAggregate",
    "ContributorHistory",
    "HistoricalAnalysis",
    "Metrics",
    "MonitorUpdate",
    "TokenKind",
    "Transaction",
    "TransactionKind",
    "TransactionStatus",
    "UpdateType",
    "WalletSnapshot",
]
