"""
Prometheus metrics for the fuel transaction import.
Tracks per-file outcomes, per-row outcomes and database timings.
"""

from prometheus_client import Counter, Histogram, Gauge, start_http_server
import time
from functools import wraps
from typing import Dict
import logging

from models import FileImportResult, ReferenceSyncStats

logger = logging.getLogger(__name__)

# Business Metrics
IMPORT_FILES_TOTAL = Counter(
    'fuel_import_files_total',
    'Total number of extract files processed',
    ['profile', 'status']
)

IMPORT_ROWS_TOTAL = Counter(
    'fuel_import_rows_total',
    'Extract rows by outcome',
    ['profile', 'outcome']
)

REFERENCE_SYNC_ROWS_TOTAL = Counter(
    'fuel_reference_sync_rows_total',
    'Reference-sync records by outcome',
    ['kind', 'outcome']
)

# Technical Metrics
IMPORT_FILE_DURATION_SECONDS = Histogram(
    'fuel_import_file_duration_seconds',
    'Time spent importing one extract file',
    ['profile'],
    buckets=[1, 5, 10, 30, 60, 300, 600, 1800]
)

DATABASE_OPERATIONS_TOTAL = Counter(
    'fuel_import_database_operations_total',
    'Total database operations',
    ['operation', 'status']
)

DATABASE_OPERATION_DURATION_SECONDS = Histogram(
    'fuel_import_database_operation_duration_seconds',
    'Database operation duration',
    ['operation'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 5, 10]
)

FILES_PENDING = Gauge(
    'fuel_import_files_pending',
    'Extract files waiting in incoming/ and processing/'
)

ROW_OUTCOMES = (
    'transactions_inserted',
    'transactions_updated',
    'payments_inserted',
    'payments_updated',
    'payments_unchanged',
    'skipped_duplicate',
    'skipped_error',
    'skipped_too_old',
    'skipped_no_transaction',
)


class MetricsCollector:
    """Centralized metrics collection for the import service."""

    def __init__(self, port: int = 8000):
        self.port = port
        self.server_started = False

    def start_metrics_server(self):
        """Start Prometheus metrics server."""
        if not self.server_started:
            try:
                if not (1024 <= self.port <= 65535):
                    raise ValueError(f"Invalid port {self.port}. Must be between 1024-65535")

                start_http_server(self.port)
                self.server_started = True
                logger.info(f"Metrics server started on port {self.port}")
            except (ValueError, OSError) as e:
                logger.error(f"Failed to start metrics server: {e}")

    def record_file_import(self, result: FileImportResult, duration: float):
        """Record the outcome of one extract file."""
        profile = result.profile.value
        IMPORT_FILES_TOTAL.labels(profile=profile, status=result.status.value).inc()
        IMPORT_FILE_DURATION_SECONDS.labels(profile=profile).observe(duration)
        for outcome in ROW_OUTCOMES:
            count = getattr(result.stats, outcome)
            if count:
                IMPORT_ROWS_TOTAL.labels(profile=profile, outcome=outcome).inc(count)

    def record_reference_sync(self, stats: ReferenceSyncStats):
        for outcome in ('inserted', 'updated', 'unchanged', 'unknown', 'pending', 'skipped_empty_key'):
            count = getattr(stats, outcome)
            if count:
                REFERENCE_SYNC_ROWS_TOTAL.labels(kind=stats.kind, outcome=outcome).inc(count)

    def record_database_operation(self, operation: str, status: str, duration: float):
        """Record database operation metrics."""
        DATABASE_OPERATIONS_TOTAL.labels(operation=operation, status=status).inc()
        DATABASE_OPERATION_DURATION_SECONDS.labels(operation=operation).observe(duration)

    def set_files_pending(self, count: int):
        FILES_PENDING.set(count)


# Global metrics collector instance
metrics = MetricsCollector()


def track_duration(metric_name: str, labels: Dict[str, str] = None):
    """Decorator to track function execution duration."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            operation = labels.get('operation', func.__name__) if labels else func.__name__
            try:
                result = func(*args, **kwargs)
            except Exception:
                if metric_name == 'database':
                    metrics.record_database_operation(operation, 'error', time.time() - start_time)
                raise
            if metric_name == 'database':
                metrics.record_database_operation(operation, 'success', time.time() - start_time)
            return result
        return wrapper
    return decorator
