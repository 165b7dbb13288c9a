# ============================================================================
# CONFIGURATION DEFAULTS
# ============================================================================
# STATUS: Core - Default configuration values
# PURPOSE: Centralized defaults for the queue, workers, poller, recovery
#          and retention
# CREATED: 19 OCT 2026
# ============================================================================
"""
Configuration Defaults

Provides sensible defaults for the engine's background processes.
Every value can be overridden via environment variables.

Design:
- Immutable dataclasses for defaults
- Environment variable overrides
- Type-safe access
"""

import os
import socket
import uuid
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class QueueDefaults:
    """
    Defaults for the durable job queue.

    Controls lease length, attempt budget and retry backoff.
    """
    lease_seconds: int = 600
    max_attempts: int = 3
    default_priority: int = 0

    # Retry backoff: base * multiplier ** (attempts - 1), capped
    retry_backoff_seconds: int = 30
    backoff_multiplier: float = 2.0
    max_backoff_seconds: int = 600

    def backoff_for(self, attempts: int) -> int:
        """Delay before a job that failed on its Nth attempt is claimable again."""
        if attempts <= 1:
            return self.retry_backoff_seconds
        delay = self.retry_backoff_seconds * (self.backoff_multiplier ** (attempts - 1))
        return int(min(delay, self.max_backoff_seconds))

    @classmethod
    def from_env(cls) -> "QueueDefaults":
        """Create from environment variables."""
        return cls(
            lease_seconds=int(os.getenv("QUEUE_LEASE_SECONDS", 600)),
            max_attempts=int(os.getenv("QUEUE_MAX_ATTEMPTS", 3)),
            default_priority=int(os.getenv("QUEUE_DEFAULT_PRIORITY", 0)),
            retry_backoff_seconds=int(os.getenv("QUEUE_RETRY_BACKOFF_SECONDS", 30)),
            backoff_multiplier=float(os.getenv("QUEUE_BACKOFF_MULTIPLIER", 2.0)),
            max_backoff_seconds=int(os.getenv("QUEUE_MAX_BACKOFF_SECONDS", 600)),
        )


def default_worker_id() -> str:
    """hostname-pid-random, unique per process."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


@dataclass(frozen=True)
class WorkerDefaults:
    """
    Defaults for queue consumers.

    Timeouts bound local node runs and provider submissions so neither
    outlives a queue lease.
    """
    worker_id: str = field(default_factory=default_worker_id)
    idle_sleep_seconds: float = 1.0
    concurrency: int = 1
    shutdown_timeout_seconds: int = 30
    local_timeout_seconds: int = 120
    provider_timeout_seconds: int = 30

    @classmethod
    def from_env(cls) -> "WorkerDefaults":
        """Create from environment variables."""
        return cls(
            worker_id=os.getenv("WORKER_ID") or default_worker_id(),
            idle_sleep_seconds=float(os.getenv("WORKER_IDLE_SLEEP_SECONDS", 1.0)),
            concurrency=int(os.getenv("WORKER_CONCURRENCY", 1)),
            shutdown_timeout_seconds=int(os.getenv("WORKER_SHUTDOWN_TIMEOUT_SECONDS", 30)),
            local_timeout_seconds=int(os.getenv("WORKER_LOCAL_TIMEOUT_SECONDS", 120)),
            provider_timeout_seconds=int(os.getenv("WORKER_PROVIDER_TIMEOUT_SECONDS", 30)),
        )


@dataclass(frozen=True)
class PollerDefaults:
    """
    Defaults for the provider status poller.

    Tasks younger than min_age_seconds are left to their webhook.
    """
    interval_seconds: float = 10.0
    min_age_seconds: int = 10
    batch_size: int = 50

    @classmethod
    def from_env(cls) -> "PollerDefaults":
        """Create from environment variables."""
        return cls(
            interval_seconds=float(os.getenv("POLLER_INTERVAL_SECONDS", 10.0)),
            min_age_seconds=int(os.getenv("POLLER_MIN_AGE_SECONDS", 10)),
            batch_size=int(os.getenv("POLLER_BATCH_SIZE", 50)),
        )


@dataclass(frozen=True)
class RecoveryDefaults:
    """
    Defaults for the recovery sweep.

    stuck_threshold_seconds: processing tasks older than this are re-polled
    hard_ceiling_seconds: past this, an unresolved task is force-finalized
        (external: completed with a note; local: failed)
    """
    interval_seconds: float = 60.0
    stuck_threshold_seconds: int = 600
    hard_ceiling_seconds: int = 3600
    batch_size: int = 100

    @classmethod
    def from_env(cls) -> "RecoveryDefaults":
        """Create from environment variables."""
        return cls(
            interval_seconds=float(os.getenv("RECOVERY_INTERVAL_SECONDS", 60.0)),
            stuck_threshold_seconds=int(os.getenv("RECOVERY_STUCK_THRESHOLD_SECONDS", 600)),
            hard_ceiling_seconds=int(os.getenv("RECOVERY_HARD_CEILING_SECONDS", 3600)),
            batch_size=int(os.getenv("RECOVERY_BATCH_SIZE", 100)),
        )


@dataclass(frozen=True)
class RetentionDefaults:
    """
    Defaults for the retention job.

    Terminal executions are kept per final status; queue jobs and
    processed webhook events on shorter windows. Webhook events that
    never settled a task are kept longer for diagnosis.
    """
    interval_seconds: float = 86400.0
    cancelled_days: int = 7
    failed_days: int = 14
    completed_days: int = 30
    queue_days: int = 7
    webhook_days: int = 7
    unprocessed_webhook_days: int = 30

    @classmethod
    def from_env(cls) -> "RetentionDefaults":
        """Create from environment variables."""
        return cls(
            interval_seconds=float(os.getenv("RETENTION_INTERVAL_SECONDS", 86400.0)),
            cancelled_days=int(os.getenv("RETENTION_CANCELLED_DAYS", 7)),
            failed_days=int(os.getenv("RETENTION_FAILED_DAYS", 14)),
            completed_days=int(os.getenv("RETENTION_COMPLETED_DAYS", 30)),
            queue_days=int(os.getenv("RETENTION_QUEUE_DAYS", 7)),
            webhook_days=int(os.getenv("RETENTION_WEBHOOK_DAYS", 7)),
            unprocessed_webhook_days=int(os.getenv("RETENTION_UNPROCESSED_WEBHOOK_DAYS", 30)),
        )


# ============================================================================
# GLOBAL DEFAULTS INSTANCE
# ============================================================================

@dataclass
class Defaults:
    """Container for all default configurations."""
    queue: QueueDefaults = field(default_factory=QueueDefaults)
    worker: WorkerDefaults = field(default_factory=WorkerDefaults)
    poller: PollerDefaults = field(default_factory=PollerDefaults)
    recovery: RecoveryDefaults = field(default_factory=RecoveryDefaults)
    retention: RetentionDefaults = field(default_factory=RetentionDefaults)

    @classmethod
    def from_env(cls) -> "Defaults":
        """Create all defaults from environment variables."""
        return cls(
            queue=QueueDefaults.from_env(),
            worker=WorkerDefaults.from_env(),
            poller=PollerDefaults.from_env(),
            recovery=RecoveryDefaults.from_env(),
            retention=RetentionDefaults.from_env(),
        )


_defaults: Optional[Defaults] = None


def get_defaults() -> Defaults:
    """Get global defaults instance."""
    global _defaults
    if _defaults is None:
        _defaults = Defaults.from_env()
    return _defaults


def reset_defaults() -> None:
    """Reset defaults (for testing)."""
    global _defaults
    _defaults = None


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "QueueDefaults",
    "WorkerDefaults",
    "PollerDefaults",
    "RecoveryDefaults",
    "RetentionDefaults",
    "Defaults",
    "default_worker_id",
    "get_defaults",
    "reset_defaults",
]
