"""
Matching engine configuration.

All tunables are resolved once from ``app.config.settings`` into an
immutable ``MatchingConfig`` which is handed to every component through
its constructor.  Components never read settings ad hoc.
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import asdict, dataclass, field
from datetime import timedelta

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS_MS: tuple[int, ...] = (30_000, 120_000, 600_000, 1_800_000, 3_600_000)

# Redis key of the cross-instance maintenance lock
MAINTENANCE_LOCK_KEY = "maintenance:lock"

# Worker loop back-off
EMPTY_QUEUE_SLEEP_SECONDS = 1
LOOP_ERROR_SLEEP_SECONDS = 5

# Error text stored on a task row is capped at this many characters
MAX_ERROR_LENGTH = 4000

# Triangle search bounds
TRIANGLE_BATCH_SIZE = 50
TRIANGLE_MAX_TOTAL_ATTEMPTS = 200
TRIANGLE_MAX_DB_BATCHES = 5

# Outbox rows that exhaust their attempts are pushed this far into the future
OUTBOX_PARK_DAYS = 365

# Intents with a broken home/search link repaired per maintenance run
REPAIR_BATCH_SIZE = 200

# Claimed outbox rows stay hidden from other senders for this long
OUTBOX_LEASE_SECONDS = 300


def parse_retry_delays(raw: str) -> tuple[int, ...]:
    """
    Parse a comma-separated list of millisecond delays.

    Falls back to ``DEFAULT_RETRY_DELAYS_MS`` when the value is empty
    or contains anything that is not a positive integer.
    """
    if not raw or not raw.strip():
        return DEFAULT_RETRY_DELAYS_MS
    try:
        delays = tuple(int(part.strip()) for part in raw.split(",") if part.strip())
    except ValueError:
        logger.warning("Invalid MATCHING_RETRY_DELAYS_MS=%r, using defaults", raw)
        return DEFAULT_RETRY_DELAYS_MS
    if not delays or any(d <= 0 for d in delays):
        logger.warning("Invalid MATCHING_RETRY_DELAYS_MS=%r, using defaults", raw)
        return DEFAULT_RETRY_DELAYS_MS
    return delays


def default_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(frozen=True)
class MatchingConfig:
    claim_batch_size: int = 50
    worker_concurrency: int = 4
    lock_ttl_ms: int = 660_000
    max_attempts: int = 5
    retry_delays_ms: tuple[int, ...] = DEFAULT_RETRY_DELAYS_MS
    sweep_limit: int = 200
    enqueue_interval_minutes: int = 10
    candidate_limit: int = 200
    triangle_enabled: bool = True
    max_triangles_per_seeker: int = 50
    date_tolerance_fraction: float = 0.0
    date_tolerance_min_days: int = 0
    cron_enabled: bool = True
    cron_interval_seconds: int = 60
    maintenance_step_timeout_ms: int = 15_000
    task_retention_hours: int = 24
    outbox_batch_size: int = 50
    outbox_interval_seconds: int = 10
    outbox_retention_days: int = 30
    refund_cooldown_days: int = 14
    debug: bool = False
    trace_user_a: str = ""
    trace_user_b: str = ""
    instance_id: str = field(default_factory=default_instance_id)

    @classmethod
    def from_settings(cls, settings) -> "MatchingConfig":
        """Build the config from a ``Settings`` instance."""
        return cls(
            claim_batch_size=settings.MATCHING_CLAIM_BATCH_SIZE,
            worker_concurrency=settings.MATCHING_WORKER_CONCURRENCY,
            lock_ttl_ms=settings.MATCHING_LOCK_TTL_MS,
            max_attempts=settings.MATCHING_MAX_ATTEMPTS,
            retry_delays_ms=parse_retry_delays(settings.MATCHING_RETRY_DELAYS_MS),
            sweep_limit=settings.MATCHING_SWEEP_LIMIT,
            enqueue_interval_minutes=settings.MATCHING_ENQUEUE_INTERVAL_MINUTES,
            candidate_limit=settings.MATCHING_CANDIDATE_LIMIT,
            triangle_enabled=settings.MATCHING_TRIANGLE_ENABLED,
            max_triangles_per_seeker=settings.MATCHING_MAX_TRIANGLES_PER_SEEKER,
            date_tolerance_fraction=settings.MATCHING_DATE_TOLERANCE_FRACTION,
            date_tolerance_min_days=settings.MATCHING_DATE_TOLERANCE_MIN_DAYS,
            cron_enabled=settings.MATCHING_CRON_ENABLED,
            cron_interval_seconds=settings.MATCHING_CRON_INTERVAL_SECONDS,
            maintenance_step_timeout_ms=settings.MATCHING_MAINTENANCE_STEP_TIMEOUT_MS,
            task_retention_hours=settings.MATCHING_TASK_RETENTION_HOURS,
            outbox_batch_size=settings.MATCHING_OUTBOX_BATCH_SIZE,
            outbox_interval_seconds=settings.MATCHING_OUTBOX_INTERVAL_SECONDS,
            outbox_retention_days=settings.MATCHING_OUTBOX_RETENTION_DAYS,
            refund_cooldown_days=settings.REFUND_COOLDOWN_DAYS,
            debug=settings.MATCHING_DEBUG,
            trace_user_a=settings.MATCHING_TRACE_USER_A,
            trace_user_b=settings.MATCHING_TRACE_USER_B,
            instance_id=settings.MATCHING_INSTANCE_ID or default_instance_id(),
        )

    # ── Derived values ──────────────────────────────────────────────────

    def retry_delay_ms(self, attempt: int) -> int:
        """
        Backoff before retry number *attempt* (1-based).

        Attempts beyond the configured schedule reuse its last entry.
        """
        index = max(attempt, 1) - 1
        if index >= len(self.retry_delays_ms):
            return self.retry_delays_ms[-1]
        return self.retry_delays_ms[index]

    def retry_delay(self, attempt: int) -> timedelta:
        return timedelta(milliseconds=self.retry_delay_ms(attempt))

    @property
    def lock_ttl(self) -> timedelta:
        return timedelta(milliseconds=self.lock_ttl_ms)

    @property
    def step_timeout_seconds(self) -> float:
        return self.maintenance_step_timeout_ms / 1000

    @property
    def enqueue_interval(self) -> timedelta:
        return timedelta(minutes=self.enqueue_interval_minutes)

    def is_traced_pair(self, user_a, user_b) -> bool:
        """True when verbose predicate logging is on for this user pair."""
        if self.debug:
            return True
        if not (self.trace_user_a and self.trace_user_b):
            return False
        pair = {str(user_a), str(user_b)}
        return pair == {self.trace_user_a, self.trace_user_b}

    def summary(self) -> dict:
        """Effective configuration, suitable for a startup log line."""
        data = asdict(self)
        data["retry_delays_ms"] = list(self.retry_delays_ms)
        return data


def _load_config() -> MatchingConfig:
    from app.config import settings
    return MatchingConfig.from_settings(settings)


matching_config = _load_config()
