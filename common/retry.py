"""
Backoff utilities for scheduling retries of transient failures.

Retries are never run synchronously: a failed attempt computes the earliest
time the next trigger (poll tick or manual reprocess) may try again.
"""
import random
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from common.settings import settings

logger = logging.getLogger(__name__)

class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter"""
    delay = config.base_delay * (config.exponential_base ** (max(attempt, 1) - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Add jitter to avoid thundering herd
        delay *= (0.5 + random.random() * 0.5)

    return delay

def next_attempt_at(attempt: int, config: RetryConfig, now: Optional[datetime] = None) -> datetime:
    """Earliest time the next attempt may run after `attempt` failures"""
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    delay = calculate_delay(attempt, config)
    logger.info(f"Attempt {attempt} failed, next attempt allowed in {delay:.1f}s")
    return now + timedelta(seconds=delay)

# Device rejected the credentials: back off between poll ticks
PROVISIONING_REJECTED_BACKOFF = RetryConfig(
    base_delay=settings.provisioning_backoff_base_seconds,
    max_delay=settings.provisioning_backoff_max_seconds,
)
