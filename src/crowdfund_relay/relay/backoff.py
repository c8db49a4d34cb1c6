"""Capped exponential backoff."""

from __future__ import annotations

import random

from crowdfund_relay.models.config import ReconnectConfig


def backoff_delay(
    attempt: int,
    base: float,
    factor: float,
    cap: float,
    jitter: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Delay before reconnect attempt ``attempt`` (1-based).

    min(cap, base * factor**(attempt-1)), plus up to ``jitter`` random
    seconds. Never exceeds cap + jitter.
    """
    if attempt < 1:
        attempt = 1
    try:
        delay = base * factor ** (attempt - 1)
    except OverflowError:
        delay = cap
    delay = min(cap, delay)
    if jitter > 0:
        delay += (rng or random).uniform(0, jitter)
    return delay


def delay_for(attempt: int, cfg: ReconnectConfig) -> float:
    return backoff_delay(attempt, cfg.base_delay, cfg.factor, cfg.max_delay, cfg.jitter)
