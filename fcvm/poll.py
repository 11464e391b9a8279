"""Bounded condition polling shared by host and guest wait loops."""

from __future__ import annotations

import time
from typing import Callable

from loguru import logger

log = logger


class PollAborted(RuntimeError):
    """Raised by a predicate to stop polling immediately as a hard failure."""


def wait_until(
    predicate: Callable[[], bool],
    *,
    attempts: int = 30,
    interval: float = 1.0,
    label: str = 'condition',
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``predicate`` until it is true or ``attempts`` are exhausted.

    The predicate is evaluated at most ``attempts`` times with ``interval``
    seconds between evaluations, so the total wait is bounded by
    ``attempts * interval``. A predicate may raise :class:`PollAborted` to end
    the wait early; that exception propagates to the caller.

    Returns:
        bool: True if the predicate became true, False on exhaustion.
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        if predicate():
            log.debug('{} satisfied after {} attempt(s)', label, attempt)
            return True
        if attempt < attempts:
            sleep(interval)
    log.debug('{} not satisfied after {} attempt(s)', label, attempts)
    return False
