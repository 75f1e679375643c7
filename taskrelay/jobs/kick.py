"""
Best-effort, in-process wake-up for idle job workers.

Producers call kick_workers() right after enqueueing so a worker sleeping
between polls claims the job immediately. Nothing depends on a kick being
delivered: the poll loop finds the job on its next tick regardless.
"""

import asyncio
import logging

from taskrelay.settings import settings

logger = logging.getLogger(__name__)

_wake_events: set[asyncio.Event] = set()

def register_wake_event(event: asyncio.Event) -> None:
    _wake_events.add(event)

def unregister_wake_event(event: asyncio.Event) -> None:
    _wake_events.discard(event)

def kick_workers() -> int:
    """Wakes every worker running in this process. Returns how many were signalled."""
    if settings.JOB_WORKER_DISABLE_KICK:
        return 0
    events = list(_wake_events)
    for event in events:
        event.set()
    if events:
        logger.debug("Kicked %s job worker(s)", len(events))
    return len(events)
