"""Cooperative cancellation for in-flight runs.

A run is registered when the engine starts it and deregistered when it
finishes.  Cancelling only raises a flag: the scheduler consults
:func:`is_cancelled` before each dispatch and the loop executor before each
iteration, so attempts already running complete normally and whatever is
still pending ends as ``skipped``.
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger("flowengine.run_cancel")

_flags: dict[str, asyncio.Event] = {}


class RunCancelledError(Exception):
    """A loop noticed the run was cancelled between iterations."""


def register(run_id: str) -> None:
    _flags[run_id] = asyncio.Event()


def deregister(run_id: str) -> None:
    _flags.pop(run_id, None)


def is_registered(run_id: str) -> bool:
    return run_id in _flags


def mark_cancelled(run_id: str) -> bool:
    """Flag *run_id* as cancelled.

    Returns ``False`` when no such run is in flight, which includes runs
    that already finished.
    """
    flag = _flags.get(run_id)
    if flag is None:
        logger.debug("Cancel ignored for unknown run %s", run_id)
        return False
    if not flag.is_set():
        flag.set()
        logger.info("Run %s cancelled", run_id)
    return True


def is_cancelled(run_id: str) -> bool:
    flag = _flags.get(run_id)
    return bool(flag and flag.is_set())

