"""
core/tasks.py -- Fire-and-forget background dispatch.

Request handlers hand derived, non-essential work (last-seen timestamps,
statistics snapshots) to BackgroundDispatcher.dispatch() and return without
waiting. The returned Future[None] is informational: the request path never
awaits it, and it never carries an exception because every failure is caught
inside the worker, logged on "portal.tasks", and dropped. Nothing is retried.

The dispatcher is owned by the application lifespan (created at startup,
shut down at exit). Tests substitute a dispatcher that runs tasks inline so
assertions can observe their effects deterministically.

Layer rule: core/ is the kernel. No imports from the rest of the project.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

logger = logging.getLogger("portal.tasks")


class BackgroundDispatcher:
    """Thread pool wrapper whose tasks can fail but never raise."""

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="portal-bg")

    def dispatch(self, name: str, fn: Callable[..., Any], *args: Any) -> Future[None]:
        return self._executor.submit(_run_logged, name, fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _run_logged(name: str, fn: Callable[..., Any], *args: Any) -> None:
    try:
        fn(*args)
    except Exception:
        logger.exception("Background task %r failed; dropped", name)
