"""
Order-stable worker pool for independent per-gene units of work.

Units only read shared, immutable structures and return a value that is
stored in the slot of their input index, so the output order matches the
input order regardless of scheduling. NumPy/LAPACK release the GIL, so a
thread pool gives real parallelism for the dense linear algebra here.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TypeVar

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

CANCELLED = object()
"""Sentinel stored for units that were never dispatched."""


def _deadline(timeout: float | None) -> float | None:
    return None if timeout is None else time.monotonic() + timeout


def run_units(
    func: Callable[[T, float | None], R],
    units: Sequence[T],
    n_workers: int = 1,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
) -> list[R | object]:
    """
    Apply ``func(unit, deadline)`` to every unit.

    Parameters
    ----------
    func : callable
        Called as ``func(unit, deadline)``. ``deadline`` is a
        ``time.monotonic()`` value (or None) that iterative units should
        honour cooperatively.
    units : sequence
        Work items.
    n_workers : int, default=1
        Worker threads. ``1`` runs serially in the calling thread.
    timeout : float, optional
        Per-unit time budget in seconds, converted to a deadline at dispatch.
    cancel_event : threading.Event, optional
        Once set, no further units are dispatched; in-flight units finish.

    Returns
    -------
    results : list
        One entry per unit, in input order. Units never dispatched hold
        :data:`CANCELLED`.
    """
    if n_workers < 1:
        raise ConfigurationError(f"n_workers must be >= 1, got {n_workers}")
    if timeout is not None and not timeout > 0:
        raise ConfigurationError(f"timeout must be > 0, got {timeout}")

    n_units = len(units)
    results: list[R | object] = [CANCELLED] * n_units
    if n_units == 0:
        return results

    def cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    if n_workers == 1 or n_units == 1:
        for i, unit in enumerate(units):
            if cancelled():
                break
            results[i] = func(unit, _deadline(timeout))
        _log_cancelled(results)
        return results

    max_in_flight = 2 * n_workers
    pending: dict[Future, int] = {}
    next_index = 0
    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        while next_index < n_units or pending:
            while next_index < n_units and len(pending) < max_in_flight and not cancelled():
                future = executor.submit(func, units[next_index], _deadline(timeout))
                pending[future] = next_index
                next_index += 1
            if not pending:
                break
            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                results[pending.pop(future)] = future.result()

    _log_cancelled(results)
    return results


def _log_cancelled(results: list) -> None:
    n_cancelled = sum(1 for r in results if r is CANCELLED)
    if n_cancelled:
        logger.warning("Batch cancelled: %d of %d units not dispatched", n_cancelled, len(results))
