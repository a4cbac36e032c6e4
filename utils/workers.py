"""Bounded per-image worker pool shared by the enhance and finish stages."""
import logging
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TypeVar

from utils.errors import AuthError
from utils.polling import Deadline

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_ordered(
    units: Iterable[Callable[[], T]],
    *,
    max_workers: int,
    deadline: Deadline,
) -> list[T]:
    """Run `units` on a thread pool and return their results in input order.

    Units are expected to turn their own failures into degraded results; only
    AuthError escapes. The first AuthError cancels `deadline`, so in-flight
    polls stop at their next check and units not yet started are skipped. It
    is re-raised once the running units have returned.
    """
    def guarded(unit: Callable[[], T]) -> T | None:
        if deadline.cancelled:
            return None
        try:
            return unit()
        except AuthError:
            deadline.cancel()
            raise

    pool = ThreadPoolExecutor(max_workers=max_workers)
    try:
        futures = [pool.submit(guarded, unit) for unit in units]
        for future in as_completed(futures):
            future.result()
        return [future.result() for future in futures]
    except AuthError:
        logger.warning("Credentials rejected; cancelling the remaining images.")
        pool.shutdown(cancel_futures=True)
        raise
    finally:
        pool.shutdown()
