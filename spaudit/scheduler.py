"""
Bounded-parallelism scheduler for the detail expander.

Workers are threads: each expands one resource to completion before taking
the next. At most ``max_parallel`` resources are submitted at a time, so
nothing sits queued in the executor once dispatch stops.
"""
import gc
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional

import psutil

from .constants import DEFAULT_GC_CHECK_INTERVAL
from .models import Resource, ResourceDetail
from .utils import AuthError

logger = logging.getLogger(__name__)


def process_memory_mb() -> float:
    """Resident set size of this process in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


class MemoryGuard:
    """Force a GC pass every ``interval`` completions when RSS exceeds the limit."""

    def __init__(self, limit_mb: Optional[float], interval: int = DEFAULT_GC_CHECK_INTERVAL,
                 measure: Callable[[], float] = process_memory_mb):
        self.limit_mb = limit_mb
        self.interval = max(1, interval)
        self.measure = measure
        self.collections = 0

    def check(self, completed: int) -> bool:
        """Returns True when a collection was forced."""
        if not self.limit_mb or completed % self.interval != 0:
            return False
        used = self.measure()
        if used <= self.limit_mb:
            return False
        freed = gc.collect()
        self.collections += 1
        logger.info(
            f"Memory {used:,.0f} MB above {self.limit_mb:,.0f} MB after {completed:,} resources; "
            f"gc collected {freed:,} objects ({self.measure():,.0f} MB now)"
        )
        return True


def run_all(
    resources: Iterable[Resource],
    worker: Callable[[Resource], ResourceDetail],
    max_parallel: int,
    on_result: Optional[Callable[[ResourceDetail], None]] = None,
    cancel_event: Optional[threading.Event] = None,
    memory_limit_mb: Optional[float] = None,
    gc_check_interval: int = DEFAULT_GC_CHECK_INTERVAL,
    memory_guard: Optional[MemoryGuard] = None,
) -> List[ResourceDetail]:
    """
    Expand every resource with bounded parallelism.

    A resource whose worker raises is replaced by an errored placeholder, so
    the output accounts for every dispatched resource. ``AuthError`` stops
    dispatch, lets in-flight work finish, then propagates. Setting
    ``cancel_event`` stops dispatch the same way without raising.

    Returns:
        Details in completion order (no ordering guarantee).
    """
    max_parallel = max(1, int(max_parallel))
    cancel_event = cancel_event or threading.Event()
    guard = memory_guard or MemoryGuard(memory_limit_mb, gc_check_interval)
    pending_resources = iter(resources)

    results: List[ResourceDetail] = []
    in_flight: Dict[Future, Resource] = {}
    fatal: Optional[BaseException] = None

    def finish(detail: ResourceDetail) -> None:
        results.append(detail)
        if on_result is not None:
            on_result(detail)
        guard.check(len(results))

    def fill(executor: ThreadPoolExecutor) -> None:
        while len(in_flight) < max_parallel and not cancel_event.is_set() and fatal is None:
            resource = next(pending_resources, None)
            if resource is None:
                return
            in_flight[executor.submit(worker, resource)] = resource

    with ThreadPoolExecutor(max_workers=max_parallel, thread_name_prefix='expand') as executor:
        fill(executor)
        while in_flight:
            done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for future in done:
                resource = in_flight.pop(future)
                try:
                    detail = future.result()
                except AuthError as e:
                    # Not recorded: a resumed run with a fresh token must retry it
                    if fatal is None:
                        logger.error(f"Authentication failed while expanding {resource.id}; stopping dispatch")
                        fatal = e
                    continue
                except Exception as e:
                    logger.warning(f"Failed to expand {resource.id} ({resource.url}): {e}")
                    detail = ResourceDetail.errored_placeholder(resource, e)
                finish(detail)
            if cancel_event.is_set() or fatal is not None:
                for future in [f for f in in_flight if f.cancel()]:
                    in_flight.pop(future)
            fill(executor)

    if cancel_event.is_set():
        logger.warning(f"Cancelled after {len(results):,} resources; remaining resources not dispatched")
    if fatal is not None:
        raise fatal
    return results
