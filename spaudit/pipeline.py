"""
Audit pipeline: discovery -> checkpoint filter -> parallel expansion -> merge.

The checkpoint is saved on every exit path once discovery has started, so
an interrupted run (signal, Ctrl-C, expired token) resumes where it stopped.
"""
import logging
import signal
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .cache import ResultCaches
from .checkpoint import CheckpointManager
from .config import AuditConfig
from .discovery import ResourceDiscovery
from .expander import DetailExpander
from .graph_client import GraphClient, RetryPolicy
from .models import AuditStats, ResourceDetail
from .scheduler import run_all

logger = logging.getLogger(__name__)


@dataclass
class AuditResult:
    """Everything one run produced."""
    details: List[ResourceDetail] = field(default_factory=list)
    counters: Dict[str, Any] = field(default_factory=dict)
    discovered_count: int = 0
    resumed_count: int = 0
    delta_link: Optional[str] = None
    cancelled: bool = False
    cache_sizes: Dict[str, int] = field(default_factory=dict)

    @property
    def errored_count(self) -> int:
        return sum(1 for d in self.details if d.errored)


class AuditPipeline:
    """
    Run one audit.

    Args:
        config: resolved AuditConfig
        client: pre-built GraphClient (tests); built from ``access_token`` otherwise
        access_token: bearer token used when no client is given
        progress: object with ``set_total(n)`` and ``complete(errored)``,
            typically a ProgressTracker
    """

    def __init__(self, config: AuditConfig, client: Optional[GraphClient] = None,
                 access_token: Optional[str] = None, progress=None):
        config.validate()
        self.config = config
        if client is None:
            if not access_token:
                raise ValueError("Either client or access_token is required")
            stats = AuditStats()
            client = GraphClient(
                access_token,
                base_url=config.graph_base_url,
                timeout=config.request_timeout,
                retry_policy=RetryPolicy(
                    max_attempts=config.max_retries,
                    base_delay=config.backoff_base,
                    max_delay=config.backoff_max,
                    stats=stats,
                ),
                stats=stats,
                max_connections=max(10, config.max_parallel * 2),
            )
        self.client = client
        self.stats = client.stats
        self.progress = progress
        self.caches = ResultCaches(self.stats)
        self.checkpoint = CheckpointManager(
            config.resolved_checkpoint_path(),
            enabled=config.resume,
            save_every=config.save_every,
        )
        self.expander = DetailExpander(
            client,
            self.caches,
            guest_marker=config.guest_marker,
            include_largest_items=config.include_largest_items,
            top_items_count=config.top_items_count,
        )
        self.cancel_event = threading.Event()
        self._completed: List[ResourceDetail] = []
        self._completed_lock = threading.Lock()

    def cancel(self) -> None:
        """Stop dispatching new resources; in-flight work still finishes."""
        if not self.cancel_event.is_set():
            logger.warning("Cancellation requested; finishing in-flight resources")
        self.cancel_event.set()

    def _on_result(self, detail: ResourceDetail) -> None:
        with self._completed_lock:
            self._completed.append(detail)
        self.checkpoint.record(detail)
        if self.progress is not None:
            self.progress.complete(detail.errored)

    def _install_signal_handlers(self) -> Dict[int, Any]:
        """SIGINT/SIGTERM request cancellation. Only possible on the main thread."""
        if threading.current_thread() is not threading.main_thread():
            return {}

        def handler(signum, frame):
            logger.warning(f"Received signal {signum}")
            self.cancel()

        previous = {}
        for name in ('SIGINT', 'SIGTERM'):
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            previous[signum] = signal.getsignal(signum)
            signal.signal(signum, handler)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: Dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def run(self) -> AuditResult:
        """
        Execute the audit.

        Raises:
            AuthError: token rejected (checkpoint already saved)
            DiscoveryError: nothing could be enumerated
        """
        state = self.checkpoint.load()
        previous = list(state.partial_results)
        if previous:
            logger.info(f"Resuming: {len(previous):,} records carried over from checkpoint")

        discovery = ResourceDiscovery(
            self.client,
            exclusions=self.config.exclusions,
            include_personal=self.config.include_personal_sites,
            track_delta=self.config.track_delta,
            delta_link=state.continuation_token,
        )

        result = AuditResult(resumed_count=len(previous))
        handlers = self._install_signal_handlers()
        try:
            resources = discovery.discover()
            result.discovered_count = len(resources)
            self.checkpoint.set_continuation_token(discovery.delta_link)
            if discovery.removed_ids:
                dropped = self.checkpoint.forget(discovery.removed_ids)
                previous = [d for d in previous if d.resource_id not in discovery.removed_ids]
                result.resumed_count = len(previous)
                logger.info(f"Delta feed removed {len(discovery.removed_ids):,} sites; "
                            f"{dropped:,} saved records dropped")

            pending = sorted(self.checkpoint.pending(resources), key=lambda r: r.id)
            logger.info(
                f"{len(pending):,} of {len(resources):,} resources to expand "
                f"({len(resources) - len(pending):,} already processed)"
            )
            if self.progress is not None:
                self.progress.set_total(len(pending))

            run_all(
                pending,
                self.expander,
                self.config.max_parallel,
                on_result=self._on_result,
                cancel_event=self.cancel_event,
                memory_limit_mb=self.config.memory_limit_mb,
                gc_check_interval=self.config.gc_check_interval,
            )
        except KeyboardInterrupt:
            logger.warning("Interrupted; saving progress")
            self.cancel_event.set()
        finally:
            self._restore_signal_handlers(handlers)
            self.checkpoint.save()

        with self._completed_lock:
            completed = list(self._completed)
        result.details = self.checkpoint.merged_results(completed, previous)
        result.cancelled = self.cancel_event.is_set()
        result.delta_link = discovery.delta_link
        result.counters = self.stats.snapshot()
        result.cache_sizes = self.caches.sizes()
        logger.info(
            f"Audit finished: {len(result.details):,} records "
            f"({result.errored_count:,} errored, {result.resumed_count:,} resumed), "
            f"{result.counters['totalApiCalls']:,} API calls"
        )
        return result
