"""
Tests for spaudit/scheduler.py.

Covers:
- every dispatched resource yields exactly one record
- worker exceptions become errored placeholders
- bounded parallelism
- cancellation stops dispatch; in-flight work still finishes
- AuthError stops the run without recording the failed resource
- memory guard triggering garbage collection
"""
import threading
import time
from unittest.mock import patch

import pytest

from spaudit.graph_client import ResourceFatalError
from spaudit.models import Resource, ResourceDetail
from spaudit.scheduler import MemoryGuard, run_all
from spaudit.utils import AuthError


def _resources(n):
    return [Resource(f"r{i}", f"Site {i}", f"https://contoso.sharepoint.com/sites/r{i}") for i in range(n)]


def _ok(resource):
    return ResourceDetail.for_resource(resource)


class TestRunAll:
    """Tests for run_all."""

    def test_one_record_per_resource(self):
        results = run_all(_resources(25), _ok, max_parallel=4)

        assert sorted(d.resource_id for d in results) == sorted(r.id for r in _resources(25))

    def test_failures_become_placeholders(self):
        def worker(resource):
            if resource.id == 'r1':
                raise ResourceFatalError('HTTP 404 site gone', status_code=404)
            if resource.id == 'r2':
                raise ValueError('unexpected payload')
            return _ok(resource)

        results = {d.resource_id: d for d in run_all(_resources(4), worker, max_parallel=2)}

        assert len(results) == 4
        assert results['r1'].errored and 'ResourceFatalError' in results['r1'].errors[0]
        assert results['r2'].errored
        assert results['r1'].url == 'https://contoso.sharepoint.com/sites/r1'
        assert not results['r0'].errored

    def test_parallelism_is_bounded(self):
        active = []
        peak = []
        lock = threading.Lock()

        def worker(resource):
            with lock:
                active.append(1)
                peak.append(len(active))
            time.sleep(0.01)
            with lock:
                active.pop()
            return _ok(resource)

        run_all(_resources(30), worker, max_parallel=3)

        assert max(peak) <= 3

    def test_on_result_called_for_every_record(self):
        seen = []

        run_all(_resources(10), _ok, max_parallel=3, on_result=seen.append)

        assert len(seen) == 10

    def test_cancellation_stops_dispatch(self):
        cancel = threading.Event()
        seen = []

        def on_result(detail):
            seen.append(detail)
            if len(seen) == 2:
                cancel.set()

        results = run_all(_resources(100), _ok, max_parallel=1, on_result=on_result, cancel_event=cancel)

        assert len(results) == 2

    def test_nothing_starts_after_cancellation(self):
        """A worker that cancels mid-run is the last one started."""
        cancel = threading.Event()
        started = []
        lock = threading.Lock()

        def worker(resource):
            with lock:
                started.append(resource.id)
            if resource.id == 'r0':
                cancel.set()
            return _ok(resource)

        results = run_all(_resources(10), worker, max_parallel=1, cancel_event=cancel)

        assert started == ['r0']
        assert [d.resource_id for d in results] == ['r0']

    def test_in_flight_work_finishes_after_cancellation(self):
        cancel = threading.Event()
        barrier = threading.Barrier(3)

        def worker(resource):
            if resource.id in ('r0', 'r1', 'r2'):
                barrier.wait(timeout=5)
                if resource.id == 'r0':
                    cancel.set()
                time.sleep(0.01)
            return _ok(resource)

        results = run_all(_resources(20), worker, max_parallel=3, cancel_event=cancel)

        assert sorted(d.resource_id for d in results) == ['r0', 'r1', 'r2']

    def test_auth_error_stops_run_and_skips_record(self):
        def worker(resource):
            if resource.id == 'r3':
                raise AuthError('token expired')
            return _ok(resource)

        recorded = []
        with pytest.raises(AuthError):
            run_all(_resources(50), worker, max_parallel=1, on_result=recorded.append)

        ids = {d.resource_id for d in recorded}
        assert 'r3' not in ids
        assert len(ids) < 49

    def test_accepts_iterators(self):
        results = run_all(iter(_resources(5)), _ok, max_parallel=2)

        assert len(results) == 5


class TestMemoryGuard:
    """Tests for MemoryGuard."""

    def test_collects_above_limit_on_interval(self):
        guard = MemoryGuard(limit_mb=100, interval=5, measure=lambda: 500.0)

        with patch('spaudit.scheduler.gc.collect', return_value=0) as collect:
            assert not guard.check(4)
            assert guard.check(5)
            assert guard.check(10)

        assert collect.call_count == 2
        assert guard.collections == 2

    def test_no_collection_below_limit(self):
        guard = MemoryGuard(limit_mb=1000, interval=1, measure=lambda: 10.0)

        assert not guard.check(1)

    def test_disabled_without_limit(self):
        guard = MemoryGuard(limit_mb=None, interval=1, measure=lambda: 1e9)

        assert not guard.check(1)

    def test_run_all_uses_guard(self):
        guard = MemoryGuard(limit_mb=1, interval=2, measure=lambda: 50.0)

        with patch('spaudit.scheduler.gc.collect', return_value=0):
            run_all(_resources(6), _ok, max_parallel=2, memory_guard=guard)

        assert guard.collections == 3
