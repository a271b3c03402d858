"""
Shared fixtures: an in-memory Microsoft Graph built on httpx.MockTransport.

Routes are keyed by path relative to the API version (``/sites/root``).
A route is a list of replies consumed in order (the last one repeats).
A reply is a dict (200 JSON body), a ``Reply``, an exception instance
(raised, e.g. ``httpx.ReadTimeout``) or a callable taking the
``httpx.Request`` and returning any of those.

``POST /$batch`` is answered by dispatching every sub-request through the
same routes. If any sub-request's reply is an exception, the whole batch
call raises it.
"""
import json
import os
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from spaudit.constants import GRAPH_BASE_URL
from spaudit.graph_client import GraphClient, RetryPolicy
from spaudit.models import AuditStats

API_PREFIX = '/v1.0'


@dataclass
class Reply:
    status: int = 200
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)


class GraphRouter:
    """Callable handler for httpx.MockTransport."""

    def __init__(self):
        self.routes: Dict[str, List[Any]] = {}
        self.calls: List[tuple] = []
        self.subrequests: List[tuple] = []
        self.batch_override: Optional[Any] = None
        self._lock = threading.Lock()

    def add(self, path: str, *replies: Any) -> 'GraphRouter':
        self.routes[path] = list(replies)
        return self

    def count(self, path: str, include_batched: bool = True) -> int:
        n = sum(1 for _, p in self.calls if p == path)
        if include_batched:
            n += sum(1 for _, p in self.subrequests if p == path)
        return n

    def _next_reply(self, path: str) -> Any:
        with self._lock:
            replies = self.routes.get(path)
            if not replies:
                return Reply(404, {'error': {'code': 'itemNotFound', 'message': f'No route {path}'}})
            return replies.pop(0) if len(replies) > 1 else replies[0]

    def _resolve(self, request: httpx.Request) -> Any:
        path = request.url.path
        if path.startswith(API_PREFIX):
            path = path[len(API_PREFIX):]
        reply = self._next_reply(path)
        if callable(reply) and not isinstance(reply, BaseException):
            reply = reply(request)
        return reply

    @staticmethod
    def _to_response(reply: Any) -> httpx.Response:
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, Reply):
            return httpx.Response(reply.status, json=reply.body, headers=reply.headers)
        return httpx.Response(200, json=reply)

    def _batch(self, request: httpx.Request) -> httpx.Response:
        if self.batch_override is not None:
            reply = self.batch_override
            if callable(reply) and not isinstance(reply, BaseException):
                reply = reply(request)
            return self._to_response(reply)

        payload = json.loads(request.content)
        responses = []
        for sub in payload['requests']:
            sub_request = httpx.Request(sub['method'], GRAPH_BASE_URL + sub['url'])
            path = sub_request.url.path[len(API_PREFIX):]
            with self._lock:
                self.subrequests.append((sub['method'], path))
            reply = self._resolve(sub_request)
            if isinstance(reply, BaseException):
                raise reply
            if not isinstance(reply, Reply):
                reply = Reply(200, reply)
            responses.append({
                'id': sub['id'],
                'status': reply.status,
                'headers': reply.headers,
                'body': reply.body,
            })
        # Graph does not preserve request order
        responses.reverse()
        return httpx.Response(200, json={'responses': responses})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len(API_PREFIX):]
        with self._lock:
            self.calls.append((request.method, path))
        if path == '/$batch':
            return self._batch(request)
        return self._to_response(self._resolve(request))


def page(items, next_link=None, delta_link=None) -> Dict[str, Any]:
    """A collection page."""
    body: Dict[str, Any] = {'value': list(items)}
    if next_link:
        body['@odata.nextLink'] = next_link
    if delta_link:
        body['@odata.deltaLink'] = delta_link
    return body


def site(site_id: str, name: Optional[str] = None, url: Optional[str] = None, **extra) -> Dict[str, Any]:
    data = {
        'id': site_id,
        'displayName': name if name is not None else site_id.title(),
        'webUrl': url or f"https://contoso.sharepoint.com/sites/{site_id}",
    }
    data.update(extra)
    return data


def user(upn: str, name: Optional[str] = None) -> Dict[str, Any]:
    return {
        '@odata.type': '#microsoft.graph.user',
        'id': f"id-{upn}",
        'displayName': name or upn.split('@')[0],
        'userPrincipalName': upn,
    }


def quota(used: int = 0, total: int = 0, deleted: int = 0) -> Dict[str, Any]:
    return {'used': used, 'total': total, 'deleted': deleted,
            'remaining': max(0, total - used), 'state': 'normal'}


@pytest.fixture
def router():
    return GraphRouter()


@pytest.fixture
def sleeps():
    """Recorded backoff delays (no real sleeping)."""
    return []


@pytest.fixture
def stats():
    return AuditStats()


@pytest.fixture
def make_client(router, sleeps, stats):
    clients = []

    def factory(max_attempts: int = 5, base_delay: float = 1.0, max_delay: float = 60.0):
        policy = RetryPolicy(max_attempts=max_attempts, base_delay=base_delay,
                             max_delay=max_delay, stats=stats, sleep=sleeps.append)
        client = GraphClient('test-token', retry_policy=policy, stats=stats,
                             transport=httpx.MockTransport(router))
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


@pytest.fixture
def client(make_client):
    return make_client()
