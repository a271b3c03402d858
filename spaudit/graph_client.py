"""
Microsoft Graph client with centralized retry, throttling and $batch support.

Every HTTP attempt goes through one ``RetryPolicy``; call sites never loop
on their own. Error classification:

- 429 (or 503 with Retry-After): ``ThrottledError``, exponential backoff
  floored at the server's Retry-After hint
- other 5xx, timeouts, transport errors: ``TransientGraphError``, linear backoff
- 401: ``AuthError``, the token is unusable and the run stops
- any other 4xx: ``GraphError``, never retried
"""
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
)

from .constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_ATTEMPTS,
    EXPECTED_NEGATIVE_STATUSES,
    GRAPH_BASE_URL,
    HTTP_SERVICE_UNAVAILABLE,
    HTTP_TOO_MANY_REQUESTS,
    HTTP_TRANSPORT_FAILURE,
    HTTP_UNAUTHORIZED,
    MAX_BATCH_SIZE,
)
from .models import AuditStats, BatchRequest, BatchResponse
from .utils import AuthError, is_auth_error

logger = logging.getLogger(__name__)

T = TypeVar('T')


# =============================================================================
# Errors
# =============================================================================

class GraphError(Exception):
    """A Graph call that failed with a non-retryable or exhausted error."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 error_code: Optional[str] = None, url: Optional[str] = None):
        self.status_code = status_code
        self.error_code = error_code
        self.url = url
        super().__init__(message)


class TransientGraphError(GraphError):
    """Timeout, transport failure or 5xx; retried with linear backoff."""


class ThrottledError(TransientGraphError):
    """429 (or 503 with a Retry-After hint); retried with exponential backoff."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        self.retry_after = retry_after
        super().__init__(message, **kwargs)


class ResourceFatalError(GraphError):
    """The resource itself is gone or permanently rejected."""


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds."""
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def _error_code(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        error = body.get('error')
        if isinstance(error, dict):
            return error.get('code')
    return None


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        error = body.get('error')
        if isinstance(error, dict) and error.get('message'):
            return str(error['message'])
    return default


def error_for_status(status: int, body: Any = None, headers: Optional[Dict[str, str]] = None,
                     url: Optional[str] = None) -> Optional[GraphError]:
    """
    Map a status code (single call or batch sub-response) to its error class.

    Returns None for success statuses.
    """
    if 200 <= status < 300:
        return None
    headers = {k.lower(): v for k, v in (headers or {}).items()}
    code = _error_code(body)
    message = f"HTTP {status} for {url}: {_error_message(body, 'request failed')}"
    retry_after = parse_retry_after(headers.get('retry-after'))

    if status == HTTP_TOO_MANY_REQUESTS or (status == HTTP_SERVICE_UNAVAILABLE and retry_after is not None):
        return ThrottledError(message, retry_after=retry_after, status_code=status, error_code=code, url=url)
    if status >= 500:
        return TransientGraphError(message, status_code=status, error_code=code, url=url)
    return GraphError(message, status_code=status, error_code=code, url=url)


# =============================================================================
# Retry Policy
# =============================================================================

class RetryPolicy:
    """
    The single retry policy used by every Graph call.

    Throttling waits grow exponentially from the server's Retry-After hint
    (or ``base_delay`` without one) and never drop below the hint. Transient
    faults wait ``base_delay * attempt``. After ``max_attempts`` attempts the
    last error is re-raised.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        base_delay: float = DEFAULT_BACKOFF_BASE,
        max_delay: float = DEFAULT_BACKOFF_MAX,
        stats: Optional[AuditStats] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0.0, float(base_delay))
        self.max_delay = max(self.base_delay, float(max_delay))
        self.stats = stats
        self.sleep = sleep

    def compute_wait(self, error: BaseException, attempt: int) -> float:
        """Delay before the attempt following failed attempt number ``attempt`` (1-based)."""
        if isinstance(error, ThrottledError):
            hint = error.retry_after
            seed = hint if hint is not None and hint > 0 else self.base_delay
            delay = min(seed * (2 ** (attempt - 1)), self.max_delay)
            return max(delay, hint or 0.0)
        return min(self.base_delay * attempt, self.max_delay)

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        return self.compute_wait(error, retry_state.attempt_number)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        throttled = isinstance(error, ThrottledError)
        if self.stats is not None:
            self.stats.increment('throttle_retries' if throttled else 'transient_retries')
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"{'Throttled' if throttled else 'Transient error'} on {getattr(error, 'url', None) or 'request'}; "
            f"retry {retry_state.attempt_number}/{self.max_attempts - 1} in {wait:.1f}s: {error}"
        )

    def call(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` under the policy, re-raising the last error when exhausted."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(TransientGraphError),
            before_sleep=self._before_sleep,
            sleep=self.sleep,
            reraise=True,
        )
        return retrying(fn)


# =============================================================================
# Graph Client
# =============================================================================

class GraphClient:
    """
    Thread-safe Graph REST client.

    One ``httpx.Client`` (one connection pool) is shared by all workers;
    each call carries its own timeout so a stuck request surfaces as a
    transient error instead of stalling the pool.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = GRAPH_BASE_URL,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        retry_policy: Optional[RetryPolicy] = None,
        stats: Optional[AuditStats] = None,
        transport: Optional[httpx.BaseTransport] = None,
        max_connections: int = 50,
    ):
        self.stats = stats or AuditStats()
        self.retry_policy = retry_policy or RetryPolicy(stats=self.stats)
        if self.retry_policy.stats is None:
            self.retry_policy.stats = self.stats
        self.base_url = base_url.rstrip('/')
        self._http = httpx.Client(
            base_url=self.base_url + '/',
            headers={
                'Authorization': f"Bearer {access_token}",
                'Accept': 'application/json',
                'ConsistencyLevel': 'eventual',
            },
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections),
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _relative(self, url: str) -> str:
        """Strip the base URL so nextLinks and relative paths share one form."""
        if url.startswith(self.base_url):
            url = url[len(self.base_url):]
        return url.lstrip('/')

    def _send_once(self, method: str, url: str, json: Any = None) -> httpx.Response:
        self.stats.increment('total_api_calls')
        try:
            response = self._http.request(method, self._relative(url), json=json)
        except httpx.TimeoutException as e:
            raise TransientGraphError(f"Timeout calling {url}: {e}", url=url) from e
        except httpx.TransportError as e:
            raise TransientGraphError(f"Transport error calling {url}: {e}", url=url) from e

        if response.is_success:
            return response

        try:
            body = response.json()
        except ValueError:
            body = None
        error = error_for_status(response.status_code, body, dict(response.headers), url)
        if response.status_code == HTTP_UNAUTHORIZED or is_auth_error(error):
            raise AuthError(f"Graph rejected the access token: {error}", original_error=error)
        raise error

    def request(self, method: str, url: str, json: Any = None) -> httpx.Response:
        """Issue one call under the retry policy."""
        return self.retry_policy.call(lambda: self._send_once(method, url, json))

    def get_json(self, url: str) -> Dict[str, Any]:
        response = self.request('GET', url)
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise GraphError(f"Non-JSON response from {url}", status_code=response.status_code, url=url) from e
        return data if isinstance(data, dict) else {}

    def probe(self, url: str) -> Optional[Dict[str, Any]]:
        """
        Lookup that is expected to fail for most entities.

        400/404 mean "no such relationship" and return None without retrying
        or logging above DEBUG.
        """
        try:
            return self.get_json(url)
        except GraphError as e:
            if e.status_code in EXPECTED_NEGATIVE_STATUSES:
                logger.debug(f"Probe negative ({e.status_code}) for {url}")
                return None
            raise

    # -------------------------------------------------------------------------
    # $batch
    # -------------------------------------------------------------------------

    def batch(self, requests: Iterable[BatchRequest]) -> Dict[str, BatchResponse]:
        """
        Execute requests through $batch, returning responses keyed by request id.

        Throttled, transient or missing sub-responses are re-issued
        individually under the retry policy. When the batch endpoint itself
        fails, the whole chunk falls back to individual calls.
        """
        requests = list(requests)
        results: Dict[str, BatchResponse] = {}
        for start in range(0, len(requests), MAX_BATCH_SIZE):
            chunk = requests[start:start + MAX_BATCH_SIZE]
            results.update(self._batch_chunk(chunk))
        return results

    def _batch_chunk(self, chunk: List[BatchRequest]) -> Dict[str, BatchResponse]:
        try:
            self.stats.increment('batched_calls')
            response = self.request('POST', '$batch', json={'requests': [r.to_dict() for r in chunk]})
            payload = response.json()
            entries = payload.get('responses') if isinstance(payload, dict) else None
            if not isinstance(entries, list):
                raise GraphError("Batch response missing 'responses'", status_code=response.status_code)
        except AuthError:
            raise
        except (GraphError, ValueError) as e:
            logger.warning(f"Batch of {len(chunk)} failed ({e}); falling back to individual calls")
            return {r.id: self._individual(r) for r in chunk}

        by_id: Dict[str, BatchResponse] = {}
        for entry in entries:
            if not isinstance(entry, dict) or entry.get('id') is None:
                continue
            by_id[str(entry['id'])] = BatchResponse(
                id=str(entry['id']),
                status=int(entry.get('status') or 0),
                body=entry.get('body'),
                headers=entry.get('headers') or {},
            )

        results: Dict[str, BatchResponse] = {}
        for req in chunk:
            sub = by_id.get(req.id)
            if sub is None:
                logger.debug(f"Batch omitted response for request {req.id}; retrying individually")
                results[req.id] = self._individual(req)
                continue
            error = error_for_status(sub.status, sub.body, sub.headers, req.url)
            if sub.status == HTTP_UNAUTHORIZED or is_auth_error(error):
                raise AuthError(f"Graph rejected the access token: {error}", original_error=error)
            if isinstance(error, TransientGraphError):
                if self.stats is not None:
                    key = 'throttle_retries' if isinstance(error, ThrottledError) else 'transient_retries'
                    self.stats.increment(key)
                wait = self.retry_policy.compute_wait(error, 1)
                logger.warning(f"Batch sub-request {req.id} got {sub.status}; retrying individually after {wait:.1f}s")
                self.retry_policy.sleep(wait)
                results[req.id] = self._individual(req)
                continue
            results[req.id] = sub
        return results

    def _individual(self, req: BatchRequest) -> BatchResponse:
        """Issue one batch sub-request on its own, folding failures into a response."""
        try:
            response = self.request(req.method, req.url)
        except GraphError as e:
            return BatchResponse(
                id=req.id,
                status=e.status_code or HTTP_TRANSPORT_FAILURE,
                body={'error': {'code': e.error_code or type(e).__name__, 'message': str(e)}},
            )
        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None
        return BatchResponse(id=req.id, status=response.status_code, body=body, headers=dict(response.headers))


def response_error(response: BatchResponse, url: Optional[str] = None) -> Optional[GraphError]:
    """Error a failed batch sub-response stands for (None when it succeeded)."""
    return error_for_status(response.status, response.body, response.headers, url)
