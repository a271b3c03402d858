"""
Data models for the M365 site audit.
"""
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Set

from .constants import (
    DELTA_TOMBSTONE,
    DELTA_UPSERT,
    GRANT_GROUP,
    GRANT_PRINCIPAL,
    GRANT_UNKNOWN,
    GUEST_MARKER,
    PRINCIPAL_EXTERNAL,
    PRINCIPAL_INTERNAL,
    SOURCE_DIRECT,
)
from .utils import format_bytes_to_gb


# =============================================================================
# Resources and Principals
# =============================================================================

@dataclass(frozen=True)
class Resource:
    """
    Identity of one auditable site.

    Equality and hashing use ``id`` only, so a set of resources is a set of
    identities regardless of which enumeration produced the record.
    """
    id: str
    display_name: str = field(default="", compare=False)
    url: str = field(default="", compare=False)
    is_personal: bool = field(default=False, compare=False)

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def classify_principal(identifier: str, guest_marker: str = GUEST_MARKER) -> str:
    """Derive the principal type from the identifier shape alone."""
    if identifier and guest_marker.lower() in identifier.lower():
        return PRINCIPAL_EXTERNAL
    return PRINCIPAL_INTERNAL


@dataclass(frozen=True)
class Principal:
    """A user (or service identity) holding access to a resource."""
    display_name: str
    identifier: str
    principal_type: str = PRINCIPAL_INTERNAL
    role: str = ""
    source: str = SOURCE_DIRECT

    @property
    def is_external(self) -> bool:
        return self.principal_type == PRINCIPAL_EXTERNAL

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Principal':
        return cls(
            display_name=data.get('display_name', ''),
            identifier=data.get('identifier', ''),
            principal_type=data.get('principal_type', PRINCIPAL_INTERNAL),
            role=data.get('role', ''),
            source=data.get('source', SOURCE_DIRECT),
        )


def principal_from_identity(
    identity: Dict[str, Any],
    role: str,
    source: str = SOURCE_DIRECT,
    guest_marker: str = GUEST_MARKER,
) -> Optional[Principal]:
    """
    Build a Principal from a Graph identity or directoryObject payload.

    Returns None when the payload carries nothing usable as an identifier.
    """
    if not isinstance(identity, dict):
        return None
    identifier = (
        identity.get('userPrincipalName')
        or identity.get('email')
        or identity.get('mail')
        or identity.get('loginName')
        or identity.get('id')
        or ''
    )
    if not identifier:
        return None
    return Principal(
        display_name=identity.get('displayName') or identifier,
        identifier=identifier,
        principal_type=classify_principal(identifier, guest_marker),
        role=role,
        source=source,
    )


# =============================================================================
# Permission Grants
# =============================================================================

@dataclass(frozen=True)
class PermissionGrant:
    """
    One decoded permission entry.

    ``kind`` tags the target: ``principal`` carries ``principal``, ``group``
    carries ``group_id``/``group_name``, ``unknown`` carries nothing usable.
    """
    kind: str
    roles: tuple = ()
    principal: Optional[Principal] = None
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    permission_id: Optional[str] = None

    @property
    def role(self) -> str:
        return ','.join(self.roles)


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def decode_permission_grant(raw: Any, guest_marker: str = GUEST_MARKER) -> List[PermissionGrant]:
    """
    Decode a Graph permission resource into one or more grants.

    Sharing-link permissions list several identities under
    ``grantedToIdentitiesV2``; each becomes its own grant. SharePoint site
    groups and inherited-only entries decode to ``unknown``.
    """
    data = _as_dict(raw)
    roles_raw = data.get('roles')
    roles = tuple(r for r in roles_raw if isinstance(r, str)) if isinstance(roles_raw, list) else ()
    role = ','.join(roles)
    permission_id = data.get('id') if isinstance(data.get('id'), str) else None

    identity_sets: List[Dict[str, Any]] = []
    granted_to = _as_dict(data.get('grantedToV2')) or _as_dict(data.get('grantedTo'))
    if granted_to:
        identity_sets.append(granted_to)
    for key in ('grantedToIdentitiesV2', 'grantedToIdentities'):
        entries = data.get(key)
        if isinstance(entries, list) and entries:
            identity_sets.extend(_as_dict(e) for e in entries)
            break

    grants: List[PermissionGrant] = []
    for identity_set in identity_sets:
        group = _as_dict(identity_set.get('group'))
        user = _as_dict(identity_set.get('user')) or _as_dict(identity_set.get('siteUser'))
        if group.get('id'):
            grants.append(PermissionGrant(
                kind=GRANT_GROUP,
                roles=roles,
                group_id=group['id'],
                group_name=group.get('displayName') or group['id'],
                permission_id=permission_id,
            ))
            continue
        principal = principal_from_identity(user, role, SOURCE_DIRECT, guest_marker) if user else None
        if principal is not None:
            grants.append(PermissionGrant(
                kind=GRANT_PRINCIPAL,
                roles=roles,
                principal=principal,
                permission_id=permission_id,
            ))

    if not grants:
        grants.append(PermissionGrant(kind=GRANT_UNKNOWN, roles=roles, permission_id=permission_id))
    return grants


# =============================================================================
# Resource Detail
# =============================================================================

_COLLECTION_FIELDS = ('owners', 'members', 'external_principals', 'largest_items')


@dataclass
class ResourceDetail:
    """
    Aggregate audit record for one resource, built incrementally by the
    detail expander.

    ``external_principals`` is always a subset of ``owners`` + ``members``.
    The ``*_count`` fields outlive the collections when a record is
    restored from a checkpoint.
    """
    resource_id: str
    display_name: str = ""
    url: str = ""
    is_personal: bool = False

    # Quota
    storage_used_bytes: int = 0
    storage_allotted_bytes: int = 0
    storage_deleted_bytes: int = 0
    storage_remaining_bytes: int = 0
    storage_used_pct: float = 0.0
    storage_deleted_pct: float = 0.0
    storage_state: Optional[str] = None

    # Linked Microsoft 365 group
    has_linked_group: bool = False
    linked_group_id: Optional[str] = None
    linked_group_name: Optional[str] = None

    # Access rosters
    owners: List[Principal] = field(default_factory=list)
    members: List[Principal] = field(default_factory=list)
    external_principals: List[Principal] = field(default_factory=list)
    owners_count: int = 0
    members_count: int = 0
    external_count: int = 0

    largest_items: List[Dict[str, Any]] = field(default_factory=list)

    # Outcome
    errored: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    processed_at: Optional[str] = None

    @classmethod
    def for_resource(cls, resource: Resource) -> 'ResourceDetail':
        return cls(
            resource_id=resource.id,
            display_name=resource.display_name,
            url=resource.url,
            is_personal=resource.is_personal,
        )

    @classmethod
    def errored_placeholder(cls, resource: Resource, error: BaseException) -> 'ResourceDetail':
        """Zeroed record standing in for a resource that could not be expanded."""
        detail = cls.for_resource(resource)
        detail.mark_error(f"{type(error).__name__}: {error}")
        return detail

    @property
    def storage_used_gb(self) -> float:
        return format_bytes_to_gb(self.storage_used_bytes)

    def mark_error(self, message: str) -> None:
        self.errored = True
        self.errors.append(message)

    def set_quota(self, quota: Dict[str, Any]) -> None:
        """Fill quota metrics and derived percentages from a Graph quota facet."""
        self.storage_used_bytes = int(quota.get('used') or 0)
        self.storage_allotted_bytes = int(quota.get('total') or 0)
        self.storage_deleted_bytes = int(quota.get('deleted') or 0)
        self.storage_remaining_bytes = int(quota.get('remaining') or 0)
        self.storage_state = quota.get('state')
        if self.storage_allotted_bytes > 0:
            self.storage_used_pct = round(self.storage_used_bytes / self.storage_allotted_bytes * 100, 2)
            self.storage_deleted_pct = round(self.storage_deleted_bytes / self.storage_allotted_bytes * 100, 2)
        else:
            self.storage_used_pct = 0.0
            self.storage_deleted_pct = 0.0

    def add_principal(self, principal: Principal, owner: bool) -> None:
        """Add to the owner or member roster, collapsing duplicates."""
        roster = self.owners if owner else self.members
        if any(p.identifier.lower() == principal.identifier.lower() for p in roster):
            return
        roster.append(principal)
        if principal.is_external and not any(
            p.identifier.lower() == principal.identifier.lower() for p in self.external_principals
        ):
            self.external_principals.append(principal)

    def refresh_counts(self) -> None:
        self.owners_count = len(self.owners)
        self.members_count = len(self.members)
        self.external_count = len(self.external_principals)

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    def to_checkpoint_dict(self) -> Dict:
        """Record without nested collections, to bound checkpoint size."""
        data = self.to_dict()
        for name in _COLLECTION_FIELDS:
            data.pop(name, None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ResourceDetail':
        known = set(cls.__dataclass_fields__)
        values = {k: v for k, v in data.items() if k in known}
        for name in ('owners', 'members', 'external_principals'):
            values[name] = [Principal.from_dict(p) for p in values.get(name) or []]
        values['largest_items'] = list(values.get('largest_items') or [])
        values['errors'] = list(values.get('errors') or [])
        values['warnings'] = list(values.get('warnings') or [])
        return cls(**values)


# =============================================================================
# Checkpoint, Batch and Delta Records
# =============================================================================

@dataclass
class CheckpointState:
    """Durable snapshot of run progress."""
    processed_resource_ids: Set[str] = field(default_factory=set)
    partial_results: List[ResourceDetail] = field(default_factory=list)
    continuation_token: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.processed_resource_ids and not self.partial_results

    def to_dict(self) -> Dict:
        return {
            'processedResourceIds': sorted(self.processed_resource_ids),
            'partialResults': [d.to_checkpoint_dict() for d in self.partial_results],
            'continuationToken': self.continuation_token,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CheckpointState':
        return cls(
            processed_resource_ids=set(data.get('processedResourceIds') or []),
            partial_results=[ResourceDetail.from_dict(d) for d in data.get('partialResults') or []],
            continuation_token=data.get('continuationToken') or data.get('deltaLink'),
        )


@dataclass(frozen=True)
class BatchRequest:
    """One sub-request of a $batch call; ``id`` is batch-local."""
    id: str
    url: str
    method: str = "GET"

    def to_dict(self) -> Dict:
        return {'id': self.id, 'method': self.method, 'url': self.url}


@dataclass
class BatchResponse:
    """One sub-response of a $batch call, matched to its request by ``id``."""
    id: str
    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Dict[str, Any]:
        return self.body if isinstance(self.body, dict) else {}


@dataclass(frozen=True)
class DeltaEntry:
    """One change from a delta feed."""
    kind: str
    id: str
    item: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_tombstone(self) -> bool:
        return self.kind == DELTA_TOMBSTONE

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'DeltaEntry':
        kind = DELTA_TOMBSTONE if '@removed' in item else DELTA_UPSERT
        return cls(kind=kind, id=item.get('id', ''), item=item)


# =============================================================================
# Run Counters
# =============================================================================

class AuditStats:
    """
    Counters shared by every worker.

    All mutation goes through ``increment`` so concurrent workers never
    lose updates.
    """

    COUNTERS = (
        'total_api_calls',
        'batched_calls',
        'cache_hits',
        'throttle_retries',
        'transient_retries',
    )

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {name: 0 for name in self.COUNTERS}
        self._started = time.monotonic()

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] = self._counts.get(name, 0) + amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts.get(name, 0)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._started

    def snapshot(self) -> Dict[str, Any]:
        """Counters in the shape the reporting side consumes."""
        with self._lock:
            counts = dict(self._counts)
        return {
            'totalApiCalls': counts['total_api_calls'],
            'batchedCalls': counts['batched_calls'],
            'cacheHits': counts['cache_hits'],
            'throttleRetries': counts['throttle_retries'],
            'transientRetries': counts['transient_retries'],
            'elapsedDuration': round(self.elapsed_seconds, 3),
        }
