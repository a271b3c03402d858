"""
Tenant-level and per-resource rollups of audit records.

Data only; the CLI decides how to present it.
"""
from typing import Any, Dict, Iterable, List

from .constants import DEFAULT_TOP_N
from .models import ResourceDetail
from .utils import format_bytes_to_gb


def summarize(details: Iterable[ResourceDetail], top_n: int = DEFAULT_TOP_N) -> Dict[str, Any]:
    """Aggregate audit records into tenant totals and a top-N storage ranking."""
    details = list(details)
    summary = {
        'total_resources': len(details),
        'clean_resources': 0,
        'errored_resources': 0,
        'personal_resources': 0,
        'linked_group_resources': 0,
        'resources_with_external_access': 0,
        'total_external_principals': 0,
        'total_storage_used_gb': 0.0,
        'total_storage_allotted_gb': 0.0,
        'total_storage_deleted_gb': 0.0,
        'top_by_storage': [],
    }

    used_bytes = 0
    allotted_bytes = 0
    deleted_bytes = 0
    for d in details:
        if d.errored:
            summary['errored_resources'] += 1
        else:
            summary['clean_resources'] += 1
        if d.is_personal:
            summary['personal_resources'] += 1
        if d.has_linked_group:
            summary['linked_group_resources'] += 1
        if d.external_count:
            summary['resources_with_external_access'] += 1
            summary['total_external_principals'] += d.external_count
        used_bytes += d.storage_used_bytes
        allotted_bytes += d.storage_allotted_bytes
        deleted_bytes += d.storage_deleted_bytes

    summary['total_storage_used_gb'] = format_bytes_to_gb(used_bytes)
    summary['total_storage_allotted_gb'] = format_bytes_to_gb(allotted_bytes)
    summary['total_storage_deleted_gb'] = format_bytes_to_gb(deleted_bytes)

    ranked = sorted(details, key=lambda d: (-d.storage_used_bytes, d.resource_id))
    for d in ranked[:max(0, top_n)]:
        summary['top_by_storage'].append({
            'resource_id': d.resource_id,
            'display_name': d.display_name,
            'url': d.url,
            'storage_used_gb': d.storage_used_gb,
            'pct_of_tenant': round(d.storage_used_bytes / used_bytes * 100, 2) if used_bytes else 0.0,
        })

    return summary


def detail_rows(details: Iterable[ResourceDetail]) -> List[Dict[str, Any]]:
    """Flatten records for CSV output; rosters are reduced to counts and identifiers."""
    rows = []
    for d in details:
        rows.append({
            'resource_id': d.resource_id,
            'display_name': d.display_name,
            'url': d.url,
            'is_personal': d.is_personal,
            'storage_used_gb': d.storage_used_gb,
            'storage_allotted_gb': format_bytes_to_gb(d.storage_allotted_bytes),
            'storage_deleted_gb': format_bytes_to_gb(d.storage_deleted_bytes),
            'storage_used_pct': d.storage_used_pct,
            'storage_deleted_pct': d.storage_deleted_pct,
            'storage_state': d.storage_state or '',
            'has_linked_group': d.has_linked_group,
            'linked_group_name': d.linked_group_name or '',
            'owners_count': d.owners_count,
            'members_count': d.members_count,
            'external_count': d.external_count,
            'external_principals': ';'.join(p.identifier for p in d.external_principals),
            'errored': d.errored,
            'errors': ' | '.join(d.errors),
            'processed_at': d.processed_at or '',
        })
    return rows
