"""
Detail expander: turn one discovered Resource into a full ResourceDetail.

This is the unit of work handed to the scheduler. Each sub-step (quota,
linked group, permissions, largest items) degrades on its own: a failure
zeroes or empties that contribution and flags the record, but the record
is still returned. Only a vanished or permanently rejected site raises
``ResourceFatalError``; a rejected token raises ``AuthError``.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .cache import ABSENT, ResultCaches
from .constants import (
    DEFAULT_TOP_ITEMS,
    GRANT_GROUP,
    GRANT_PRINCIPAL,
    GROUP_MEMBERS_URL,
    GROUP_OWNERS_URL,
    GROUP_TRANSITIVE_MEMBERS_URL,
    GROUP_URL,
    GUEST_MARKER,
    HTTP_FORBIDDEN,
    HTTP_NOT_FOUND,
    OWNER_ROLE_KEYWORDS,
    ROLE_MEMBER,
    ROLE_OWNER,
    SITE_DRIVE_URL,
    SITE_PERMISSIONS_URL,
    SITE_ROOT_CHILDREN_URL,
    SITE_URL,
    SOURCE_LINKED_GROUP,
)
from .graph_client import GraphError, ResourceFatalError, TransientGraphError, response_error
from .models import (
    BatchRequest,
    PermissionGrant,
    Principal,
    Resource,
    ResourceDetail,
    decode_permission_grant,
    principal_from_identity,
)
from .pagination import walk_pages
from .utils import get_timestamp

logger = logging.getLogger(__name__)

SITE_REQUEST_ID = "1"
DRIVE_REQUEST_ID = "2"


class _UncachedBatch(Exception):
    """Carries batch responses that include a failure, keeping them out of the cache."""

    def __init__(self, responses):
        self.responses = responses
        super().__init__("batch contained transient failures")


def is_owner_role(role: str, keywords: Sequence[str] = OWNER_ROLE_KEYWORDS) -> bool:
    """Owners are any role mentioning one of the owner keywords."""
    role = (role or '').lower()
    return any(keyword in role for keyword in keywords)


def _is_user_like(member: Dict[str, Any]) -> bool:
    """transitiveMembers also returns nested groups and devices; keep users."""
    odata_type = (member.get('@odata.type') or '').lower()
    if odata_type:
        return odata_type.endswith('.user') or odata_type.endswith('.serviceprincipal')
    return bool(member.get('userPrincipalName') or member.get('mail'))


class DetailExpander:
    """
    Build ResourceDetail records.

    Args:
        client: GraphClient shared by all workers
        caches: ResultCaches shared by all workers
        guest_marker: identifier marker that classifies external guests
        owner_keywords: role keywords that place a principal among owners
        include_largest_items: also list the largest items in the drive root
        top_items_count: how many largest items to keep
    """

    def __init__(
        self,
        client,
        caches: ResultCaches,
        guest_marker: str = GUEST_MARKER,
        owner_keywords: Sequence[str] = OWNER_ROLE_KEYWORDS,
        include_largest_items: bool = False,
        top_items_count: int = DEFAULT_TOP_ITEMS,
    ):
        self.client = client
        self.caches = caches
        self.guest_marker = guest_marker
        self.owner_keywords = tuple(owner_keywords)
        self.include_largest_items = include_largest_items
        self.top_items_count = top_items_count

    def __call__(self, resource: Resource) -> ResourceDetail:
        return self.expand(resource)

    def expand(self, resource: Resource) -> ResourceDetail:
        detail = ResourceDetail.for_resource(resource)

        site, site_error, drive, drive_error = self._fetch_site_and_drive(resource)
        if site_error is not None:
            logger.warning(f"Site metadata fetch failed for {resource.id}: {site_error}")
            detail.mark_error(f"site: {site_error}")
        elif site:
            detail.display_name = site.get('displayName') or detail.display_name
            detail.url = site.get('webUrl') or detail.url

        self._apply_quota(detail, drive, drive_error)
        self._apply_linked_group(detail, drive)
        self._apply_permissions(detail, resource)
        if self.include_largest_items:
            self._apply_largest_items(detail, resource)

        detail.refresh_counts()
        detail.processed_at = get_timestamp()
        return detail

    # -------------------------------------------------------------------------
    # Step 1: site metadata + quota (one batch)
    # -------------------------------------------------------------------------

    def _fetch_site_and_drive(
        self, resource: Resource
    ) -> Tuple[Dict[str, Any], Optional[GraphError], Dict[str, Any], Optional[GraphError]]:
        def fetch():
            responses = self.client.batch([
                BatchRequest(SITE_REQUEST_ID, SITE_URL.format(site_id=resource.id)),
                BatchRequest(DRIVE_REQUEST_ID, SITE_DRIVE_URL.format(site_id=resource.id)),
            ])
            if any(isinstance(response_error(r), TransientGraphError) for r in responses.values()):
                raise _UncachedBatch(responses)
            return responses

        try:
            responses = self.caches.resources.get_or_fetch(resource.id, fetch)
        except _UncachedBatch as e:
            responses = e.responses

        site_response = responses.get(SITE_REQUEST_ID)
        site_error = response_error(site_response, SITE_URL) if site_response else None
        if site_error is not None and site_error.status_code in (HTTP_NOT_FOUND, HTTP_FORBIDDEN):
            raise ResourceFatalError(
                f"Site {resource.id} is gone or inaccessible: {site_error}",
                status_code=site_error.status_code,
                url=resource.url,
            )
        if site_response is None:
            site_error = GraphError(f"No site response for {resource.id}")
        site = site_response.json() if site_error is None else {}

        drive_response = responses.get(DRIVE_REQUEST_ID)
        if drive_response is None:
            return site, site_error, {}, GraphError(f"No drive response for {resource.id}")
        if not drive_response.ok:
            return site, site_error, {}, response_error(drive_response, SITE_DRIVE_URL)
        return site, site_error, drive_response.json(), None

    def _apply_quota(self, detail: ResourceDetail, drive: Dict[str, Any],
                     error: Optional[GraphError]) -> None:
        if error is not None:
            if error.status_code == HTTP_NOT_FOUND:
                # Sites without a default document library have no quota
                detail.warnings.append("Site has no default document library")
            else:
                logger.warning(f"Quota fetch failed for {detail.resource_id}: {error}")
                detail.mark_error(f"quota: {error}")
            detail.set_quota({})
            return
        quota = drive.get('quota')
        if not isinstance(quota, dict):
            detail.warnings.append("Drive returned no quota")
            detail.set_quota({})
            return
        detail.set_quota(quota)

    # -------------------------------------------------------------------------
    # Step 2: linked Microsoft 365 group
    # -------------------------------------------------------------------------

    def _linked_group_candidate(self, drive: Dict[str, Any]) -> Optional[str]:
        owner = drive.get('owner') if isinstance(drive.get('owner'), dict) else {}
        group = owner.get('group') if isinstance(owner.get('group'), dict) else {}
        return group.get('id')

    def _apply_linked_group(self, detail: ResourceDetail, drive: Dict[str, Any]) -> None:
        candidate = self._linked_group_candidate(drive)

        def fetch():
            if not candidate:
                return ABSENT
            group = self.client.probe(GROUP_URL.format(group_id=candidate))
            return group if group else ABSENT

        try:
            group = self.caches.groups.get_or_fetch(detail.resource_id, fetch)
        except GraphError as e:
            logger.warning(f"Linked group lookup failed for {detail.resource_id}: {e}")
            detail.mark_error(f"linked_group: {e}")
            return

        if group is ABSENT:
            logger.debug(f"No linked group for site {detail.resource_id}")
            return

        detail.has_linked_group = True
        detail.linked_group_id = group.get('id') or candidate
        detail.linked_group_name = group.get('displayName')

        for role, url in ((ROLE_OWNER, GROUP_OWNERS_URL), (ROLE_MEMBER, GROUP_MEMBERS_URL)):
            try:
                members = self._group_members(detail.linked_group_id, url, role)
            except GraphError as e:
                logger.warning(f"Linked group {role}s failed for {detail.resource_id}: {e}")
                detail.mark_error(f"linked_group_{role}s: {e}")
                continue
            for member in members:
                principal = principal_from_identity(
                    member, role, SOURCE_LINKED_GROUP, self.guest_marker
                )
                if principal is not None:
                    detail.add_principal(principal, owner=(role == ROLE_OWNER))

    def _group_members(self, group_id: str, url_template: str, kind: str) -> List[Dict[str, Any]]:
        """Cached, paged group membership listing."""
        def fetch():
            return [
                m for m in walk_pages(self.client, url_template.format(group_id=group_id))
                if _is_user_like(m)
            ]
        return self.caches.group_members.get_or_fetch((group_id, kind), fetch)

    # -------------------------------------------------------------------------
    # Step 3: permission grants
    # -------------------------------------------------------------------------

    def _grants(self, resource: Resource) -> List[PermissionGrant]:
        def fetch():
            raw = walk_pages(self.client, SITE_PERMISSIONS_URL.format(site_id=resource.id))
            grants: List[PermissionGrant] = []
            for entry in raw:
                grants.extend(decode_permission_grant(entry, self.guest_marker))
            return grants
        return self.caches.permissions.get_or_fetch(resource.id, fetch)

    def expand_grant(self, grant: PermissionGrant) -> List[Principal]:
        """
        Principals a single grant gives access to.

        Group grants fan out to one principal per (transitive) member, each
        inheriting the grant's role and classified on its own identifier.
        """
        if grant.kind == GRANT_PRINCIPAL and grant.principal is not None:
            return [grant.principal]
        if grant.kind == GRANT_GROUP and grant.group_id:
            members = self._group_members(grant.group_id, GROUP_TRANSITIVE_MEMBERS_URL, 'transitive')
            source = f"group:{grant.group_name or grant.group_id}"
            principals = []
            for member in members:
                principal = principal_from_identity(member, grant.role, source, self.guest_marker)
                if principal is not None:
                    principals.append(principal)
            return principals
        return []

    def _apply_permissions(self, detail: ResourceDetail, resource: Resource) -> None:
        try:
            grants = self._grants(resource)
        except GraphError as e:
            logger.warning(f"Permission fetch failed for {resource.id}: {e}")
            detail.mark_error(f"permissions: {e}")
            return

        skipped = 0
        for grant in grants:
            if grant.kind not in (GRANT_PRINCIPAL, GRANT_GROUP):
                skipped += 1
                continue
            try:
                principals = self.expand_grant(grant)
            except GraphError as e:
                logger.warning(f"Group expansion failed for {grant.group_id} on {resource.id}: {e}")
                detail.mark_error(f"group_expansion {grant.group_id}: {e}")
                continue
            for principal in principals:
                detail.add_principal(principal, owner=is_owner_role(principal.role, self.owner_keywords))
        if skipped:
            logger.debug(f"Skipped {skipped} grants without a user or group target on {resource.id}")

    # -------------------------------------------------------------------------
    # Step 4 (optional): largest items
    # -------------------------------------------------------------------------

    def _apply_largest_items(self, detail: ResourceDetail, resource: Resource) -> None:
        try:
            items = walk_pages(self.client, SITE_ROOT_CHILDREN_URL.format(site_id=resource.id))
        except GraphError as e:
            if e.status_code == HTTP_NOT_FOUND:
                return
            logger.warning(f"Item listing failed for {resource.id}: {e}")
            detail.mark_error(f"largest_items: {e}")
            return
        ranked = sorted(items, key=lambda i: int(i.get('size') or 0), reverse=True)
        detail.largest_items = [
            {
                'name': item.get('name'),
                'size_bytes': int(item.get('size') or 0),
                'is_folder': 'folder' in item,
                'url': item.get('webUrl'),
            }
            for item in ranked[:self.top_items_count]
        ]
