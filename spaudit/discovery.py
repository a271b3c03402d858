"""
Resource discovery.

Several enumeration strategies run independently because each has different
coverage and failure modes (getAllSites misses nothing but needs the
application permission, search is eventually consistent, the root site is
always reachable). Their output is merged into one set keyed by site id.
"""
import fnmatch
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set
from urllib.parse import urlparse

from .constants import (
    ALL_SITES_URL,
    PERSONAL_HOST_SUFFIX,
    PERSONAL_PATH_MARKER,
    ROOT_SITE_URL,
    SEARCH_SITES_URL,
    SITES_DELTA_URL,
)
from .graph_client import GraphError
from .models import Resource
from .pagination import PageWalker, apply_delta, walk_delta
from .utils import AuthError, DiscoveryError

logger = logging.getLogger(__name__)


@dataclass
class Strategy:
    """One independent producer of raw site payloads."""
    name: str
    fetch: Callable[[], Iterable[Dict[str, Any]]]


def is_personal_site(site: Dict[str, Any]) -> bool:
    """
    Classify a site as personal storage (OneDrive) or a shared resource.

    The explicit ``isPersonalSite`` flag wins when Graph returns it;
    otherwise the site-collection host (``<tenant>-my.sharepoint.com``) or a
    ``/personal/`` path marks personal storage.
    """
    flag = site.get('isPersonalSite')
    if isinstance(flag, bool):
        return flag
    collection = site.get('siteCollection') if isinstance(site.get('siteCollection'), dict) else {}
    hostname = (collection.get('hostname') or '').lower()
    web_url = (site.get('webUrl') or '').lower()
    if not hostname and web_url:
        hostname = (urlparse(web_url).hostname or '').lower()
    return hostname.endswith(PERSONAL_HOST_SUFFIX) or PERSONAL_PATH_MARKER in web_url


def resource_from_site(site: Dict[str, Any]) -> Optional[Resource]:
    """Build a Resource, or None when required identity fields are missing."""
    if not isinstance(site, dict):
        return None
    site_id = site.get('id')
    url = site.get('webUrl')
    if not site_id or not url or '@removed' in site:
        return None
    return Resource(
        id=site_id,
        display_name=site.get('displayName') or site.get('name') or '',
        url=url,
        is_personal=is_personal_site(site),
    )


def _preferred(current: Resource, candidate: Resource) -> Resource:
    """Pick between two records for the same id independently of arrival order."""
    def rank(r: Resource):
        return (not r.display_name, r.display_name, r.url, r.is_personal)
    return candidate if rank(candidate) < rank(current) else current


def matches_exclusion(resource: Resource, patterns: Sequence[str]) -> bool:
    """Case-insensitive glob match against display name and URL."""
    name = resource.display_name.lower()
    url = resource.url.lower()
    for pattern in patterns:
        p = pattern.lower()
        if fnmatch.fnmatchcase(name, p) or fnmatch.fnmatchcase(url, p):
            return True
    return False


class ResourceDiscovery:
    """
    Merge several enumeration strategies into one deduplicated resource set.

    Args:
        client: GraphClient
        exclusions: glob patterns matched against site name and URL
        include_personal: keep personal (OneDrive) sites
        strategies: override the default strategies (tests, custom tenants)
        track_delta: also enumerate through the sites delta feed and keep
            its delta link for the next run
        delta_link: saved delta link the delta feed resumes from
    """

    def __init__(
        self,
        client,
        exclusions: Sequence[str] = (),
        include_personal: bool = False,
        strategies: Optional[List[Strategy]] = None,
        track_delta: bool = False,
        delta_link: Optional[str] = None,
    ):
        self.client = client
        self.exclusions = list(exclusions or [])
        self.include_personal = include_personal
        self.track_delta = track_delta
        self.delta_link: Optional[str] = delta_link
        self._saved_delta_link = delta_link
        self.strategies = strategies if strategies is not None else self.default_strategies()
        self.strategy_counts: Dict[str, int] = {}
        self.removed_ids: Set[str] = set()

    def default_strategies(self) -> List[Strategy]:
        strategies = [
            Strategy('all_sites', lambda: PageWalker(self.client, ALL_SITES_URL)),
            Strategy('search', lambda: PageWalker(self.client, SEARCH_SITES_URL)),
            Strategy('root_site', lambda: PageWalker(self.client, ROOT_SITE_URL)),
        ]
        if self.track_delta:
            strategies.append(Strategy('delta', self._delta_items))
        return strategies

    def _delta_items(self) -> List[Dict[str, Any]]:
        """
        Delta enumeration; records the delta link for the next run.

        Resuming from a saved link yields only changes. Sites the feed
        reports as removed are collected in ``removed_ids`` so the caller
        can drop them from earlier results.
        """
        entries, new_link = walk_delta(self.client, self._saved_delta_link or SITES_DELTA_URL)
        current = apply_delta({}, entries)
        self.removed_ids = {e.id for e in entries if e.is_tombstone} - set(current)
        if new_link:
            self.delta_link = new_link
        return list(current.values())

    def _keep(self, resource: Resource) -> bool:
        if resource.is_personal and not self.include_personal:
            return False
        if self.exclusions and matches_exclusion(resource, self.exclusions):
            return False
        return True

    def discover(self) -> Set[Resource]:
        """
        Run every strategy and return the merged set.

        Raises:
            AuthError: the token was rejected
            DiscoveryError: no strategy produced any resource
        """
        merged: Dict[str, Resource] = {}
        dropped = 0

        for strategy in self.strategies:
            count = 0
            try:
                for site in strategy.fetch():
                    resource = resource_from_site(site)
                    if resource is None:
                        dropped += 1
                        continue
                    count += 1
                    existing = merged.get(resource.id)
                    merged[resource.id] = _preferred(existing, resource) if existing else resource
            except AuthError:
                raise
            except GraphError as e:
                logger.warning(f"Discovery strategy '{strategy.name}' failed: {e}")
            self.strategy_counts[strategy.name] = count
            logger.info(f"Discovery strategy '{strategy.name}' returned {count} sites")

        for resource_id in self.removed_ids:
            merged.pop(resource_id, None)
        if dropped:
            logger.debug(f"Dropped {dropped} entries missing id or webUrl")
        if not merged:
            raise DiscoveryError("Discovery returned no resources from any strategy")

        resources = {r for r in merged.values() if self._keep(r)}
        logger.info(
            f"Discovered {len(merged):,} unique sites, {len(resources):,} after "
            f"personal/exclusion filtering"
        )
        return resources
