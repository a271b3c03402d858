"""
Constants for the M365 site audit.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Byte/Size Conversion Constants
# =============================================================================

BYTES_PER_KB = 1024
BYTES_PER_MB = 1024 ** 2
BYTES_PER_GB = 1024 ** 3
BYTES_PER_TB = 1024 ** 4

# =============================================================================
# Microsoft Graph
# =============================================================================

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

# Hard limit imposed by the $batch endpoint
MAX_BATCH_SIZE = 20

# Status codes
HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_TOO_MANY_REQUESTS = 429
HTTP_SERVICE_UNAVAILABLE = 503

# Synthetic status for a sub-request that never produced an HTTP response
HTTP_TRANSPORT_FAILURE = 599

# Statuses that mean "this relationship does not exist" for probe lookups
EXPECTED_NEGATIVE_STATUSES = frozenset({HTTP_BAD_REQUEST, HTTP_NOT_FOUND})

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_PARALLEL_WORKERS = 8
DEFAULT_RETRY_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE = 1.0  # seconds
DEFAULT_BACKOFF_MAX = 60.0  # seconds
DEFAULT_REQUEST_TIMEOUT = 30.0  # seconds
DEFAULT_MEMORY_LIMIT_MB = 2048
DEFAULT_GC_CHECK_INTERVAL = 50  # completions between memory checks
DEFAULT_TOP_ITEMS = 10
DEFAULT_TOP_N = 25
DEFAULT_CHECKPOINT_FILE = "checkpoint.json"
DEFAULT_OUTPUT_DIR = "./m365_audit_output"

# =============================================================================
# Principal Classification
# =============================================================================

PRINCIPAL_INTERNAL = "Internal"
PRINCIPAL_EXTERNAL = "ExternalGuest"

# Guest accounts carry this marker in their UPN (alice_contoso.com#EXT#@tenant...)
GUEST_MARKER = "#EXT#"

# Role keywords that place a principal in the Owners roster
OWNER_ROLE_KEYWORDS = ("owner", "admin")

ROLE_OWNER = "owner"
ROLE_MEMBER = "member"

SOURCE_DIRECT = "direct"
SOURCE_LINKED_GROUP = "linked-group"

# =============================================================================
# Permission Grant Kinds
# =============================================================================

GRANT_PRINCIPAL = "principal"
GRANT_GROUP = "group"
GRANT_UNKNOWN = "unknown"

DELTA_UPSERT = "upsert"
DELTA_TOMBSTONE = "tombstone"

# =============================================================================
# Personal Storage Classification
# =============================================================================

PERSONAL_HOST_SUFFIX = "-my.sharepoint.com"
PERSONAL_PATH_MARKER = "/personal/"

# =============================================================================
# Graph Endpoints
# =============================================================================

SITE_SELECT = "id,name,displayName,webUrl,isPersonalSite,siteCollection"

ALL_SITES_URL = f"/sites/getAllSites?$select={SITE_SELECT}&$top=999"
SEARCH_SITES_URL = f"/sites?search=*&$select={SITE_SELECT}&$top=999"
ROOT_SITE_URL = f"/sites/root?$select={SITE_SELECT}"
SITES_DELTA_URL = f"/sites/delta?$select={SITE_SELECT}"

SITE_URL = "/sites/{site_id}?$select=id,displayName,webUrl,createdDateTime,lastModifiedDateTime"
SITE_DRIVE_URL = "/sites/{site_id}/drive?$select=id,quota,owner"
SITE_PERMISSIONS_URL = "/sites/{site_id}/drive/root/permissions"
SITE_ROOT_CHILDREN_URL = "/sites/{site_id}/drive/root/children?$select=id,name,size,webUrl,folder,file&$top=200"
GROUP_URL = "/groups/{group_id}?$select=id,displayName,mail"
GROUP_OWNERS_URL = "/groups/{group_id}/owners?$select=id,displayName,userPrincipalName,mail"
GROUP_MEMBERS_URL = "/groups/{group_id}/members?$select=id,displayName,userPrincipalName,mail"
GROUP_TRANSITIVE_MEMBERS_URL = (
    "/groups/{group_id}/transitiveMembers?$select=id,displayName,userPrincipalName,mail"
)
