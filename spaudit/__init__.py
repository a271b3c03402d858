"""
M365 Site Audit shared library.
"""
# Import constants module for easy access
from . import constants
from .cache import ABSENT, ResultCache, ResultCaches
from .checkpoint import CheckpointManager
from .config import AuditConfig, generate_sample_config, load_config
from .constants import (
    BYTES_PER_GB,
    DEFAULT_PARALLEL_WORKERS,
    DEFAULT_RETRY_ATTEMPTS,
    GRAPH_BASE_URL,
    MAX_BATCH_SIZE,
)
from .discovery import ResourceDiscovery
from .expander import DetailExpander
from .graph_client import (
    GraphClient,
    GraphError,
    ResourceFatalError,
    RetryPolicy,
    ThrottledError,
    TransientGraphError,
)
from .models import (
    AuditStats,
    BatchRequest,
    BatchResponse,
    CheckpointState,
    PermissionGrant,
    Principal,
    Resource,
    ResourceDetail,
)
from .pagination import PageWalker, walk_delta, walk_pages
from .pipeline import AuditPipeline, AuditResult
from .report import detail_rows, summarize
from .scheduler import MemoryGuard, run_all
from .utils import (
    AuthError,
    DiscoveryError,
    ProgressTracker,
    generate_run_id,
    get_timestamp,
    setup_logging,
    write_csv,
    write_json,
)

__all__ = [
    # Constants
    'constants',
    'BYTES_PER_GB',
    'DEFAULT_PARALLEL_WORKERS',
    'DEFAULT_RETRY_ATTEMPTS',
    'GRAPH_BASE_URL',
    'MAX_BATCH_SIZE',
    # Models
    'AuditStats',
    'BatchRequest',
    'BatchResponse',
    'CheckpointState',
    'PermissionGrant',
    'Principal',
    'Resource',
    'ResourceDetail',
    # Graph access
    'GraphClient',
    'GraphError',
    'ResourceFatalError',
    'RetryPolicy',
    'ThrottledError',
    'TransientGraphError',
    'PageWalker',
    'walk_delta',
    'walk_pages',
    # Pipeline components
    'ABSENT',
    'ResultCache',
    'ResultCaches',
    'ResourceDiscovery',
    'DetailExpander',
    'MemoryGuard',
    'run_all',
    'CheckpointManager',
    'AuditPipeline',
    'AuditResult',
    'summarize',
    'detail_rows',
    # Config
    'AuditConfig',
    'load_config',
    'generate_sample_config',
    # Utils
    'AuthError',
    'DiscoveryError',
    'ProgressTracker',
    'generate_run_id',
    'get_timestamp',
    'setup_logging',
    'write_csv',
    'write_json',
]
