"""
M365 Site Audit - Configuration Management

Supports loading configuration from:
1. YAML config file (--config)
2. Environment variables (M365_AUDIT_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
output: "./audits"
log_level: INFO

m365:
  tenant_id: ${MS365_TENANT_ID}
  client_id: ${MS365_CLIENT_ID}

audit:
  max_parallel: 8
  memory_limit_mb: 2048
  resume: true
  exclusions:
    - "*archive*"
    - "https://contoso.sharepoint.com/sites/test-*"
```
"""
import logging
import os
import re
import stat
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_CHECKPOINT_FILE,
    DEFAULT_GC_CHECK_INTERVAL,
    DEFAULT_MEMORY_LIMIT_MB,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_PARALLEL_WORKERS,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_TOP_ITEMS,
    DEFAULT_TOP_N,
    GRAPH_BASE_URL,
    GUEST_MARKER,
)

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './m365-audit.yaml',
    './m365-audit.yml',
    '~/.m365-audit/config.yaml',
    '~/.m365-audit/config.yml',
]

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'output': 'M365_AUDIT_OUTPUT',
    'log_level': 'M365_AUDIT_LOG_LEVEL',
    'm365.tenant_id': 'MS365_TENANT_ID',
    'm365.client_id': 'MS365_CLIENT_ID',
    'audit.max_parallel': 'M365_AUDIT_MAX_PARALLEL',
    'audit.memory_limit_mb': 'M365_AUDIT_MEMORY_LIMIT_MB',
    'audit.max_retries': 'M365_AUDIT_MAX_RETRIES',
    'audit.request_timeout': 'M365_AUDIT_REQUEST_TIMEOUT',
    'audit.resume': 'M365_AUDIT_RESUME',
    'audit.exclusions': 'M365_AUDIT_EXCLUSIONS',
    'audit.include_personal_sites': 'M365_AUDIT_INCLUDE_PERSONAL',
}

_LIST_KEYS = {'audit.exclusions'}
_BOOL_KEYS = {'audit.resume', 'audit.include_personal_sites'}
_INT_KEYS = {'audit.max_parallel', 'audit.max_retries'}
_FLOAT_KEYS = {'audit.memory_limit_mb', 'audit.request_timeout'}


@dataclass
class AuditConfig:
    """
    Every knob the pipeline reads. Passed explicitly; nothing in the
    pipeline consults the environment or module globals.
    """
    max_parallel: int = DEFAULT_PARALLEL_WORKERS
    memory_limit_mb: Optional[float] = DEFAULT_MEMORY_LIMIT_MB
    gc_check_interval: int = DEFAULT_GC_CHECK_INTERVAL
    max_retries: int = DEFAULT_RETRY_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_max: float = DEFAULT_BACKOFF_MAX
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    resume: bool = False
    checkpoint_path: Optional[str] = None
    save_every: int = 0
    exclusions: List[str] = field(default_factory=list)
    include_personal_sites: bool = False
    track_delta: bool = False
    include_largest_items: bool = False
    top_items_count: int = DEFAULT_TOP_ITEMS
    top_n: int = DEFAULT_TOP_N
    guest_marker: str = GUEST_MARKER
    graph_base_url: str = GRAPH_BASE_URL
    output: str = DEFAULT_OUTPUT_DIR
    log_level: str = "INFO"

    def resolved_checkpoint_path(self) -> str:
        return self.checkpoint_path or os.path.join(self.output, DEFAULT_CHECKPOINT_FILE)

    def validate(self) -> None:
        """Reject values that would make the run misbehave."""
        if self.max_parallel < 1:
            raise ValueError(f"max_parallel must be >= 1 (got {self.max_parallel})")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1 (got {self.max_retries})")
        if self.backoff_base < 0 or self.backoff_max < self.backoff_base:
            raise ValueError(
                f"Invalid backoff window (base={self.backoff_base}, max={self.backoff_max})"
            )
        if self.request_timeout <= 0:
            raise ValueError(f"request_timeout must be > 0 (got {self.request_timeout})")
        if self.memory_limit_mb is not None and self.memory_limit_mb <= 0:
            raise ValueError(f"memory_limit_mb must be > 0 (got {self.memory_limit_mb})")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'AuditConfig':
        """Build from a merged config dict (``audit`` section plus top-level keys)."""
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key in ('output', 'log_level'):
            if config.get(key) is not None:
                values[key] = config[key]
        for key, value in (config.get('audit') or {}).items():
            if key in known and value is not None:
                values[key] = value
        if isinstance(values.get('exclusions'), str):
            values['exclusions'] = [v.strip() for v in values['exclusions'].split(',') if v.strip()]
        return cls(**values)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute ${ENV_VAR} patterns in string values."""
    if isinstance(value, str):
        # Pattern: ${VAR_NAME} or ${VAR_NAME:-default}
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replace(match):
            var_name = match.group(1)
            default = match.group(2) or ''
            return os.environ.get(var_name, default)

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _set_nested(data: Dict, key_path: str, value: Any) -> None:
    """Set a nested value in a dict using dot notation."""
    keys = key_path.split('.')
    for key in keys[:-1]:
        data = data.setdefault(key, {})
    data[keys[-1]] = value


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # Config may reference tenant and client IDs
    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    with open(path) as f:
        config = yaml.safe_load(f) or {}

    return _substitute_env_vars(config)


def find_default_config() -> Optional[str]:
    """Find a config file in default locations."""
    for path in DEFAULT_CONFIG_PATHS:
        expanded = Path(path).expanduser()
        if expanded.exists():
            return str(expanded)
    return None


def load_env_config() -> Dict[str, Any]:
    """Load configuration from environment variables."""
    config: Dict[str, Any] = {}

    for config_key, env_var in ENV_VAR_MAPPING.items():
        value: Any = os.environ.get(env_var)
        if value is None:
            continue
        try:
            if config_key in _LIST_KEYS:
                value = [v.strip() for v in value.split(',') if v.strip()]
            elif config_key in _BOOL_KEYS:
                value = value.lower() in ('true', '1', 'yes')
            elif config_key in _INT_KEYS:
                value = int(value)
            elif config_key in _FLOAT_KEYS:
                value = float(value)
        except ValueError:
            logger.warning(f"Ignoring invalid {env_var}={value!r}")
            continue
        _set_nested(config, config_key, value)

    return config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge multiple config dicts. Later configs override earlier ones."""
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            elif value is not None:
                result[key] = value

    return result


def args_to_config(args) -> Dict[str, Any]:
    """Convert argparse args to config dict format."""
    config: Dict[str, Any] = {}

    arg_mapping = {
        'output': 'output',
        'log_level': 'log_level',
        'tenant_id': 'm365.tenant_id',
        'client_id': 'm365.client_id',
        'max_parallel': 'audit.max_parallel',
        'memory_limit_mb': 'audit.memory_limit_mb',
        'max_retries': 'audit.max_retries',
        'request_timeout': 'audit.request_timeout',
        'resume': 'audit.resume',
        'checkpoint': 'audit.checkpoint_path',
        'save_every': 'audit.save_every',
        'exclude': 'audit.exclusions',
        'include_personal': 'audit.include_personal_sites',
        'track_delta': 'audit.track_delta',
        'largest_items': 'audit.include_largest_items',
        'top_n': 'audit.top_n',
    }

    for arg_name, config_key in arg_mapping.items():
        value = getattr(args, arg_name, None)
        if value is None:
            continue
        # store_true flags left unset must not override file/env values
        if value is False:
            continue
        if arg_name == 'exclude' and isinstance(value, str):
            value = [v.strip() for v in value.split(',') if v.strip()]
        _set_nested(config, config_key, value)

    return config


def load_config(args) -> Dict[str, Any]:
    """
    Load configuration from all sources and merge them.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file (--config or default location)
    3. Environment variables

    Returns merged config dict.
    """
    configs = []

    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    configs.append(args_to_config(args))

    return merge_configs(*configs)


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# M365 Site Audit Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# Output directory for audit results and the checkpoint file
output: "./m365_audit_output"

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO

# =============================================================================
# Microsoft 365 tenant
# =============================================================================
# Required API permissions (Application type):
#   - Sites.Read.All (sites, drives, permissions)
#   - GroupMember.Read.All (group owners and members)
# Client secret MUST be set via the MS365_CLIENT_SECRET environment variable.
m365:
  tenant_id: ${MS365_TENANT_ID}
  client_id: ${MS365_CLIENT_ID}

# =============================================================================
# Audit pipeline
# =============================================================================
audit:
  # Concurrent site expansions
  max_parallel: 8

  # Force a garbage-collection pass above this RSS (MB)
  memory_limit_mb: 2048

  # Attempts per Graph call before the error is surfaced
  max_retries: 5
  backoff_base: 1.0
  backoff_max: 60.0
  request_timeout: 30

  # Resume from <output>/checkpoint.json after an interruption
  resume: false
  # save_every: 100

  # Glob patterns matched against site name and URL
  # exclusions:
  #   - "*archive*"

  # Audit OneDrive personal sites as well
  include_personal_sites: false

  # Record the top-N largest items in each site's document library
  include_largest_items: false
  top_items_count: 10
'''
