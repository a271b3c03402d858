"""
Utility functions for the M365 site audit.

Logging Level Standards:
------------------------
- ERROR: Failures that stop the whole run
         "Discovery returned no resources"
- WARNING: Retries, skipped enumeration strategies, degraded sub-steps
           "Throttled on /sites/...; retry 2/5 in 4.0s"
           "Search strategy failed: ..."
- INFO: Progress messages, resource counts
        "Discovered 1,204 sites"
        "Resuming: 800 already processed"
- DEBUG: Per-item noise and expected negative lookups
         "No linked group for site ..."
"""
import csv
import hashlib
import json
import logging
import os
import re
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .constants import BYTES_PER_GB

logger = logging.getLogger(__name__)


# =============================================================================
# Run-fatal Errors
# =============================================================================

class AuthError(Exception):
    """Raised when Graph rejects the bearer token itself.

    Unlike per-resource 403s this stops the whole run rather than being
    recorded on a single resource.
    """
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class DiscoveryError(Exception):
    """Raised when no enumeration strategy produced a single resource."""


# Graph error codes that indicate the token itself is unusable
GRAPH_AUTH_ERROR_CODES = {'InvalidAuthenticationToken', 'Authorization_IdentityNotFound'}


def is_auth_error(exc: Exception) -> bool:
    """Check whether an exception means the run cannot authenticate at all."""
    if isinstance(exc, AuthError):
        return True
    return getattr(exc, 'error_code', None) in GRAPH_AUTH_ERROR_CODES


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress display for an audit run.

    Shows resources processed / total plus throughput counters. Falls back
    to periodic plain prints when stdout is not a TTY (e.g., when piping
    output).

    Usage:
        with ProgressTracker("SharePoint", total=len(resources), stats=stats) as tracker:
            for detail in results:
                tracker.complete(detail.errored)
    """

    def __init__(self, label: str, total: int = 0, stats=None, show_progress: bool = True,
                 print_every: int = 100):
        self.label = label
        self.total = total
        self.stats = stats
        self.show_progress = show_progress and sys.stdout.isatty()
        self.print_every = max(1, print_every)

        self.completed = 0
        self.errored = 0

        self._console: Optional[Console] = None
        self._progress: Optional[Progress] = None
        self._task = None

    def __enter__(self):
        if self.show_progress:
            self._console = Console()
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                TextColumn("{task.fields[counters]}"),
                console=self._console,
                transient=False,
            )
            self._task = self._progress.add_task(
                f"{self.label} Audit", total=self.total or None, counters=""
            )
            self._progress.start()
        else:
            print(f"\n{'='*60}")
            print(f"{self.label} Audit Starting")
            print(f"{'='*60}")
            print(f"Resources: {self.total:,}\n")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._progress is not None:
            self._progress.stop()
            self._print_summary_rich()
        else:
            self._print_summary_plain()
        return False

    def set_total(self, total: int) -> None:
        self.total = total
        if self._progress is not None:
            self._progress.update(self._task, total=total)

    def _counter_text(self) -> str:
        if self.stats is None:
            return ""
        snap = self.stats.snapshot()
        elapsed = snap['elapsedDuration'] or 1.0
        rate = snap['totalApiCalls'] / elapsed
        return (f"calls={snap['totalApiCalls']:,} ({rate:.1f}/s) "
                f"cache={snap['cacheHits']:,} throttled={snap['throttleRetries']:,}")

    def complete(self, errored: bool = False) -> None:
        """Mark one resource as processed."""
        self.completed += 1
        if errored:
            self.errored += 1
        if self._progress is not None:
            self._progress.update(self._task, advance=1, counters=self._counter_text())
        elif self.completed % self.print_every == 0 or self.completed == self.total:
            print(f"  Processed {self.completed:,}/{self.total:,} "
                  f"({self.errored:,} errored) {self._counter_text()}")

    def _print_summary_rich(self):
        table = Table(title=f"{self.label} Audit Summary", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Processed", f"{self.completed:,}")
        table.add_row("Errored", f"{self.errored:,}")
        if self.stats is not None:
            for key, value in self.stats.snapshot().items():
                table.add_row(key, f"{value:,}" if isinstance(value, int) else str(value))
        assert self._console is not None
        self._console.print(Panel(table))

    def _print_summary_plain(self):
        print(f"\n{'='*60}")
        print(f"{self.label} Audit Complete")
        print(f"{'='*60}")
        print(f"  Processed: {self.completed:,}")
        print(f"  Errored:   {self.errored:,}")
        if self.stats is not None:
            for key, value in self.stats.snapshot().items():
                print(f"  {key}: {value}")
        print()


# =============================================================================
# General Helpers
# =============================================================================

def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:8]}"


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def format_bytes_to_gb(bytes_value: int) -> float:
    """Convert bytes to GB."""
    if not bytes_value:
        return 0.0
    return round(bytes_value / BYTES_PER_GB, 2)


def hash_sensitive_id(value: str, prefix: str = "") -> str:
    """
    Hash a sensitive value using consistent hashing.

    Uses first 8 chars of SHA256 so the same value always maps to the same
    token within and across log files.
    """
    if not value:
        return value
    hash_val = hashlib.sha256(value.encode()).hexdigest()[:8]
    return f"{prefix}{hash_val}" if prefix else hash_val


# =============================================================================
# Logging
# =============================================================================

_LOG_REDACT_PATTERNS = [
    # GUIDs (tenant, site collection, group and user object IDs)
    (re.compile(r'\b([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\b', re.IGNORECASE),
     lambda m: f"id-{hash_sensitive_id(m.group(1).lower())}"),
    # UPNs and mail addresses, guest UPNs included (alice_contoso.com#EXT#@tenant.onmicrosoft.com)
    (re.compile(r'\b([A-Za-z0-9_.%+#-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,})\b'),
     lambda m: f"user-{hash_sensitive_id(m.group(1).lower())}"),
]


def redact_log_message(message: str) -> str:
    """Redact object IDs and user principal names from a log message."""
    if not message:
        return message
    for pattern, replacer in _LOG_REDACT_PATTERNS:
        message = pattern.sub(replacer, message)
    return message


class RedactingFilter(logging.Filter):
    """
    Logging filter that redacts sensitive data from log messages.

    Uses consistent hashing so the same ID produces the same hash,
    allowing correlation between log lines.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_log_message(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_log_message(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


def setup_logging(level: str = "INFO", output_dir: Optional[str] = None) -> logging.Logger:
    """
    Setup logging configuration with console and optional file output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        output_dir: If provided, also write logs to a file in this directory

    Returns:
        Logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(threadName)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # httpx logs every request at INFO
    logging.getLogger('httpx').setLevel(max(numeric_level, logging.WARNING))

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"m365_audit_log_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        # Persisted logs never carry raw UPNs or object IDs
        file_handler.addFilter(RedactingFilter())
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    return logging.getLogger(__name__)


# =============================================================================
# Output Writers
# =============================================================================

def write_json(data: Any, filepath: str) -> None:
    """Write data to JSON file with secure permissions."""
    # Owner read/write only: rosters name every user with access
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        json.dump(data, f, indent=2, default=str)
    logger.info(f"Wrote {filepath}")


def write_csv(data: List[Dict], filepath: str, fieldnames: Optional[List[str]] = None) -> None:
    """Write data to CSV file."""
    if not data:
        return

    if not fieldnames:
        fieldnames = list(data[0].keys())

    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames, extrasaction='ignore')
        writer.writeheader()
        writer.writerows(data)
    logger.info(f"Wrote {filepath}")
