#!/usr/bin/env python3
"""
M365 Site Audit
Bulk audit of SharePoint / OneDrive sites using the Microsoft Graph API:
storage quota, linked Microsoft 365 group, owners, members and external
guests for every site in the tenant.

Requirements:
- Azure AD App Registration with following API permissions (Application type):
  - Sites.Read.All (sites, drives, permissions)
  - GroupMember.Read.All (group owners and members)

Usage:
    # Set environment variables (client secret MUST be env var for security)
    export MS365_TENANT_ID="your-tenant-id"
    export MS365_CLIENT_ID="your-client-id"
    export MS365_CLIENT_SECRET="your-client-secret"

    # Run audit
    python m365_audit.py

    # Resume an interrupted run
    python m365_audit.py --resume

    # Use a pre-acquired token instead of app credentials
    export MS365_ACCESS_TOKEN="eyJ0..."
    python m365_audit.py
"""

import argparse
import logging
import os
import sys
from datetime import datetime

from azure.identity import ClientSecretCredential

from spaudit.config import AuditConfig, generate_sample_config, load_config
from spaudit.constants import GRAPH_SCOPE
from spaudit.pipeline import AuditPipeline, AuditResult
from spaudit.report import detail_rows, summarize
from spaudit.utils import (
    AuthError,
    DiscoveryError,
    ProgressTracker,
    generate_run_id,
    setup_logging,
    write_csv,
    write_json,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Authentication
# =============================================================================

def acquire_token(tenant_id: str, client_id: str, client_secret: str) -> str:
    """Client-credentials token for Microsoft Graph."""
    try:
        credential = ClientSecretCredential(
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret=client_secret,
        )
        return credential.get_token(GRAPH_SCOPE).token
    except Exception as e:
        raise AuthError(f"Could not acquire a Graph token: {e}", original_error=e) from e


def resolve_token(config: dict) -> str:
    """Token from MS365_ACCESS_TOKEN, else from app credentials."""
    token = os.environ.get('MS365_ACCESS_TOKEN')
    if token:
        logger.info("Using access token from MS365_ACCESS_TOKEN")
        return token

    m365 = config.get('m365') or {}
    tenant_id = m365.get('tenant_id')
    client_id = m365.get('client_id')
    # Client secret is env-var only (no CLI arg to avoid shell history exposure)
    client_secret = os.environ.get('MS365_CLIENT_SECRET')

    if not tenant_id or not client_id or not client_secret:
        raise AuthError(
            "Missing credentials. Provide --tenant-id/MS365_TENANT_ID, "
            "--client-id/MS365_CLIENT_ID and MS365_CLIENT_SECRET, "
            "or a token in MS365_ACCESS_TOKEN"
        )

    print(f"Tenant: {tenant_id[:8]}...{tenant_id[-4:]}")
    return acquire_token(tenant_id, client_id, client_secret)


# =============================================================================
# Output
# =============================================================================

def print_audit_summary_table(summary: dict, result: AuditResult):
    """Print the audit summary to console."""
    print("\n" + "="*70)
    print("M365 SITE AUDIT SUMMARY")
    print("="*70)
    print(f"{'Metric':<45} {'Value':>20}")
    print("-"*70)
    rows = [
        ('Sites audited', summary['total_resources']),
        ('  clean', summary['clean_resources']),
        ('  errored', summary['errored_resources']),
        ('  carried over from checkpoint', result.resumed_count),
        ('Personal sites', summary['personal_resources']),
        ('Sites with a linked group', summary['linked_group_resources']),
        ('Sites with external access', summary['resources_with_external_access']),
        ('External principals (sum over sites)', summary['total_external_principals']),
        ('Storage used (GB)', f"{summary['total_storage_used_gb']:.2f}"),
        ('Storage deleted (GB)', f"{summary['total_storage_deleted_gb']:.2f}"),
    ]
    for label, value in rows:
        print(f"{label:<45} {value:>20}")
    print("-"*70)
    counters = result.counters
    print(f"{'API calls':<45} {counters.get('totalApiCalls', 0):>20}")
    print(f"{'Batched calls':<45} {counters.get('batchedCalls', 0):>20}")
    print(f"{'Cache hits':<45} {counters.get('cacheHits', 0):>20}")
    print(f"{'Throttle retries':<45} {counters.get('throttleRetries', 0):>20}")
    print(f"{'Elapsed (s)':<45} {counters.get('elapsedDuration', 0):>20}")

    if summary['top_by_storage']:
        print("-"*70)
        print(f"{'Top sites by storage':<45} {'GB':>10} {'% tenant':>9}")
        for entry in summary['top_by_storage']:
            name = (entry['display_name'] or entry['url'])[:44]
            print(f"{name:<45} {entry['storage_used_gb']:>10.2f} {entry['pct_of_tenant']:>9.2f}")
    print("="*70 + "\n")


def write_outputs(result: AuditResult, summary: dict, output_dir: str, run_id: str) -> None:
    file_ts = datetime.now().strftime('%Y%m%d_%H%M%S')

    details_file = os.path.join(output_dir, f'site_audit_{file_ts}.json')
    write_json([d.to_dict() for d in result.details], details_file)
    print(f"Site details saved: {details_file}")

    rows = detail_rows(result.details)
    if rows:
        csv_file = os.path.join(output_dir, f'site_audit_{file_ts}.csv')
        write_csv(rows, csv_file)
        print(f"Site table saved: {csv_file}")

    summary_file = os.path.join(output_dir, f'audit_summary_{file_ts}.json')
    write_json({
        'run_id': run_id,
        'collection_timestamp': file_ts,
        'cancelled': result.cancelled,
        'discovered_resources': result.discovered_count,
        'resumed_resources': result.resumed_count,
        'counters': result.counters,
        'cache_sizes': result.cache_sizes,
        'delta_link_saved': bool(result.delta_link),
        **summary,
    }, summary_file)
    print(f"Audit summary saved: {summary_file}")


# =============================================================================
# Main Entry Point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='M365 Site Audit',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Using environment variables (client secret MUST be env var)
    export MS365_TENANT_ID="your-tenant-id"
    export MS365_CLIENT_ID="your-client-id"
    export MS365_CLIENT_SECRET="your-client-secret"
    python m365_audit.py

    # Large tenant: more workers, checkpoint every 200 sites
    python m365_audit.py --max-parallel 16 --resume --save-every 200

    # Skip archive sites, include OneDrive
    python m365_audit.py --exclude "*archive*" --include-personal

Required Azure AD App Permissions (Application type):
    - Sites.Read.All (sites, drives, permissions)
    - GroupMember.Read.All (group owners and members)

Security Note:
    Client secrets must be provided via MS365_CLIENT_SECRET environment
    variable to avoid exposing secrets in shell history or process listings.
        """
    )

    parser.add_argument('--config', '-c', help='Path to YAML config file')
    parser.add_argument('--generate-config', action='store_true',
                        help='Generate a sample config file and exit')
    parser.add_argument('--tenant-id',
                        help='Azure AD tenant ID (or set MS365_TENANT_ID env var)')
    parser.add_argument('--client-id',
                        help='Azure AD application (client) ID (or set MS365_CLIENT_ID env var)')
    parser.add_argument('--output', '-o',
                        help='Output directory (default: ./m365_audit_output)')
    parser.add_argument('--log-level', help='Logging level (default: INFO)')

    # Pipeline tuning
    parser.add_argument('--max-parallel', type=int, metavar='N',
                        help='Sites expanded concurrently (default: 8)')
    parser.add_argument('--memory-limit-mb', type=float, metavar='MB',
                        help='Force garbage collection above this RSS (default: 2048)')
    parser.add_argument('--max-retries', type=int, metavar='N',
                        help='Attempts per Graph call before giving up (default: 5)')
    parser.add_argument('--request-timeout', type=float, metavar='SECONDS',
                        help='Per-request timeout (default: 30)')

    # Resume
    parser.add_argument('--resume', action='store_true',
                        help='Resume from checkpoint and save progress on exit')
    parser.add_argument('--checkpoint',
                        help='Path for checkpoint file (default: <output>/checkpoint.json)')
    parser.add_argument('--save-every', type=int, metavar='N',
                        help='Also save the checkpoint every N finished sites')

    # Scope
    parser.add_argument('--exclude',
                        help='Comma-separated glob patterns matched against site name and URL')
    parser.add_argument('--include-personal', action='store_true',
                        help='Include OneDrive personal sites')
    parser.add_argument('--track-delta', action='store_true',
                        help='Also enumerate via the sites delta feed and keep its delta link')
    parser.add_argument('--largest-items', action='store_true',
                        help='Record the largest items in each document library root')
    parser.add_argument('--top-n', type=int, metavar='N',
                        help='Sites listed in the top-by-storage ranking (default: 25)')
    return parser


def main():
    args = build_parser().parse_args()

    # Handle --generate-config
    if args.generate_config:
        print(generate_sample_config())
        sys.exit(0)

    try:
        raw_config = load_config(args)
        config = AuditConfig.from_dict(raw_config)
        config.validate()
    except FileNotFoundError as e:
        print(f"ERROR: {e}")
        sys.exit(1)
    except (TypeError, ValueError) as e:
        print(f"ERROR: Invalid configuration: {e}")
        sys.exit(1)

    os.makedirs(config.output, exist_ok=True)
    setup_logging(config.log_level, output_dir=config.output)
    run_id = generate_run_id()
    logger.info(f"Run ID: {run_id}")
    print(f"Output: {config.output}\n")

    try:
        token = resolve_token(raw_config)
    except AuthError as e:
        logger.error(str(e))
        print("\nRun with --help for more information.")
        sys.exit(1)

    try:
        with ProgressTracker("M365 Site") as tracker:
            pipeline = AuditPipeline(config, access_token=token, progress=tracker)
            tracker.stats = pipeline.stats
            try:
                result = pipeline.run()
            finally:
                pipeline.client.close()
    except AuthError as e:
        logger.error(f"Authentication failed: {e}")
        logger.error("Check that the app registration has Sites.Read.All and GroupMember.Read.All.")
        if config.resume:
            logger.error(f"Progress saved to {config.resolved_checkpoint_path()}; rerun with --resume")
        sys.exit(2)
    except DiscoveryError as e:
        logger.error(str(e))
        logger.error("Check permissions and tenant configuration.")
        sys.exit(3)

    summary = summarize(result.details, config.top_n)
    print_audit_summary_table(summary, result)
    write_outputs(result, summary, config.output, run_id)

    if result.cancelled:
        print("Run was cancelled before all sites were audited.")
        if config.resume:
            print(f"Rerun with --resume to continue from {config.resolved_checkpoint_path()}")
        sys.exit(130)

    print(f"\nRun ID: {run_id}")
    print(f"Output files in: {config.output}")


if __name__ == '__main__':
    main()
